import logging
import os
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Request, WebSocket, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from common.cache import delete_prefix, get_cached_json, set_cached_json

from . import models, schemas
from .database import Base, SessionLocal, engine, get_db
from .errors import NotFoundError, StorageError, ValidationError
from .hub import WEBSOCKET_PATH, ConnectionRegistry, NotificationHub
from .lifecycle import LifecycleService, list_activities
from .rate_limiter import ip_rate_limiter

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create tables on startup
Base.metadata.create_all(bind=engine)

app = FastAPI(title="Assistance Service", version="1.0.0")
router_api = APIRouter(prefix="/api")

SERVICE_NAME = "assistance"

app.state.hub = NotificationHub(ConnectionRegistry(), SessionLocal)


def error_response(request: Request, status_code: int, detail, **extra) -> JSONResponse:
    content = {
        "service": SERVICE_NAME,
        "path": request.url.path,
        "method": request.method,
        "status_code": status_code,
        "detail": detail,
    }
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return error_response(request, exc.status_code, exc.detail)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return error_response(
        request,
        status.HTTP_400_BAD_REQUEST,
        "Invalid request data",
        errors=jsonable_encoder(exc.errors()),
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return error_response(request, status.HTTP_400_BAD_REQUEST, exc.message)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return error_response(request, status.HTTP_404_NOT_FOUND, exc.message)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    return error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, exc.message)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


@app.get("/")
def root():
    """
    Health-check endpoint for the Assistance service.

    Returns
    -------
    dict
        A small JSON payload indicating that the service is running.
    """
    return {"service": SERVICE_NAME, "status": "running"}


def get_hub(request: Request) -> NotificationHub:
    return request.app.state.hub


def get_lifecycle_service(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    hub: NotificationHub = Depends(get_hub),
) -> LifecycleService:
    """
    Build a LifecycleService whose notifications are broadcast once the
    HTTP response has been sent.
    """

    def notify(message: schemas.NotificationMessage) -> None:
        background_tasks.add_task(hub.broadcast, message)

    return LifecycleService(db, notifier=notify)


# ---------- Rooms ----------


@router_api.get("/rooms", response_model=List[schemas.RoomRead])
def list_rooms(db: Session = Depends(get_db)):
    """
    List every room in creation order.

    The full list is cached for 60 seconds when Redis is configured.
    """
    cache_key = "rooms:all"
    cached = get_cached_json(cache_key)
    if cached is not None:
        return cached

    rooms = db.query(models.Room).order_by(models.Room.id).all()
    data = [schemas.RoomRead.model_validate(r).model_dump(mode="json") for r in rooms]
    set_cached_json(cache_key, data, ttl_seconds=60)
    return data


@router_api.get("/rooms/{room_id}", response_model=schemas.RoomRead)
def get_room(room_id: int, db: Session = Depends(get_db)):
    """
    Retrieve a single room by its ID.

    Raises
    ------
    HTTPException
        If the room does not exist.
    """
    cache_key = f"room:{room_id}"
    cached = get_cached_json(cache_key)
    if cached is not None:
        return cached

    room = None
    if 0 < room_id <= models.MAX_ROW_ID:
        room = db.query(models.Room).filter(models.Room.id == room_id).first()
    if not room:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
    data = schemas.RoomRead.model_validate(room).model_dump(mode="json")
    set_cached_json(cache_key, data, ttl_seconds=300)
    return data


@router_api.post(
    "/rooms",
    response_model=schemas.RoomRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(ip_rate_limiter)],
)
def create_room(room_in: schemas.RoomCreate, db: Session = Depends(get_db)):
    """
    Create a new room from the room admin view.

    Behavior
    --------
    - Name and location are required; status defaults to 'available'.
    - Names are not required to be unique.
    - Invalidates the cached room list.
    """
    room = models.Room(
        name=room_in.name,
        location=room_in.location,
        status=room_in.status or "available",
    )
    try:
        db.add(room)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to create room %s", room_in.name)
        raise StorageError("Failed to create room") from exc
    db.refresh(room)
    delete_prefix("rooms:")
    logger.info("Created room %s (%s)", room.id, room.name)
    return room


# ---------- Assistance requests ----------


@router_api.get("/assistance-requests", response_model=List[schemas.AssistanceRequestRead])
def list_assistance_requests(
    status: Optional[str] = None,
    service: LifecycleService = Depends(get_lifecycle_service),
):
    """
    List assistance requests, optionally filtered by status.

    Parameters
    ----------
    status : Optional[str]
        Exact status to match, or 'active' for waiting plus in-progress.
    """
    return service.query(status)


@router_api.get("/assistance-requests/active", response_model=List[schemas.AssistanceRequestRead])
def list_active_requests(service: LifecycleService = Depends(get_lifecycle_service)):
    return service.active()


@router_api.get("/assistance-requests/resolved", response_model=List[schemas.AssistanceRequestRead])
def list_resolved_requests(service: LifecycleService = Depends(get_lifecycle_service)):
    return service.resolved()


@router_api.get("/assistance-requests/stats", response_model=schemas.RequestStats)
def request_stats(service: LifecycleService = Depends(get_lifecycle_service)):
    """
    Dashboard summary: active count, resolved today, average response time.
    """
    return service.stats()


@router_api.get("/assistance-requests/{request_id}", response_model=schemas.AssistanceRequestRead)
def get_assistance_request(
    request_id: int,
    service: LifecycleService = Depends(get_lifecycle_service),
):
    return service.get(request_id)


@router_api.post(
    "/assistance-requests",
    response_model=schemas.AssistanceRequestRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(ip_rate_limiter)],
)
def create_assistance_request(
    request_in: schemas.AssistanceRequestCreate,
    service: LifecycleService = Depends(get_lifecycle_service),
):
    """
    Raise a new assistance request from a room.

    Behavior
    --------
    - The request starts as 'waiting' with ``requestedAt`` set to now.
    - A 'requested' activity entry is written.
    - A notification is broadcast to every realtime client.

    Returns
    -------
    AssistanceRequestRead
        The stored request.
    """
    return service.create(request_in.room_id, request_in.room_name, request_in.room_location)


@router_api.patch("/assistance-requests/{request_id}", response_model=schemas.AssistanceRequestRead)
def update_assistance_request(
    request_id: int,
    update_data: schemas.AssistanceRequestStatusUpdate,
    service: LifecycleService = Depends(get_lifecycle_service),
):
    """
    Move an assistance request to another status.

    Behavior
    --------
    - in-progress stamps ``respondedAt``; resolved stamps ``resolvedAt``
      and ``resolvedBy``.
    - An activity entry is written for in-progress and resolved.
    - A notification is broadcast to every realtime client.

    Raises
    ------
    ValidationError
        If the status is not waiting, in-progress or resolved (HTTP 400).
    NotFoundError
        If the request does not exist (HTTP 404).
    """
    return service.update_status(request_id, update_data.status, update_data.resolved_by)


# ---------- Activity feed ----------


@router_api.get("/activities", response_model=List[schemas.ActivityRead])
def get_activities(db: Session = Depends(get_db)):
    """
    Return the 50 most recent activity entries, newest first.
    """
    return list_activities(db)


app.include_router(router_api)


@app.websocket(WEBSOCKET_PATH)
async def websocket_endpoint(websocket: WebSocket):
    hub: NotificationHub = websocket.app.state.hub
    await hub.serve(websocket)
