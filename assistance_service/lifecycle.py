import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models, schemas
from .errors import NotFoundError, StorageError, ValidationError
from .models import ACTIVE_STATUSES, MAX_ROW_ID, ActivityType, RequestStatus

logger = logging.getLogger(__name__)

ACTIVITY_FEED_LIMIT = 50

Notifier = Callable[[schemas.NotificationMessage], None]


# ---------- Activity feed ----------


def record_activity(
    db: Session,
    activity_type: ActivityType,
    room_name: str,
    message: str,
    technician: Optional[str] = None,
    room_id: Optional[int] = None,
) -> models.Activity:
    """
    Stage an activity feed entry on the session without committing.

    When ``room_id`` is not given, the first room whose name matches
    ``room_name`` is used. Room names are not unique, so this is best
    effort only.

    Parameters
    ----------
    db : Session
        Database session; the caller owns the transaction.
    activity_type : ActivityType
        Kind of entry.
    room_name : str
        Room the entry refers to.
    message : str
        Display text for the feed.
    technician : Optional[str]
        Technician involved, if any.
    room_id : Optional[int]
        Room reference; looked up by name when omitted.

    Returns
    -------
    Activity
        The pending activity row.
    """
    if room_id is None and room_name:
        room = (
            db.query(models.Room)
            .filter(models.Room.name == room_name)
            .order_by(models.Room.id)
            .first()
        )
        if room is not None:
            room_id = room.id

    activity = models.Activity(
        type=ActivityType(activity_type).value,
        room_name=room_name,
        message=message,
        technician=technician or None,
        room_id=room_id,
        timestamp=models.utcnow(),
    )
    db.add(activity)
    return activity


def list_activities(db: Session, limit: int = ACTIVITY_FEED_LIMIT) -> List[models.Activity]:
    """Return the latest activity entries, newest first."""
    return (
        db.query(models.Activity)
        .order_by(models.Activity.timestamp.desc(), models.Activity.id.desc())
        .limit(limit)
        .all()
    )


def build_notification(request: models.AssistanceRequest) -> schemas.NotificationMessage:
    return schemas.NotificationMessage(
        request_id=request.id,
        room_name=request.room_name,
        room_location=request.room_location,
        status=RequestStatus(request.status),
        timestamp=int(time.time() * 1000),
    )


def _known_id(row_id: int) -> bool:
    return 0 < row_id <= MAX_ROW_ID


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------- Lifecycle service ----------


class LifecycleService:
    """
    Creates assistance requests and moves them between states.

    Every mutation writes the request row and its activity entry in the
    same transaction. After a successful commit the optional ``notifier``
    is called with the notification event for that request; the realtime
    hub and the REST layer each pass in their own broadcast hook.

    Parameters
    ----------
    db : Session
        Database session used for every operation.
    notifier : Optional[Callable[[NotificationMessage], None]]
        Broadcast hook invoked after each committed create or transition.
    """

    def __init__(self, db: Session, notifier: Optional[Notifier] = None):
        self.db = db
        self.notifier = notifier

    def create(self, room_id: int, room_name: str, room_location: str) -> models.AssistanceRequest:
        """
        Raise a new request in the 'waiting' state.

        The room name and location are stored as given and are not checked
        against the room record.

        Raises
        ------
        StorageError
            If the request or its activity entry cannot be written.
        """
        request = models.AssistanceRequest(
            room_id=room_id,
            room_name=room_name,
            room_location=room_location,
            status=RequestStatus.WAITING.value,
            requested_at=models.utcnow(),
        )
        try:
            self.db.add(request)
            record_activity(
                self.db,
                ActivityType.REQUESTED,
                room_name,
                f"New request from {room_name}",
            )
            self.db.commit()
            self.db.refresh(request)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to create assistance request for room %s", room_id)
            raise StorageError("Failed to create request") from exc

        logger.info("Assistance request %s raised from %s", request.id, room_name)
        self._notify(request)
        return request

    def update_status(
        self,
        request_id: int,
        status: Union[RequestStatus, str],
        updated_by: Optional[str] = None,
    ) -> models.AssistanceRequest:
        """
        Move a request to ``status``.

        Behavior
        --------
        - in-progress: ``responded_at`` is set to now (overwritten when
          applied again) and a 'responded' activity entry is written.
        - resolved: ``resolved_at`` is set to now, ``resolved_by`` to
          ``updated_by`` and a 'resolved' activity entry is written.
        - waiting: only the status changes; no activity entry.

        The request row and its activity entry are committed together, so
        either both land or neither does. On PostgreSQL the row is also
        locked (SELECT ... FOR UPDATE) so concurrent transitions on the same
        request are applied one after the other; SQLite ignores the lock
        hint and relies on its single-writer database lock instead.

        Raises
        ------
        ValidationError
            If ``status`` is not a known request status.
        NotFoundError
            If no request has ``request_id``.
        StorageError
            If the database write fails.
        """
        try:
            new_status = RequestStatus(status)
        except ValueError:
            raise ValidationError("Invalid status value")

        if not _known_id(request_id):
            raise NotFoundError("Request not found")

        try:
            request = (
                self.db.query(models.AssistanceRequest)
                .filter(models.AssistanceRequest.id == request_id)
                .with_for_update()
                .first()
            )
            if request is None:
                self.db.rollback()
                raise NotFoundError("Request not found")

            now = models.utcnow()
            request.status = new_status.value

            if new_status is RequestStatus.IN_PROGRESS:
                request.responded_at = now
                record_activity(
                    self.db,
                    ActivityType.RESPONDED,
                    request.room_name,
                    f"{updated_by or 'A technician'} responded to {request.room_name} request",
                    technician=updated_by,
                )
            elif new_status is RequestStatus.RESOLVED:
                request.resolved_at = now
                request.resolved_by = updated_by or None
                record_activity(
                    self.db,
                    ActivityType.RESOLVED,
                    request.room_name,
                    f"Request from {request.room_name} was resolved",
                    technician=updated_by,
                )

            self.db.commit()
            self.db.refresh(request)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to update assistance request %s", request_id)
            raise StorageError("Failed to update request") from exc

        logger.info("Assistance request %s is now %s", request.id, request.status)
        self._notify(request)
        return request

    def get(self, request_id: int) -> models.AssistanceRequest:
        if not _known_id(request_id):
            raise NotFoundError("Request not found")
        request = (
            self.db.query(models.AssistanceRequest)
            .filter(models.AssistanceRequest.id == request_id)
            .first()
        )
        if request is None:
            raise NotFoundError("Request not found")
        return request

    def query(self, status: Optional[str] = None) -> List[models.AssistanceRequest]:
        """
        List requests in insertion order.

        Parameters
        ----------
        status : Optional[str]
            'active' selects waiting and in-progress requests, any other
            value is matched exactly, None returns everything.

        Returns
        -------
        List[AssistanceRequest]
            Matching requests ordered by id.
        """
        q = self.db.query(models.AssistanceRequest)
        if status == "active":
            q = q.filter(models.AssistanceRequest.status.in_(ACTIVE_STATUSES))
        elif status:
            q = q.filter(models.AssistanceRequest.status == status)
        return q.order_by(models.AssistanceRequest.id).all()

    def active(self) -> List[models.AssistanceRequest]:
        return self.query("active")

    def resolved(self) -> List[models.AssistanceRequest]:
        return self.query(RequestStatus.RESOLVED.value)

    def stats(self, now: Optional[datetime] = None) -> schemas.RequestStats:
        """
        Compute the dashboard summary.

        Parameters
        ----------
        now : Optional[datetime]
            Reference time; defaults to the current UTC time.

        Returns
        -------
        RequestStats
            Active count, requests resolved since UTC midnight and the mean
            response time in minutes over resolved requests.
        """
        now = _as_utc(now or models.utcnow())
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)

        resolved = self.resolved()
        resolved_today = sum(
            1 for r in resolved
            if r.resolved_at is not None and _as_utc(r.resolved_at) >= midnight
        )

        response_minutes = [
            (_as_utc(r.responded_at) - _as_utc(r.requested_at)).total_seconds() / 60
            for r in resolved
            if r.responded_at is not None and r.requested_at is not None
        ]
        average = None
        if response_minutes:
            average = round(sum(response_minutes) / len(response_minutes), 1)

        return schemas.RequestStats(
            active_count=len(self.active()),
            resolved_today=resolved_today,
            average_response_minutes=average,
        )

    def _notify(self, request: models.AssistanceRequest) -> None:
        if self.notifier is None:
            return
        self.notifier(build_notification(request))
