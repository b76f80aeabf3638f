import logging
from typing import Callable, List, Set

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.websockets import WebSocketState

from . import schemas
from .errors import NotFoundError, StorageError, ValidationError
from .lifecycle import LifecycleService

logger = logging.getLogger(__name__)

WEBSOCKET_PATH = "/ws"


class ConnectionRegistry:
    """
    Set of open realtime connections.

    Connections carry no identity; every open connection receives every
    notification. Adding and removing are single set operations, and
    broadcasting iterates over a snapshot so connections may come and go
    while a broadcast is in flight.
    """

    def __init__(self):
        self._connections: Set[WebSocket] = set()

    def add(self, websocket: WebSocket) -> None:
        self._connections.add(websocket)

    def remove(self, websocket: WebSocket) -> None:
        self._connections.discard(websocket)

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, websocket: WebSocket) -> bool:
        return websocket in self._connections

    async def broadcast(self, message: schemas.NotificationMessage) -> int:
        """
        Send ``message`` to every open connection.

        The payload is serialised once so each connection gets the same
        text. Connections that are not open are skipped; connections whose
        send fails are dropped from the registry. Nothing is queued or
        retried.

        Parameters
        ----------
        message : NotificationMessage
            Event to fan out.

        Returns
        -------
        int
            Number of connections the message was written to.
        """
        payload = message.model_dump_json(by_alias=True)
        delivered = 0
        for websocket in list(self._connections):
            if (
                websocket.application_state != WebSocketState.CONNECTED
                or websocket.client_state != WebSocketState.CONNECTED
            ):
                continue
            try:
                await websocket.send_text(payload)
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                logger.warning("Dropping realtime connection after failed send: %r", exc)
                self.remove(websocket)
                continue
            delivered += 1
        return delivered


class NotificationHub:
    """
    Handles inbound realtime messages and fans notifications out.

    Parameters
    ----------
    registry : ConnectionRegistry
        Open connections that receive broadcasts.
    session_factory : Callable[[], Session]
        Creates a fresh database session for each inbound message.
    """

    def __init__(self, registry: ConnectionRegistry, session_factory: Callable[[], Session]):
        self.registry = registry
        self.session_factory = session_factory

    async def broadcast(self, message: schemas.NotificationMessage) -> int:
        return await self.registry.broadcast(message)

    async def handle_message(self, raw: str) -> int:
        """
        Apply one inbound message and broadcast the resulting notification.

        Messages that are not valid JSON, fail schema validation, refer to an
        unknown request, or hit a storage failure are logged and dropped.
        The sender gets no reply either way.

        Parameters
        ----------
        raw : str
            Text frame received from a client.

        Returns
        -------
        int
            Number of notifications broadcast (0 or 1).
        """
        try:
            message = schemas.inbound_message_adapter.validate_json(raw)
        except SchemaValidationError as exc:
            logger.warning(
                "Dropping invalid realtime message (%d errors): %s",
                exc.error_count(),
                raw[:200],
            )
            return 0

        try:
            notifications = await run_in_threadpool(self._apply, message)
        except (NotFoundError, ValidationError) as exc:
            logger.warning("Dropping realtime %s message: %s", message.type, exc.message)
            return 0
        except StorageError:
            logger.exception("Storage failure while handling realtime %s message", message.type)
            return 0
        except Exception:
            # the connection outlives any single bad frame
            logger.exception("Unexpected error while handling realtime %s message", message.type)
            return 0

        for notification in notifications:
            await self.registry.broadcast(notification)
        return len(notifications)

    def _apply(self, message) -> List[schemas.NotificationMessage]:
        pending: List[schemas.NotificationMessage] = []
        db = self.session_factory()
        try:
            service = LifecycleService(db, notifier=pending.append)
            if isinstance(message, schemas.RequestAssistanceMessage):
                service.create(message.room_id, message.room_name, message.room_location)
            else:
                service.update_status(message.request_id, message.status, message.updated_by)
        finally:
            db.close()
        return pending

    async def serve(self, websocket: WebSocket) -> None:
        """
        Run one client connection until it closes.

        The connection is registered before the handshake completes so it
        never misses a broadcast that happens after the client sees the
        socket open, and it is always unregistered on the way out.
        """
        self.registry.add(websocket)
        try:
            await websocket.accept()
            logger.info("Realtime client connected (%d open)", len(self.registry))
            while True:
                event = await websocket.receive()
                if event["type"] == "websocket.disconnect":
                    break
                raw = event.get("text")
                if raw is None:
                    raw = (event.get("bytes") or b"").decode("utf-8", errors="replace")
                await self.handle_message(raw)
        finally:
            self.registry.remove(websocket)
            logger.info("Realtime client disconnected (%d open)", len(self.registry))
