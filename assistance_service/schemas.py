from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from .models import RequestStatus


class CamelModel(BaseModel):
    """
    Base schema for everything that goes over the wire.

    Clients speak camelCase JSON (``roomId``, ``requestedAt``); Python code
    uses snake_case attribute names. Both spellings are accepted on input.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------- Rooms ----------

class RoomCreate(CamelModel):
    """
    Schema for creating a new room from the room admin view.

    ``status`` is free text and defaults to 'available'.
    """
    name: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    status: Optional[str] = None


class RoomRead(CamelModel):
    """
    Schema returned when reading room data.
    """
    id: int
    name: str
    location: str
    status: str

    model_config = ConfigDict(from_attributes=True)


# ---------- Assistance requests ----------

class AssistanceRequestCreate(CamelModel):
    """
    Schema for raising a new assistance request over REST.

    The room name and location are stored verbatim as a snapshot; they are
    not checked against the room record. ``status`` is accepted for client
    compatibility but new requests always start as 'waiting'.
    """
    room_id: int
    room_name: str
    room_location: str
    status: Optional[RequestStatus] = None


class AssistanceRequestStatusUpdate(CamelModel):
    """
    Schema for moving a request to another status.
    """
    status: RequestStatus
    resolved_by: Optional[str] = None


class AssistanceRequestRead(CamelModel):
    """
    Schema returned when reading assistance requests.
    """
    id: int
    room_id: int
    room_name: str
    room_location: str
    status: str
    requested_at: datetime
    responded_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class RequestStats(CamelModel):
    """
    Summary figures for the technician dashboard.

    Attributes
    ----------
    active_count : int
        Requests that are waiting or in progress.
    resolved_today : int
        Requests resolved since midnight UTC.
    average_response_minutes : Optional[float]
        Mean time from request to first response over resolved requests,
        or None when no resolved request was ever responded to.
    """
    active_count: int
    resolved_today: int
    average_response_minutes: Optional[float] = None


# ---------- Activity feed ----------

class ActivityRead(CamelModel):
    """
    Schema returned for activity feed entries.
    """
    id: int
    type: str
    room_name: str
    message: str
    timestamp: datetime
    technician: Optional[str] = None
    room_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


# ---------- Realtime messages ----------

class RequestAssistanceMessage(CamelModel):
    """Sent by a touch-screen client to raise a request."""
    type: Literal["requestAssistance"]
    room_id: int
    room_name: str
    room_location: str


class UpdateRequestStatusMessage(CamelModel):
    """Sent by a technician client to move a request along."""
    type: Literal["updateRequestStatus"]
    request_id: int
    status: RequestStatus
    updated_by: Optional[str] = None


class NotificationMessage(CamelModel):
    """
    Pushed to every connected client after a request is created or changed.

    ``timestamp`` is the send time in epoch milliseconds.
    """
    type: Literal["notification"] = "notification"
    request_id: int
    room_name: str
    room_location: str
    status: RequestStatus
    timestamp: int


InboundMessage = Annotated[
    Union[RequestAssistanceMessage, UpdateRequestStatusMessage],
    Field(discriminator="type"),
]

inbound_message_adapter = TypeAdapter(InboundMessage)
