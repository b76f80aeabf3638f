from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RequestStatus(str, PyEnum):
    """
    Enumeration of assistance request states.

    Values
    ------
    waiting
        Request has been raised from a room and nobody has answered yet.
    in-progress
        A technician has responded and is on the way or working on it.
    resolved
        The request is closed.
    """
    WAITING = "waiting"
    IN_PROGRESS = "in-progress"
    RESOLVED = "resolved"


ACTIVE_STATUSES = (RequestStatus.WAITING.value, RequestStatus.IN_PROGRESS.value)

# largest primary key the database can hold (signed 64-bit)
MAX_ROW_ID = 2**63 - 1


class ActivityType(str, PyEnum):
    """
    Kind of entry written to the activity feed.
    """
    REQUESTED = "requested"
    RESPONDED = "responded"
    RESOLVED = "resolved"


class Room(Base):
    """
    SQLAlchemy model representing an event room with a touch-screen client.

    Attributes
    ----------
    id : int
        Primary key.
    name : str
        Human-readable room name (e.g. 'Room A'). Not unique.
    location : str
        Physical location description (floor, wing, etc.).
    status : str
        Free-text room status, 'available' unless set otherwise.
    """
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(Text, nullable=False, index=True)
    location = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="available")


class AssistanceRequest(Base):
    """
    SQLAlchemy model representing a help request raised from a room.

    ``room_name`` and ``room_location`` are copied from the room when the
    request is created and are not kept in sync with later room edits.

    Attributes
    ----------
    id : int
        Primary key.
    room_id : int
        Room the request was raised from.
    room_name : str
        Room name at request time.
    room_location : str
        Room location at request time.
    status : str
        One of the RequestStatus values.
    requested_at : datetime
        When the request was created. Never changes.
    responded_at : datetime
        When the request last moved to in-progress.
    resolved_at : datetime
        When the request last moved to resolved.
    resolved_by : str
        Name of the technician that resolved the request, if given.
    """
    __tablename__ = "assistance_requests"

    id = Column(Integer, primary_key=True, index=True)
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=False, index=True)
    room_name = Column(Text, nullable=False)
    room_location = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=RequestStatus.WAITING.value, index=True)
    requested_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(Text, nullable=True)


class Activity(Base):
    """
    SQLAlchemy model for the append-only activity feed shown to technicians.

    Attributes
    ----------
    id : int
        Primary key.
    type : str
        One of the ActivityType values.
    room_name : str
        Room the activity refers to.
    message : str
        Display text.
    timestamp : datetime
        When the entry was written.
    technician : str
        Technician involved, if any.
    room_id : int
        Room reference, looked up by name when not supplied.
    """
    __tablename__ = "activities"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(String(20), nullable=False)
    room_name = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    technician = Column(Text, nullable=True)
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=True)


class User(Base):
    """
    SQLAlchemy model for staff accounts.

    Attributes
    ----------
    id : int
        Primary key.
    username : str
        Unique login name.
    password : str
        Bcrypt hash of the user's password.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(Text, unique=True, nullable=False, index=True)
    password = Column(Text, nullable=False)
