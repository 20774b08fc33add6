"""
SQLAlchemy 2.0 ORM models for the cyber center schema.

Defines the eight persisted entities: organisations, cyber centers,
computers, sessions, pricing, users, events, and commands.

Referential policy: required foreign keys restrict deletion of the parent,
optional foreign keys are set to NULL when the parent goes away.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import Boolean, ForeignKey, Integer, String
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cyberhub.db.engine import Base
from cyberhub.db.types import JsonPayload, UTCDateTime


def utcnow() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Return a fresh UUID4 primary key."""
    return str(uuid.uuid4())


# ──────────────────────────────────────────
# ENUMS
# ──────────────────────────────────────────


class ComputerStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    IN_USE = "IN_USE"
    LOCKED = "LOCKED"
    OFFLINE = "OFFLINE"
    ERROR = "ERROR"


class SessionStatus(str, enum.Enum):
    CREATED = "CREATED"
    ACTIVE = "ACTIVE"
    ENDED = "ENDED"


class UserRole(str, enum.Enum):
    ADMIN = "ADMIN"
    STAFF = "STAFF"
    USER = "USER"


class EventType(str, enum.Enum):
    COMPUTER_CONNECTED = "COMPUTER_CONNECTED"
    COMPUTER_DISCONNECTED = "COMPUTER_DISCONNECTED"
    COMPUTER_STATUS_CHANGED = "COMPUTER_STATUS_CHANGED"
    SESSION_STARTED = "SESSION_STARTED"
    SESSION_ACTIVATED = "SESSION_ACTIVATED"
    SESSION_ENDED = "SESSION_ENDED"
    USER_LOGIN = "USER_LOGIN"
    USER_LOGOUT = "USER_LOGOUT"
    COMMAND_CREATED = "COMMAND_CREATED"
    COMMAND_SENT = "COMMAND_SENT"
    COMMAND_ACKED = "COMMAND_ACKED"


def _enum_column(enum_cls: type) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=enum_cls.__name__.lower(),
        native_enum=False,
        validate_strings=True,
        length=32,
    )


# ──────────────────────────────────────────
# TENANTS
# ──────────────────────────────────────────


class Organization(Base):
    """Top-level tenant. Owns one or more cyber centers."""

    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )

    cyber_centers: Mapped[List["CyberCenter"]] = relationship(back_populates="organization")


class CyberCenter(Base):
    """A physical venue containing computers, staffed by users, hosting sessions."""

    __tablename__ = "cyber_centers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    organization_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("organizations.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )

    organization: Mapped["Organization"] = relationship(back_populates="cyber_centers")
    computers: Mapped[List["Computer"]] = relationship(
        back_populates="cyber_center", passive_deletes=True
    )
    sessions: Mapped[List["Session"]] = relationship(
        back_populates="cyber_center", passive_deletes=True
    )
    users: Mapped[List["User"]] = relationship(
        back_populates="cyber_center", passive_deletes=True
    )


# ──────────────────────────────────────────
# DEVICES
# ──────────────────────────────────────────


class Computer(Base):
    """A managed device identified by a unique device token."""

    __tablename__ = "computers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    device_token: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    status: Mapped[ComputerStatus] = mapped_column(
        _enum_column(ComputerStatus), nullable=False, default=ComputerStatus.AVAILABLE
    )
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    cyber_center_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("cyber_centers.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )

    cyber_center: Mapped[Optional["CyberCenter"]] = relationship(back_populates="computers")
    sessions: Mapped[List["Session"]] = relationship(back_populates="computer")
    events: Mapped[List["Event"]] = relationship(back_populates="computer", passive_deletes=True)
    commands: Mapped[List["Command"]] = relationship(back_populates="computer")


class Session(Base):
    """A billed usage period of a computer, priced per minute."""

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    computer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("computers.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    cyber_center_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("cyber_centers.id", ondelete="SET NULL"), nullable=True, index=True
    )
    user_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    status: Mapped[SessionStatus] = mapped_column(
        _enum_column(SessionStatus), nullable=False, default=SessionStatus.CREATED, index=True
    )
    price_per_minute: Mapped[int] = mapped_column(Integer, nullable=False)
    total_cost: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )

    computer: Mapped["Computer"] = relationship(back_populates="sessions")
    cyber_center: Mapped[Optional["CyberCenter"]] = relationship(back_populates="sessions")
    user: Mapped[Optional["User"]] = relationship(back_populates="sessions")


class Pricing(Base):
    """Rate-table entry; the active one prices new sessions."""

    __tablename__ = "pricing"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    price_per_minute: Mapped[int] = mapped_column(Integer, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )


# ──────────────────────────────────────────
# USERS
# ──────────────────────────────────────────


class User(Base):
    """Account holder: admin, staff, or a customer with a prepaid balance."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        _enum_column(UserRole), nullable=False, default=UserRole.USER
    )
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cyber_center_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("cyber_centers.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )

    cyber_center: Mapped[Optional["CyberCenter"]] = relationship(back_populates="users")
    events: Mapped[List["Event"]] = relationship(back_populates="user", passive_deletes=True)
    sessions: Mapped[List["Session"]] = relationship(back_populates="user", passive_deletes=True)


# ──────────────────────────────────────────
# AUDIT / DISPATCH
# ──────────────────────────────────────────


class Event(Base):
    """Append-only audit record of a state change or action."""

    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    type: Mapped[EventType] = mapped_column(_enum_column(EventType), nullable=False, index=True)
    payload: Mapped[Optional[Any]] = mapped_column(JsonPayload, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, index=True
    )
    user_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    computer_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("computers.id", ondelete="SET NULL"), nullable=True, index=True
    )

    user: Mapped[Optional["User"]] = relationship(back_populates="events")
    computer: Mapped[Optional["Computer"]] = relationship(back_populates="events")


class Command(Base):
    """Instruction for a computer with a PENDING → SENT → ACKED lifecycle."""

    __tablename__ = "commands"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    computer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("computers.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    acked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    computer: Mapped["Computer"] = relationship(back_populates="commands")
