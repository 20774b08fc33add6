"""Database layer for CyberHub.

Provides the declarative base, async engine factories, column types and
the ORM models for the eight cyber center entities.
"""

from cyberhub.db.engine import Base, drop_db, get_async_engine, get_session_factory, init_db
from cyberhub.db.models import (
    Command,
    Computer,
    ComputerStatus,
    CyberCenter,
    Event,
    EventType,
    Organization,
    Pricing,
    Session,
    SessionStatus,
    User,
    UserRole,
)
from cyberhub.db.types import ANY_NULL, DB_NULL, JSON_NULL

__all__ = [
    "Base",
    "drop_db",
    "get_async_engine",
    "get_session_factory",
    "init_db",
    "ANY_NULL",
    "DB_NULL",
    "JSON_NULL",
    "Command",
    "Computer",
    "ComputerStatus",
    "CyberCenter",
    "Event",
    "EventType",
    "Organization",
    "Pricing",
    "Session",
    "SessionStatus",
    "User",
    "UserRole",
]
