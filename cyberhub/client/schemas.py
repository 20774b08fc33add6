"""
Pydantic request/response structs for the data-access client.

Every entity has an explicit ``<Entity>CreateInput``, ``<Entity>UpdateInput``
and ``<Entity>Record``.  Inputs forbid unknown fields and validate enum
members; records carry relation fields that stay ``None`` unless the
relation was included in the query.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, ClassVar, Dict, FrozenSet, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from cyberhub.db.models import ComputerStatus, EventType, SessionStatus, UserRole


# ── Shared pieces ──────────────────────────────────────


class NumberOperation(BaseModel):
    """Atomic numeric update applied in SQL, e.g. ``{"decrement": 30}``.

    Exactly one operation may be given.
    """

    model_config = ConfigDict(extra="forbid")

    set: Optional[int] = None
    increment: Optional[int] = None
    decrement: Optional[int] = None
    multiply: Optional[int] = None
    divide: Optional[int] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "NumberOperation":
        given = [name for name, value in self if value is not None]
        if len(given) != 1:
            raise ValueError("exactly one of set, increment, decrement, multiply, divide is required")
        if self.divide == 0:
            raise ValueError("divide by zero")
        return self


IntUpdate = Union[int, NumberOperation]


class _Input(BaseModel):
    model_config = ConfigDict(extra="forbid", use_enum_values=False)


class _UpdateInput(_Input):
    """Base for update inputs: explicit ``None`` is only allowed on nullable fields."""

    _non_nullable: ClassVar[FrozenSet[str]] = frozenset()

    @model_validator(mode="after")
    def _reject_null_on_required(self) -> "_UpdateInput":
        for name in self.model_fields_set & self._non_nullable:
            if getattr(self, name) is None:
                raise ValueError(f"{name} cannot be set to null")
        return self


class BatchPayload(BaseModel):
    """Result of ``create_many`` / ``update_many`` / ``delete_many``."""

    count: int


class AggregateResult(BaseModel):
    """Result of ``aggregate``; only requested sections are filled."""

    count: Optional[int] = None
    sum: Dict[str, Any] = Field(default_factory=dict)
    avg: Dict[str, Optional[float]] = Field(default_factory=dict)
    min: Dict[str, Any] = Field(default_factory=dict)
    max: Dict[str, Any] = Field(default_factory=dict)


# ── Organization ───────────────────────────────────────


class OrganizationCreateInput(_Input):
    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=255)
    created_at: Optional[datetime] = None


class OrganizationUpdateInput(_UpdateInput):
    _non_nullable: ClassVar[FrozenSet[str]] = frozenset({"name"})

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)


class OrganizationRecord(BaseModel):
    id: str
    name: str
    created_at: datetime
    cyber_centers: Optional[List["CyberCenterRecord"]] = None


# ── CyberCenter ────────────────────────────────────────


class CyberCenterCreateInput(_Input):
    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=255)
    location: Optional[str] = Field(default=None, max_length=255)
    organization_id: str
    created_at: Optional[datetime] = None


class CyberCenterUpdateInput(_UpdateInput):
    _non_nullable: ClassVar[FrozenSet[str]] = frozenset({"name", "organization_id"})

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    location: Optional[str] = Field(default=None, max_length=255)
    organization_id: Optional[str] = None


class CyberCenterRecord(BaseModel):
    id: str
    name: str
    location: Optional[str] = None
    organization_id: str
    created_at: datetime
    organization: Optional["OrganizationRecord"] = None
    computers: Optional[List["ComputerRecord"]] = None
    sessions: Optional[List["SessionRecord"]] = None
    users: Optional[List["UserRecord"]] = None


# ── Computer ───────────────────────────────────────────


class ComputerCreateInput(_Input):
    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=255)
    device_token: str = Field(..., min_length=1, max_length=255)
    status: ComputerStatus = ComputerStatus.AVAILABLE
    last_seen_at: Optional[datetime] = None
    cyber_center_id: Optional[str] = None
    created_at: Optional[datetime] = None


class ComputerUpdateInput(_UpdateInput):
    _non_nullable: ClassVar[FrozenSet[str]] = frozenset({"name", "device_token", "status"})

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    device_token: Optional[str] = Field(default=None, min_length=1, max_length=255)
    status: Optional[ComputerStatus] = None
    last_seen_at: Optional[datetime] = None
    cyber_center_id: Optional[str] = None


class ComputerRecord(BaseModel):
    id: str
    name: str
    device_token: str
    status: ComputerStatus
    last_seen_at: Optional[datetime] = None
    cyber_center_id: Optional[str] = None
    created_at: datetime
    cyber_center: Optional["CyberCenterRecord"] = None
    sessions: Optional[List["SessionRecord"]] = None
    events: Optional[List["EventRecord"]] = None
    commands: Optional[List["CommandRecord"]] = None


# ── Session ────────────────────────────────────────────


class SessionCreateInput(_Input):
    id: Optional[str] = None
    computer_id: str
    cyber_center_id: Optional[str] = None
    user_id: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    status: SessionStatus = SessionStatus.CREATED
    price_per_minute: int = Field(..., ge=0)
    total_cost: Optional[int] = Field(default=None, ge=0)
    created_at: Optional[datetime] = None


class SessionUpdateInput(_UpdateInput):
    _non_nullable: ClassVar[FrozenSet[str]] = frozenset({"computer_id", "status", "price_per_minute"})

    computer_id: Optional[str] = None
    cyber_center_id: Optional[str] = None
    user_id: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    status: Optional[SessionStatus] = None
    price_per_minute: Optional[IntUpdate] = None
    total_cost: Optional[IntUpdate] = None


class SessionRecord(BaseModel):
    id: str
    computer_id: str
    cyber_center_id: Optional[str] = None
    user_id: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    status: SessionStatus
    price_per_minute: int
    total_cost: Optional[int] = None
    created_at: datetime
    computer: Optional["ComputerRecord"] = None
    cyber_center: Optional["CyberCenterRecord"] = None
    user: Optional["UserRecord"] = None


# ── Pricing ────────────────────────────────────────────


class PricingCreateInput(_Input):
    id: Optional[str] = None
    price_per_minute: int = Field(..., ge=0)
    active: bool = False
    created_at: Optional[datetime] = None


class PricingUpdateInput(_UpdateInput):
    _non_nullable: ClassVar[FrozenSet[str]] = frozenset({"price_per_minute", "active"})

    price_per_minute: Optional[IntUpdate] = None
    active: Optional[bool] = None


class PricingRecord(BaseModel):
    id: str
    price_per_minute: int
    active: bool
    created_at: datetime


# ── User ───────────────────────────────────────────────


class UserCreateInput(_Input):
    id: Optional[str] = None
    email: str = Field(..., min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    password_hash: str = Field(..., min_length=1)
    role: UserRole = UserRole.USER
    balance: int = 0
    cyber_center_id: Optional[str] = None
    created_at: Optional[datetime] = None


class UserUpdateInput(_UpdateInput):
    _non_nullable: ClassVar[FrozenSet[str]] = frozenset({"email", "password_hash", "role", "balance"})

    email: Optional[str] = Field(default=None, min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    password_hash: Optional[str] = Field(default=None, min_length=1)
    role: Optional[UserRole] = None
    balance: Optional[IntUpdate] = None
    cyber_center_id: Optional[str] = None


class UserRecord(BaseModel):
    id: str
    email: str
    password_hash: Optional[str] = None
    role: UserRole
    balance: int
    cyber_center_id: Optional[str] = None
    created_at: datetime
    cyber_center: Optional["CyberCenterRecord"] = None
    events: Optional[List["EventRecord"]] = None
    sessions: Optional[List["SessionRecord"]] = None


# ── Event ──────────────────────────────────────────────


class EventCreateInput(_Input):
    id: Optional[str] = None
    type: EventType
    payload: Any = None
    created_at: Optional[datetime] = None
    user_id: Optional[str] = None
    computer_id: Optional[str] = None


class EventUpdateInput(_UpdateInput):
    """Events are append-only; no field can be updated."""


class EventRecord(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    type: EventType
    payload: Any = None
    created_at: datetime
    user_id: Optional[str] = None
    computer_id: Optional[str] = None
    user: Optional["UserRecord"] = None
    computer: Optional["ComputerRecord"] = None


# ── Command ────────────────────────────────────────────


class CommandCreateInput(_Input):
    id: Optional[str] = None
    computer_id: str
    type: str = Field(..., min_length=1, max_length=64)
    status: str = Field(default="PENDING", min_length=1, max_length=32)
    created_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    acked_at: Optional[datetime] = None


class CommandUpdateInput(_UpdateInput):
    """Only the dispatch fields of a command change after creation."""

    _non_nullable: ClassVar[FrozenSet[str]] = frozenset({"status"})

    status: Optional[str] = Field(default=None, min_length=1, max_length=32)
    sent_at: Optional[datetime] = None
    acked_at: Optional[datetime] = None


class CommandRecord(BaseModel):
    id: str
    computer_id: str
    type: str
    status: str
    created_at: datetime
    sent_at: Optional[datetime] = None
    acked_at: Optional[datetime] = None
    computer: Optional["ComputerRecord"] = None


for _record in (
    OrganizationRecord,
    CyberCenterRecord,
    ComputerRecord,
    SessionRecord,
    UserRecord,
    EventRecord,
    CommandRecord,
):
    _record.model_rebuild()
