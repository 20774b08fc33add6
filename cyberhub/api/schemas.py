"""
Pydantic request/response models for the CyberHub REST API.

Entity responses reuse the client's ``<Entity>Record`` models.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field

from cyberhub.client.schemas import CommandRecord, ComputerRecord, SessionRecord
from cyberhub.db.models import ComputerStatus, UserRole

# ── Auth ───────────────────────────────────────────────


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)
    role: UserRole = UserRole.USER
    cyber_center_id: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TopUpRequest(BaseModel):
    user_id: str
    amount: int = Field(..., gt=0, description="Amount added to the balance")


# ── Tenants ────────────────────────────────────────────


class OrganizationCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class OrganizationUpdate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class CyberCenterCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    organization_id: str
    location: Optional[str] = Field(default=None, max_length=255)


class CyberCenterUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    location: Optional[str] = Field(default=None, max_length=255)


# ── Computers ──────────────────────────────────────────


class ComputerRegister(BaseModel):
    device_token: str = Field(..., min_length=1, max_length=255)
    name: Optional[str] = Field(default=None, max_length=255)
    cyber_center_id: Optional[str] = None


class DeviceTokenRequest(BaseModel):
    device_token: str = Field(..., min_length=1, max_length=255)


class ComputerStatusUpdate(BaseModel):
    status: ComputerStatus


class ComputerRename(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class ReconnectResponse(BaseModel):
    computer: ComputerRecord
    command: CommandRecord
    active_session_id: Optional[str] = None


# ── Sessions ───────────────────────────────────────────


class SessionCreate(BaseModel):
    computer_id: str
    user_id: Optional[str] = None


class SessionEndResponse(BaseModel):
    session: SessionRecord
    total_cost: int


class SessionCostResponse(BaseModel):
    session_id: str
    cost: int


class TopComputer(BaseModel):
    computer_id: str
    sessions: int
    revenue: int


class TodayStatsResponse(BaseModel):
    total_sessions: int
    total_revenue: int
    average_minutes: float
    top_computers: List[TopComputer] = Field(default_factory=list)


# ── Commands / pricing ─────────────────────────────────


class CommandCreate(BaseModel):
    computer_id: str
    type: str = Field(..., min_length=1, max_length=64)


class PricingCreate(BaseModel):
    price_per_minute: int = Field(..., ge=0)
    active: bool = False


class PricingUpdate(BaseModel):
    price_per_minute: Optional[int] = Field(default=None, ge=0)
    active: Optional[bool] = None


# ── Misc ───────────────────────────────────────────────


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str


class ErrorResponse(BaseModel):
    error: str
    message: str
    code: Optional[str] = None
    request_id: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
