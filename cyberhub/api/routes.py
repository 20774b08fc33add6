"""
Resource routers: organizations, cyber centers, computers, sessions,
commands, pricing and events.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status

from cyberhub.api.deps import (
    get_centers,
    get_commands,
    get_computers,
    get_event_log,
    get_pricing,
    get_sessions,
    staff_claims,
)
from cyberhub.api.schemas import (
    CommandCreate,
    ComputerRegister,
    ComputerRename,
    ComputerStatusUpdate,
    CyberCenterCreate,
    CyberCenterUpdate,
    DeviceTokenRequest,
    OrganizationCreate,
    OrganizationUpdate,
    PricingCreate,
    PricingUpdate,
    ReconnectResponse,
    SessionCostResponse,
    SessionCreate,
    SessionEndResponse,
    TodayStatsResponse,
)
from cyberhub.client.schemas import (
    CommandRecord,
    ComputerRecord,
    CyberCenterRecord,
    EventRecord,
    OrganizationRecord,
    PricingRecord,
    SessionRecord,
)
from cyberhub.db.models import ComputerStatus, EventType, SessionStatus
from cyberhub.db.types import JSON_NULL
from cyberhub.exceptions import RecordNotFoundError
from cyberhub.services import (
    CenterService,
    CommandService,
    ComputerService,
    EventLog,
    PricingService,
    SessionService,
)

# Device agents authenticate with their device token; everything an operator
# does needs a staff or admin bearer token.
STAFF_ONLY = [Depends(staff_claims)]

# ── Organizations ──────────────────────────────────────

organizations_router = APIRouter(prefix="/organizations", tags=["Organizations"])


@organizations_router.post(
    "",
    response_model=OrganizationRecord,
    status_code=status.HTTP_201_CREATED,
    dependencies=STAFF_ONLY,
)
async def create_organization(body: OrganizationCreate, centers: CenterService = Depends(get_centers)):
    return await centers.create_organization(body.name)


@organizations_router.get("", response_model=List[OrganizationRecord])
async def list_organizations(centers: CenterService = Depends(get_centers)):
    return await centers.list_organizations()


@organizations_router.get("/{organization_id}", response_model=OrganizationRecord)
async def get_organization(organization_id: str, centers: CenterService = Depends(get_centers)):
    return await centers.get_organization(organization_id)


@organizations_router.patch("/{organization_id}", response_model=OrganizationRecord, dependencies=STAFF_ONLY)
async def rename_organization(
    organization_id: str, body: OrganizationUpdate, centers: CenterService = Depends(get_centers)
):
    return await centers.rename_organization(organization_id, body.name)


@organizations_router.delete(
    "/{organization_id}",
    response_model=OrganizationRecord,
    dependencies=STAFF_ONLY,
)
async def delete_organization(organization_id: str, centers: CenterService = Depends(get_centers)):
    return await centers.delete_organization(organization_id)


# ── Cyber centers ──────────────────────────────────────

cyber_centers_router = APIRouter(prefix="/cyber-centers", tags=["Cyber centers"])


@cyber_centers_router.post(
    "",
    response_model=CyberCenterRecord,
    status_code=status.HTTP_201_CREATED,
    dependencies=STAFF_ONLY,
)
async def create_cyber_center(body: CyberCenterCreate, centers: CenterService = Depends(get_centers)):
    return await centers.create_cyber_center(body.name, body.organization_id, location=body.location)


@cyber_centers_router.get("", response_model=List[CyberCenterRecord])
async def list_cyber_centers(
    organization_id: Optional[str] = None, centers: CenterService = Depends(get_centers)
):
    return await centers.list_cyber_centers(organization_id)


@cyber_centers_router.get("/{cyber_center_id}", response_model=CyberCenterRecord)
async def get_cyber_center(cyber_center_id: str, centers: CenterService = Depends(get_centers)):
    return await centers.get_cyber_center(cyber_center_id)


@cyber_centers_router.patch("/{cyber_center_id}", response_model=CyberCenterRecord, dependencies=STAFF_ONLY)
async def update_cyber_center(
    cyber_center_id: str, body: CyberCenterUpdate, centers: CenterService = Depends(get_centers)
):
    return await centers.update_cyber_center(cyber_center_id, name=body.name, location=body.location)


@cyber_centers_router.delete("/{cyber_center_id}", response_model=CyberCenterRecord, dependencies=STAFF_ONLY)
async def delete_cyber_center(cyber_center_id: str, centers: CenterService = Depends(get_centers)):
    return await centers.delete_cyber_center(cyber_center_id)


@cyber_centers_router.put(
    "/{cyber_center_id}/computers/{computer_id}",
    response_model=ComputerRecord,
    dependencies=STAFF_ONLY,
)
async def assign_computer(
    cyber_center_id: str, computer_id: str, centers: CenterService = Depends(get_centers)
):
    return await centers.assign_computer(computer_id, cyber_center_id)


# ── Computers ──────────────────────────────────────────

computers_router = APIRouter(prefix="/computers", tags=["Computers"])


@computers_router.get("", response_model=List[ComputerRecord])
async def list_computers(
    cyber_center_id: Optional[str] = None,
    status: Optional[ComputerStatus] = None,
    computers: ComputerService = Depends(get_computers),
):
    return await computers.list_computers(cyber_center_id=cyber_center_id, status=status)


@computers_router.post("/register", response_model=ComputerRecord)
async def register_computer(body: ComputerRegister, computers: ComputerService = Depends(get_computers)):
    return await computers.register_computer(
        body.device_token, name=body.name, cyber_center_id=body.cyber_center_id
    )


@computers_router.post("/heartbeat", response_model=ComputerRecord)
async def heartbeat(body: DeviceTokenRequest, computers: ComputerService = Depends(get_computers)):
    return await computers.heartbeat(body.device_token)


@computers_router.post("/reconnect", response_model=ReconnectResponse)
async def reconnect(body: DeviceTokenRequest, computers: ComputerService = Depends(get_computers)):
    result = await computers.resolve_state_on_reconnect(body.device_token)
    return ReconnectResponse(
        computer=result.computer,
        command=result.command,
        active_session_id=result.active_session_id,
    )


@computers_router.get("/{computer_id}", response_model=ComputerRecord)
async def get_computer(computer_id: str, computers: ComputerService = Depends(get_computers)):
    return await computers.get(computer_id)


@computers_router.patch("/{computer_id}/status", response_model=ComputerRecord, dependencies=STAFF_ONLY)
async def update_computer_status(
    computer_id: str, body: ComputerStatusUpdate, computers: ComputerService = Depends(get_computers)
):
    return await computers.update_status(computer_id, body.status)


@computers_router.patch("/{computer_id}/name", response_model=ComputerRecord, dependencies=STAFF_ONLY)
async def rename_computer(
    computer_id: str, body: ComputerRename, computers: ComputerService = Depends(get_computers)
):
    return await computers.rename(computer_id, body.name)


# ── Sessions ───────────────────────────────────────────

sessions_router = APIRouter(prefix="/sessions", tags=["Sessions"], dependencies=STAFF_ONLY)


@sessions_router.post("", response_model=SessionRecord, status_code=status.HTTP_201_CREATED)
async def create_session(body: SessionCreate, sessions: SessionService = Depends(get_sessions)):
    return await sessions.create_session(body.computer_id, user_id=body.user_id)


@sessions_router.get("", response_model=List[SessionRecord])
async def list_sessions(
    status: Optional[SessionStatus] = None,
    computer_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    sessions: SessionService = Depends(get_sessions),
):
    return await sessions.list_sessions(status=status, computer_id=computer_id, limit=limit)


@sessions_router.get("/active", response_model=List[SessionRecord])
async def list_active_sessions(sessions: SessionService = Depends(get_sessions)):
    return await sessions.list_active_sessions()


@sessions_router.get("/stats/today", response_model=TodayStatsResponse)
async def today_stats(sessions: SessionService = Depends(get_sessions)):
    return await sessions.today_stats()


@sessions_router.get("/{session_id}", response_model=SessionRecord)
async def get_session(session_id: str, sessions: SessionService = Depends(get_sessions)):
    return await sessions.get_session(session_id)


@sessions_router.get("/{session_id}/cost", response_model=SessionCostResponse)
async def session_cost(session_id: str, sessions: SessionService = Depends(get_sessions)):
    return SessionCostResponse(session_id=session_id, cost=await sessions.calculate_cost(session_id))


@sessions_router.post("/{session_id}/start", response_model=SessionRecord)
async def start_session(
    session_id: str,
    claims: Dict[str, Any] = Depends(staff_claims),
    sessions: SessionService = Depends(get_sessions),
):
    return await sessions.start_session(session_id, user_id=claims["sub"])


@sessions_router.post("/{session_id}/end", response_model=SessionEndResponse)
async def end_session(
    session_id: str,
    claims: Dict[str, Any] = Depends(staff_claims),
    sessions: SessionService = Depends(get_sessions),
):
    # the caller is recorded on the event; the session owner pays
    session, total_cost = await sessions.end_session(session_id, user_id=claims["sub"])
    return SessionEndResponse(session=session, total_cost=total_cost)


# ── Commands ───────────────────────────────────────────

commands_router = APIRouter(prefix="/commands", tags=["Commands"])


@commands_router.post(
    "",
    response_model=CommandRecord,
    status_code=status.HTTP_201_CREATED,
    dependencies=STAFF_ONLY,
)
async def create_command(body: CommandCreate, commands: CommandService = Depends(get_commands)):
    return await commands.create_command(body.computer_id, body.type)


@commands_router.get("/pending/{computer_id}", response_model=List[CommandRecord])
async def pending_commands(computer_id: str, commands: CommandService = Depends(get_commands)):
    return await commands.pending_commands(computer_id)


@commands_router.post("/{command_id}/sent", response_model=CommandRecord)
async def mark_sent(command_id: str, commands: CommandService = Depends(get_commands)):
    return await commands.mark_sent(command_id)


@commands_router.post("/{command_id}/ack", response_model=CommandRecord)
async def mark_acked(command_id: str, commands: CommandService = Depends(get_commands)):
    return await commands.mark_acked(command_id)


@commands_router.post(
    "/{command_id}/retry",
    response_model=CommandRecord,
    status_code=status.HTTP_201_CREATED,
    dependencies=STAFF_ONLY,
)
async def retry_command(command_id: str, commands: CommandService = Depends(get_commands)):
    return await commands.retry_command(command_id)


# ── Pricing ────────────────────────────────────────────

pricing_router = APIRouter(prefix="/pricing", tags=["Pricing"])


@pricing_router.post(
    "",
    response_model=PricingRecord,
    status_code=status.HTTP_201_CREATED,
    dependencies=STAFF_ONLY,
)
async def create_pricing(body: PricingCreate, pricing: PricingService = Depends(get_pricing)):
    return await pricing.create_pricing(body.price_per_minute, active=body.active)


@pricing_router.get("", response_model=List[PricingRecord])
async def list_pricing(pricing: PricingService = Depends(get_pricing)):
    return await pricing.list_pricing()


@pricing_router.get("/active", response_model=PricingRecord)
async def active_pricing(pricing: PricingService = Depends(get_pricing)):
    active = await pricing.get_active()
    if active is None:
        raise RecordNotFoundError("No active pricing configured", meta={"model": "pricing"})
    return active


@pricing_router.patch("/{pricing_id}", response_model=PricingRecord, dependencies=STAFF_ONLY)
async def update_pricing(pricing_id: str, body: PricingUpdate, pricing: PricingService = Depends(get_pricing)):
    return await pricing.update_pricing(
        pricing_id, price_per_minute=body.price_per_minute, active=body.active
    )


@pricing_router.delete("/{pricing_id}", response_model=PricingRecord, dependencies=STAFF_ONLY)
async def delete_pricing(pricing_id: str, pricing: PricingService = Depends(get_pricing)):
    return await pricing.delete_pricing(pricing_id)


# ── Events ─────────────────────────────────────────────

events_router = APIRouter(prefix="/events", tags=["Events"], dependencies=STAFF_ONLY)


@events_router.get("", response_model=List[EventRecord])
async def list_events(
    type: Optional[EventType] = None,
    computer_id: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    event_log: EventLog = Depends(get_event_log),
):
    events = await event_log.list_events(type=type, computer_id=computer_id, user_id=user_id, limit=limit)
    # JSON null and database NULL both render as null over HTTP
    return [e.model_copy(update={"payload": None}) if e.payload is JSON_NULL else e for e in events]


ROUTERS = (
    organizations_router,
    cyber_centers_router,
    computers_router,
    sessions_router,
    commands_router,
    pricing_router,
    events_router,
)
