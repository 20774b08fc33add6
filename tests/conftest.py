"""Test fixtures for CyberHub.

Every test gets its own in-memory SQLite database behind a connected
:class:`CyberHubClient`, services wired to fast test settings, and an
httpx ``AsyncClient`` bound to the FastAPI app.
"""

from typing import Any, AsyncIterator

import pytest
from httpx import ASGITransport, AsyncClient

from cyberhub.api import create_app
from cyberhub.client import CyberHubClient
from cyberhub.client.schemas import ComputerRecord, CyberCenterRecord, PricingRecord
from cyberhub.config import Settings, reset_settings
from cyberhub.db.engine import init_db
from cyberhub.services import (
    CenterService,
    CommandService,
    ComputerService,
    EventLog,
    PricingService,
    SessionService,
    UserService,
)

MEMORY_URL = "sqlite+aiosqlite://"


@pytest.fixture(autouse=True)
def _clean_settings():
    """Reset the settings singleton before and after each test."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings() -> Settings:
    s = Settings()
    s.auth.bcrypt_rounds = 4
    s.auth.secret_key = "test-secret-key-that-is-long-enough-for-hs256"
    return s


async def _connected(**options: Any) -> CyberHubClient:
    client = CyberHubClient(datasource_url=MEMORY_URL, **options)
    await client.connect()
    await init_db(client.engine)
    return client


@pytest.fixture
async def db() -> AsyncIterator[CyberHubClient]:
    """Connected client on a fresh in-memory database."""
    client = await _connected()
    try:
        yield client
    finally:
        await client.disconnect()


@pytest.fixture
async def api_db() -> AsyncIterator[CyberHubClient]:
    """Client configured the way the API builds it: password hashes omitted."""
    client = await _connected(omit={"user": {"password_hash": True}})
    try:
        yield client
    finally:
        await client.disconnect()


@pytest.fixture
async def http(api_db: CyberHubClient, settings: Settings) -> AsyncIterator[AsyncClient]:
    app = create_app(client=api_db, settings=settings, run_presence_monitor=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac


# ── Services ────────────────────────────────────────────


@pytest.fixture
def centers(db: CyberHubClient) -> CenterService:
    return CenterService(db)


@pytest.fixture
def computers(db: CyberHubClient, settings: Settings) -> ComputerService:
    return ComputerService(db, settings)


@pytest.fixture
def sessions(db: CyberHubClient, settings: Settings) -> SessionService:
    return SessionService(db, settings)


@pytest.fixture
def commands(db: CyberHubClient, settings: Settings) -> CommandService:
    return CommandService(db, settings)


@pytest.fixture
def pricing(db: CyberHubClient) -> PricingService:
    return PricingService(db)


@pytest.fixture
def users(db: CyberHubClient, settings: Settings) -> UserService:
    return UserService(db, settings)


@pytest.fixture
def event_log(db: CyberHubClient) -> EventLog:
    return EventLog(db)


# ── Seed data ───────────────────────────────────────────


@pytest.fixture
async def center(db: CyberHubClient) -> CyberCenterRecord:
    org = await db.organization.create({"name": "Acme Gaming"})
    return await db.cyber_center.create(
        {"name": "Downtown", "organization_id": org.id, "location": "12 Main St"}
    )


@pytest.fixture
async def computer(computers: ComputerService, center: CyberCenterRecord) -> ComputerRecord:
    return await computers.register_computer("token-pc-0001", name="PC-01", cyber_center_id=center.id)


@pytest.fixture
async def active_price(pricing: PricingService) -> PricingRecord:
    return await pricing.create_pricing(100, active=True)
