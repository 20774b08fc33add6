"""
Tests for the FastAPI REST API layer.

Requests go through httpx's ``ASGITransport`` against an app bound to the
per-test in-memory client.  Operator routes need a staff bearer token; the
first admin is created directly through :class:`UserService`, the way the
``cyberhub seed`` command bootstraps one.
"""

import pytest
from httpx import AsyncClient

from cyberhub.api.app import _error_type, status_for
from cyberhub.db.models import UserRole
from cyberhub.db.types import JSON_NULL
from cyberhub.exceptions import (
    AuthenticationError,
    ConflictError,
    CyberHubException,
    ForbiddenError,
    InsufficientBalanceError,
    RecordNotFoundError,
    TransactionError,
    UniqueConstraintError,
)
from cyberhub.services import UserService


async def _register(
    http: AsyncClient, email: str, role: str = "USER", password: str = "s3cret-pw", headers=None
) -> dict:
    resp = await http.post(
        "/auth/register", json={"email": email, "password": password, "role": role}, headers=headers
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _token(http: AsyncClient, email: str, password: str = "s3cret-pw") -> str:
    resp = await http.post("/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["access_token"]


async def _bearer(http: AsyncClient, email: str) -> dict:
    return {"Authorization": f"Bearer {await _token(http, email)}"}


async def _computer(http: AsyncClient, token: str = "token-api-1", **extra) -> dict:
    resp = await http.post("/computers/register", json={"device_token": token, **extra})
    assert resp.status_code == 200, resp.text
    return resp.json()


@pytest.fixture
async def admin(http, api_db, settings) -> dict:
    await UserService(api_db, settings).register("admin@example.com", "s3cret-pw", role=UserRole.ADMIN)
    return await _bearer(http, "admin@example.com")


@pytest.fixture
async def staff(http, admin) -> dict:
    await _register(http, "staff@example.com", role="STAFF", headers=admin)
    return await _bearer(http, "staff@example.com")


# ── Health ──────────────────────────────────────────────


class TestHealth:
    async def test_health(self, http):
        resp = await http.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["database"] == "ok"
        assert data["version"]

    async def test_request_id_echoed(self, http):
        resp = await http.get("/health", headers={"X-Request-Id": "abc123"})
        assert resp.headers["X-Request-Id"] == "abc123"

    async def test_request_id_generated(self, http):
        assert len((await http.get("/health")).headers["X-Request-Id"]) == 12


# ── Error mapping ───────────────────────────────────────


class TestErrorMapping:
    @pytest.mark.parametrize(
        "exc, code",
        [
            (RecordNotFoundError("x"), 404),
            (InsufficientBalanceError("x"), 402),
            (UniqueConstraintError("x"), 409),
            (ConflictError("x"), 409),
            (AuthenticationError("x"), 401),
            (ForbiddenError("x"), 403),
            (TransactionError("x"), 504),
            (CyberHubException("x"), 500),
        ],
    )
    def test_status_for(self, exc, code):
        assert status_for(exc) == code

    def test_error_type_is_snake_case(self):
        assert _error_type(InsufficientBalanceError("x")) == "insufficient_balance"
        assert _error_type(RecordNotFoundError("x")) == "record_not_found"

    async def test_not_found_body(self, http):
        resp = await http.get("/computers/missing", headers={"X-Request-Id": "req-1"})
        assert resp.status_code == 404
        body = resp.json()
        assert body["error"] == "record_not_found"
        assert body["code"] == "P2025"
        assert body["request_id"] == "req-1"
        assert "message" in body
        assert "meta" in body

    async def test_unique_violation_is_conflict(self, http):
        await _register(http, "ada@example.com")
        resp = await http.post("/auth/register", json={"email": "ada@example.com", "password": "s3cret-pw"})
        assert resp.status_code == 409
        assert resp.json()["code"] == "P2002"
        assert resp.json()["meta"]["target"] == ["email"]

    async def test_request_body_validation(self, http, staff):
        resp = await http.post("/pricing", json={"price_per_minute": -1}, headers=staff)
        assert resp.status_code == 422


# ── Auth ────────────────────────────────────────────────


class TestAuth:
    async def test_register_never_returns_hash(self, http):
        user = await _register(http, "ada@example.com")
        assert user["email"] == "ada@example.com"
        assert user["role"] == "USER"
        assert user["password_hash"] is None
        assert user["balance"] == 0

    async def test_login_and_logout(self, http):
        await _register(http, "ada@example.com")
        resp = await http.post("/auth/login", json={"email": "ada@example.com", "password": "s3cret-pw"})
        body = resp.json()
        assert body["token_type"] == "bearer"
        assert body["user"]["password_hash"] is None

        headers = {"Authorization": f"Bearer {body['access_token']}"}
        assert (await http.post("/auth/logout", headers=headers)).json() == {"ok": True}

    async def test_bad_password(self, http):
        await _register(http, "ada@example.com")
        resp = await http.post("/auth/login", json={"email": "ada@example.com", "password": "nope"})
        assert resp.status_code == 401
        assert resp.json()["error"] == "authentication"

    async def test_top_up_requires_token(self, http):
        user = await _register(http, "ada@example.com")
        resp = await http.post("/auth/top-up", json={"user_id": user["id"], "amount": 100})
        assert resp.status_code == 401

    async def test_top_up_requires_staff(self, http):
        user = await _register(http, "ada@example.com")
        headers = await _bearer(http, "ada@example.com")
        resp = await http.post("/auth/top-up", json={"user_id": user["id"], "amount": 100}, headers=headers)
        assert resp.status_code == 403
        assert resp.json()["error"] == "forbidden"
        assert "Staff" in resp.json()["message"]

    async def test_staff_top_up(self, http, staff):
        user = await _register(http, "ada@example.com")
        resp = await http.post("/auth/top-up", json={"user_id": user["id"], "amount": 250}, headers=staff)
        assert resp.status_code == 200
        assert resp.json()["balance"] == 250
        assert resp.json()["password_hash"] is None

    async def test_garbage_token(self, http):
        resp = await http.post("/auth/logout", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401


# ── Access control ──────────────────────────────────────

OPERATOR_ROUTES = [
    ("POST", "/organizations", {"name": "Acme"}),
    ("PATCH", "/organizations/org-1", {"name": "Renamed"}),
    ("DELETE", "/organizations/org-1", None),
    ("POST", "/cyber-centers", {"name": "D", "organization_id": "org-1"}),
    ("DELETE", "/cyber-centers/center-1", None),
    ("PUT", "/cyber-centers/center-1/computers/pc-1", None),
    ("PATCH", "/computers/pc-1/status", {"status": "LOCKED"}),
    ("POST", "/sessions", {"computer_id": "pc-1"}),
    ("GET", "/sessions", None),
    ("POST", "/sessions/s-1/start", None),
    ("POST", "/sessions/s-1/end", None),
    ("POST", "/commands", {"computer_id": "pc-1", "type": "LOCK"}),
    ("POST", "/pricing", {"price_per_minute": 10}),
    ("PATCH", "/pricing/p-1", {"active": True}),
    ("DELETE", "/pricing/p-1", None),
    ("GET", "/events", None),
]


class TestAccessControl:
    async def test_anonymous_cannot_register_privileged_roles(self, http):
        for role in ("STAFF", "ADMIN"):
            resp = await http.post(
                "/auth/register", json={"email": f"{role.lower()}@example.com", "password": "s3cret-pw", "role": role}
            )
            assert resp.status_code == 403
            assert resp.json()["error"] == "forbidden"

    async def test_users_and_staff_cannot_register_privileged_roles(self, http, staff):
        await _register(http, "ada@example.com")
        for headers in (await _bearer(http, "ada@example.com"), staff):
            resp = await http.post(
                "/auth/register",
                json={"email": "boss@example.com", "password": "s3cret-pw", "role": "ADMIN"},
                headers=headers,
            )
            assert resp.status_code == 403

    async def test_admin_can_create_staff(self, http, admin):
        created = await _register(http, "staff@example.com", role="STAFF", headers=admin)
        assert created["role"] == "STAFF"

    @pytest.mark.parametrize("method, url, body", OPERATOR_ROUTES)
    async def test_anonymous_callers_are_rejected(self, http, method, url, body):
        resp = await http.request(method, url, json=body)
        assert resp.status_code == 401

    @pytest.mark.parametrize("method, url, body", OPERATOR_ROUTES)
    async def test_customers_are_forbidden(self, http, method, url, body):
        await _register(http, "ada@example.com")
        resp = await http.request(method, url, json=body, headers=await _bearer(http, "ada@example.com"))
        assert resp.status_code == 403

    async def test_device_agent_routes_stay_open(self, http):
        computer = await _computer(http, token="token-agent")
        assert (await http.post("/computers/heartbeat", json={"device_token": "token-agent"})).status_code == 200
        assert (await http.get(f"/commands/pending/{computer['id']}")).status_code == 200
        assert (await http.get("/pricing/active")).status_code == 404


# ── Tenants ─────────────────────────────────────────────


class TestTenants:
    async def test_organization_and_center_crud(self, http, staff):
        org = (await http.post("/organizations", json={"name": "Acme"}, headers=staff)).json()
        resp = await http.post(
            "/cyber-centers",
            json={"name": "Downtown", "organization_id": org["id"], "location": "Main St"},
            headers=staff,
        )
        assert resp.status_code == 201
        center = resp.json()

        listed = (await http.get("/cyber-centers", params={"organization_id": org["id"]})).json()
        assert [c["name"] for c in listed] == ["Downtown"]

        patched = await http.patch(f"/cyber-centers/{center['id']}", json={"location": "Side St"}, headers=staff)
        assert patched.json()["location"] == "Side St"

        # still owns a center
        assert (await http.delete(f"/organizations/{org['id']}", headers=staff)).status_code == 409
        assert (await http.delete(f"/cyber-centers/{center['id']}", headers=staff)).status_code == 200
        assert (await http.delete(f"/organizations/{org['id']}", headers=staff)).status_code == 200

    async def test_assign_computer(self, http, staff):
        org = (await http.post("/organizations", json={"name": "Acme"}, headers=staff)).json()
        center = (
            await http.post("/cyber-centers", json={"name": "D", "organization_id": org["id"]}, headers=staff)
        ).json()
        computer = await _computer(http)
        resp = await http.put(f"/cyber-centers/{center['id']}/computers/{computer['id']}", headers=staff)
        assert resp.json()["cyber_center_id"] == center["id"]


# ── Computers, sessions, commands ───────────────────────


class TestSessionFlow:
    async def test_full_session_over_http(self, http, staff):
        computer = await _computer(http, name="PC-01")
        assert computer["status"] == "AVAILABLE"
        priced = await http.post("/pricing", json={"price_per_minute": 10, "active": True}, headers=staff)
        assert priced.status_code == 201

        user = await _register(http, "ada@example.com")
        await http.post("/auth/top-up", json={"user_id": user["id"], "amount": 1000}, headers=staff)

        session = (
            await http.post("/sessions", json={"computer_id": computer["id"], "user_id": user["id"]}, headers=staff)
        ).json()
        assert session["status"] == "CREATED"
        assert session["price_per_minute"] == 10

        started = await http.post(f"/sessions/{session['id']}/start", headers=staff)
        assert started.json()["status"] == "ACTIVE"
        assert started.json()["user_id"] == user["id"]
        active = (await http.get("/sessions/active", headers=staff)).json()
        assert [s["id"] for s in active] == [session["id"]]

        pending = (await http.get(f"/commands/pending/{computer['id']}")).json()
        assert [c["type"] for c in pending] == ["UNLOCK"]

        ended = (await http.post(f"/sessions/{session['id']}/end", headers=staff)).json()
        assert ended["session"]["status"] == "ENDED"
        assert ended["session"]["user_id"] == user["id"]
        assert ended["total_cost"] == 10
        assert (await http.get(f"/sessions/{session['id']}/cost", headers=staff)).json() == {
            "session_id": session["id"],
            "cost": 10,
        }

        stats = (await http.get("/sessions/stats/today", headers=staff)).json()
        assert stats["total_sessions"] == 1
        assert stats["total_revenue"] == 10

    async def test_operator_is_recorded_but_owner_pays(self, http, staff, api_db):
        computer = await _computer(http)
        await http.post("/pricing", json={"price_per_minute": 10, "active": True}, headers=staff)
        user = await _register(http, "ada@example.com")
        await http.post("/auth/top-up", json={"user_id": user["id"], "amount": 100}, headers=staff)
        session = (
            await http.post("/sessions", json={"computer_id": computer["id"], "user_id": user["id"]}, headers=staff)
        ).json()
        await http.post(f"/sessions/{session['id']}/start", headers=staff)
        await http.post(f"/sessions/{session['id']}/end", headers=staff)

        operator = await api_db.user.find_unique({"email": "staff@example.com"})
        assert operator.balance == 0
        assert (await api_db.user.find_unique({"id": user["id"]})).balance == 90
        [ended] = (await http.get("/events", params={"type": "SESSION_ENDED"}, headers=staff)).json()
        assert ended["user_id"] == operator.id

    async def test_insufficient_balance_is_402(self, http, staff):
        computer = await _computer(http)
        await http.post("/pricing", json={"price_per_minute": 10, "active": True}, headers=staff)
        user = await _register(http, "ada@example.com")
        session = (
            await http.post("/sessions", json={"computer_id": computer["id"], "user_id": user["id"]}, headers=staff)
        ).json()
        await http.post(f"/sessions/{session['id']}/start", headers=staff)

        resp = await http.post(f"/sessions/{session['id']}/end", headers=staff)
        assert resp.status_code == 402
        assert resp.json()["error"] == "insufficient_balance"
        assert (await http.get(f"/sessions/{session['id']}", headers=staff)).json()["status"] == "ACTIVE"

    async def test_session_without_pricing_is_conflict(self, http, staff):
        computer = await _computer(http)
        resp = await http.post("/sessions", json={"computer_id": computer["id"]}, headers=staff)
        assert resp.status_code == 409
        assert (await http.get("/pricing/active")).status_code == 404

    async def test_heartbeat_status_and_reconnect(self, http, staff):
        computer = await _computer(http, token="token-hb")
        assert (await http.post("/computers/heartbeat", json={"device_token": "token-hb"})).status_code == 200
        assert (await http.post("/computers/heartbeat", json={"device_token": "nope"})).status_code == 404

        locked = await http.patch(f"/computers/{computer['id']}/status", json={"status": "LOCKED"}, headers=staff)
        assert locked.json()["status"] == "LOCKED"
        renamed = await http.patch(f"/computers/{computer['id']}/name", json={"name": "Corner"}, headers=staff)
        assert renamed.json()["name"] == "Corner"

        reconnect = (await http.post("/computers/reconnect", json={"device_token": "token-hb"})).json()
        assert reconnect["computer"]["status"] == "AVAILABLE"
        assert reconnect["command"]["type"] == "LOCK"
        assert reconnect["active_session_id"] is None

        listed = (await http.get("/computers", params={"status": "AVAILABLE"})).json()
        assert [c["id"] for c in listed] == [computer["id"]]

    async def test_command_lifecycle(self, http, staff):
        computer = await _computer(http)
        command = (
            await http.post("/commands", json={"computer_id": computer["id"], "type": "LOCK"}, headers=staff)
        ).json()
        assert command["status"] == "PENDING"
        assert (await http.post(f"/commands/{command['id']}/sent")).json()["status"] == "SENT"
        assert (await http.post(f"/commands/{command['id']}/ack")).json()["status"] == "ACKED"
        assert (await http.post(f"/commands/{command['id']}/retry", headers=staff)).status_code == 409


# ── Pricing and events ──────────────────────────────────


class TestPricingAndEvents:
    async def test_pricing_routes(self, http, staff):
        first = (await http.post("/pricing", json={"price_per_minute": 10, "active": True}, headers=staff)).json()
        second = (await http.post("/pricing", json={"price_per_minute": 20}, headers=staff)).json()
        assert (await http.get("/pricing/active")).json()["id"] == first["id"]

        await http.patch(f"/pricing/{second['id']}", json={"active": True}, headers=staff)
        assert (await http.get("/pricing/active")).json()["id"] == second["id"]
        assert len((await http.get("/pricing")).json()) == 2
        assert (await http.delete(f"/pricing/{first['id']}", headers=staff)).status_code == 200

    async def test_events_render_null_payloads(self, http, api_db, staff):
        await api_db.event.create({"type": "COMMAND_SENT", "payload": JSON_NULL})
        await api_db.event.create({"type": "COMMAND_ACKED"})
        await api_db.event.create({"type": "COMMAND_SENT", "payload": {"command_id": "c-1"}})

        # the staff fixture's own logins are logged too
        events = [e for e in (await http.get("/events", headers=staff)).json() if e["type"] != "USER_LOGIN"]
        assert len(events) == 3
        assert sorted(e["payload"] is None for e in events) == [False, True, True]

        sent = (await http.get("/events", params={"type": "COMMAND_SENT", "limit": 10}, headers=staff)).json()
        assert {e["type"] for e in sent} == {"COMMAND_SENT"}
        assert len(sent) == 2
