"""Tests for the ORM schema: constraints, referential actions and JSON payloads."""

from datetime import timezone

import pytest

from cyberhub.db.models import ComputerStatus, EventType, SessionStatus
from cyberhub.db.types import ANY_NULL, DB_NULL, JSON_NULL
from cyberhub.exceptions import ForeignKeyConstraintError, UniqueConstraintError


async def _computer(db, token="dev-1", **extra):
    return await db.computer.create({"name": f"PC {token}", "device_token": token, **extra})


async def _user(db, email="ada@example.com"):
    return await db.user.create({"email": email, "password_hash": "x"})


# ── Unique constraints ──────────────────────────────────


class TestUniqueConstraints:
    async def test_duplicate_device_token_rejected(self, db):
        await _computer(db, "same-token")
        with pytest.raises(UniqueConstraintError) as info:
            await _computer(db, "same-token")
        assert info.value.code == "P2002"
        assert info.value.meta["target"] == ["device_token"]
        assert await db.computer.count() == 1

    async def test_duplicate_email_rejected(self, db):
        await _user(db, "dup@example.com")
        with pytest.raises(UniqueConstraintError) as info:
            await _user(db, "dup@example.com")
        assert info.value.meta["target"] == ["email"]


# ── Referential actions ─────────────────────────────────


class TestForeignKeys:
    async def test_session_requires_existing_computer(self, db):
        with pytest.raises(ForeignKeyConstraintError) as info:
            await db.session.create({"computer_id": "missing", "price_per_minute": 10})
        assert info.value.code == "P2003"

    async def test_deleting_computer_with_sessions_is_restricted(self, db):
        computer = await _computer(db)
        await db.session.create({"computer_id": computer.id, "price_per_minute": 10})
        with pytest.raises(ForeignKeyConstraintError):
            await db.computer.delete({"id": computer.id})
        assert await db.computer.find_unique({"id": computer.id}) is not None

    async def test_deleting_user_nulls_session_user(self, db):
        computer = await _computer(db)
        user = await _user(db)
        session = await db.session.create(
            {"computer_id": computer.id, "user_id": user.id, "price_per_minute": 10}
        )
        await db.user.delete({"id": user.id})
        reloaded = await db.session.find_unique({"id": session.id})
        assert reloaded.user_id is None

    async def test_deleting_organization_with_centers_is_restricted(self, db, center):
        with pytest.raises(ForeignKeyConstraintError):
            await db.organization.delete({"id": center.organization_id})

    async def test_deleting_center_detaches_computers(self, db, center):
        computer = await _computer(db, cyber_center_id=center.id)
        await db.cyber_center.delete({"id": center.id})
        reloaded = await db.computer.find_unique({"id": computer.id})
        assert reloaded.cyber_center_id is None


# ── Defaults ────────────────────────────────────────────


class TestDefaults:
    async def test_generated_id_and_defaults(self, db):
        computer = await _computer(db)
        assert len(computer.id) == 36
        assert computer.status == ComputerStatus.AVAILABLE
        assert computer.created_at.tzinfo is not None
        assert computer.created_at.utcoffset() == timezone.utc.utcoffset(None)

    async def test_session_defaults(self, db):
        computer = await _computer(db)
        session = await db.session.create({"computer_id": computer.id, "price_per_minute": 25})
        assert session.status == SessionStatus.CREATED
        assert session.total_cost is None
        assert session.started_at is None


# ── JSON payloads ───────────────────────────────────────


class TestEventPayload:
    @pytest.mark.parametrize(
        "payload",
        [
            {"session_id": "s-1", "minutes": 3, "nested": {"ok": True, "tags": ["a", "b"]}},
            [1, 2.5, "three", None],
            "plain string",
            42,
        ],
    )
    async def test_round_trips_arbitrary_json(self, db, payload):
        event = await db.event.create({"type": EventType.USER_LOGIN, "payload": payload})
        reloaded = await db.event.find_unique({"id": event.id})
        assert reloaded.payload == payload

    async def test_json_null_and_db_null_stay_distinct(self, db):
        json_null = await db.event.create({"type": EventType.USER_LOGIN, "payload": JSON_NULL})
        db_null = await db.event.create({"type": EventType.USER_LOGIN, "payload": DB_NULL})
        absent = await db.event.create({"type": EventType.USER_LOGIN})

        assert (await db.event.find_unique({"id": json_null.id})).payload is JSON_NULL
        assert (await db.event.find_unique({"id": db_null.id})).payload is None
        assert (await db.event.find_unique({"id": absent.id})).payload is None

    async def test_filter_by_null_flavour(self, db):
        json_null = await db.event.create({"type": EventType.USER_LOGIN, "payload": JSON_NULL})
        db_null = await db.event.create({"type": EventType.USER_LOGIN, "payload": DB_NULL})
        await db.event.create({"type": EventType.USER_LOGIN, "payload": {"k": 1}})

        only_json = await db.event.find_many({"payload": JSON_NULL})
        only_db = await db.event.find_many({"payload": DB_NULL})
        either = await db.event.find_many({"payload": ANY_NULL})

        assert [e.id for e in only_json] == [json_null.id]
        assert [e.id for e in only_db] == [db_null.id]
        assert {e.id for e in either} == {json_null.id, db_null.id}

    async def test_negated_null_filters(self, db):
        json_null = await db.event.create({"type": EventType.USER_LOGIN, "payload": JSON_NULL})
        db_null = await db.event.create({"type": EventType.USER_LOGIN, "payload": DB_NULL})
        value = await db.event.create({"type": EventType.USER_LOGIN, "payload": {"k": 1}})

        not_db = await db.event.find_many({"payload": {"not": DB_NULL}})
        not_json = await db.event.find_many({"payload": {"not": JSON_NULL}})
        not_any = await db.event.find_many({"payload": {"not": ANY_NULL}})

        assert {e.id for e in not_db} == {json_null.id, value.id}
        assert [e.id for e in not_json] == [value.id]
        assert [e.id for e in not_any] == [value.id]
        assert db_null.id not in {e.id for e in not_json}
