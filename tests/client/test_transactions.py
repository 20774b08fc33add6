"""Tests for batch and interactive transactions (cyberhub/client/client.py)."""

import asyncio

import pytest

from cyberhub.client import TransactionClient, TransactionIsolationLevel
from cyberhub.exceptions import RecordNotFoundError, TransactionError, UniqueConstraintError


async def _setup(db, balance=100):
    computer = await db.computer.create({"name": "PC-01", "device_token": "tok-01"})
    user = await db.user.create({"email": "ada@example.com", "password_hash": "x", "balance": balance})
    return computer, user


# ── Batch transactions ──────────────────────────────────


class TestBatchTransaction:
    async def test_commits_all_and_returns_results_in_order(self, db):
        computer, user = await _setup(db)
        session, charged = await db.transaction(
            [
                db.session.create({"computer_id": computer.id, "user_id": user.id, "price_per_minute": 10}),
                db.user.update({"id": user.id}, {"balance": {"decrement": 30}}),
            ]
        )
        assert session.user_id == user.id
        assert charged.balance == 70
        assert await db.session.count() == 1

    async def test_failure_rolls_back_everything(self, db):
        computer, user = await _setup(db)
        with pytest.raises(RecordNotFoundError):
            await db.transaction(
                [
                    db.session.create({"computer_id": computer.id, "user_id": user.id, "price_per_minute": 10}),
                    db.user.update({"id": user.id}, {"balance": {"decrement": 30}}),
                    db.user.update({"id": "missing"}, {"balance": {"decrement": 30}}),
                ]
            )
        assert await db.session.count() == 0
        assert (await db.user.find_unique({"id": user.id})).balance == 100

    async def test_database_error_is_translated_and_rolled_back(self, db):
        await db.transaction(
            [db.computer.create({"name": "A", "device_token": "a"})]
        )
        with pytest.raises(UniqueConstraintError):
            await db.transaction(
                [
                    db.computer.create({"name": "B", "device_token": "b"}),
                    db.computer.create({"name": "A again", "device_token": "a"}),
                ]
            )
        assert await db.computer.count() == 1

    async def test_with_isolation_level(self, db):
        computer, _ = await _setup(db)
        [renamed] = await db.transaction(
            [db.computer.update({"id": computer.id}, {"name": "PC-renamed"})],
            isolation_level=TransactionIsolationLevel.SERIALIZABLE,
        )
        assert renamed.name == "PC-renamed"


# ── Interactive transactions ────────────────────────────


class TestInteractiveTransaction:
    async def test_commits_on_return(self, db):
        computer, user = await _setup(db)

        async def work(tx: TransactionClient):
            assert isinstance(tx, TransactionClient)
            session = await tx.session.create(
                {"computer_id": computer.id, "user_id": user.id, "price_per_minute": 10}
            )
            await tx.user.update({"id": user.id}, {"balance": {"decrement": 40}})
            return session.id

        session_id = await db.interactive_transaction(work)
        assert await db.session.find_unique({"id": session_id}) is not None
        assert (await db.user.find_unique({"id": user.id})).balance == 60

    async def test_exception_rolls_back(self, db):
        computer, user = await _setup(db)

        async def work(tx):
            await tx.session.create({"computer_id": computer.id, "price_per_minute": 10})
            await tx.user.update({"id": user.id}, {"balance": {"decrement": 40}})
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError, match="abort"):
            await db.interactive_transaction(work)
        assert await db.session.count() == 0
        assert (await db.user.find_unique({"id": user.id})).balance == 100

    async def test_reads_see_uncommitted_writes_inside(self, db):
        computer, _ = await _setup(db)

        async def work(tx):
            await tx.computer.update({"id": computer.id}, {"name": "inside"})
            return (await tx.computer.find_unique({"id": computer.id})).name

        assert await db.interactive_transaction(work) == "inside"

    async def test_timeout_raises_and_rolls_back(self, db):
        computer, _ = await _setup(db)

        async def slow(tx):
            await tx.computer.update({"id": computer.id}, {"name": "never"})
            await asyncio.sleep(1)

        with pytest.raises(TransactionError) as info:
            await db.interactive_transaction(slow, timeout=50)
        assert info.value.code == "P2028"
        assert "50 ms" in str(info.value)
        assert (await db.computer.find_unique({"id": computer.id})).name == "PC-01"

    async def test_closed_transaction_client_rejects_queries(self, db):
        captured = []

        async def work(tx):
            captured.append(tx)

        await db.interactive_transaction(work)
        with pytest.raises(TransactionError, match="closed"):
            await captured[0].computer.find_many()

    async def test_raw_queries_inside_transaction(self, db):
        await _setup(db)

        async def work(tx):
            await tx.execute_raw("UPDATE users SET balance = balance + :amount", amount=5)
            return await tx.query_raw("SELECT balance FROM users")

        rows = await db.interactive_transaction(work)
        assert rows == [{"balance": 105}]
