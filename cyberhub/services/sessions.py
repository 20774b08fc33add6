"""
Session lifecycle and billing.

State machine: CREATED → ACTIVE → ENDED.  Each transition runs in one
interactive transaction together with the computer status change, the
audit event and the LOCK / UNLOCK command it implies, so a failure at any
step leaves every row unchanged.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from cyberhub.client import CyberHubClient, TransactionClient
from cyberhub.client.schemas import SessionRecord
from cyberhub.config import Settings, get_settings
from cyberhub.db.models import ComputerStatus, EventType, SessionStatus, utcnow
from cyberhub.exceptions import ConflictError, InsufficientBalanceError, RecordNotFoundError
from cyberhub.services.billing import billable_minutes, session_cost
from cyberhub.services.commands import CommandType, queue_command
from cyberhub.services.events import EventLog

logger = logging.getLogger(__name__)


class SessionService:
    """Creates, activates, ends and reports on computer sessions."""

    def __init__(self, client: CyberHubClient, settings: Optional[Settings] = None) -> None:
        self._client = client
        self._settings = settings or get_settings()

    @staticmethod
    async def _get(tx: TransactionClient, session_id: str) -> SessionRecord:
        session = await tx.session.find_unique({"id": session_id})
        if session is None:
            raise RecordNotFoundError(f"Session {session_id} not found", meta={"model": "session"})
        return session

    # ── Transitions ────────────────────────────────────

    async def create_session(self, computer_id: str, user_id: Optional[str] = None) -> SessionRecord:
        """Open a session on an available computer at the active rate.

        The computer is locked until the session is started.

        Raises:
            RecordNotFoundError: Unknown computer or user.
            ConflictError: Computer busy, or no active pricing.
        """

        async def _create(tx: TransactionClient) -> SessionRecord:
            computer = await tx.computer.find_unique({"id": computer_id})
            if computer is None:
                raise RecordNotFoundError(f"Computer {computer_id} not found", meta={"model": "computer"})
            if computer.status != ComputerStatus.AVAILABLE:
                raise ConflictError(f"Computer {computer_id} is {computer.status.value}, not AVAILABLE")
            if await tx.session.find_first({"computer_id": computer_id, "status": SessionStatus.ACTIVE}):
                raise ConflictError(f"Computer {computer_id} already has an active session")
            if user_id is not None and await tx.user.find_unique({"id": user_id}) is None:
                raise RecordNotFoundError(f"User {user_id} not found", meta={"model": "user"})
            pricing = await tx.pricing.find_first({"active": True}, order_by={"created_at": "desc"})
            if pricing is None:
                raise ConflictError("No active pricing configured")

            session = await tx.session.create(
                {
                    "computer_id": computer_id,
                    "cyber_center_id": computer.cyber_center_id,
                    "user_id": user_id,
                    "status": SessionStatus.CREATED,
                    "price_per_minute": pricing.price_per_minute,
                }
            )
            await tx.computer.update({"id": computer_id}, {"status": ComputerStatus.LOCKED})
            await EventLog(tx).record(
                EventType.SESSION_STARTED,
                computer_id=computer_id,
                user_id=user_id,
                payload={"session_id": session.id, "price_per_minute": session.price_per_minute},
            )
            return session

        session = await self._client.interactive_transaction(_create)
        logger.info("Session created", extra={"session_id": session.id, "computer_id": computer_id})
        return session

    async def start_session(self, session_id: str, user_id: Optional[str] = None) -> SessionRecord:
        """CREATED → ACTIVE; the computer goes IN_USE and gets an UNLOCK command.

        Args:
            session_id: Session to start.
            user_id: Acting user recorded on the event; the session owner
                is not changed.

        Raises:
            ConflictError: Session not CREATED, or the session has no user
                while ``billing.require_user_to_activate`` is set.
        """

        async def _start(tx: TransactionClient) -> SessionRecord:
            session = await self._get(tx, session_id)
            if session.status != SessionStatus.CREATED:
                raise ConflictError(f"Session {session_id} is {session.status.value}, expected CREATED")
            if user_id is not None and await tx.user.find_unique({"id": user_id}) is None:
                raise RecordNotFoundError(f"User {user_id} not found", meta={"model": "user"})
            if session.user_id is None and self._settings.billing.require_user_to_activate:
                raise ConflictError(f"Session {session_id} needs a user before it can start")

            session = await tx.session.update(
                {"id": session_id},
                {"status": SessionStatus.ACTIVE, "started_at": utcnow()},
            )
            await tx.computer.update({"id": session.computer_id}, {"status": ComputerStatus.IN_USE})
            await EventLog(tx).record(
                EventType.SESSION_ACTIVATED,
                computer_id=session.computer_id,
                user_id=user_id or session.user_id,
                payload={"session_id": session.id},
            )
            await queue_command(tx, session.computer_id, CommandType.UNLOCK)
            return session

        session = await self._client.interactive_transaction(_start)
        logger.info("Session started", extra={"session_id": session.id, "computer_id": session.computer_id})
        return session

    async def end_session(
        self,
        session_id: str,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[SessionRecord, int]:
        """ACTIVE → ENDED; bill the session and charge the user.

        Only the session's own user is charged; sessions without a user are
        recorded but not charged. ``user_id`` is the acting user recorded on
        the ``SESSION_ENDED`` event.

        Returns:
            ``(session, total_cost)``.

        Raises:
            ConflictError: Session not ACTIVE.
            InsufficientBalanceError: The user cannot pay; nothing changes.
        """
        ended_at = now or utcnow()

        async def _end(tx: TransactionClient) -> Tuple[SessionRecord, int]:
            session = await self._get(tx, session_id)
            if session.status != SessionStatus.ACTIVE:
                raise ConflictError(f"Session {session_id} is {session.status.value}, expected ACTIVE")
            minutes = billable_minutes(session.started_at, ended_at)
            total_cost = session_cost(session.started_at, ended_at, session.price_per_minute)
            payer_id = session.user_id
            if user_id is not None and await tx.user.find_unique({"id": user_id}) is None:
                raise RecordNotFoundError(f"User {user_id} not found", meta={"model": "user"})

            if payer_id is not None and total_cost > 0:
                charged = await tx.user.update_many(
                    {"id": payer_id, "balance": {"gte": total_cost}},
                    {"balance": {"decrement": total_cost}},
                )
                if charged.count == 0:
                    if await tx.user.find_unique({"id": payer_id}) is None:
                        raise RecordNotFoundError(f"User {payer_id} not found", meta={"model": "user"})
                    raise InsufficientBalanceError(
                        f"User {payer_id} cannot cover session cost {total_cost}"
                    )

            session = await tx.session.update(
                {"id": session_id},
                {
                    "status": SessionStatus.ENDED,
                    "ended_at": ended_at,
                    "total_cost": total_cost,
                },
            )
            await tx.computer.update({"id": session.computer_id}, {"status": ComputerStatus.AVAILABLE})
            await EventLog(tx).record(
                EventType.SESSION_ENDED,
                computer_id=session.computer_id,
                user_id=user_id or payer_id,
                payload={"session_id": session.id, "minutes": minutes, "total_cost": total_cost},
            )
            await queue_command(tx, session.computer_id, CommandType.LOCK)
            return session, total_cost

        session, total_cost = await self._client.interactive_transaction(_end)
        logger.info(
            "Session ended",
            extra={"session_id": session.id, "computer_id": session.computer_id, "total_cost": total_cost},
        )
        return session, total_cost

    # ── Queries ────────────────────────────────────────

    async def get_active_session(self, computer_id: str) -> Optional[SessionRecord]:
        return await self._client.session.find_first(
            {"computer_id": computer_id, "status": SessionStatus.ACTIVE},
            order_by={"started_at": "desc"},
        )

    async def calculate_cost(self, session_id: str, now: Optional[datetime] = None) -> int:
        """Current cost: final for ENDED, running for ACTIVE, zero for CREATED."""
        session = await self.get_session(session_id)
        if session.status == SessionStatus.ENDED:
            return session.total_cost or 0
        if session.status == SessionStatus.ACTIVE:
            return session_cost(session.started_at, now or utcnow(), session.price_per_minute)
        return 0

    async def get_session(self, session_id: str) -> SessionRecord:
        return await self._client.session.find_unique_or_raise(
            {"id": session_id}, include={"computer": True, "user": True}
        )

    async def list_sessions(
        self,
        status: Optional[SessionStatus] = None,
        computer_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[SessionRecord]:
        where: Dict[str, Any] = {}
        if status is not None:
            where["status"] = status
        if computer_id is not None:
            where["computer_id"] = computer_id
        return await self._client.session.find_many(
            where=where, order_by={"created_at": "desc"}, take=limit
        )

    async def list_active_sessions(self) -> List[SessionRecord]:
        return await self._client.session.find_many(
            where={"status": SessionStatus.ACTIVE},
            order_by={"started_at": "asc"},
            include={"computer": True, "user": True},
        )

    async def today_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Ended sessions since UTC midnight.

        Returns:
            ``total_sessions``, ``total_revenue``, ``average_minutes`` and up
            to five ``top_computers`` ranked by revenue.
        """
        now = now or utcnow()
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        where = {"status": SessionStatus.ENDED, "ended_at": {"gte": start, "lte": now}}

        totals = await self._client.session.aggregate(where=where, count=True, sum=["total_cost"])
        ended = await self._client.session.find_many(where=where)
        minutes = [
            billable_minutes(s.started_at, s.ended_at) for s in ended if s.started_at and s.ended_at
        ]
        top = await self._client.session.group_by(
            ["computer_id"],
            where=where,
            count=True,
            sum=["total_cost"],
            order_by=[{"_sum": {"total_cost": "desc"}}, {"_count": "desc"}],
            take=5,
        )
        return {
            "total_sessions": totals.count or 0,
            "total_revenue": int(totals.sum.get("total_cost") or 0),
            "average_minutes": round(sum(minutes) / len(minutes), 2) if minutes else 0.0,
            "top_computers": [
                {
                    "computer_id": row["computer_id"],
                    "sessions": row["_count"],
                    "revenue": int(row["_sum"]["total_cost"] or 0),
                }
                for row in top
            ],
        }
