"""
Computer registration, presence and status.

Computers identify themselves by device token.  Every heartbeat refreshes
``last_seen_at``; :meth:`ComputerService.check_offline_computers` marks
computers that have gone quiet as OFFLINE.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from cyberhub.client import CyberHubClient, TransactionClient
from cyberhub.client.schemas import CommandRecord, ComputerRecord
from cyberhub.config import Settings, get_settings
from cyberhub.db.models import ComputerStatus, EventType, SessionStatus, utcnow
from cyberhub.exceptions import RecordNotFoundError
from cyberhub.services.commands import CommandType, queue_command
from cyberhub.services.events import EventLog

logger = logging.getLogger(__name__)


@dataclass
class ReconnectResult:
    """State restored for a computer that came back online."""

    computer: ComputerRecord
    command: CommandRecord
    active_session_id: Optional[str] = None


def default_computer_name(device_token: str) -> str:
    return f"Computer-{device_token[:8]}"


class ComputerService:
    """Tracks computers and their status."""

    def __init__(self, client: CyberHubClient, settings: Optional[Settings] = None) -> None:
        self._client = client
        self._settings = settings or get_settings()

    @property
    def settings(self) -> Settings:
        return self._settings

    async def register_computer(
        self,
        device_token: str,
        name: Optional[str] = None,
        cyber_center_id: Optional[str] = None,
    ) -> ComputerRecord:
        """Create the computer for ``device_token`` or refresh the existing one.

        A returning computer comes back IN_USE if it has an ACTIVE session and
        AVAILABLE otherwise, whatever status it was left in.

        Args:
            device_token: Token the agent presents.
            name: Display name; defaults to ``Computer-<first 8 chars>``.
            cyber_center_id: Venue to attach the computer to.

        Returns:
            The computer record.
        """
        now = utcnow()
        update: Dict[str, Any] = {"last_seen_at": now}
        if name:
            update["name"] = name
        if cyber_center_id is not None:
            update["cyber_center_id"] = cyber_center_id

        async def _register(tx: TransactionClient) -> ComputerRecord:
            existing = await tx.computer.find_unique({"device_token": device_token})
            if existing is not None:
                active = await tx.session.find_first(
                    {"computer_id": existing.id, "status": SessionStatus.ACTIVE}
                )
                update["status"] = ComputerStatus.IN_USE if active else ComputerStatus.AVAILABLE
            computer = await tx.computer.upsert(
                where={"device_token": device_token},
                create={
                    "device_token": device_token,
                    "name": name or default_computer_name(device_token),
                    "status": ComputerStatus.AVAILABLE,
                    "last_seen_at": now,
                    "cyber_center_id": cyber_center_id,
                },
                update=update,
            )
            await EventLog(tx).record(
                EventType.COMPUTER_CONNECTED,
                computer_id=computer.id,
                payload={"device_token": device_token},
            )
            return computer

        computer = await self._client.interactive_transaction(_register)
        logger.info("Computer registered", extra={"computer_id": computer.id, "computer_name": computer.name})
        return computer

    async def heartbeat(self, device_token: str) -> ComputerRecord:
        """Refresh ``last_seen_at``.

        Raises:
            RecordNotFoundError: Unknown device token.
        """
        return await self._client.computer.update(
            {"device_token": device_token}, {"last_seen_at": utcnow()}
        )

    async def update_status(self, computer_id: str, status: ComputerStatus) -> ComputerRecord:
        status = ComputerStatus(status)

        async def _update(tx: TransactionClient) -> ComputerRecord:
            before = await tx.computer.find_unique_or_raise({"id": computer_id})
            computer = await tx.computer.update({"id": computer_id}, {"status": status})
            await EventLog(tx).record(
                EventType.COMPUTER_STATUS_CHANGED,
                computer_id=computer_id,
                payload={"from": before.status.value, "to": status.value},
            )
            return computer

        return await self._client.interactive_transaction(_update)

    async def resolve_state_on_reconnect(self, device_token: str) -> ReconnectResult:
        """Restore a reconnecting computer's state from its sessions.

        With an ACTIVE session the computer goes IN_USE and is told to
        UNLOCK; otherwise it goes AVAILABLE and is told to LOCK.
        """

        async def _resolve(tx: TransactionClient) -> ReconnectResult:
            computer = await tx.computer.find_unique({"device_token": device_token})
            if computer is None:
                raise RecordNotFoundError(f"No computer with device token {device_token}", meta={"model": "computer"})
            active = await tx.session.find_first(
                {"computer_id": computer.id, "status": SessionStatus.ACTIVE},
                order_by={"started_at": "desc"},
            )
            status = ComputerStatus.IN_USE if active else ComputerStatus.AVAILABLE
            command_type = CommandType.UNLOCK if active else CommandType.LOCK
            computer = await tx.computer.update(
                {"id": computer.id}, {"status": status, "last_seen_at": utcnow()}
            )
            command = await queue_command(tx, computer.id, command_type)
            await EventLog(tx).record(
                EventType.COMPUTER_CONNECTED,
                computer_id=computer.id,
                payload={"reconnect": True, "status": status.value},
            )
            return ReconnectResult(
                computer=computer,
                command=command,
                active_session_id=active.id if active else None,
            )

        result = await self._client.interactive_transaction(_resolve)
        logger.info(
            "Computer reconnected",
            extra={"computer_id": result.computer.id, "status": result.computer.status.value},
        )
        return result

    async def mark_disconnected(self, computer_id: str) -> ComputerRecord:
        async def _disconnect(tx: TransactionClient) -> ComputerRecord:
            computer = await tx.computer.update({"id": computer_id}, {"status": ComputerStatus.OFFLINE})
            await EventLog(tx).record(EventType.COMPUTER_DISCONNECTED, computer_id=computer_id)
            return computer

        return await self._client.interactive_transaction(_disconnect)

    async def check_offline_computers(self, now: Optional[datetime] = None) -> int:
        """Mark computers not seen for ``presence.offline_after_seconds`` as OFFLINE.

        Each computer is switched with a conditional update, so a computer
        is only reported (and logged as disconnected) once.

        Returns:
            Number of computers newly marked OFFLINE.
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self._settings.presence.offline_after_seconds)
        stale = await self._client.computer.find_many(
            where={"status": {"not": ComputerStatus.OFFLINE}, "last_seen_at": {"lt": cutoff}}
        )
        marked = 0
        for computer in stale:

            async def _mark(tx: TransactionClient, computer_id: str = computer.id) -> int:
                result = await tx.computer.update_many(
                    {"id": computer_id, "status": {"not": ComputerStatus.OFFLINE}},
                    {"status": ComputerStatus.OFFLINE},
                )
                if result.count:
                    await EventLog(tx).record(
                        EventType.COMPUTER_DISCONNECTED,
                        computer_id=computer_id,
                        payload={"reason": "heartbeat timeout"},
                    )
                return result.count

            marked += await self._client.interactive_transaction(_mark)
        if marked:
            logger.warning("Computers marked offline", extra={"count": marked})
        return marked

    async def get(self, computer_id: str) -> ComputerRecord:
        return await self._client.computer.find_unique_or_raise(
            {"id": computer_id}, include={"cyber_center": True}
        )

    async def get_by_device_token(self, device_token: str) -> Optional[ComputerRecord]:
        return await self._client.computer.find_unique({"device_token": device_token})

    async def rename(self, computer_id: str, name: str) -> ComputerRecord:
        return await self._client.computer.update({"id": computer_id}, {"name": name})

    async def list_computers(
        self,
        cyber_center_id: Optional[str] = None,
        status: Optional[ComputerStatus] = None,
    ) -> List[ComputerRecord]:
        where: Dict[str, Any] = {}
        if cyber_center_id is not None:
            where["cyber_center_id"] = cyber_center_id
        if status is not None:
            where["status"] = status
        return await self._client.computer.find_many(where=where, order_by={"name": "asc"})
