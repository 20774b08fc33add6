"""
Command dispatch to computers.

Lifecycle: PENDING → SENT → ACKED.  A SENT command that is not acknowledged
within ``commands.ack_timeout_seconds`` becomes FAILED; a FAILED command can
be retried, which queues a fresh PENDING copy.
"""

import enum
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from cyberhub.client import BaseClient, CyberHubClient, TransactionClient
from cyberhub.client.schemas import CommandRecord
from cyberhub.config import Settings, get_settings
from cyberhub.db.models import EventType, utcnow
from cyberhub.exceptions import ConflictError, RecordNotFoundError
from cyberhub.services.events import EventLog

logger = logging.getLogger(__name__)


class CommandStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    ACKED = "ACKED"
    FAILED = "FAILED"


class CommandType(str, enum.Enum):
    LOCK = "LOCK"
    UNLOCK = "UNLOCK"


async def queue_command(db: BaseClient, computer_id: str, type: str) -> CommandRecord:
    """Create a PENDING command and its ``COMMAND_CREATED`` event on ``db``."""
    command_type = type.value if isinstance(type, CommandType) else type
    command = await db.command.create(
        {"computer_id": computer_id, "type": command_type, "status": CommandStatus.PENDING.value}
    )
    await EventLog(db).record(
        EventType.COMMAND_CREATED,
        computer_id=computer_id,
        payload={"command_id": command.id, "type": command_type},
    )
    return command


class CommandService:
    """Queues commands for computers and tracks their delivery."""

    def __init__(self, client: CyberHubClient, settings: Optional[Settings] = None) -> None:
        self._client = client
        self._settings = settings or get_settings()

    async def _get(self, db: BaseClient, command_id: str) -> CommandRecord:
        command = await db.command.find_unique({"id": command_id})
        if command is None:
            raise RecordNotFoundError(f"Command {command_id} not found", meta={"model": "command"})
        return command

    async def create_command(self, computer_id: str, type: str) -> CommandRecord:
        """Queue a command for a computer.

        Raises:
            RecordNotFoundError: Unknown computer.
        """

        async def _create(tx: TransactionClient) -> CommandRecord:
            if await tx.computer.find_unique({"id": computer_id}) is None:
                raise RecordNotFoundError(f"Computer {computer_id} not found", meta={"model": "computer"})
            return await queue_command(tx, computer_id, type)

        command = await self._client.interactive_transaction(_create)
        logger.info("Command queued", extra={"command_id": command.id, "computer_id": computer_id, "type": command.type})
        return command

    async def pending_commands(self, computer_id: str) -> List[CommandRecord]:
        """PENDING commands for a computer, oldest first."""
        return await self._client.command.find_many(
            where={"computer_id": computer_id, "status": CommandStatus.PENDING.value},
            order_by=[{"created_at": "asc"}, {"id": "asc"}],
        )

    async def mark_sent(self, command_id: str) -> CommandRecord:
        async def _sent(tx: TransactionClient) -> CommandRecord:
            command = await self._get(tx, command_id)
            if command.status != CommandStatus.PENDING.value:
                raise ConflictError(f"Command {command_id} is {command.status}, expected PENDING")
            command = await tx.command.update(
                {"id": command_id},
                {"status": CommandStatus.SENT.value, "sent_at": utcnow()},
            )
            await EventLog(tx).record(
                EventType.COMMAND_SENT,
                computer_id=command.computer_id,
                payload={"command_id": command.id, "type": command.type},
            )
            return command

        return await self._client.interactive_transaction(_sent)

    async def mark_acked(self, command_id: str) -> CommandRecord:
        """Record the computer's acknowledgement.

        A PENDING command may be acknowledged directly when the agent
        received it before ``mark_sent`` was recorded.
        """

        async def _acked(tx: TransactionClient) -> CommandRecord:
            command = await self._get(tx, command_id)
            if command.status not in (CommandStatus.SENT.value, CommandStatus.PENDING.value):
                raise ConflictError(f"Command {command_id} is {command.status}, cannot acknowledge")
            data = {"status": CommandStatus.ACKED.value, "acked_at": utcnow()}
            if command.sent_at is None:
                data["sent_at"] = data["acked_at"]
            command = await tx.command.update({"id": command_id}, data)
            await EventLog(tx).record(
                EventType.COMMAND_ACKED,
                computer_id=command.computer_id,
                payload={"command_id": command.id, "type": command.type},
            )
            return command

        return await self._client.interactive_transaction(_acked)

    async def expire_unacked(self, now: Optional[datetime] = None) -> int:
        """Fail SENT commands older than the ack timeout.

        Returns:
            Number of commands moved to FAILED.
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self._settings.commands.ack_timeout_seconds)
        result = await self._client.command.update_many(
            where={"status": CommandStatus.SENT.value, "sent_at": {"lt": cutoff}},
            data={"status": CommandStatus.FAILED.value},
        )
        if result.count:
            logger.warning("Unacknowledged commands expired", extra={"count": result.count})
        return result.count

    async def retry_command(self, command_id: str) -> CommandRecord:
        """Queue a fresh PENDING copy of a FAILED command."""

        async def _retry(tx: TransactionClient) -> CommandRecord:
            command = await self._get(tx, command_id)
            if command.status != CommandStatus.FAILED.value:
                raise ConflictError(f"Only FAILED commands can be retried; {command_id} is {command.status}")
            return await queue_command(tx, command.computer_id, command.type)

        return await self._client.interactive_transaction(_retry)
