"""
Append-only audit log.
"""

import logging
from typing import Any, List, Optional

from cyberhub.client import BaseClient
from cyberhub.client.schemas import EventRecord
from cyberhub.db.models import EventType
from cyberhub.db.types import DB_NULL

logger = logging.getLogger(__name__)


class EventLog:
    """Writes and reads :class:`~cyberhub.db.models.Event` rows.

    Works on a client or on a transaction client, so events can be written
    in the same transaction as the change they describe.
    """

    def __init__(self, client: BaseClient) -> None:
        self._client = client

    async def record(
        self,
        type: EventType,
        computer_id: Optional[str] = None,
        user_id: Optional[str] = None,
        payload: Any = DB_NULL,
    ) -> EventRecord:
        """Append one event.  Omitting ``payload`` stores database NULL."""
        event = await self._client.event.create(
            {
                "type": type,
                "computer_id": computer_id,
                "user_id": user_id,
                "payload": payload,
            }
        )
        logger.debug(
            "Event recorded",
            extra={"event_type": event.type.value, "computer_id": computer_id, "user_id": user_id},
        )
        return event

    async def list_events(
        self,
        type: Optional[EventType] = None,
        computer_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[EventRecord]:
        """Newest events first, optionally filtered."""
        where = {}
        if type is not None:
            where["type"] = type
        if computer_id is not None:
            where["computer_id"] = computer_id
        if user_id is not None:
            where["user_id"] = user_id
        return await self._client.event.find_many(
            where=where,
            order_by=[{"created_at": "desc"}, {"id": "desc"}],
            take=limit,
        )
