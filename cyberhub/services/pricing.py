"""
Per-minute rate table.  At most one entry is active; new sessions copy its
rate.
"""

import logging
from typing import Any, Dict, List, Optional

from cyberhub.client import CyberHubClient, TransactionClient
from cyberhub.client.schemas import PricingRecord

logger = logging.getLogger(__name__)


class PricingService:
    def __init__(self, client: CyberHubClient) -> None:
        self._client = client

    async def create_pricing(self, price_per_minute: int, active: bool = False) -> PricingRecord:
        """Add a rate; activating it deactivates every other rate."""

        async def _create(tx: TransactionClient) -> PricingRecord:
            if active:
                await tx.pricing.update_many({"active": True}, {"active": False})
            return await tx.pricing.create({"price_per_minute": price_per_minute, "active": active})

        pricing = await self._client.interactive_transaction(_create)
        logger.info("Pricing created", extra={"pricing_id": pricing.id, "active": pricing.active})
        return pricing

    async def list_pricing(self) -> List[PricingRecord]:
        return await self._client.pricing.find_many(order_by=[{"created_at": "desc"}, {"id": "asc"}])

    async def get_active(self) -> Optional[PricingRecord]:
        return await self._client.pricing.find_first({"active": True}, order_by={"created_at": "desc"})

    async def update_pricing(
        self,
        pricing_id: str,
        price_per_minute: Optional[int] = None,
        active: Optional[bool] = None,
    ) -> PricingRecord:
        data: Dict[str, Any] = {}
        if price_per_minute is not None:
            data["price_per_minute"] = price_per_minute
        if active is not None:
            data["active"] = active

        async def _update(tx: TransactionClient) -> PricingRecord:
            if active:
                await tx.pricing.update_many(
                    {"active": True, "id": {"not": pricing_id}}, {"active": False}
                )
            return await tx.pricing.update({"id": pricing_id}, data)

        return await self._client.interactive_transaction(_update)

    async def delete_pricing(self, pricing_id: str) -> PricingRecord:
        pricing = await self._client.pricing.delete({"id": pricing_id})
        logger.info("Pricing deleted", extra={"pricing_id": pricing_id})
        return pricing
