"""
Tenant administration: organizations and their cyber centers.
"""

import logging
from typing import Any, Dict, List, Optional

from cyberhub.client import CyberHubClient
from cyberhub.client.schemas import ComputerRecord, CyberCenterRecord, OrganizationRecord
from cyberhub.exceptions import RecordNotFoundError

logger = logging.getLogger(__name__)


class CenterService:
    def __init__(self, client: CyberHubClient) -> None:
        self._client = client

    # ── Organizations ──────────────────────────────────

    async def create_organization(self, name: str) -> OrganizationRecord:
        organization = await self._client.organization.create({"name": name})
        logger.info("Organization created", extra={"organization_id": organization.id})
        return organization

    async def list_organizations(self) -> List[OrganizationRecord]:
        return await self._client.organization.find_many(order_by={"name": "asc"})

    async def get_organization(self, organization_id: str) -> OrganizationRecord:
        return await self._client.organization.find_unique_or_raise(
            {"id": organization_id}, include={"cyber_centers": True}
        )

    async def rename_organization(self, organization_id: str, name: str) -> OrganizationRecord:
        return await self._client.organization.update({"id": organization_id}, {"name": name})

    async def delete_organization(self, organization_id: str) -> OrganizationRecord:
        """Delete an organization.

        Raises:
            ForeignKeyConstraintError: It still owns cyber centers.
        """
        return await self._client.organization.delete({"id": organization_id})

    # ── Cyber centers ──────────────────────────────────

    async def create_cyber_center(
        self,
        name: str,
        organization_id: str,
        location: Optional[str] = None,
    ) -> CyberCenterRecord:
        if await self._client.organization.find_unique({"id": organization_id}) is None:
            raise RecordNotFoundError(f"Organization {organization_id} not found", meta={"model": "organization"})
        center = await self._client.cyber_center.create(
            {"name": name, "organization_id": organization_id, "location": location}
        )
        logger.info("Cyber center created", extra={"cyber_center_id": center.id, "organization_id": organization_id})
        return center

    async def list_cyber_centers(self, organization_id: Optional[str] = None) -> List[CyberCenterRecord]:
        where = {"organization_id": organization_id} if organization_id is not None else None
        return await self._client.cyber_center.find_many(
            where=where, order_by={"name": "asc"}, include={"organization": True}
        )

    async def get_cyber_center(self, cyber_center_id: str) -> CyberCenterRecord:
        return await self._client.cyber_center.find_unique_or_raise(
            {"id": cyber_center_id}, include={"organization": True, "computers": True}
        )

    async def update_cyber_center(
        self,
        cyber_center_id: str,
        name: Optional[str] = None,
        location: Optional[str] = None,
    ) -> CyberCenterRecord:
        data: Dict[str, Any] = {}
        if name is not None:
            data["name"] = name
        if location is not None:
            data["location"] = location
        return await self._client.cyber_center.update({"id": cyber_center_id}, data)

    async def delete_cyber_center(self, cyber_center_id: str) -> CyberCenterRecord:
        """Delete a center; its computers, sessions and users are detached."""
        return await self._client.cyber_center.delete({"id": cyber_center_id})

    async def assign_computer(self, computer_id: str, cyber_center_id: Optional[str]) -> ComputerRecord:
        """Move a computer to a center, or detach it with ``None``."""
        if cyber_center_id is not None and await self._client.cyber_center.find_unique({"id": cyber_center_id}) is None:
            raise RecordNotFoundError(f"Cyber center {cyber_center_id} not found", meta={"model": "cyber_center"})
        return await self._client.computer.update({"id": computer_id}, {"cyber_center_id": cyber_center_id})
