"""
Per-entity wiring between ORM models and their request/response structs.
"""

from dataclasses import dataclass
from typing import Dict, Tuple, Type

from pydantic import BaseModel
from sqlalchemy import Column, inspect
from sqlalchemy.orm import RelationshipProperty

from cyberhub.client import schemas
from cyberhub.db.models import Command, Computer, CyberCenter, Event, Organization, Pricing, Session, User


@dataclass(frozen=True)
class ModelSpec:
    """Everything a delegate needs to know about one entity."""

    name: str
    model: type
    create_input: Type[BaseModel]
    update_input: Type[BaseModel]
    record: Type[BaseModel]
    unique_fields: Tuple[str, ...] = ("id",)

    @property
    def columns(self) -> Dict[str, Column]:
        return dict(inspect(self.model).columns.items())

    @property
    def relations(self) -> Dict[str, RelationshipProperty]:
        return dict(inspect(self.model).relationships.items())


MODEL_SPECS: Dict[str, ModelSpec] = {
    spec.name: spec
    for spec in (
        ModelSpec(
            "organization",
            Organization,
            schemas.OrganizationCreateInput,
            schemas.OrganizationUpdateInput,
            schemas.OrganizationRecord,
        ),
        ModelSpec(
            "cyber_center",
            CyberCenter,
            schemas.CyberCenterCreateInput,
            schemas.CyberCenterUpdateInput,
            schemas.CyberCenterRecord,
        ),
        ModelSpec(
            "computer",
            Computer,
            schemas.ComputerCreateInput,
            schemas.ComputerUpdateInput,
            schemas.ComputerRecord,
            unique_fields=("id", "device_token"),
        ),
        ModelSpec(
            "session",
            Session,
            schemas.SessionCreateInput,
            schemas.SessionUpdateInput,
            schemas.SessionRecord,
        ),
        ModelSpec(
            "pricing",
            Pricing,
            schemas.PricingCreateInput,
            schemas.PricingUpdateInput,
            schemas.PricingRecord,
        ),
        ModelSpec(
            "user",
            User,
            schemas.UserCreateInput,
            schemas.UserUpdateInput,
            schemas.UserRecord,
            unique_fields=("id", "email"),
        ),
        ModelSpec(
            "event",
            Event,
            schemas.EventCreateInput,
            schemas.EventUpdateInput,
            schemas.EventRecord,
        ),
        ModelSpec(
            "command",
            Command,
            schemas.CommandCreateInput,
            schemas.CommandUpdateInput,
            schemas.CommandRecord,
        ),
    )
}

_BY_CLASS: Dict[type, ModelSpec] = {spec.model: spec for spec in MODEL_SPECS.values()}


def spec_for_class(model: type) -> ModelSpec:
    return _BY_CLASS[model]
