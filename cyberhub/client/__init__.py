"""Typed async data-access client for the cyber center schema."""

from cyberhub.client.client import BaseClient, CyberHubClient, TransactionClient
from cyberhub.client.delegate import ModelDelegate
from cyberhub.client.events import LogEvent, QueryEvent, render_sql_comment
from cyberhub.client.options import (
    ClientOptions,
    EngineAdapter,
    LogDefinition,
    QueryContext,
    SQLAlchemyAdapter,
    StorageAdapter,
    TransactionIsolationLevel,
    TransactionOptions,
)
from cyberhub.client.schemas import AggregateResult, BatchPayload, NumberOperation

__all__ = [
    "AggregateResult",
    "BaseClient",
    "BatchPayload",
    "ClientOptions",
    "CyberHubClient",
    "EngineAdapter",
    "LogDefinition",
    "LogEvent",
    "ModelDelegate",
    "NumberOperation",
    "QueryContext",
    "QueryEvent",
    "SQLAlchemyAdapter",
    "StorageAdapter",
    "TransactionClient",
    "TransactionIsolationLevel",
    "TransactionOptions",
    "render_sql_comment",
]
