"""
Client construction options and storage adapters.

:class:`ClientOptions` gathers everything a :class:`CyberHubClient` needs;
fields left as ``None`` fall back to :func:`cyberhub.config.get_settings`.
"""

import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

from sqlalchemy.ext.asyncio import AsyncEngine

from cyberhub.db.engine import get_async_engine, normalize_database_url
from cyberhub.exceptions import ClientInitializationError

logger = logging.getLogger(__name__)

LOG_LEVELS = ("query", "info", "warn", "error")
ERROR_FORMATS = ("pretty", "colorless", "minimal")


class TransactionIsolationLevel(str, enum.Enum):
    READ_UNCOMMITTED = "READ UNCOMMITTED"
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"


@dataclass
class LogDefinition:
    """Where one log level goes: the ``cyberhub.client.<level>`` logger or ``on()`` callbacks."""

    level: str
    emit: str = "stdout"

    def __post_init__(self) -> None:
        if self.level not in LOG_LEVELS:
            raise ClientInitializationError(f"Unknown log level {self.level!r}; expected one of {LOG_LEVELS}")
        if self.emit not in ("stdout", "event"):
            raise ClientInitializationError(f"Unknown log emit {self.emit!r}; expected 'stdout' or 'event'")


@dataclass
class TransactionOptions:
    """Defaults for interactive transactions (milliseconds)."""

    max_wait: int = 2000
    timeout: int = 5000
    isolation_level: Optional[TransactionIsolationLevel] = None


@dataclass(frozen=True)
class QueryContext:
    """What a SQL comment plugin knows about the statement being sent."""

    model: Optional[str]
    action: str


CommentPlugin = Callable[[QueryContext], Mapping[str, str]]


# ── Storage adapters ───────────────────────────────────


class StorageAdapter(ABC):
    """Owns creation (and disposal) of the engine a client talks through."""

    @abstractmethod
    def create_engine(self) -> AsyncEngine:
        """Build or return the engine."""

    async def dispose(self, engine: AsyncEngine) -> None:
        await engine.dispose()


class SQLAlchemyAdapter(StorageAdapter):
    """Default adapter: a pooled async engine built from a database URL."""

    def __init__(self, url: str, pool_size: int = 10, echo: bool = False) -> None:
        self.url = normalize_database_url(url)
        self.pool_size = pool_size
        self.echo = echo

    def create_engine(self) -> AsyncEngine:
        try:
            return get_async_engine(self.url, pool_size=self.pool_size, echo=self.echo)
        except Exception as exc:
            raise ClientInitializationError(f"Cannot create engine for {self.url!r}: {exc}") from exc


class EngineAdapter(StorageAdapter):
    """Wrap an engine owned by someone else; disconnecting leaves it open."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    def create_engine(self) -> AsyncEngine:
        return self.engine

    async def dispose(self, engine: AsyncEngine) -> None:
        return None


# ── Options ────────────────────────────────────────────


@dataclass
class ClientOptions:
    datasource_url: Optional[str] = None
    adapter: Optional[StorageAdapter] = None
    accelerate_url: Optional[str] = None
    error_format: Optional[str] = None
    log: Optional[Sequence[Union[str, LogDefinition]]] = None
    transaction_options: Optional[TransactionOptions] = None
    omit: Dict[str, Dict[str, bool]] = field(default_factory=dict)
    comments: List[CommentPlugin] = field(default_factory=list)


def resolve_log_definitions(log: Sequence[Union[str, LogDefinition]]) -> Dict[str, LogDefinition]:
    """Normalise ``log`` into one definition per level."""
    resolved: Dict[str, LogDefinition] = {}
    for entry in log:
        definition = entry if isinstance(entry, LogDefinition) else LogDefinition(level=str(entry))
        resolved[definition.level] = definition
    return resolved


def resolve_adapter(options: ClientOptions, pool_size: int = 10, echo: bool = False) -> StorageAdapter:
    """Pick the adapter: explicit adapter, then accelerate URL, then datasource URL."""
    if options.adapter is not None:
        return options.adapter
    url = options.accelerate_url or options.datasource_url
    if not url:
        raise ClientInitializationError("No datasource_url configured")
    if options.accelerate_url:
        logger.info("Routing client through accelerator", extra={"url": options.accelerate_url})
    return SQLAlchemyAdapter(url, pool_size=pool_size, echo=echo)
