"""
CyberHubClient: the asynchronous data-access entry point.

Usage::

    async with CyberHubClient(datasource_url="sqlite+aiosqlite:///./cyberhub.db") as client:
        computer = await client.computer.find_unique({"device_token": token})

Every operation is a coroutine.  Outside a transaction each operation runs
in its own session and commits on success.  ``transaction([...])`` runs a
list of delegate coroutines on one session; ``interactive_transaction(fn)``
hands ``fn`` a :class:`TransactionClient` bound to one session.
"""

import asyncio
import dataclasses
import inspect
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from cyberhub.client.delegate import ModelDelegate
from cyberhub.client.errors import format_message, translate_db_error
from cyberhub.client.events import QUERY_CONTEXT_KEY, EventCallback, EventEmitter
from cyberhub.client.options import (
    ERROR_FORMATS,
    ClientOptions,
    QueryContext,
    TransactionIsolationLevel,
    TransactionOptions,
    resolve_adapter,
    resolve_log_definitions,
)
from cyberhub.client.registry import MODEL_SPECS
from cyberhub.config import get_settings
from cyberhub.db.engine import get_session_factory
from cyberhub.exceptions import (
    ClientInitializationError,
    ClientValidationError,
    CyberHubException,
    TransactionError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (client, session) of the batch transaction running in the current task
_batch_session: ContextVar[Optional[Tuple["CyberHubClient", AsyncSession]]] = ContextVar(
    "cyberhub_batch_session", default=None
)


class BaseClient:
    """Delegates and raw-query methods shared by the client and transaction clients."""

    organization: ModelDelegate
    cyber_center: ModelDelegate
    computer: ModelDelegate
    session: ModelDelegate
    pricing: ModelDelegate
    user: ModelDelegate
    event: ModelDelegate
    command: ModelDelegate

    _error_format: str
    _global_omit: Dict[str, Dict[str, bool]]
    _emitter: EventEmitter

    def _install_delegates(self) -> None:
        for name, spec in MODEL_SPECS.items():
            setattr(self, name, ModelDelegate(self, spec))

    def _session_scope(self) -> Any:
        raise NotImplementedError

    def _translate(self, exc: SQLAlchemyError, model: Optional[str], action: str) -> CyberHubException:
        error = translate_db_error(exc, model, action, self._error_format)
        self._emitter.emit_log("error", str(error))
        return error

    @asynccontextmanager
    async def _operation(self, model: Optional[str], action: str) -> AsyncIterator[AsyncSession]:
        """Yield a session for one operation, translating database errors."""
        try:
            async with self._session_scope() as session:
                connection = await session.connection()
                connection.info[QUERY_CONTEXT_KEY] = QueryContext(model=model, action=action)
                try:
                    yield session
                finally:
                    connection.info.pop(QUERY_CONTEXT_KEY, None)
        except SQLAlchemyError as exc:
            raise self._translate(exc, model, action) from exc

    def _check_sql(self, sql: Any, action: str) -> None:
        if not isinstance(sql, str) or not sql.strip():
            raise ClientValidationError(
                format_message("Argument `sql` must be a non-empty string", None, action, self._error_format)
            )

    # ── Raw SQL ────────────────────────────────────────

    async def execute_raw(self, sql: str, **params: Any) -> int:
        """Run a statement with named bind parameters (``:name``).

        Returns:
            Number of affected rows.
        """
        self._check_sql(sql, "execute_raw")
        async with self._operation(None, "execute_raw") as session:
            result = await session.execute(text(sql), params)
            return result.rowcount

    async def query_raw(self, sql: str, **params: Any) -> List[Dict[str, Any]]:
        """Run a query with named bind parameters and return rows as dicts."""
        self._check_sql(sql, "query_raw")
        async with self._operation(None, "query_raw") as session:
            result = await session.execute(text(sql), params)
            return [dict(row) for row in result.mappings().all()]

    async def execute_raw_unsafe(self, sql: str, *values: Any) -> int:
        """Send ``sql`` to the driver as-is, with positional driver parameters.

        The placeholder style is the driver's (``?`` for SQLite, ``$1`` for
        asyncpg).  Never build ``sql`` from untrusted input.
        """
        self._check_sql(sql, "execute_raw_unsafe")
        async with self._operation(None, "execute_raw_unsafe") as session:
            connection = await session.connection()
            result = await connection.exec_driver_sql(sql, tuple(values) if values else None)
            return result.rowcount

    async def query_raw_unsafe(self, sql: str, *values: Any) -> List[Dict[str, Any]]:
        self._check_sql(sql, "query_raw_unsafe")
        async with self._operation(None, "query_raw_unsafe") as session:
            connection = await session.connection()
            result = await connection.exec_driver_sql(sql, tuple(values) if values else None)
            return [dict(row) for row in result.mappings().all()]


class TransactionClient(BaseClient):
    """Client handed to an interactive transaction callback; every call shares one session."""

    def __init__(self, root: "CyberHubClient", session: AsyncSession) -> None:
        self._root = root
        self._session = session
        self._closed = False
        self._error_format = root._error_format
        self._global_omit = root._global_omit
        self._emitter = root._emitter
        self._install_delegates()

    def close(self) -> None:
        self._closed = True

    @asynccontextmanager
    async def _session_scope(self) -> AsyncIterator[AsyncSession]:
        if self._closed:
            raise TransactionError(
                format_message(
                    "Transaction already closed: a query cannot be executed on a closed transaction.",
                    None,
                    "interactive_transaction",
                    self._error_format,
                )
            )
        yield self._session


class CyberHubClient(BaseClient):
    """Async data-access client for the cyber center schema.

    Args:
        options: Full :class:`ClientOptions`; unset fields come from settings.
        **overrides: Shorthand for ``ClientOptions`` fields when ``options``
            is not given, e.g. ``CyberHubClient(datasource_url=...)``.

    Raises:
        ClientInitializationError: If the options are inconsistent.
    """

    def __init__(self, options: Optional[ClientOptions] = None, **overrides: Any) -> None:
        if options is None:
            options = ClientOptions(**overrides)
        elif overrides:
            options = dataclasses.replace(options, **overrides)

        settings = get_settings()
        if options.adapter is None and options.datasource_url is None:
            options = dataclasses.replace(options, datasource_url=settings.database.url)
        if options.accelerate_url is None and settings.client.accelerate_url:
            options = dataclasses.replace(options, accelerate_url=settings.client.accelerate_url)
        self._options = options

        self._error_format = options.error_format or settings.client.error_format
        if self._error_format not in ERROR_FORMATS:
            raise ClientInitializationError(
                f"error_format must be one of {ERROR_FORMATS}, got {self._error_format!r}"
            )

        log = options.log if options.log is not None else settings.client.log_levels
        self._emitter = EventEmitter(resolve_log_definitions(log), options.comments)

        if options.transaction_options is not None:
            self._tx_options = options.transaction_options
        else:
            level = settings.transactions.isolation_level
            self._tx_options = TransactionOptions(
                max_wait=settings.transactions.max_wait_ms,
                timeout=settings.transactions.timeout_ms,
                isolation_level=TransactionIsolationLevel[level] if level else None,
            )

        self._global_omit = self._check_omit(options.omit)
        self._adapter = resolve_adapter(options, pool_size=settings.database.pool_size, echo=settings.database.echo)
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self._install_delegates()

    @staticmethod
    def _check_omit(omit: Dict[str, Dict[str, bool]]) -> Dict[str, Dict[str, bool]]:
        for model_name, fields in omit.items():
            spec = MODEL_SPECS.get(model_name)
            if spec is None:
                raise ClientInitializationError(f"omit: unknown model {model_name!r}")
            unknown = set(fields) - set(spec.columns)
            if unknown:
                raise ClientInitializationError(f"omit: unknown fields {sorted(unknown)} on {model_name!r}")
        return {name: dict(fields) for name, fields in omit.items()}

    # ── Lifecycle ──────────────────────────────────────

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise ClientInitializationError("Client is not connected")
        return self._engine

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    async def connect(self) -> None:
        """Create the engine and check the database answers.

        Raises:
            ClientInitializationError: The database cannot be reached.
        """
        if self._engine is not None:
            return
        engine = self._adapter.create_engine()
        self._emitter.attach(engine)
        self._engine = engine
        self._session_factory = get_session_factory(engine)
        try:
            async with engine.connect() as connection:
                await connection.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as exc:
            await self.disconnect()
            raise ClientInitializationError(f"Can't reach database server: {exc}") from exc
        self._emitter.emit_log("info", f"Starting a {engine.dialect.name} pool")
        logger.info("Client connected", extra={"dialect": engine.dialect.name})

    async def disconnect(self) -> None:
        if self._engine is None:
            return
        engine = self._engine
        self._emitter.detach()
        self._engine = None
        self._session_factory = None
        await self._adapter.dispose(engine)
        logger.info("Client disconnected", extra={})

    async def __aenter__(self) -> "CyberHubClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    def on(self, event: str, callback: EventCallback) -> None:
        """Subscribe to ``query`` / ``info`` / ``warn`` / ``error`` events."""
        self._emitter.on(event, callback)

    # ── Sessions ───────────────────────────────────────

    @asynccontextmanager
    async def _session_scope(self) -> AsyncIterator[AsyncSession]:
        active = _batch_session.get()
        if active is not None and active[0] is self:
            yield active[1]
            return
        await self.connect()
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except BaseException:
                await session.rollback()
                raise

    async def _begin(self, session: AsyncSession, isolation_level: Optional[TransactionIsolationLevel]) -> None:
        if isolation_level is None:
            await session.connection()
        else:
            level = TransactionIsolationLevel(isolation_level)
            await session.connection(execution_options={"isolation_level": level.value})

    # ── Transactions ───────────────────────────────────

    async def transaction(
        self,
        operations: Iterable[Awaitable[Any]],
        isolation_level: Optional[TransactionIsolationLevel] = None,
    ) -> List[Any]:
        """Run delegate coroutines in order inside one transaction.

        Args:
            operations: Un-awaited delegate calls, e.g.
                ``[client.user.update(...), client.session.create(...)]``.
            isolation_level: Optional isolation level for the transaction.

        Returns:
            The results, in order.  If any operation fails nothing is
            committed and operations that never started are closed.
        """
        pending = list(operations)
        await self.connect()
        async with self._session_factory() as session:
            token = _batch_session.set((self, session))
            started = 0
            try:
                await self._begin(session, isolation_level)
                results = []
                for operation in pending:
                    started += 1
                    results.append(await operation)
                await session.commit()
                return results
            except BaseException as exc:
                for operation in pending[started:]:
                    if inspect.iscoroutine(operation):
                        operation.close()
                await session.rollback()
                if isinstance(exc, SQLAlchemyError):
                    raise self._translate(exc, None, "transaction") from exc
                raise
            finally:
                _batch_session.reset(token)

    async def interactive_transaction(
        self,
        fn: Callable[[TransactionClient], Awaitable[T]],
        *,
        max_wait: Optional[int] = None,
        timeout: Optional[int] = None,
        isolation_level: Optional[TransactionIsolationLevel] = None,
    ) -> T:
        """Run ``fn(tx)`` inside one transaction and commit if it returns.

        Args:
            fn: Coroutine function receiving a :class:`TransactionClient`.
            max_wait: Milliseconds allowed to acquire a connection and begin.
            timeout: Milliseconds allowed for ``fn`` to finish.
            isolation_level: Overrides ``transaction_options.isolation_level``.

        Returns:
            Whatever ``fn`` returns.

        Raises:
            TransactionError: ``max_wait`` or ``timeout`` was exceeded; the
                transaction is rolled back.
        """
        max_wait = self._tx_options.max_wait if max_wait is None else max_wait
        timeout = self._tx_options.timeout if timeout is None else timeout
        if isolation_level is None:
            isolation_level = self._tx_options.isolation_level

        await self.connect()
        session = self._session_factory()
        tx = TransactionClient(self, session)
        try:
            try:
                await asyncio.wait_for(self._begin(session, isolation_level), max_wait / 1000.0)
            except asyncio.TimeoutError as exc:
                raise TransactionError(
                    format_message(
                        f"Unable to start a transaction in the given time ({max_wait} ms).",
                        None,
                        "interactive_transaction",
                        self._error_format,
                    ),
                    meta={"max_wait": max_wait},
                ) from exc
            try:
                result = await asyncio.wait_for(fn(tx), timeout / 1000.0)
            except asyncio.TimeoutError as exc:
                raise TransactionError(
                    format_message(
                        "Transaction already closed: a query cannot be executed on an expired transaction. "
                        f"The timeout for this transaction was {timeout} ms.",
                        None,
                        "interactive_transaction",
                        self._error_format,
                    ),
                    meta={"timeout": timeout},
                ) from exc
            finally:
                tx.close()
            await session.commit()
            return result
        except SQLAlchemyError as exc:
            await session.rollback()
            raise self._translate(exc, None, "interactive_transaction") from exc
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()
