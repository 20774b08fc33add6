"""
Query and log event emission.

Log levels configured with ``emit="stdout"`` are written to the
``cyberhub.client.<level>`` loggers; levels with ``emit="event"`` are
delivered to callbacks registered through ``client.on(level, callback)``.
"""

import json
import logging
import time
import urllib.parse
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine

from cyberhub.client.options import LOG_LEVELS, CommentPlugin, LogDefinition, QueryContext

logger = logging.getLogger(__name__)

QUERY_CONTEXT_KEY = "cyberhub.query_context"
_QUERY_START_ATTR = "_cyberhub_query_start"

_STDOUT_LEVELS = {
    "query": logging.INFO,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class QueryEvent:
    timestamp: datetime
    query: str
    params: str
    duration: float
    target: str = "cyberhub.client.query"


@dataclass
class LogEvent:
    timestamp: datetime
    message: str
    target: str


EventCallback = Callable[[Any], None]


def render_sql_comment(tags: Mapping[str, Any]) -> str:
    """Render tags in sqlcommenter form: ``/*a='1',b='x%20y'*/``, keys sorted."""
    if not tags:
        return ""
    parts = []
    for key in sorted(tags):
        value = urllib.parse.quote(str(tags[key]), safe="")
        parts.append(f"{urllib.parse.quote(str(key), safe='')}='{value}'")
    return "/*" + ",".join(parts) + "*/"


class EventEmitter:
    """Routes client log output per level and times every statement."""

    def __init__(self, definitions: Dict[str, LogDefinition], comments: Sequence[CommentPlugin] = ()) -> None:
        self._definitions = definitions
        self._comments = list(comments)
        self._callbacks: Dict[str, List[EventCallback]] = {level: [] for level in LOG_LEVELS}
        self._engine: Optional[AsyncEngine] = None

    def on(self, level: str, callback: EventCallback) -> None:
        if level not in self._callbacks:
            raise ValueError(f"Unknown event {level!r}; expected one of {LOG_LEVELS}")
        self._callbacks[level].append(callback)

    def enabled(self, level: str) -> bool:
        return level in self._definitions

    def _dispatch(self, level: str, payload: Any, text: str, extra: Dict[str, Any]) -> None:
        definition = self._definitions.get(level)
        if definition is None:
            return
        if definition.emit == "event":
            for callback in list(self._callbacks[level]):
                callback(payload)
        else:
            logging.getLogger(f"cyberhub.client.{level}").log(_STDOUT_LEVELS[level], text, extra=extra)

    def emit_log(self, level: str, message: str, target: Optional[str] = None) -> None:
        log_event = LogEvent(
            timestamp=datetime.now(timezone.utc),
            message=message,
            target=target or f"cyberhub.client.{level}",
        )
        self._dispatch(level, log_event, message, {"target": log_event.target})

    def emit_query(self, statement: str, parameters: Any, duration_ms: float) -> None:
        query_event = QueryEvent(
            timestamp=datetime.now(timezone.utc),
            query=statement,
            params=json.dumps(parameters, default=str),
            duration=duration_ms,
        )
        self._dispatch(
            "query",
            query_event,
            statement,
            {"params": query_event.params, "duration_ms": round(duration_ms, 3)},
        )

    # ── Engine hooks ───────────────────────────────────

    def attach(self, engine: AsyncEngine) -> None:
        """Listen to cursor execution on ``engine`` for timing and comments."""
        self._engine = engine
        event.listen(engine.sync_engine, "before_cursor_execute", self._before_cursor_execute, retval=True)
        event.listen(engine.sync_engine, "after_cursor_execute", self._after_cursor_execute)

    def detach(self) -> None:
        if self._engine is None:
            return
        event.remove(self._engine.sync_engine, "before_cursor_execute", self._before_cursor_execute)
        event.remove(self._engine.sync_engine, "after_cursor_execute", self._after_cursor_execute)
        self._engine = None

    def _before_cursor_execute(self, conn, cursor, statement, parameters, context, executemany):
        # failed statements never reach after_cursor_execute
        if context is not None:
            setattr(context, _QUERY_START_ATTR, time.perf_counter())
        if self._comments:
            query_context = conn.info.get(QUERY_CONTEXT_KEY) or QueryContext(model=None, action="unknown")
            tags: Dict[str, Any] = {}
            for plugin in self._comments:
                tags.update(plugin(query_context) or {})
            comment = render_sql_comment(tags)
            if comment:
                statement = f"{statement} {comment}"
        return statement, parameters

    def _after_cursor_execute(self, conn, cursor, statement, parameters, context, executemany):
        started = getattr(context, _QUERY_START_ATTR, None)
        if started is None:
            return
        duration_ms = (time.perf_counter() - started) * 1000.0
        if self.enabled("query"):
            self.emit_query(statement, parameters, duration_ms)
