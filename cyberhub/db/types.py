"""
Custom column types and the null sentinels for JSON payloads.

A JSON column has two different "nothing" values: the column can be
database ``NULL`` (no payload at all) or hold the JSON literal ``null``.
:class:`JsonPayload` keeps them apart so both survive a round-trip.
"""

import json
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import DateTime, Text
from sqlalchemy.types import TypeDecorator


class _NullSentinel:
    """Singleton marker for one of the JSON null flavours."""

    __slots__ = ("_name",)

    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name

    def __bool__(self) -> bool:
        return False

    def __reduce__(self) -> str:
        return self._name


DB_NULL = _NullSentinel("DB_NULL")
"""Write database ``NULL``; as a filter, match rows without a payload."""

JSON_NULL = _NullSentinel("JSON_NULL")
"""Write the JSON literal ``null``; read back as this same sentinel."""

ANY_NULL = _NullSentinel("ANY_NULL")
"""Filter only: match either flavour of null."""


class JsonPayload(TypeDecorator):
    """Serialize arbitrary JSON into a text column, keeping null flavours apart.

    ``None`` and :data:`DB_NULL` store database ``NULL``; :data:`JSON_NULL`
    stores the text ``null``.  On read, database ``NULL`` becomes ``None``
    and ``null`` becomes :data:`JSON_NULL`.
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Optional[str]:
        if value is None or value is DB_NULL:
            return None
        if value is JSON_NULL:
            return "null"
        if value is ANY_NULL:
            raise ValueError("ANY_NULL can only be used in filters")
        return json.dumps(value, separators=(",", ":"), sort_keys=False)

    def process_result_value(self, value: Optional[str], dialect: Any) -> Any:
        if value is None:
            return None
        decoded = json.loads(value)
        if decoded is None:
            return JSON_NULL
        return decoded


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite stores datetimes without an offset; values are normalised to UTC
    on write and tagged as UTC on read.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
