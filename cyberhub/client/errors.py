"""
Translation of SQLAlchemy / pydantic failures into the client error taxonomy,
and rendering of messages per ``error_format``.
"""

import re
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import DBAPIError, IntegrityError, InternalError, SQLAlchemyError

from cyberhub.exceptions import (
    ClientKnownRequestError,
    ClientUnknownRequestError,
    ClientValidationError,
    CyberHubException,
    EnginePanicError,
    ForeignKeyConstraintError,
    UniqueConstraintError,
)

_RED = "\x1b[31m"
_RESET = "\x1b[0m"

_SQLITE_FIELDS = re.compile(r"constraint failed: (.+)$", re.IGNORECASE | re.MULTILINE)
_PG_KEY = re.compile(r"Key \(([^)]*)\)=")
_PG_CONSTRAINT = re.compile(r'constraint "([^"]+)"')
_PG_NULL_COLUMN = re.compile(r'null value in column "([^"]+)"')


def format_message(message: str, model: Optional[str], action: str, error_format: str) -> str:
    """Render a client error message.

    Args:
        message: Bare error text.
        model: Delegate name (``user``), or ``None`` for raw queries.
        action: Operation name (``create``).
        error_format: ``pretty``, ``colorless`` or ``minimal``.

    Returns:
        The message, prefixed with an invocation header unless minimal.
    """
    if error_format == "minimal":
        return message
    target = f"client.{model}.{action}()" if model else f"client.{action}()"
    header = f"Invalid `{target}` invocation:"
    if error_format == "pretty":
        header = f"{_RED}{header}{_RESET}"
    return f"{header}\n\n{message}"


def _sqlite_fields(text: str) -> List[str]:
    match = _SQLITE_FIELDS.search(text)
    if not match:
        return []
    return [part.strip().split(".")[-1] for part in match.group(1).split(",") if part.strip()]


def _unique_target(text: str) -> List[str]:
    match = _PG_KEY.search(text)
    if match:
        return [name.strip().strip('"') for name in match.group(1).split(",")]
    return _sqlite_fields(text)


def translate_db_error(
    exc: SQLAlchemyError,
    model: Optional[str],
    action: str,
    error_format: str,
) -> CyberHubException:
    """Map a SQLAlchemy exception onto the client error hierarchy."""
    original = getattr(exc, "orig", None)
    text = str(original if original is not None else exc)
    lowered = text.lower()

    if isinstance(exc, IntegrityError):
        if "unique" in lowered or "duplicate key" in lowered:
            target = _unique_target(text)
            fields = ", ".join(f"`{name}`" for name in target) or "a unique field"
            return UniqueConstraintError(
                format_message(f"Unique constraint failed on the fields: ({fields})", model, action, error_format),
                meta={"target": target, "model": model},
            )
        if "foreign key" in lowered:
            constraint = _PG_CONSTRAINT.search(text)
            field_name = constraint.group(1) if constraint else None
            return ForeignKeyConstraintError(
                format_message(
                    f"Foreign key constraint failed on the field: `{field_name or 'foreign key'}`",
                    model,
                    action,
                    error_format,
                ),
                meta={"field_name": field_name, "model": model},
            )
        if "not null" in lowered or "null value" in lowered:
            column = _PG_NULL_COLUMN.search(text)
            names = [column.group(1)] if column else _sqlite_fields(text)
            return ClientKnownRequestError(
                format_message(f"Null constraint violation on the fields: ({', '.join(names)})", model, action, error_format),
                code="P2011",
                meta={"constraint": names, "model": model},
            )
        return ClientUnknownRequestError(format_message(text, model, action, error_format))

    if isinstance(exc, InternalError):
        return EnginePanicError(format_message(text, model, action, error_format))
    if isinstance(exc, DBAPIError):
        return ClientUnknownRequestError(format_message(text, model, action, error_format))
    return ClientUnknownRequestError(format_message(str(exc), model, action, error_format))


def validation_error(
    exc: ValidationError,
    model: Optional[str],
    action: str,
    error_format: str,
) -> ClientValidationError:
    """Turn a pydantic ``ValidationError`` into :class:`ClientValidationError`."""
    lines = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "(root)"
        lines.append(f"Argument `{location}`: {error.get('msg')}")
    return ClientValidationError(format_message("\n".join(lines), model, action, error_format))
