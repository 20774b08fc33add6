"""
CyberHub exception hierarchy.

All custom exceptions inherit from CyberHubException so callers can
catch a single base type when they want a broad safety net.  The
``Client*`` classes form the error taxonomy surfaced by
:class:`cyberhub.client.CyberHubClient`; the rest are raised by the
domain services.
"""

from typing import Any, Dict, Optional


class CyberHubException(Exception):
    """Base exception for all CyberHub errors."""


class ConfigurationError(CyberHubException, ValueError):
    """Raised when configuration is invalid or cannot be loaded."""


# ── Client error taxonomy ──────────────────────────────


class ClientKnownRequestError(CyberHubException):
    """The request reached the database and failed for a known reason.

    Attributes:
        code: Stable error code (``P2002``, ``P2003``, ``P2025``, ``P2028``).
        meta: Extra details, e.g. ``{"target": ["email"]}``.
    """

    code: str = "P2000"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        self.meta: Dict[str, Any] = meta or {}


class UniqueConstraintError(ClientKnownRequestError):
    """A unique constraint was violated."""

    code = "P2002"


class ForeignKeyConstraintError(ClientKnownRequestError):
    """A foreign key constraint was violated."""

    code = "P2003"


class RecordNotFoundError(ClientKnownRequestError):
    """An operation that requires a matching row found none."""

    code = "P2025"


class TransactionError(ClientKnownRequestError):
    """An interactive transaction could not start or exceeded its timeout."""

    code = "P2028"


class ClientUnknownRequestError(CyberHubException):
    """The database returned an error the client cannot classify."""


class EnginePanicError(CyberHubException):
    """The query-execution engine failed internally."""


class ClientInitializationError(CyberHubException):
    """The client could not connect or was misconfigured at startup."""


class ClientValidationError(CyberHubException, ValueError):
    """Arguments failed shape validation before any database call."""


# ── Domain errors ──────────────────────────────────────


class ConflictError(CyberHubException):
    """An entity is not in a state that allows the requested operation."""


class InsufficientBalanceError(ConflictError):
    """A user's balance does not cover a session's cost."""


class AuthenticationError(CyberHubException):
    """Credentials or an access token were rejected."""


class ForbiddenError(CyberHubException):
    """The caller is authenticated but their role does not allow the operation."""
