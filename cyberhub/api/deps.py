"""
Request dependencies: services from ``app.state`` and bearer-token auth.
"""

from typing import Any, Dict, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from cyberhub.db.models import UserRole
from cyberhub.exceptions import AuthenticationError, ForbiddenError
from cyberhub.services import (
    CenterService,
    CommandService,
    ComputerService,
    EventLog,
    PricingService,
    SessionService,
    UserService,
)

_bearer = HTTPBearer(auto_error=False)


def get_users(request: Request) -> UserService:
    return request.app.state.users


def get_centers(request: Request) -> CenterService:
    return request.app.state.centers


def get_computers(request: Request) -> ComputerService:
    return request.app.state.computers


def get_sessions(request: Request) -> SessionService:
    return request.app.state.sessions


def get_commands(request: Request) -> CommandService:
    return request.app.state.commands


def get_pricing(request: Request) -> PricingService:
    return request.app.state.pricing


def get_event_log(request: Request) -> EventLog:
    return request.app.state.event_log


def current_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    users: UserService = Depends(get_users),
) -> Dict[str, Any]:
    """Claims of the caller's access token.

    Raises:
        AuthenticationError: No bearer token, or the token is invalid.
    """
    if credentials is None:
        raise AuthenticationError("Bearer token required")
    return users.decode_token(credentials.credentials)


def optional_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    users: UserService = Depends(get_users),
) -> Optional[Dict[str, Any]]:
    """Claims of the caller's access token, or None for anonymous callers."""
    if credentials is None:
        return None
    return users.decode_token(credentials.credentials)


def staff_claims(claims: Dict[str, Any] = Depends(current_claims)) -> Dict[str, Any]:
    if claims.get("role") not in (UserRole.ADMIN.value, UserRole.STAFF.value):
        raise ForbiddenError("Staff or admin role required")
    return claims
