from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status

from cyberhub.api.deps import current_claims, get_users, optional_claims, staff_claims
from cyberhub.api.schemas import LoginRequest, RegisterRequest, TopUpRequest
from cyberhub.client.schemas import UserRecord
from cyberhub.db.models import UserRole
from cyberhub.exceptions import ForbiddenError
from cyberhub.services import AuthResult, UserService

auth_router = APIRouter(prefix="/auth", tags=["Auth"])


@auth_router.post("/register", response_model=UserRecord, status_code=status.HTTP_201_CREATED)
async def register(
    body: RegisterRequest,
    claims: Optional[Dict[str, Any]] = Depends(optional_claims),
    users: UserService = Depends(get_users),
) -> UserRecord:
    """Create an account.  Anyone may sign up as USER; other roles need an admin token."""
    if body.role != UserRole.USER and (claims is None or claims.get("role") != UserRole.ADMIN.value):
        raise ForbiddenError(f"Only admins can create {body.role.value} accounts")
    return await users.register(
        email=body.email,
        password=body.password,
        role=body.role,
        cyber_center_id=body.cyber_center_id,
    )


@auth_router.post("/login", response_model=AuthResult)
async def login(body: LoginRequest, users: UserService = Depends(get_users)) -> AuthResult:
    return await users.login(body.email, body.password)


@auth_router.post("/logout")
async def logout(
    claims: Dict[str, Any] = Depends(current_claims),
    users: UserService = Depends(get_users),
) -> Dict[str, Any]:
    await users.logout(claims["sub"])
    return {"ok": True}


@auth_router.post("/top-up", response_model=UserRecord)
async def top_up(
    body: TopUpRequest,
    claims: Dict[str, Any] = Depends(staff_claims),
    users: UserService = Depends(get_users),
) -> UserRecord:
    """Credit a user's balance (staff and admins only)."""
    return await users.top_up(body.user_id, body.amount)
