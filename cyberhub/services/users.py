"""
User accounts: registration, login with JWT access tokens, balance top-ups.

Passwords are hashed with bcrypt.  Records returned from this service never
carry ``password_hash``.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

import bcrypt
import jwt
from pydantic import BaseModel

from cyberhub.client import CyberHubClient, TransactionClient
from cyberhub.client.schemas import UserRecord
from cyberhub.config import Settings, get_settings
from cyberhub.db.models import EventType, UserRole, utcnow
from cyberhub.exceptions import AuthenticationError, ClientValidationError
from cyberhub.services.events import EventLog

logger = logging.getLogger(__name__)

_HIDE_HASH = {"password_hash": True}


class AuthResult(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserRecord


def get_password_hash(password: str, rounds: int = 12) -> str:
    pwd_bytes = password.encode("utf-8")
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(pwd_bytes, salt).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


class UserService:
    """Registration, authentication and balances."""

    def __init__(self, client: CyberHubClient, settings: Optional[Settings] = None) -> None:
        self._client = client
        self._settings = settings or get_settings()

    async def register(
        self,
        email: str,
        password: str,
        role: UserRole = UserRole.USER,
        cyber_center_id: Optional[str] = None,
    ) -> UserRecord:
        """Create an account.

        Raises:
            ClientValidationError: Empty password or malformed email.
            UniqueConstraintError: The email is already registered.
        """
        if not password:
            raise ClientValidationError("Password must not be empty")
        user = await self._client.user.create(
            {
                "email": email.strip().lower(),
                "password_hash": get_password_hash(password, self._settings.auth.bcrypt_rounds),
                "role": role,
                "cyber_center_id": cyber_center_id,
            },
            omit=_HIDE_HASH,
        )
        logger.info("User registered", extra={"user_id": user.id, "role": user.role.value})
        return user

    async def login(self, email: str, password: str) -> AuthResult:
        """Check credentials and issue an access token.

        Raises:
            AuthenticationError: Unknown email or wrong password.
        """
        user = await self._client.user.find_unique(
            {"email": email.strip().lower()}, omit={"password_hash": False}
        )
        if user is None or not verify_password(password, user.password_hash or ""):
            raise AuthenticationError("Incorrect email or password")

        await EventLog(self._client).record(EventType.USER_LOGIN, user_id=user.id)
        logger.info("User logged in", extra={"user_id": user.id})
        return AuthResult(
            access_token=self.create_access_token(user),
            user=user.model_copy(update={"password_hash": None}),
        )

    def create_access_token(self, user: UserRecord) -> str:
        auth = self._settings.auth
        now = utcnow()
        claims: Dict[str, Any] = {
            "sub": user.id,
            "email": user.email,
            "role": user.role.value,
            "iat": now,
            "exp": now + timedelta(minutes=auth.access_token_expire_minutes),
        }
        return jwt.encode(claims, auth.secret_key, algorithm=auth.algorithm)

    def decode_token(self, token: str) -> Dict[str, Any]:
        """Verify a token and return its claims.

        Raises:
            AuthenticationError: Bad signature, malformed or expired token.
        """
        auth = self._settings.auth
        try:
            return jwt.decode(token, auth.secret_key, algorithms=[auth.algorithm])
        except jwt.PyJWTError as exc:
            raise AuthenticationError(f"Invalid token: {exc}") from exc

    async def logout(self, user_id: str) -> None:
        await self.get_user(user_id)
        await EventLog(self._client).record(EventType.USER_LOGOUT, user_id=user_id)
        logger.info("User logged out", extra={"user_id": user_id})

    async def top_up(self, user_id: str, amount: int) -> UserRecord:
        """Add ``amount`` to the user's balance atomically.

        Raises:
            ClientValidationError: ``amount`` is not positive.
            RecordNotFoundError: Unknown user.
        """
        if amount <= 0:
            raise ClientValidationError(f"Top-up amount must be positive, got {amount}")

        async def _top_up(tx: TransactionClient) -> UserRecord:
            return await tx.user.update(
                {"id": user_id}, {"balance": {"increment": amount}}, omit=_HIDE_HASH
            )

        user = await self._client.interactive_transaction(_top_up)
        logger.info("Balance topped up", extra={"user_id": user_id, "amount": amount, "balance": user.balance})
        return user

    async def get_user(self, user_id: str) -> UserRecord:
        return await self._client.user.find_unique_or_raise({"id": user_id}, omit=_HIDE_HASH)

    async def list_users(self, cyber_center_id: Optional[str] = None) -> List[UserRecord]:
        where = {"cyber_center_id": cyber_center_id} if cyber_center_id is not None else None
        return await self._client.user.find_many(where=where, order_by={"created_at": "asc"}, omit=_HIDE_HASH)
