from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import Depends, Request
from jose import JWTError, jwt

from quotebid.core.clock import utcnow
from quotebid.core.config import settings
from quotebid.core.exceptions import AuthenticationError, AuthorizationError
from quotebid.core.logging import get_structlog_logger

logger = get_structlog_logger(__name__)

ROLES = ("admin", "user")


@dataclass(frozen=True)
class CurrentUser:
    id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class TokenManager:
    """Issue and verify bearer JWTs."""

    @staticmethod
    def create_access_token(
        user_id: int,
        role: str = "user",
        expires_delta: Optional[timedelta] = None,
    ) -> str:
        if role not in ROLES:
            raise ValueError(f"role must be one of {ROLES}")
        now = utcnow()
        expire = now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
        claims = {
            "sub": str(user_id),
            "role": role,
            "exp": expire,
            "iat": now,
            "jti": str(uuid4()),
            "type": "access",
        }
        return jwt.encode(claims, settings.secret_key, algorithm=settings.algorithm)

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        """Decode and validate; expiry is checked by jose."""
        return jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
            options={"verify_aud": False},
        )


def _extract_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        return None

    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() not in ("bearer", "token"):
        return None
    return parts[1]


async def get_current_user(request: Request) -> CurrentUser:
    token = _extract_token(request)
    if not token:
        logger.warning("auth.missing_token", path=request.url.path, method=request.method)
        raise AuthenticationError(message="Authentication token is required", code="missing_token")

    try:
        payload = TokenManager.verify_token(token)
    except JWTError as e:
        logger.warning("auth.invalid_token", error=str(e), path=request.url.path)
        raise AuthenticationError(message="Invalid authentication token", code="invalid_token") from e

    try:
        user = CurrentUser(id=int(payload.get("sub")), role=payload.get("role", "user"))
    except (TypeError, ValueError) as e:
        raise AuthenticationError(message="Invalid token subject", code="invalid_token") from e

    if user.role not in ROLES:
        raise AuthenticationError(message="Invalid token role", code="invalid_token")

    request.state.user = user
    logger.debug("auth.authenticated", user_id=user.id, role=user.role, path=request.url.path)
    return user


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        logger.warning("auth.admin_required", user_id=user.id)
        raise AuthorizationError(message="Admin access required", code="admin_required")
    return user
