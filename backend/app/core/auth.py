from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

import jwt
from fastapi import Depends, HTTPException, Request

from app.core.config import settings

JWT_ALGORITHM = "HS256"


class UserRole(str, Enum):
    USER = "USER"
    OWNER = "OWNER"
    ADMIN = "ADMIN"


@dataclass(frozen=True)
class CurrentUser:
    """The authenticated caller, as asserted by the marketplace auth service."""

    id: int
    role: UserRole = UserRole.USER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def issue_access_token(user_id: int, role: UserRole = UserRole.USER, hours: int = 12) -> str:
    """Generate a bearer token in the format the marketplace auth service issues."""
    payload = {
        "sub": str(user_id),
        "role": role.value,
        "exp": datetime.now(UTC) + timedelta(hours=hours),
    }
    return jwt.encode(payload, settings.AUTH_JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_access_token(token: str) -> CurrentUser:
    """Decode and validate a bearer token.

    Raises jwt.ExpiredSignatureError or jwt.InvalidTokenError on failure.
    """
    payload = jwt.decode(token, settings.AUTH_JWT_SECRET, algorithms=[JWT_ALGORITHM])
    try:
        return CurrentUser(id=int(payload["sub"]), role=UserRole(payload.get("role", "USER")))
    except (KeyError, TypeError, ValueError):
        raise jwt.InvalidTokenError("Invalid token claims") from None


def get_current_user(request: Request) -> CurrentUser:
    """Extract the caller from the Authorization header."""
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise HTTPException(status_code=401, detail="Authorization header is required")

    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    token = auth_header[7:]
    if not token:
        raise HTTPException(status_code=401, detail="Access token is required")

    try:
        return verify_access_token(token)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Access token has expired") from None
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid access token") from None


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
