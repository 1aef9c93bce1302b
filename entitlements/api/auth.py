"""
Authentication and authorization for the entitlement API.

Users are authenticated upstream; this module verifies the bearer JWT and
turns its claims into a :class:`User`. Roles come from the ``role`` claim
resolved at sign-in, so admin access is a claim check rather than an
identity comparison.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr
import jwt
from enum import Enum

from entitlements.config.settings import get_settings
from entitlements.utils.logging import get_logger

logger = get_logger(__name__)

# JWT token security
security = HTTPBearer()


class UserRole(str, Enum):
    """User roles for access control."""
    ADMIN = "admin"
    SERVICE = "service"
    USER = "user"


class User(BaseModel):
    """Authenticated principal built from token claims."""
    id: str
    email: Optional[EmailStr] = None
    role: UserRole = UserRole.USER
    wallet_address: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class TokenData(BaseModel):
    """Token payload data."""
    user_id: str
    email: Optional[str] = None
    role: UserRole
    wallet_address: Optional[str] = None
    exp: datetime


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token."""
    settings = get_settings()
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(hours=settings.api.jwt_expiry_hours)

    to_encode.update({"exp": expire})

    return jwt.encode(
        to_encode,
        settings.api.jwt_secret,
        algorithm=settings.api.jwt_algorithm
    )


def verify_token(token: str) -> TokenData:
    """Verify and decode JWT token."""
    settings = get_settings()

    try:
        payload = jwt.decode(
            token,
            settings.api.jwt_secret,
            algorithms=[settings.api.jwt_algorithm],
            options={"require": ["exp", "sub"]}
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired"
        )
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token"
        )

    user_id = payload.get("sub")
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload"
        )

    try:
        role = UserRole(payload.get("role", UserRole.USER.value))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token role"
        )

    return TokenData(
        user_id=str(user_id),
        email=payload.get("email"),
        role=role,
        wallet_address=payload.get("wallet"),
        exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
    )


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> User:
    """Get current authenticated user from JWT token."""
    token_data = verify_token(credentials.credentials)
    return User(
        id=token_data.user_id,
        email=token_data.email,
        role=token_data.role,
        wallet_address=token_data.wallet_address
    )


def require_role(*allowed_roles: UserRole):
    """Dependency to require one of ``allowed_roles``."""
    def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in allowed_roles:
            logger.warning(f"User {current_user.id} with role {current_user.role.value} denied")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions"
            )
        return current_user

    return role_checker
