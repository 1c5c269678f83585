"""
Authentication and Authorization for the approval service.

Implements:
- JWT token-based authentication
- Approver roles and their ordering
- Role-based access control for API routes

Identity is issued upstream; this module only verifies bearer tokens
and turns them into an authentication context.
"""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from jose import JWTError, jwt
from pydantic import BaseModel, Field

from clearance.config import settings

logger = logging.getLogger(__name__)


class UserRole(str, Enum):
    """Approver roles, lowest authority first."""
    CLERK = "clerk"
    MANAGER = "manager"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


ROLE_RANK = {
    UserRole.CLERK: 1,
    UserRole.MANAGER: 2,
    UserRole.ADMIN: 3,
    UserRole.SUPER_ADMIN: 4,
}


class TokenType(str, Enum):
    """Types of JWT tokens."""
    ACCESS = "access"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenPayload(BaseModel):
    """JWT token payload."""
    sub: str                          # User ID
    type: TokenType                   # Token type
    role: UserRole                    # Approver role
    name: Optional[str] = None        # Display name
    exp: datetime                     # Expiration time
    iat: datetime = Field(default_factory=_utcnow)
    jti: Optional[str] = None


class User(BaseModel):
    """Authentication context for a reviewer."""
    id: str
    username: str
    full_name: Optional[str] = None
    role: UserRole = UserRole.CLERK
    is_active: bool = True

    @property
    def display_name(self) -> str:
        return self.full_name or self.username

    @property
    def rank(self) -> int:
        return ROLE_RANK[self.role]

    # Permissions (derived from role)
    @property
    def can_view_audit(self) -> bool:
        return self.role in [UserRole.MANAGER, UserRole.ADMIN, UserRole.SUPER_ADMIN]

    @property
    def can_export(self) -> bool:
        return self.role in [UserRole.ADMIN, UserRole.SUPER_ADMIN]

    @property
    def can_manage_routing(self) -> bool:
        """Delegation and reassignment need at least manager role."""
        return self.role in [UserRole.MANAGER, UserRole.ADMIN, UserRole.SUPER_ADMIN]


class AuthenticationError(Exception):
    """Raised when authentication fails."""
    pass


class AuthorizationError(Exception):
    """Raised when authorization fails."""
    pass


def create_access_token(
    user: User,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        user: User to create token for
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)

    payload = TokenPayload(
        sub=user.id,
        type=TokenType.ACCESS,
        role=user.role,
        name=user.full_name,
        exp=_utcnow() + expires_delta,
    )

    claims = payload.model_dump(mode="json", exclude_none=True)
    # Registered time claims must be numeric dates
    claims["exp"] = int(payload.exp.timestamp())
    claims["iat"] = int(payload.iat.timestamp())

    return jwt.encode(
        claims,
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )


def decode_token(token: str) -> TokenPayload:
    """
    Decode and validate a JWT token.

    Raises:
        AuthenticationError: If token is invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        return TokenPayload(**payload)
    except (JWTError, ValueError) as e:
        logger.warning(f"JWT decode failed: {e}")
        raise AuthenticationError("Invalid or expired token") from e


def verify_access_token(token: str) -> TokenPayload:
    """
    Verify an access token.

    Raises:
        AuthenticationError: If token is invalid, expired, or wrong type
    """
    payload = decode_token(token)

    if payload.type != TokenType.ACCESS:
        raise AuthenticationError("Invalid token type")

    return payload


def user_from_token(token: str) -> User:
    """Build the authentication context from a bearer token."""
    payload = verify_access_token(token)
    return User(
        id=payload.sub,
        username=payload.sub,
        full_name=payload.name,
        role=payload.role,
        is_active=True,
    )


def require_role(user: User, required_role: UserRole) -> None:
    """
    Check if user has the required role or higher.

    Raises:
        AuthorizationError: If user doesn't have required role
    """
    if ROLE_RANK.get(user.role, -1) < ROLE_RANK.get(required_role, 99):
        raise AuthorizationError(
            f"Insufficient permissions. Required: {required_role.value}, "
            f"Current: {user.role.value}"
        )
