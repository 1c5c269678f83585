"""
FastAPI dependencies for the API.

Provides:
- JWT-based authentication
- Role-based authorization
- Access to the approval service
"""

import logging
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from clearance.config import settings
from clearance.security.auth import (
    AuthenticationError,
    AuthorizationError,
    User as AuthUser,
    UserRole,
    require_role,
    user_from_token,
)
from clearance.workflow.service import ApprovalService

logger = logging.getLogger(__name__)


# HTTP Bearer token extractor
security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    # Development fallback headers (only work when not in production)
    x_user_id: Annotated[Optional[str], Header()] = None,
    x_user_name: Annotated[Optional[str], Header()] = None,
    x_user_role: Annotated[Optional[str], Header()] = None,
) -> AuthUser:
    """
    Get current authenticated user from JWT token.

    In development mode, also accepts X-User-* headers for testing.
    In production, ONLY JWT tokens are accepted.

    Raises:
        HTTPException: 401 if not authenticated
    """
    if credentials:
        try:
            return user_from_token(credentials.credentials)
        except AuthenticationError as e:
            logger.warning(f"JWT authentication failed: {e}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or expired token",
                headers={"WWW-Authenticate": "Bearer"},
            ) from e

    # Development fallback: accept headers (NOT in production)
    if not settings.is_production and x_user_id:
        logger.warning(
            f"Using development header auth for user: {x_user_id}. "
            "This is disabled in production!"
        )
        role = UserRole.CLERK
        if x_user_role:
            try:
                role = UserRole(x_user_role)
            except ValueError:
                role = UserRole.CLERK

        return AuthUser(
            id=x_user_id,
            username=x_user_id,
            full_name=x_user_name,
            role=role,
            is_active=True,
        )

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Authentication required",
        headers={"WWW-Authenticate": "Bearer"},
    )


User = Annotated[AuthUser, Depends(get_current_user)]


async def require_manager(user: User) -> AuthUser:
    """Require at least manager role."""
    try:
        require_role(user, UserRole.MANAGER)
        return user
    except AuthorizationError as e:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(e),
        ) from e


ManagerUser = Annotated[AuthUser, Depends(require_manager)]


def get_service(request: Request) -> ApprovalService:
    """Approval service created during app startup."""
    return request.app.state.service


Service = Annotated[ApprovalService, Depends(get_service)]


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None
