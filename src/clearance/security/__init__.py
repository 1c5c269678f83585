"""
Clearance Security Module

Provides JWT authentication and approver role checks.
"""

from clearance.security.auth import (
    AuthenticationError,
    AuthorizationError,
    User,
    UserRole,
    create_access_token,
    require_role,
    user_from_token,
    verify_access_token,
)

__all__ = [
    "AuthenticationError",
    "AuthorizationError",
    "User",
    "UserRole",
    "create_access_token",
    "require_role",
    "user_from_token",
    "verify_access_token",
]
