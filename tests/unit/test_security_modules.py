"""
Unit tests for Clearance security and configuration.

Tests:
- JWT access tokens
- Role ordering and role checks
- Settings validation
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from jose import jwt
from pydantic import ValidationError as PydanticValidationError

from clearance.config import Settings, settings
from clearance.security.auth import (
    AuthenticationError,
    AuthorizationError,
    User,
    UserRole,
    create_access_token,
    decode_token,
    require_role,
    user_from_token,
)


class TestAccessTokens:
    """Tests for JWT access tokens."""

    def test_round_trip(self):
        """A token issued for a user authenticates as that user."""
        user = User(id="admin-1", username="admin-1", full_name="Ada Admin", role=UserRole.ADMIN)
        token = create_access_token(user)

        restored = user_from_token(token)

        assert restored.id == "admin-1"
        assert restored.role == UserRole.ADMIN
        assert restored.display_name == "Ada Admin"

    def test_time_claims_are_numeric(self):
        user = User(id="clerk-1", username="clerk-1")
        claims = jwt.get_unverified_claims(create_access_token(user))
        assert isinstance(claims["exp"], int)
        assert isinstance(claims["iat"], int)
        assert "jti" not in claims

    def test_expired_token_rejected(self):
        user = User(id="clerk-1", username="clerk-1")
        token = create_access_token(user, expires_delta=timedelta(seconds=-5))
        with pytest.raises(AuthenticationError):
            user_from_token(token)

    def test_tampered_token_rejected(self):
        user = User(id="clerk-1", username="clerk-1")
        token = create_access_token(user)
        with pytest.raises(AuthenticationError):
            decode_token(token[:-4] + "AAAA")

    def test_wrong_key_rejected(self):
        user = User(id="clerk-1", username="clerk-1")
        token = create_access_token(user)
        with patch.object(settings, "secret_key", "x" * 48):
            with pytest.raises(AuthenticationError):
                decode_token(token)


class TestRoles:
    """Tests for role ordering."""

    def test_require_role(self):
        manager = User(id="m", username="m", role=UserRole.MANAGER)
        require_role(manager, UserRole.CLERK)
        require_role(manager, UserRole.MANAGER)
        with pytest.raises(AuthorizationError):
            require_role(manager, UserRole.ADMIN)

    def test_permissions(self):
        clerk = User(id="c", username="c", role=UserRole.CLERK)
        admin = User(id="a", username="a", role=UserRole.ADMIN)
        assert not clerk.can_view_audit
        assert not clerk.can_manage_routing
        assert admin.can_view_audit
        assert admin.can_export
        assert clerk.rank < admin.rank


class TestSettings:
    """Tests for settings validation."""

    def test_insecure_secret_replaced(self):
        with pytest.warns(UserWarning):
            config = Settings(secret_key="changeme")
        assert len(config.secret_key) >= 32

    def test_short_secret_rejected(self):
        with pytest.raises(PydanticValidationError):
            Settings(secret_key="too-short-but-not-default")

    def test_sla_thresholds_ordered(self):
        with pytest.raises(PydanticValidationError):
            Settings(secret_key="s" * 40, sla_at_risk_pct=95, sla_critical_pct=90)

    def test_log_level_normalized(self):
        assert Settings(secret_key="s" * 40, log_level="debug").log_level == "DEBUG"

    def test_sla_hours_for(self):
        config = Settings(secret_key="s" * 40)
        assert config.sla_hours_for("urgent") == 1.0
        assert config.sla_hours_for("unknown") == config.sla_hours_medium
