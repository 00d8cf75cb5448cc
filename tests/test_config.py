"""
tests/test_config.py -- Settings validation.

Settings are built directly (not through get_settings) so each test sees
only the values it passes.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings

GOOD_KEY = "k" * 32


def test_debug_generates_secret_key() -> None:
    settings = Settings(debug=True, secret_key="")
    assert len(settings.secret_key) >= 32


def test_production_requires_secret_key() -> None:
    with pytest.raises(ValidationError, match="SECRET_KEY is required"):
        Settings(debug=False, secret_key="")


def test_short_secret_key_rejected() -> None:
    with pytest.raises(ValidationError, match="at least 32"):
        Settings(debug=True, secret_key="too-short")


def test_defaults() -> None:
    settings = Settings(secret_key=GOOD_KEY)
    assert settings.access_token_expire_seconds == 900
    assert settings.refresh_token_expire_seconds == 604800
    assert settings.revoke_sessions_on_reuse is False
    assert settings.internal_api_key == ""
    assert settings.login_rate_limit == "10/minute"


def test_access_must_expire_before_refresh() -> None:
    with pytest.raises(ValidationError):
        Settings(secret_key=GOOD_KEY, access_token_expire_seconds=3600, refresh_token_expire_seconds=600)


def test_lifetimes_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        Settings(secret_key=GOOD_KEY, access_token_expire_seconds=0)


def test_environment_overrides(monkeypatch) -> None:
    monkeypatch.setenv("SECRET_KEY", GOOD_KEY)
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "client-from-env")
    monkeypatch.setenv("REVOKE_SESSIONS_ON_REUSE", "true")
    settings = Settings()
    assert settings.google_client_id == "client-from-env"
    assert settings.revoke_sessions_on_reuse is True
