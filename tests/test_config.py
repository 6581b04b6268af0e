"""
tests/test_config.py -- Tests for core.config.Settings signing key policy.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings

KEY_A = "a" * 32
KEY_B = "b" * 32


def test_production_requires_keys() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, debug=False, access_secret_key="", refresh_secret_key="")


def test_debug_generates_distinct_keys() -> None:
    settings = Settings(_env_file=None, debug=True, access_secret_key="", refresh_secret_key="")
    assert len(settings.access_secret_key) >= 32
    assert settings.access_secret_key != settings.refresh_secret_key


def test_short_key_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, access_secret_key="short", refresh_secret_key=KEY_B)


def test_shared_key_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, access_secret_key=KEY_A, refresh_secret_key=KEY_A)


def test_defaults() -> None:
    settings = Settings(_env_file=None, access_secret_key=KEY_A, refresh_secret_key=KEY_B)
    assert settings.access_token_expire_seconds == 900
    assert settings.refresh_token_expire_seconds == 7 * 24 * 3600
    assert settings.auth_rate_limit == "10 per 15 minutes"
    assert settings.refresh_reuse_revokes_all is False
