"""
tests/test_config.py -- Key policy enforced by core/config.py Settings.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("SECRET_KEY", "TWO_FACTOR_ENCRYPTION_KEY", "DEBUG"):
        monkeypatch.delenv(name, raising=False)


def test_production_requires_keys() -> None:
    with pytest.raises(ValidationError, match="SECRET_KEY is required"):
        Settings(debug=False, _env_file=None)


def test_debug_generates_missing_keys() -> None:
    settings = Settings(debug=True, _env_file=None)
    assert len(settings.secret_key) >= 32
    assert len(settings.two_factor_encryption_key) >= 32
    assert settings.secret_key != settings.two_factor_encryption_key


def test_short_keys_rejected_even_in_debug() -> None:
    with pytest.raises(ValidationError, match="at least 32 characters"):
        Settings(debug=True, secret_key="too-short", _env_file=None)


def test_environment_values_are_read(monkeypatch) -> None:
    monkeypatch.setenv("SECRET_KEY", "s" * 40)
    monkeypatch.setenv("TWO_FACTOR_ENCRYPTION_KEY", "t" * 40)
    monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "3")
    settings = Settings(_env_file=None)
    assert settings.secret_key == "s" * 40
    assert settings.max_login_attempts == 3
    assert settings.refresh_token_days == 7


def test_bcrypt_cost_bounds() -> None:
    with pytest.raises(ValidationError):
        Settings(debug=True, bcrypt_rounds=3, _env_file=None)
