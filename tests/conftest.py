"""
tests/conftest.py -- Shared fixtures for the Whisper identity test suite.

This module provides:
  - settings: Settings with fast bcrypt and a tmp-path SQLite database
  - clock: a MutableClock every component reads time from
  - notifier / geolocator: recording fakes for the outbound collaborators
  - identity: a fully wired IdentityService over those pieces
  - make_verified_user(): register + verify in one call
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: file-backed SQLite under tmp_path rather than :memory:. Components
open a new connection per operation, and the concurrency tests drive the
ledger from several threads; a plain :memory: database is per-connection and
would present each of them a blank schema.

The DEBUG env var must be set before any core/auth import so get_settings()
(used at import time by api/) can auto-generate keys instead of raising.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

# CRITICAL: Set DEBUG before any auth/core import.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from auth.models import RequestContext
from auth.service import IdentityService, build_identity_service
from core.config import Settings
from core.geo import GeoLocation, Geolocator, is_public_address
from core.notifier import NotificationError, NotificationKind, Notifier

STRONG_PASSWORD = "Abcdef12!@#$"
OTHER_STRONG_PASSWORD = "Zyxwvu98&*()"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class MutableClock:
    """Callable clock that only moves when a test tells it to."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier(Notifier):
    """Notifier that records every send instead of talking to a gateway."""

    def __init__(self) -> None:
        super().__init__()
        self.sent: list[tuple[NotificationKind, str, dict[str, Any]]] = []
        self.fail = False

    def send(self, kind: NotificationKind, recipient: str, template_data: dict[str, Any]) -> None:
        if self.fail:
            raise NotificationError("gateway down")
        self.sent.append((kind, recipient, dict(template_data)))

    def of_kind(self, kind: NotificationKind) -> list[tuple[NotificationKind, str, dict[str, Any]]]:
        return [s for s in self.sent if s[0] is kind]


class FakeGeolocator(Geolocator):
    """Resolves every public address to one fixed location."""

    def __init__(self, location: Optional[GeoLocation] = None) -> None:
        super().__init__()
        self.location = location or GeoLocation(country="Germany", region="Berlin", city="Berlin")
        self.lookups: list[Optional[str]] = []

    def lookup(self, ip: Optional[str]) -> Optional[GeoLocation]:
        self.lookups.append(ip)
        return self.location if is_public_address(ip) else None


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


def make_settings(db_url: str, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "debug": True,
        "secret_key": "test-secret-key-0123456789abcdef-0123",
        "two_factor_encryption_key": "test-2fa-key-0123456789abcdef-0123456",
        "database_url": db_url,
        "bcrypt_rounds": 4,
        "max_login_attempts": 5,
        "lockout_minutes": 15,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(f"sqlite:///{tmp_path / 'identity.db'}")


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def geolocator() -> FakeGeolocator:
    return FakeGeolocator()


@pytest.fixture
def identity(settings, clock, notifier, geolocator) -> Generator[IdentityService, None, None]:
    service = build_identity_service(settings, notifier=notifier, geolocator=geolocator, clock=clock)
    yield service
    service.close()


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(ip="81.2.69.142", user_agent="Mozilla/5.0 (X11; Linux) Firefox/128.0", path="/test")


def context_for(ip: str, user_agent: str = "Mozilla/5.0 (X11; Linux) Firefox/128.0") -> RequestContext:
    return RequestContext(ip=ip, user_agent=user_agent)


def make_verified_user(
    identity: IdentityService,
    email: str = "alice@example.com",
    password: str = STRONG_PASSWORD,
    username: str = "alice",
) -> int:
    """Register and verify a user; return its id."""
    result = identity.registration.register(username, "Alice", "Liddell", email, password).unwrap()
    identity.registration.verify_email(result.verification_secret).unwrap()
    return result.user.id


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(identity: IdentityService):
    """Return an async context manager that replaces the real lifespan.

    Wires the test IdentityService into app.state so routes see the tmp-path
    database and the recording fakes. The purge task is a long sleep so the
    shutdown path has a real asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.identity = identity
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api_identity(tmp_path) -> Generator[IdentityService, None, None]:
    """IdentityService on the real clock (access tokens are signed with wall time)."""
    service = build_identity_service(
        make_settings(f"sqlite:///{tmp_path / 'api.db'}"),
        notifier=RecordingNotifier(),
        geolocator=FakeGeolocator(),
    )
    yield service
    service.close()


@pytest.fixture
def api_client(api_identity) -> Generator[TestClient, None, None]:
    from api.limiter import limiter
    from api.main import app

    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(api_identity)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client
