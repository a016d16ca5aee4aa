"""
auth/service.py -- Composition root for the identity core.

build_identity_service() is the only place that constructs process-scoped
handles: the SQLAlchemy engine, the mail Notifier, the Geolocator, and the
SecretCipher. Each component receives exactly the handles it needs through
its constructor. Nothing in auth/ reaches for a module-level singleton.

Usage:
    identity = build_identity_service(get_settings())
    result = identity.login.login(email, password, RequestContext(ip=..., user_agent=...))
    ...
    identity.close()

Tests pass recording fakes for notifier and geolocator, and a controllable
clock.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.engine import Engine

from auth.account import AccountService
from auth.audit import AuditSink
from auth.db import create_identity_engine, utc_now
from auth.devices import DeviceRegistry
from auth.ledger import TokenLedger
from auth.login import LoginService
from auth.registration import RegistrationService
from auth.sessions import SessionService
from auth.store import UserStore
from auth.two_factor import TwoFactorService
from core.config import Settings
from core.crypto import SecretCipher
from core.geo import Geolocator
from core.notifier import Notifier

logger = logging.getLogger("whisper.auth.service")


class IdentityService:
    """Every identity component, wired to one engine and one set of collaborators."""

    def __init__(
        self,
        engine: Engine,
        settings: Settings,
        notifier: Notifier,
        geolocator: Geolocator,
        cipher: SecretCipher,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.settings = settings
        self.notifier = notifier
        self.geolocator = geolocator

        self.users = UserStore(engine)
        self.ledger = TokenLedger(engine, clock=clock)
        self.devices = DeviceRegistry(engine)
        self.audit = AuditSink(engine, clock=clock)

        self.registration = RegistrationService(self.users, self.ledger, self.audit, notifier, settings, clock)
        self.login = LoginService(
            self.users, self.ledger, self.devices, self.audit, notifier, geolocator, settings, clock
        )
        self.sessions = SessionService(self.users, self.ledger, self.devices, self.audit, settings, clock)
        self.two_factor = TwoFactorService(self.users, self.ledger, self.audit, notifier, cipher, settings, clock)
        self.account = AccountService(self.users, self.ledger, self.audit, notifier, geolocator, settings, clock)

    def close(self) -> None:
        self.notifier.close()
        self.geolocator.close()
        self.engine.dispose()


def build_identity_service(
    settings: Settings,
    *,
    notifier: Optional[Notifier] = None,
    geolocator: Optional[Geolocator] = None,
    engine: Optional[Engine] = None,
    clock: Callable[[], datetime] = utc_now,
) -> IdentityService:
    """Construct the IdentityService for settings.

    Any handle not supplied is built from settings.
    """
    if engine is None:
        engine = create_identity_engine(settings.database_url)
    if notifier is None:
        notifier = Notifier(settings.mail_gateway_url, settings.mail_api_key, sender=settings.mail_from)
        if not settings.mail_gateway_url:
            logger.warning("MAIL_GATEWAY_URL not set: security emails will be logged, not sent")
    if geolocator is None:
        geolocator = Geolocator(settings.geo_lookup_url)
    cipher = SecretCipher(settings.two_factor_encryption_key)
    return IdentityService(engine, settings, notifier, geolocator, cipher, clock)
