"""
auth/login.py -- Password login, failed-attempt lockout, device recognition.

Check order in login() (each step short-circuits):
  1. Unknown email       -> UNAUTHORIZED "Invalid email or password."
                            bcrypt still runs against a dummy hash so timing
                            does not reveal whether the account exists.
  2. Unverified email    -> EMAIL_NOT_VERIFIED. Disclosed on purpose: the
                            user can act on it. Lockout counters untouched.
  3. Locked account      -> LOCKED. Disclosed on purpose, for the same reason.
                            Checked before the password so a correct password
                            cannot be used to probe a locked account.
  4. Wrong password      -> counter incremented; at max_login_attempts the
                            account is locked for lockout_minutes. Always the
                            same generic UNAUTHORIZED as step 1.

On success the request's (user agent, IP) fingerprint is matched against the
Device Registry. A new fingerprint creates a Device and triggers a new-device
alert email. A refresh token bound to that device is issued.

The short-lived access token is not minted here. The HTTP layer does that
from the returned user id (see api/routes/v1/auth.py).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from auth.audit import AuditSink
from auth.db import to_iso, utc_now
from auth.devices import DeviceRegistry
from auth.ledger import TokenLedger
from auth.models import AuditAction, Device, LastLoginDevice, PublicUser, RequestContext, TokenType, User
from auth.results import FailureKind, Result, failed, success
from auth.store import UserStore
from auth.tokens import dummy_hash, verify_password
from core.config import Settings
from core.geo import Geolocator
from core.notifier import NotificationKind, Notifier, send_quietly

logger = logging.getLogger("whisper.auth.login")

INVALID_CREDENTIALS = "Invalid email or password."
DEVICE_TYPE_WEB = "web"


@dataclass(frozen=True)
class LoginResult:
    user: PublicUser
    refresh_secret: str
    device: Device
    new_device: bool


class LoginService:
    def __init__(
        self,
        users: UserStore,
        ledger: TokenLedger,
        devices: DeviceRegistry,
        audit: AuditSink,
        notifier: Notifier,
        geolocator: Geolocator,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._users = users
        self._ledger = ledger
        self._devices = devices
        self._audit = audit
        self._notifier = notifier
        self._geolocator = geolocator
        self._settings = settings
        self._clock = clock

    def login(self, email: str, password: str, context: Optional[RequestContext] = None) -> Result[LoginResult]:
        context = context or RequestContext()
        user = self._users.get_by_email(email)

        if user is None:
            verify_password(password, dummy_hash(self._settings.bcrypt_rounds))
            return failed(FailureKind.UNAUTHORIZED, INVALID_CREDENTIALS)

        if not user.is_verified:
            return failed(FailureKind.EMAIL_NOT_VERIFIED, "Please verify your email before logging in.")

        now = self._clock()
        if user.is_locked(now):
            return failed(FailureKind.LOCKED, "Account temporarily locked. Try again later.")

        if not verify_password(password, user.hashed_password):
            self._record_failure(user, context, now)
            return failed(FailureKind.UNAUTHORIZED, INVALID_CREDENTIALS)

        return success(self._complete_login(user, context, now))

    def unlock_account(self, user_id: int, context: Optional[RequestContext] = None) -> Result[None]:
        """Operator action: clear the failed-attempt counter and any active lock."""
        if not self._users.unlock(user_id):
            return failed(FailureKind.NOT_FOUND, "User not found.")
        self._audit.record(AuditAction.ACCOUNT_UNLOCKED, context, user_id=user_id)
        logger.info("Account unlocked: user_id=%s", user_id)
        return success()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record_failure(self, user: User, context: RequestContext, now: datetime) -> None:
        lock_until = now + timedelta(minutes=self._settings.lockout_minutes)
        attempts, locked = self._users.record_failed_login(
            user.id, self._settings.max_login_attempts, lock_until
        )
        if locked:
            logger.warning("Account locked after %d failed attempts: user_id=%s", attempts, user.id)
            self._audit.record(
                AuditAction.ACCOUNT_LOCKED,
                context,
                user_id=user.id,
                metadata={"attempts": attempts, "locked_until": to_iso(lock_until)},
            )
        self._audit.record(AuditAction.LOGIN_FAILED, context, user_id=user.id, metadata={"attempts": attempts})

    def _complete_login(self, user: User, context: RequestContext, now: datetime) -> LoginResult:
        geo = self._geolocator.lookup(context.ip)
        location = geo.label() if geo else "Unknown"

        device = self._devices.find(user.id, context.user_agent, context.ip)
        new_device = False
        if device is None:
            device, new_device = self._devices.register(
                user.id, context.user_agent, context.ip, geo, now, device_type=DEVICE_TYPE_WEB
            )
        else:
            self._devices.touch(device.id, now, geo)

        secret = self._ledger.issue(
            user.id,
            TokenType.REFRESH,
            user.email,
            timedelta(days=self._settings.refresh_token_days),
            device_id=device.id,
        )

        snapshot = LastLoginDevice(
            device_type=device.device_type,
            user_agent=context.user_agent or "Unknown",
            ip_address=context.ip or "Unknown",
            location=location,
            logged_in_at=now,
        )
        self._users.record_successful_login(user.id, snapshot, now)
        self._audit.record(
            AuditAction.LOGIN_SUCCESS,
            context,
            user_id=user.id,
            metadata={"device_id": device.id, "new_device": new_device},
        )

        if new_device:
            send_quietly(
                self._notifier,
                NotificationKind.NEW_DEVICE_ALERT,
                user.email,
                {
                    "name": f"{user.first_name} {user.last_name}".strip() or user.username,
                    "email": user.email,
                    "device": context.user_agent or "Unknown device",
                    "location": location,
                    "ip": context.ip or "Unknown",
                    "time": to_iso(now),
                },
            )

        refreshed = self._users.get_by_id(user.id) or user
        return LoginResult(
            user=PublicUser.from_user(refreshed),
            refresh_secret=secret,
            device=device,
            new_device=new_device,
        )
