"""
auth/two_factor.py -- TOTP enrollment: Disabled -> Pending -> Enabled.

initiate_setup() generates a TOTP seed, stores it encrypted as the Pending
state, and also emails a 6-digit code. Either proof confirms enrollment:

  email_otp  The user's outstanding two_factor_email_otp token is consumed
             before the code is compared, so each emailed code gets exactly
             one attempt whether it matches or not.
  totp       The pending seed is decrypted and the code checked with a
             tolerance of one 30-second step either side of the clock.

A failed confirmation leaves the Pending seed in place so the user can retry
with the authenticator app. Enabled is terminal here; disabling is not
offered.

Seeds are encrypted with SecretCipher (AES-256-GCM). A payload that fails
to decrypt raises CipherError -- that is a key misconfiguration or tampering,
not a user mistake, and is left to propagate.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import base64
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import pyotp
import qrcode
import qrcode.image.svg

from auth.audit import AuditSink
from auth.db import to_iso, utc_now
from auth.ledger import TokenLedger
from auth.models import (
    AuditAction,
    RequestContext,
    TokenType,
    TwoFactorEnabled,
    TwoFactorPending,
)
from auth.results import FailureKind, Result, failed, success
from auth.store import UserStore
from core.config import Settings
from core.crypto import SecretCipher, hash_token
from core.notifier import NotificationKind, Notifier, send_quietly

logger = logging.getLogger("whisper.auth.two_factor")

# pyotp valid_window: accept the previous and next 30s step as well
TOTP_DRIFT_STEPS = 1


@dataclass(frozen=True)
class TwoFactorSetup:
    otpauth_uri: str
    qr_payload: str  # data:image/svg+xml;base64,...
    manual_seed: str


def qr_data_uri(content: str) -> str:
    """Render content as an SVG QR code and return it as a data URI."""
    image = qrcode.make(content, image_factory=qrcode.image.svg.SvgPathImage)
    encoded = base64.b64encode(image.to_string()).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"


class TwoFactorService:
    def __init__(
        self,
        users: UserStore,
        ledger: TokenLedger,
        audit: AuditSink,
        notifier: Notifier,
        cipher: SecretCipher,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._users = users
        self._ledger = ledger
        self._audit = audit
        self._notifier = notifier
        self._cipher = cipher
        self._settings = settings
        self._clock = clock

    def status(self, user_id: int) -> Result[str]:
        """Return "disabled", "pending" or "enabled"."""
        user = self._users.get_by_id(user_id)
        if user is None:
            return failed(FailureKind.NOT_FOUND, "User not found.")
        return success(user.two_factor.label)

    def initiate_setup(self, user_id: int, context: Optional[RequestContext] = None) -> Result[TwoFactorSetup]:
        user = self._users.get_by_id(user_id)
        if user is None:
            return failed(FailureKind.NOT_FOUND, "User not found.")
        if isinstance(user.two_factor, TwoFactorEnabled):
            return failed(FailureKind.CONFLICT, "Two-factor authentication is already enabled.")

        seed = pyotp.random_base32()
        self._users.set_two_factor(user_id, TwoFactorPending(encrypted_seed=self._cipher.encrypt(seed)))

        self._ledger.revoke_for_user(user_id, TokenType.TWO_FACTOR_EMAIL_OTP)
        code = self._ledger.issue_code(
            user_id,
            TokenType.TWO_FACTOR_EMAIL_OTP,
            user.email,
            timedelta(minutes=self._settings.email_token_minutes),
        )

        uri = pyotp.TOTP(seed).provisioning_uri(name=user.email, issuer_name=self._settings.totp_issuer)
        self._audit.record(AuditAction.TWO_FACTOR_SETUP_STARTED, context, user_id=user_id)
        send_quietly(
            self._notifier,
            NotificationKind.TWO_FACTOR_OTP,
            user.email,
            {"name": user.display_name, "code": code, "minutes": self._settings.email_token_minutes},
        )
        return success(TwoFactorSetup(otpauth_uri=uri, qr_payload=qr_data_uri(uri), manual_seed=seed))

    def confirm_setup(
        self,
        user_id: int,
        totp: Optional[str] = None,
        email_otp: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Result[None]:
        user = self._users.get_by_id(user_id)
        if user is None:
            return failed(FailureKind.NOT_FOUND, "User not found.")

        state = user.two_factor
        if isinstance(state, TwoFactorEnabled):
            return failed(FailureKind.CONFLICT, "Two-factor authentication is already enabled.")
        if not isinstance(state, TwoFactorPending):
            return failed(FailureKind.VALIDATION, "Two-factor setup has not been started.")
        if not totp and not email_otp:
            return failed(FailureKind.VALIDATION, "Provide an authenticator code or the emailed code.")

        now = self._clock()
        if email_otp:
            method = "email_otp"
            reason = self._check_email_otp(user_id, email_otp, now)
        else:
            method = "totp"
            reason = self._check_totp(state, totp, now)

        if reason is not None:
            self._audit.record(
                AuditAction.TWO_FACTOR_ENABLE_FAILED,
                context,
                user_id=user_id,
                metadata={"reason": reason, "method": method},
            )
            return failed(FailureKind.UNAUTHORIZED, "Invalid verification code.")

        self._users.set_two_factor(user_id, TwoFactorEnabled(encrypted_seed=state.encrypted_seed, enabled_at=now))
        self._ledger.revoke_for_user(user_id, TokenType.TWO_FACTOR_EMAIL_OTP)
        self._audit.record(AuditAction.TWO_FACTOR_ENABLED, context, user_id=user_id, metadata={"method": method})
        logger.info("Two-factor enabled for user_id=%s via %s", user_id, method)
        send_quietly(
            self._notifier,
            NotificationKind.TWO_FACTOR_ENABLED,
            user.email,
            {"name": user.display_name, "time": to_iso(now)},
        )
        return success()

    # ------------------------------------------------------------------
    # Proof checks: return a rejection reason, or None when the proof holds
    # ------------------------------------------------------------------

    def _check_email_otp(self, user_id: int, code: str, now: datetime) -> Optional[str]:
        token = self._ledger.consume_for_user(user_id, TokenType.TWO_FACTOR_EMAIL_OTP)
        if token is None:
            return "email_otp_not_found"
        if token.is_expired(now):
            return "email_otp_expired"
        if not hmac.compare_digest(token.token_hash, hash_token(code.strip())):
            return "email_otp_mismatch"
        return None

    def _check_totp(self, state: TwoFactorPending, code: str, now: datetime) -> Optional[str]:
        seed = self._cipher.decrypt(state.encrypted_seed)
        if not pyotp.TOTP(seed).verify(code.strip(), for_time=now, valid_window=TOTP_DRIFT_STEPS):
            return "totp_invalid"
        return None
