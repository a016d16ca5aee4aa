"""
auth/registration.py -- Registration and email verification.

register() creates an unverified account and issues one email_verify token.
verify_email() redeems it.

Redemption order:
  verify_email() consumes the token before it looks at the owner. A replayed
  link therefore fails NOT_FOUND even after the account is verified, while a
  second, different link that was still outstanding redeems as a no-op
  success. Both outcomes are deliberate and covered by tests.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError

from auth.audit import AuditSink
from auth.db import utc_now
from auth.ledger import TokenLedger
from auth.models import AuditAction, PublicUser, RequestContext, TokenType, User
from auth.password_policy import validate_password
from auth.results import FailureKind, Result, failed, success
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import Settings
from core.notifier import NotificationKind, Notifier, send_quietly

logger = logging.getLogger("whisper.auth.registration")


@dataclass(frozen=True)
class RegistrationResult:
    user: PublicUser
    verification_secret: str


class RegistrationService:
    def __init__(
        self,
        users: UserStore,
        ledger: TokenLedger,
        audit: AuditSink,
        notifier: Notifier,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._users = users
        self._ledger = ledger
        self._audit = audit
        self._notifier = notifier
        self._settings = settings
        self._clock = clock

    @property
    def _token_ttl(self) -> timedelta:
        return timedelta(minutes=self._settings.email_token_minutes)

    def register(
        self,
        username: str,
        first_name: str,
        last_name: str,
        email: str,
        password: str,
        context: Optional[RequestContext] = None,
    ) -> Result[RegistrationResult]:
        email = email.strip().lower()

        policy_error = validate_password(password)
        if policy_error:
            return failed(FailureKind.VALIDATION, policy_error)

        if self._users.email_in_use(email):
            return failed(FailureKind.CONFLICT, "User with this email already exists.")

        user = User(
            username=username,
            first_name=first_name,
            last_name=last_name,
            email=email,
            hashed_password=hash_password(password, self._settings.bcrypt_rounds),
            created_at=self._clock(),
        )
        try:
            user.id = self._users.create_user(user)
        except IntegrityError:
            # Lost a race against a concurrent registration for the same address
            return failed(FailureKind.CONFLICT, "User with this email already exists.")

        secret = self._ledger.issue(user.id, TokenType.EMAIL_VERIFY, email, self._token_ttl)
        self._audit.record(AuditAction.USER_REGISTERED, context, user_id=user.id)
        logger.info("Registered user_id=%s", user.id)

        self._send_verification(user, secret)
        return success(RegistrationResult(user=PublicUser.from_user(user), verification_secret=secret))

    def verify_email(self, secret: str, context: Optional[RequestContext] = None) -> Result[None]:
        token = self._ledger.consume(secret, TokenType.EMAIL_VERIFY)
        if token is None:
            return failed(FailureKind.NOT_FOUND, "Invalid or expired verification link.")

        now = self._clock()
        if token.is_expired(now):
            return failed(FailureKind.EXPIRED, "Verification link has expired.")

        user = self._users.get_by_id(token.user_id)
        if user is None:
            return failed(FailureKind.NOT_FOUND, "Invalid verification request.")
        if user.is_verified:
            return success()

        self._users.update_user(user.id, email_verified_at=now)
        self._audit.record(AuditAction.EMAIL_VERIFIED, context, user_id=user.id, metadata={"email": user.email})
        return success()

    def resend_verification(self, email: str, context: Optional[RequestContext] = None) -> Result[None]:
        """Issue a fresh verification link to an unverified account.

        Always succeeds, whether or not the address belongs to anyone.
        """
        user = self._users.get_by_email(email)
        if user is None or user.is_verified:
            return success()
        self._ledger.revoke_for_user(user.id, TokenType.EMAIL_VERIFY)
        secret = self._ledger.issue(user.id, TokenType.EMAIL_VERIFY, user.email, self._token_ttl)
        self._send_verification(user, secret)
        return success()

    def _send_verification(self, user: User, secret: str) -> None:
        send_quietly(
            self._notifier,
            NotificationKind.VERIFICATION,
            user.email,
            {
                "name": user.display_name,
                "link": f"{self._settings.app_base_url}/verify-email?token={secret}",
                "minutes": self._settings.email_token_minutes,
            },
        )
