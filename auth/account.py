"""
auth/account.py -- Profile edits, password change, and email change.

Email change is a two-step handshake:
  request_email_change() parks the new address in pending_email and sends a
  single-use email_change link to the NEW address, plus a heads-up (no link)
  to the OLD one. confirm_email_change() redeems the link with an atomic
  consume, so a confirmation link works exactly once, and swaps the address.
  Reaching the new inbox is proof enough, so the account ends up verified.

Password change re-authenticates with the current password, then revokes
every refresh token except the caller's own session. Any other device that
may have been used with the old password is signed out.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError

from auth.audit import AuditSink
from auth.db import to_iso, utc_now
from auth.ledger import TokenLedger
from auth.models import AuditAction, PublicUser, RequestContext, TokenType
from auth.password_policy import validate_password
from auth.results import FailureKind, Result, failed, success
from auth.store import UserStore
from auth.tokens import hash_password, verify_password
from core.config import Settings
from core.geo import Geolocator
from core.notifier import NotificationKind, Notifier, send_quietly

logger = logging.getLogger("whisper.auth.account")

PROFILE_FIELDS = frozenset({"first_name", "last_name", "username", "avatar"})
# avatar may be cleared with None; these may not.
REQUIRED_PROFILE_FIELDS = frozenset({"first_name", "last_name", "username"})


class AccountService:
    def __init__(
        self,
        users: UserStore,
        ledger: TokenLedger,
        audit: AuditSink,
        notifier: Notifier,
        geolocator: Geolocator,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._users = users
        self._ledger = ledger
        self._audit = audit
        self._notifier = notifier
        self._geolocator = geolocator
        self._settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def get_profile(self, user_id: int) -> Result[PublicUser]:
        user = self._users.get_by_id(user_id)
        if user is None:
            return failed(FailureKind.NOT_FOUND, "User not found.")
        return success(PublicUser.from_user(user))

    def update_profile(
        self, user_id: int, context: Optional[RequestContext] = None, **fields: Any
    ) -> Result[PublicUser]:
        """Partially update first_name, last_name, username and avatar."""
        unknown = set(fields) - PROFILE_FIELDS
        if unknown:
            return failed(FailureKind.VALIDATION, f"Fields cannot be updated: {', '.join(sorted(unknown))}.")
        cleared = sorted(k for k in REQUIRED_PROFILE_FIELDS & set(fields) if not fields[k])
        if cleared:
            return failed(FailureKind.VALIDATION, f"Fields cannot be empty: {', '.join(cleared)}.")

        if self._users.get_by_id(user_id) is None:
            return failed(FailureKind.NOT_FOUND, "User not found.")

        username = fields.get("username")
        if username is not None and self._users.username_taken(username, exclude_user_id=user_id):
            return failed(FailureKind.CONFLICT, "Username already taken.")

        self._users.update_user(user_id, **fields)
        self._audit.record(
            AuditAction.PROFILE_UPDATED,
            context,
            user_id=user_id,
            metadata={"fields_updated": sorted(fields)},
        )
        return self.get_profile(user_id)

    # ------------------------------------------------------------------
    # Password
    # ------------------------------------------------------------------

    def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        context: Optional[RequestContext] = None,
        current_refresh_secret: Optional[str] = None,
    ) -> Result[None]:
        context = context or RequestContext()
        user = self._users.get_by_id(user_id)
        if user is None:
            return failed(FailureKind.NOT_FOUND, "User not found.")

        if not verify_password(current_password, user.hashed_password):
            self._audit.record(
                AuditAction.PASSWORD_CHANGE_FAILED,
                context,
                user_id=user_id,
                metadata={"reason": "invalid_current_password"},
            )
            return failed(FailureKind.UNAUTHORIZED, "Current password is incorrect.")

        if verify_password(new_password, user.hashed_password):
            return failed(FailureKind.VALIDATION, "New password must be different from the current password.")

        policy_error = validate_password(new_password)
        if policy_error:
            return failed(FailureKind.VALIDATION, policy_error)

        self._users.update_user(
            user_id,
            hashed_password=hash_password(new_password, self._settings.bcrypt_rounds),
            login_attempts=0,
            locked_until=None,
        )

        keep_device_id = None
        if current_refresh_secret:
            current = self._ledger.find(current_refresh_secret, TokenType.REFRESH, user_id=user_id)
            if current is not None:
                keep_device_id = current.device_id
        if keep_device_id is not None:
            revoked = self._ledger.revoke_other_devices(user_id, keep_device_id)
        else:
            revoked = self._ledger.revoke_for_user(user_id, TokenType.REFRESH)

        self._audit.record(
            AuditAction.PASSWORD_CHANGED,
            context,
            user_id=user_id,
            metadata={"sessions_revoked": revoked, "kept_device_id": keep_device_id},
        )
        send_quietly(
            self._notifier,
            NotificationKind.PASSWORD_CHANGED,
            user.email,
            {
                "name": user.display_name,
                "time": to_iso(self._clock()),
                "device": context.user_agent or "Unknown device",
                "ip": context.ip or "Unknown",
            },
        )
        return success()

    # ------------------------------------------------------------------
    # Email change
    # ------------------------------------------------------------------

    def request_email_change(
        self, user_id: int, new_email: str, context: Optional[RequestContext] = None
    ) -> Result[None]:
        context = context or RequestContext()
        new_email = new_email.strip().lower()
        user = self._users.get_by_id(user_id)
        if user is None:
            return failed(FailureKind.NOT_FOUND, "User not found.")
        if new_email == user.email:
            return failed(FailureKind.VALIDATION, "New email must be different from the current email.")
        if self._users.email_in_use(new_email, exclude_user_id=user_id):
            return failed(FailureKind.CONFLICT, "Email is already in use.")

        now = self._clock()
        self._users.update_user(user_id, pending_email=new_email, pending_email_requested_at=now)
        self._ledger.revoke_for_user(user_id, TokenType.EMAIL_CHANGE)
        secret = self._ledger.issue(
            user_id,
            TokenType.EMAIL_CHANGE,
            new_email,
            timedelta(minutes=self._settings.email_token_minutes),
        )
        self._audit.record(
            AuditAction.EMAIL_CHANGE_REQUESTED,
            context,
            user_id=user_id,
            metadata={"new_email": new_email},
        )

        send_quietly(
            self._notifier,
            NotificationKind.EMAIL_CHANGE_REQUEST,
            new_email,
            {
                "name": user.display_name,
                "new_email": new_email,
                "link": f"{self._settings.app_base_url}/confirm-email-change?token={secret}",
                "minutes": self._settings.email_token_minutes,
            },
        )
        geo = self._geolocator.lookup(context.ip)
        send_quietly(
            self._notifier,
            NotificationKind.EMAIL_CHANGE_NOTICE,
            user.email,
            {
                "name": user.display_name,
                "new_email": new_email,
                "time": to_iso(now),
                "device": context.user_agent or "Unknown device",
                "ip": context.ip or "Unknown",
                "location": geo.label() if geo else "Unknown",
            },
        )
        return success()

    def confirm_email_change(self, secret: str, context: Optional[RequestContext] = None) -> Result[None]:
        token = self._ledger.consume(secret, TokenType.EMAIL_CHANGE)
        if token is None:
            return failed(FailureKind.NOT_FOUND, "Invalid or expired email change link.")

        now = self._clock()
        if token.is_expired(now):
            return failed(FailureKind.EXPIRED, "Email change link has expired.")

        user = self._users.get_by_id(token.user_id)
        if user is None or not user.pending_email or user.pending_email != token.email:
            return failed(FailureKind.NOT_FOUND, "No pending email change.")

        new_email = user.pending_email
        holder = self._users.get_by_email(new_email)
        if holder is not None and holder.id != user.id:
            return failed(FailureKind.CONFLICT, "Email is already in use.")

        try:
            self._users.update_user(
                user.id,
                email=new_email,
                pending_email=None,
                pending_email_requested_at=None,
                email_verified_at=now,
            )
        except IntegrityError:
            return failed(FailureKind.CONFLICT, "Email is already in use.")

        self._ledger.revoke_for_user(user.id, TokenType.EMAIL_CHANGE)
        self._audit.record(
            AuditAction.EMAIL_CHANGED,
            context,
            user_id=user.id,
            metadata={"old_email": user.email, "new_email": new_email},
        )
        logger.info("Email changed for user_id=%s", user.id)
        return success()
