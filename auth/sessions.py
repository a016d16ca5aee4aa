"""
auth/sessions.py -- Refresh-token rotation, logout, and per-device revocation.

Rotation contract:
  A refresh secret can be exchanged at most once. refresh() redeems it with
  TokenLedger.consume() -- an atomic find-and-delete -- and mints a successor
  bound to the same device. If consume() hands back nothing, the secret was
  fabricated, already rotated, or revoked. All three are treated alike: a
  suspicious_activity_detected event is recorded (with no user id, since
  none can be trusted) and the caller sees a plain UNAUTHORIZED.

  An expired-but-present token is normal session aging. It is deleted and
  reported as EXPIRED without an anomaly event.

Revocation:
  revoke_device() and logout_all_other_devices() delete refresh tokens by
  device binding, then the Device rows themselves. A revoked device's next
  refresh attempt finds nothing to consume.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from auth.audit import AuditSink
from auth.db import utc_now
from auth.devices import DeviceRegistry
from auth.ledger import TokenLedger
from auth.models import AuditAction, Device, PublicUser, RequestContext, TokenType
from auth.results import FailureKind, Result, failed, success
from auth.store import UserStore
from core.config import Settings

logger = logging.getLogger("whisper.auth.sessions")


@dataclass(frozen=True)
class RefreshResult:
    user: PublicUser
    refresh_secret: str


class SessionService:
    def __init__(
        self,
        users: UserStore,
        ledger: TokenLedger,
        devices: DeviceRegistry,
        audit: AuditSink,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._users = users
        self._ledger = ledger
        self._devices = devices
        self._audit = audit
        self._settings = settings
        self._clock = clock

    def refresh(self, secret: str, context: Optional[RequestContext] = None) -> Result[RefreshResult]:
        """Exchange a refresh secret for its successor."""
        token = self._ledger.consume(secret, TokenType.REFRESH)
        if token is None:
            logger.warning("Refresh token reuse or forgery from ip=%s", context.ip if context else None)
            self._audit.record(
                AuditAction.SUSPICIOUS_ACTIVITY,
                context,
                metadata={"reason": "refresh_token_reuse_or_invalid"},
            )
            return failed(FailureKind.SUSPICIOUS_ACTIVITY, "Invalid refresh token.")

        now = self._clock()
        if token.is_expired(now):
            return failed(FailureKind.EXPIRED, "Refresh token expired.")

        user = self._users.get_by_id(token.user_id)
        if user is None:
            return failed(FailureKind.UNAUTHORIZED, "User not found.")

        successor = self._ledger.issue(
            user.id,
            TokenType.REFRESH,
            user.email,
            timedelta(days=self._settings.refresh_token_days),
            device_id=token.device_id,
        )
        if token.device_id is not None:
            self._devices.touch(token.device_id, now)

        self._audit.record(AuditAction.LOGIN_SUCCESS, context, user_id=user.id, metadata={"via": "refresh_token"})
        return success(RefreshResult(user=PublicUser.from_user(user), refresh_secret=successor))

    def logout(self, secret: str, context: Optional[RequestContext] = None) -> Result[None]:
        """End the session behind secret. Unknown or already-used secrets succeed silently."""
        token = self._ledger.consume(secret, TokenType.REFRESH)
        if token is not None:
            self._audit.record(AuditAction.LOGOUT, context, user_id=token.user_id)
        return success()

    def list_devices(self, user_id: int) -> list[Device]:
        return self._devices.list_for_user(user_id)

    def revoke_device(self, user_id: int, device_id: int, context: Optional[RequestContext] = None) -> Result[None]:
        """Sign one device out.

        A device id that does not exist, or belongs to someone else, is
        reported as success so device ids cannot be probed.
        """
        device = self._devices.get(user_id, device_id)
        if device is None:
            return success()

        revoked = self._ledger.revoke_for_device(user_id, device_id)
        self._devices.delete(user_id, device_id)
        self._audit.record(
            AuditAction.DEVICE_REVOKED,
            context,
            user_id=user_id,
            metadata={"device_id": device_id, "tokens_revoked": revoked},
        )
        return success()

    def logout_all_other_devices(
        self,
        user_id: int,
        current_secret: str,
        context: Optional[RequestContext] = None,
    ) -> Result[None]:
        """Keep only the session behind current_secret; sign every other device out."""
        current = self._ledger.find(current_secret, TokenType.REFRESH, user_id=user_id)
        if current is None or current.device_id is None:
            return failed(FailureKind.UNAUTHORIZED, "Current session could not be identified.")

        tokens_revoked = self._ledger.revoke_other_devices(user_id, current.device_id)
        devices_removed = self._devices.delete_others(user_id, current.device_id)
        self._audit.record(
            AuditAction.LOGOUT,
            context,
            user_id=user_id,
            metadata={
                "scope": "logout_all_except_current",
                "kept_device_id": current.device_id,
                "devices_removed": devices_removed,
                "tokens_revoked": tokens_revoked,
            },
        )
        return success()
