"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data containers, near-zero logic). Stores map rows
into these; components do the work.

Two-factor enrollment is a tagged state rather than a pair of nullable
columns: TwoFactorDisabled | TwoFactorPending | TwoFactorEnabled. Legality
checks in auth/two_factor.py are isinstance() checks against these, so an
"enabled but also pending" user cannot be represented in memory. The store
translates between this union and the underlying columns.

Timestamps are timezone-aware UTC datetimes in memory and ISO-8601 strings
at rest (see auth/db.py).

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from core.geo import GeoLocation

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TokenType(str, Enum):
    REFRESH = "refresh"
    EMAIL_VERIFY = "email_verify"
    EMAIL_CHANGE = "email_change"
    TWO_FACTOR_EMAIL_OTP = "two_factor_email_otp"


class AuditAction(str, Enum):
    USER_REGISTERED = "user_registered"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    DEVICE_REVOKED = "device_revoked"
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_CHANGE_FAILED = "password_changed_failed"
    EMAIL_CHANGE_REQUESTED = "email_change_requested"
    EMAIL_CHANGED = "email_changed"
    EMAIL_VERIFIED = "email_verified"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    TWO_FACTOR_SETUP_STARTED = "two_factor_setup_started"
    TWO_FACTOR_ENABLED = "two_factor_enabled"
    TWO_FACTOR_ENABLE_FAILED = "two_factor_enable_failed"
    PROFILE_UPDATED = "profile_updated"
    SUSPICIOUS_ACTIVITY = "suspicious_activity_detected"


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RequestContext:
    """The slice of an inbound request the identity core is allowed to see.

    The HTTP layer builds one per request. Nothing in auth/ knows which web
    framework produced it.
    """

    ip: Optional[str] = None
    user_agent: Optional[str] = None
    path: Optional[str] = None
    method: Optional[str] = None


# ---------------------------------------------------------------------------
# Two-factor state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TwoFactorDisabled:
    label = "disabled"


@dataclass(frozen=True)
class TwoFactorPending:
    """Enrollment started; encrypted_seed awaits proof of possession."""

    encrypted_seed: str
    label = "pending"


@dataclass(frozen=True)
class TwoFactorEnabled:
    encrypted_seed: str
    enabled_at: Optional[datetime] = None
    label = "enabled"


TwoFactorState = Union[TwoFactorDisabled, TwoFactorPending, TwoFactorEnabled]


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@dataclass
class LastLoginDevice:
    """Snapshot of where the last successful login came from.

    Owned by the User row and independent of the live Device registry --
    revoking a device does not erase this history.
    """

    device_type: str
    user_agent: str
    ip_address: str
    location: str
    logged_in_at: datetime


@dataclass
class User:
    username: str
    email: str
    hashed_password: str
    first_name: str = ""
    last_name: str = ""
    id: Optional[int] = None
    avatar: Optional[str] = None
    email_verified_at: Optional[datetime] = None
    two_factor: TwoFactorState = field(default_factory=TwoFactorDisabled)
    login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_device: Optional[LastLoginDevice] = None
    pending_email: Optional[str] = None
    pending_email_requested_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_verified(self) -> bool:
        return self.email_verified_at is not None

    @property
    def is_two_factor_enabled(self) -> bool:
        return isinstance(self.two_factor, TwoFactorEnabled)

    @property
    def display_name(self) -> str:
        return self.first_name or self.username or "User"

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass(frozen=True)
class PublicUser:
    """Redacted user view safe to hand across the boundary. No hashes, no secrets, no counters."""

    id: int
    username: str
    first_name: str
    last_name: str
    email: str
    avatar: Optional[str]
    email_verified_at: Optional[datetime]
    is_two_factor_enabled: bool
    last_login_device: Optional[LastLoginDevice]
    created_at: Optional[datetime]

    @classmethod
    def from_user(cls, user: User) -> "PublicUser":
        return cls(
            id=user.id,  # type: ignore[arg-type]
            username=user.username,
            first_name=user.first_name,
            last_name=user.last_name,
            email=user.email,
            avatar=user.avatar,
            email_verified_at=user.email_verified_at,
            is_two_factor_enabled=user.is_two_factor_enabled,
            last_login_device=user.last_login_device,
            created_at=user.created_at,
        )


@dataclass
class SecurityToken:
    """A persisted single-use secret. token_hash is SHA-256(raw); raw is never stored."""

    user_id: int
    email: str
    token_hash: str
    token_type: TokenType
    expires_at: datetime
    device_id: Optional[int] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class Device:
    user_id: int
    device_type: str
    user_agent: str
    ip_address: str
    last_active_at: datetime
    geo: Optional[GeoLocation] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class AuditEvent:
    action: AuditAction
    user_id: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    path: Optional[str] = None
    method: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    created_at: Optional[datetime] = None
