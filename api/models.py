"""
API request and response models for the Whisper identity endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Validation here is the transport bound only (lengths, shapes). The stricter
password complexity rule is enforced by the identity core, so a password that
passes here can still be rejected with a 400 validation failure.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from auth.models import Device, LastLoginDevice, PublicUser

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[a-zA-Z0-9._]+$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
CODE_PATTERN = r"^\d{6}$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    email: str = Field(max_length=320, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=8, max_length=128)

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.lower()


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=128)


class ResendVerificationRequest(BaseModel):
    email: str = Field(max_length=320, pattern=EMAIL_PATTERN)


class ProfilePatch(BaseModel):
    """Body for PATCH /api/v1/users/me. Only the fields sent are changed."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    first_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    username: Optional[str] = Field(default=None, min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    avatar: Optional[str] = Field(default=None, max_length=2048, pattern=r"^https?://")


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=8, max_length=128)


class EmailChangeRequest(BaseModel):
    new_email: str = Field(max_length=320, pattern=EMAIL_PATTERN)


class TwoFactorConfirmRequest(BaseModel):
    """Exactly one of totp or email_otp."""

    totp: Optional[str] = Field(default=None, pattern=CODE_PATTERN)
    email_otp: Optional[str] = Field(default=None, pattern=CODE_PATTERN)

    @model_validator(mode="after")
    def one_code(self) -> "TwoFactorConfirmRequest":
        if bool(self.totp) == bool(self.email_otp):
            raise ValueError("Provide exactly one of totp or email_otp.")
        return self


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class LastLoginDeviceResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_type: str
    user_agent: str
    ip_address: str
    location: str
    logged_in_at: datetime

    @classmethod
    def from_snapshot(cls, snapshot: Optional[LastLoginDevice]) -> Optional["LastLoginDeviceResponse"]:
        if snapshot is None:
            return None
        return cls(
            device_type=snapshot.device_type,
            user_agent=snapshot.user_agent,
            ip_address=snapshot.ip_address,
            location=snapshot.location,
            logged_in_at=snapshot.logged_in_at,
        )


class UserResponse(BaseModel):
    """Redacted user view. Never carries hashes, secrets, or lockout counters."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    first_name: str
    last_name: str
    email: str
    avatar: Optional[str] = None
    email_verified_at: Optional[datetime] = None
    is_two_factor_enabled: bool
    last_login_device: Optional[LastLoginDeviceResponse] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_public(cls, user: PublicUser) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            first_name=user.first_name,
            last_name=user.last_name,
            email=user.email,
            avatar=user.avatar,
            email_verified_at=user.email_verified_at,
            is_two_factor_enabled=user.is_two_factor_enabled,
            last_login_device=LastLoginDeviceResponse.from_snapshot(user.last_login_device),
            created_at=user.created_at,
        )


class RegisterResponse(BaseModel):
    message: str
    user: UserResponse


class TokenResponse(BaseModel):
    """Access token issued by login and refresh. The refresh token travels in a cookie only."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class GeoLocationResponse(BaseModel):
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class DeviceResponse(BaseModel):
    id: int
    device_type: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    geo_location: Optional[GeoLocationResponse] = None
    last_active_at: datetime
    created_at: Optional[datetime] = None

    @classmethod
    def from_device(cls, device: Device) -> "DeviceResponse":
        geo = None
        if device.geo is not None:
            geo = GeoLocationResponse(
                country=device.geo.country,
                region=device.geo.region,
                city=device.geo.city,
                latitude=device.geo.latitude,
                longitude=device.geo.longitude,
            )
        return cls(
            id=device.id,
            device_type=device.device_type,
            user_agent=device.user_agent or None,
            ip_address=device.ip_address or None,
            geo_location=geo,
            last_active_at=device.last_active_at,
            created_at=device.created_at,
        )


class TwoFactorStatusResponse(BaseModel):
    status: Literal["disabled", "pending", "enabled"]


class TwoFactorSetupResponse(BaseModel):
    otpauth_uri: str
    qr_code: str
    manual_seed: str


class MessageResponse(BaseModel):
    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
