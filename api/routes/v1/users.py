"""
api/routes/v1/users.py -- Account, device, and two-factor endpoints.

Routes (all require a bearer access token unless noted):
  GET    /api/v1/users/me                          -- current profile
  PATCH  /api/v1/users/me                          -- partial profile update
  GET    /api/v1/users/me/devices                  -- signed-in devices, most recent first
  DELETE /api/v1/users/me/devices/{device_id}      -- sign one device out (idempotent)
  POST   /api/v1/users/me/devices/logout-others    -- keep only this session (needs refresh cookie)
  POST   /api/v1/users/me/password                 -- change password
  POST   /api/v1/users/me/email                    -- request an email change
  GET    /api/v1/users/email/confirm?token=        -- confirm an email change (public; token is the proof)
  GET    /api/v1/users/me/2fa                      -- enrollment status
  POST   /api/v1/users/me/2fa/setup                -- start TOTP enrollment
  POST   /api/v1/users/me/2fa/confirm              -- finish enrollment with a TOTP or emailed code

IDOR guard: device routes pass the authenticated user id to the core; the
Device Registry scopes every lookup by owner.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import (
    DeviceResponse,
    EmailChangeRequest,
    MessageResponse,
    PasswordChangeRequest,
    ProfilePatch,
    TwoFactorConfirmRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    UserResponse,
)
from auth.dependencies import REFRESH_COOKIE, get_current_user_id, get_identity, request_context
from auth.models import RequestContext
from auth.results import Failure, FailureKind, IdentityError
from auth.service import IdentityService

router = APIRouter()


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


@router.get("/users/me", response_model=UserResponse)
def me(
    user_id: int = Depends(get_current_user_id),
    identity: IdentityService = Depends(get_identity),
) -> UserResponse:
    return UserResponse.from_public(identity.account.get_profile(user_id).unwrap())


@router.patch("/users/me", response_model=UserResponse)
def update_me(
    body: ProfilePatch,
    user_id: int = Depends(get_current_user_id),
    identity: IdentityService = Depends(get_identity),
    context: RequestContext = Depends(request_context),
) -> UserResponse:
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise IdentityError(Failure(FailureKind.VALIDATION, "No fields to update."))
    user = identity.account.update_profile(user_id, context, **changes).unwrap()
    return UserResponse.from_public(user)


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


@router.get("/users/me/devices", response_model=list[DeviceResponse])
def list_devices(
    user_id: int = Depends(get_current_user_id),
    identity: IdentityService = Depends(get_identity),
) -> list[DeviceResponse]:
    return [DeviceResponse.from_device(d) for d in identity.sessions.list_devices(user_id)]


@router.delete("/users/me/devices/{device_id}", response_model=MessageResponse)
def revoke_device(
    device_id: int,
    user_id: int = Depends(get_current_user_id),
    identity: IdentityService = Depends(get_identity),
    context: RequestContext = Depends(request_context),
) -> MessageResponse:
    identity.sessions.revoke_device(user_id, device_id, context).unwrap()
    return MessageResponse(message="Device signed out.")


@router.post("/users/me/devices/logout-others", response_model=MessageResponse)
def logout_other_devices(
    request: Request,
    user_id: int = Depends(get_current_user_id),
    identity: IdentityService = Depends(get_identity),
) -> MessageResponse:
    secret = request.cookies.get(REFRESH_COOKIE, "")
    identity.sessions.logout_all_other_devices(user_id, secret, request_context(request)).unwrap()
    return MessageResponse(message="Signed out of all other devices.")


# ---------------------------------------------------------------------------
# Password and email
# ---------------------------------------------------------------------------


@router.post("/users/me/password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    user_id: int = Depends(get_current_user_id),
    identity: IdentityService = Depends(get_identity),
) -> MessageResponse:
    identity.account.change_password(
        user_id,
        body.current_password,
        body.new_password,
        request_context(request),
        current_refresh_secret=request.cookies.get(REFRESH_COOKIE),
    ).unwrap()
    return MessageResponse(message="Password changed. Other sessions have been signed out.")


@router.post("/users/me/email", response_model=MessageResponse)
def request_email_change(
    body: EmailChangeRequest,
    user_id: int = Depends(get_current_user_id),
    identity: IdentityService = Depends(get_identity),
    context: RequestContext = Depends(request_context),
) -> MessageResponse:
    identity.account.request_email_change(user_id, body.new_email, context).unwrap()
    return MessageResponse(message="Check your new inbox to confirm the change.")


@router.get("/users/email/confirm", response_model=MessageResponse)
def confirm_email_change(
    token: str,
    identity: IdentityService = Depends(get_identity),
    context: RequestContext = Depends(request_context),
) -> MessageResponse:
    identity.account.confirm_email_change(token, context).unwrap()
    return MessageResponse(message="Email address updated.")


# ---------------------------------------------------------------------------
# Two-factor enrollment
# ---------------------------------------------------------------------------


@router.get("/users/me/2fa", response_model=TwoFactorStatusResponse)
def two_factor_status(
    user_id: int = Depends(get_current_user_id),
    identity: IdentityService = Depends(get_identity),
) -> TwoFactorStatusResponse:
    return TwoFactorStatusResponse(status=identity.two_factor.status(user_id).unwrap())


@router.post("/users/me/2fa/setup", response_model=TwoFactorSetupResponse)
def two_factor_setup(
    user_id: int = Depends(get_current_user_id),
    identity: IdentityService = Depends(get_identity),
    context: RequestContext = Depends(request_context),
) -> TwoFactorSetupResponse:
    setup = identity.two_factor.initiate_setup(user_id, context).unwrap()
    return TwoFactorSetupResponse(
        otpauth_uri=setup.otpauth_uri,
        qr_code=setup.qr_payload,
        manual_seed=setup.manual_seed,
    )


@router.post("/users/me/2fa/confirm", response_model=MessageResponse)
def two_factor_confirm(
    body: TwoFactorConfirmRequest,
    user_id: int = Depends(get_current_user_id),
    identity: IdentityService = Depends(get_identity),
    context: RequestContext = Depends(request_context),
) -> MessageResponse:
    identity.two_factor.confirm_setup(user_id, totp=body.totp, email_otp=body.email_otp, context=context).unwrap()
    return MessageResponse(message="Two-factor authentication enabled.")
