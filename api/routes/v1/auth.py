"""
api/routes/v1/auth.py -- Registration, verification, and session endpoints.

Routes:
  POST /api/v1/auth/register              -- create an unverified account; emails a link
  GET  /api/v1/auth/verify-email?token=   -- redeem a verification link
  POST /api/v1/auth/resend-verification   -- re-send the link (always 200)
  POST /api/v1/auth/login                 -- password login; sets refresh cookie, returns access token
  POST /api/v1/auth/refresh               -- rotate the refresh cookie, returns a new access token
  POST /api/v1/auth/logout                -- revoke the refresh cookie's session and clear it

Security:
  POST /login and /resend-verification are rate-limited per IP (LOGIN_RATE_LIMIT).
  Credential responses carry Cache-Control: no-store.
  The refresh token is only ever sent as an httpOnly cookie scoped to /api/v1;
  it never appears in a response body.

Failures from the identity core are raised with Result.unwrap() and turned
into the error envelope by the IdentityError handler in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    RegisterResponse,
    ResendVerificationRequest,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import REFRESH_COOKIE, get_identity, request_context
from auth.models import PublicUser, RequestContext
from auth.results import Failure, FailureKind, IdentityError
from auth.service import IdentityService
from auth.tokens import create_access_token

# Auth policy: every route in this module is public. Session-bearing calls
# authenticate with the refresh cookie, not a bearer token.
router = APIRouter()

REFRESH_COOKIE_PATH = "/api/v1"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _session_response(identity: IdentityService, user: PublicUser, refresh_secret: str) -> JSONResponse:
    """Mint an access token for user and attach refresh_secret as the session cookie."""
    settings = identity.settings
    access = create_access_token(user.id, settings.secret_key, settings.access_token_expire_seconds)
    resp = JSONResponse(
        status_code=200,
        content=TokenResponse(
            access_token=access,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=settings.access_token_expire_seconds,
            user=UserResponse.from_public(user),
        ).model_dump(mode="json"),
    )
    resp.set_cookie(
        REFRESH_COOKIE,
        value=refresh_secret,
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
        max_age=settings.refresh_token_days * 24 * 3600,
        path=REFRESH_COOKIE_PATH,
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _require_refresh_cookie(request: Request) -> str:
    secret = request.cookies.get(REFRESH_COOKIE)
    if not secret:
        raise IdentityError(Failure(FailureKind.UNAUTHORIZED, "No active session."))
    return secret


# ---------------------------------------------------------------------------
# Registration and verification
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(
    body: RegisterRequest,
    identity: IdentityService = Depends(get_identity),
    context: RequestContext = Depends(request_context),
) -> RegisterResponse:
    """Create an account. The verification link goes out by email only."""
    result = identity.registration.register(
        body.username, body.first_name, body.last_name, body.email, body.password, context
    ).unwrap()
    return RegisterResponse(
        message="Registration successful. Check your email to verify your account.",
        user=UserResponse.from_public(result.user),
    )


@router.get("/auth/verify-email", response_model=MessageResponse)
def verify_email(
    token: str,
    identity: IdentityService = Depends(get_identity),
    context: RequestContext = Depends(request_context),
) -> MessageResponse:
    identity.registration.verify_email(token, context).unwrap()
    return MessageResponse(message="Email verified. You can now log in.")


@router.post("/auth/resend-verification", response_model=MessageResponse)
@limiter.limit(login_rate_limit)
def resend_verification(
    request: Request,
    body: ResendVerificationRequest,
    identity: IdentityService = Depends(get_identity),
) -> MessageResponse:
    """Always answers the same way so it cannot be used to discover accounts."""
    identity.registration.resend_verification(body.email, request_context(request)).unwrap()
    return MessageResponse(message="If that account exists and is unverified, a new link has been sent.")


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=TokenResponse)
@limiter.limit(login_rate_limit)  # under @router: the route must register the limited wrapper
def login(
    request: Request,
    body: LoginRequest,
    identity: IdentityService = Depends(get_identity),
) -> JSONResponse:
    """Authenticate with email and password."""
    result = identity.login.login(body.email, body.password, request_context(request)).unwrap()
    return _session_response(identity, result.user, result.refresh_secret)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(
    request: Request,
    identity: IdentityService = Depends(get_identity),
) -> JSONResponse:
    """Exchange the refresh cookie for a rotated one and a fresh access token."""
    secret = _require_refresh_cookie(request)
    result = identity.sessions.refresh(secret, request_context(request)).unwrap()
    return _session_response(identity, result.user, result.refresh_secret)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    identity: IdentityService = Depends(get_identity),
) -> JSONResponse:
    """Revoke the current session. Succeeds even without a cookie."""
    secret = request.cookies.get(REFRESH_COOKIE)
    if secret:
        identity.sessions.logout(secret, request_context(request)).unwrap()
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie(REFRESH_COOKIE, path=REFRESH_COOKIE_PATH)
    return resp
