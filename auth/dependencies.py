"""
auth/dependencies.py -- FastAPI Depends() helpers for the identity routes.

Access tokens are accepted from one place only: the Authorization: Bearer
header. The refresh token lives in an httpOnly cookie scoped to /api/v1 and
is never accepted as an access credential.

get_current_user_id() resolves the bearer token to a user id and raises
HTTP 401 on any failure. It does not load the user row -- routes that need
the profile ask the identity core for it, which keeps the common path to a
signature check.

request_context() builds the RequestContext the core reads network identity
from, so no component ever sees a Starlette Request.

Layer rule: this module may import from fastapi because it is part of the
dependency injection wiring. It must not import from api/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import RequestContext
from auth.service import IdentityService
from auth.tokens import decode_access_token

REFRESH_COOKIE = "refresh_token"


def get_identity(request: Request) -> IdentityService:
    return request.app.state.identity


def request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        path=request.url.path,
        method=request.method,
    )


def try_get_current_user_id(request: Request) -> int | None:
    """Return the user id carried by a valid bearer token, or None."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    identity: IdentityService = request.app.state.identity
    return decode_access_token(auth_header[7:], identity.settings.secret_key)


def get_current_user_id(request: Request) -> int:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user_id: int = Depends(get_current_user_id)): ...
    """
    user_id = try_get_current_user_id(request)
    if user_id is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id
