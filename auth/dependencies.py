"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens are accepted from two places, checked in priority order:
  1. "access_token" cookie -- set by the browser login flow.
  2. Authorization: Bearer <token> header -- API clients and paired devices.

Both converge on AuthSessionController.current_user(), which verifies the
token and loads the LIVE user record (role is never taken from claims).

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_user() and raises HTTP 403 if not admin.

Layer rule: auth/dependencies.py may import from fastapi because this module
is part of the FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.controller import AuthSessionController
from auth.errors import Unauthenticated, UserNotFound
from auth.models import User
from auth.tokens import ACCESS_COOKIE, REFRESH_COOKIE


def bearer_token(request: Request) -> str | None:
    """Return the token from an "Authorization: Bearer <token>" header, if any."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def access_token_from(request: Request) -> str | None:
    return request.cookies.get(ACCESS_COOKIE) or bearer_token(request)


def refresh_token_from(request: Request, body_token: str | None = None) -> str | None:
    """Refresh token from the cookie, falling back to the JSON body value."""
    return request.cookies.get(REFRESH_COOKIE) or body_token or None


def try_get_current_user(request: Request) -> User | None:
    """Attempt to authenticate the request. Never raises; returns None on any failure."""
    controller: AuthSessionController = request.app.state.auth
    try:
        return controller.current_user(access_token_from(request))
    except (Unauthenticated, UserNotFound):
        return None


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthenticated", "message": "Authentication required."},
        )
    return user


def require_admin(request: Request) -> User:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    user = get_current_user(request)
    if user.role != "admin":
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user
