"""
api/routes/v1/auth.py -- Login, registration, refresh, logout and identity endpoints.

Routes:
  POST /api/v1/auth/login      -- email/password login; sets both auth cookies
  POST /api/v1/auth/register   -- create a user account, then log it in
  POST /api/v1/auth/refresh    -- new access token from a refresh token
  POST /api/v1/auth/logout     -- invalidate the session; clears cookies; always 200
  GET  /api/v1/auth/me         -- live user snapshot (requires auth)
  GET  /api/v1/auth/sessions   -- caller's active sessions (requires auth)

Security:
  [H2] POST /login and /register are rate-limited per IP.
  [C1] AuthSessionController.authenticate() provides timing equalization.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Every token/session failure surfaces as the same 401 "unauthenticated"
  (see the AuthError handlers in api/main.py).
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import (
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RefreshTokenBody,
    RegisterRequest,
    SessionInfo,
    UserResponse,
)
from auth.controller import AuthSessionController
from auth.dependencies import access_token_from, get_current_user, refresh_token_from
from auth.models import IssuedTokens, User, utcnow
from auth.store import UserStore
from auth.tokens import clear_auth_cookies, hash_password, set_auth_cookies
from core.config import get_settings

logger = logging.getLogger("sessiongate.api")

# Auth policy:
# - POST /api/v1/auth/login:     public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/register:  public
# - POST /api/v1/auth/refresh:   public -- the refresh token is the credential
# - POST /api/v1/auth/logout:    public -- logging out needs no valid access token
# - GET  /api/v1/auth/me:        requires auth (get_current_user)
# - GET  /api/v1/auth/sessions:  requires auth (get_current_user)
router = APIRouter()


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


def token_response(
    request: Request,
    issued: IssuedTokens,
    status_code: int = 200,
    set_cookies: bool = True,
) -> JSONResponse:
    """Body with both tokens, plus the two httpOnly cookies unless set_cookies is False.

    Shared with the pairing exchange route, whose caller is a device that
    keeps its tokens itself rather than in cookies.
    """
    body = LoginResponse.from_issued(issued, utcnow())
    resp = JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
    if set_cookies:
        set_auth_cookies(
            resp,
            issued.access_token,
            issued.refresh_token,
            request.app.state.tokens,
            secure=get_settings().secure_cookies,
        )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return tokens and set cookies.

    Wrong email and wrong password produce the same 401 "bad_credentials".
    """
    controller: AuthSessionController = request.app.state.auth
    user = controller.authenticate(body.email, body.password)
    return token_response(request, controller.login(user))


@limiter.limit(_login_rate_limit)  # [H2]
@router.post("/auth/register", response_model=LoginResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a "user"-role account on the free tier and log it in."""
    user_store: UserStore = request.app.state.user_store
    controller: AuthSessionController = request.app.state.auth
    try:
        user_id = user_store.create_user(
            User(email=body.email, full_name=body.full_name, hashed_password=hash_password(body.password))
        )
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "An account with that email already exists."},
        ) from exc
    logger.info("Registered user %s", user_id)
    return token_response(request, controller.login(user_store.get_by_id(user_id)), status_code=201)


@router.post("/auth/refresh", response_model=LoginResponse)
def refresh(request: Request, body: Optional[RefreshTokenBody] = Body(default=None)) -> JSONResponse:
    """Exchange the refresh token (cookie first, then JSON body) for a new access token."""
    token = refresh_token_from(request, body.refresh_token if body else None)
    if not token:
        raise HTTPException(
            status_code=400,
            detail={"code": "missing_refresh_token", "message": "Refresh token is required."},
        )
    controller: AuthSessionController = request.app.state.auth
    return token_response(request, controller.refresh(token))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: Optional[RefreshTokenBody] = Body(default=None)) -> JSONResponse:
    """Invalidate the caller's session and clear both cookies.

    Always 200: logging out with no token, an unknown token, or an already
    invalidated one is still a successful logout.
    """
    controller: AuthSessionController = request.app.state.auth
    controller.logout(refresh_token_from(request, body.refresh_token if body else None))
    resp = JSONResponse(content=MessageResponse(message="Logged out successfully.").model_dump())
    clear_auth_cookies(resp)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request) -> MeResponse:
    """Return the CURRENT user record for the presented access token.

    Goes through the controller directly rather than get_current_user so a
    deleted account is reported as 404 user_not_found instead of 401.
    """
    controller: AuthSessionController = request.app.state.auth
    user = controller.current_user(access_token_from(request))
    return MeResponse(user=UserResponse.from_user(user))


@router.get("/auth/sessions", response_model=list[SessionInfo])
def list_sessions(request: Request, current_user: User = Depends(get_current_user)) -> list[SessionInfo]:
    controller: AuthSessionController = request.app.state.auth
    return [
        SessionInfo(id=s.id, created_at=s.created_at, expires_at=s.expires_at)
        for s in controller.active_sessions(current_user.id)
    ]
