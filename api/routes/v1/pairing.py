"""
api/routes/v1/pairing.py -- Device pairing endpoints.

Routes:
  POST /api/v1/auth/desktop/initiate   -- device asks for a pairing code (public, rate-limited)
  POST /api/v1/auth/desktop/authorize  -- signed-in browser confirms the code (requires auth)
  POST /api/v1/auth/desktop/exchange   -- device collects its tokens (public, code + device_id)

The authorization URL returned by initiate points at the web app's
/auth/desktop page; that page calls /authorize with the code once the user
confirms. The device polls /exchange with the same code and its device_id.
Unknown code or wrong device -> 404 pairing_not_found; not confirmed yet ->
409 authorization_pending; expired or already-used code -> 410
pairing_expired (handlers in api/main.py).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    LoginResponse,
    PairingAuthorizeRequest,
    PairingAuthorizeResponse,
    PairingExchangeRequest,
    PairingInitiateRequest,
    PairingInitiateResponse,
)
from api.routes.v1.auth import token_response
from auth.dependencies import get_current_user
from auth.models import User
from auth.pairing import DevicePairingFlow
from core.config import get_settings

router = APIRouter()


def _initiate_rate_limit() -> str:
    return get_settings().login_rate_limit


@limiter.limit(_initiate_rate_limit)
@router.post("/auth/desktop/initiate", response_model=PairingInitiateResponse)
def initiate(request: Request, body: PairingInitiateRequest) -> PairingInitiateResponse:
    """Start pairing for a device. The device shows or opens the returned URL."""
    pairing: DevicePairingFlow = request.app.state.pairing
    ticket = pairing.initiate(body.device_name, body.device_id)
    return PairingInitiateResponse(
        auth_code=ticket.auth_code,
        expires_at=ticket.expires_at,
        authorization_url=ticket.authorization_url,
    )


@router.post("/auth/desktop/authorize", response_model=PairingAuthorizeResponse)
def authorize(
    request: Request,
    body: PairingAuthorizeRequest,
    current_user: User = Depends(get_current_user),
) -> PairingAuthorizeResponse:
    """Consume the pairing code for the signed-in user.

    The device's tokens stay server-side until the device exchanges the code;
    the browser only learns which session was created.
    """
    pairing: DevicePairingFlow = request.app.state.pairing
    issued = pairing.authorize(body.auth_code, current_user.id)
    paired = request.app.state.pairing_store.get_by_code(body.auth_code)
    return PairingAuthorizeResponse(session_id=issued.session.id, expires_at=paired.expires_at)


@router.post("/auth/desktop/exchange", response_model=LoginResponse)
def exchange(request: Request, body: PairingExchangeRequest) -> JSONResponse:
    """Hand the device the tokens minted when the browser confirmed. Works once."""
    pairing: DevicePairingFlow = request.app.state.pairing
    issued = pairing.exchange(body.auth_code, body.device_id)
    return token_response(request, issued, set_cookies=False)
