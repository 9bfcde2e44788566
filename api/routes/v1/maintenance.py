"""
api/routes/v1/maintenance.py -- Session cleanup endpoint for schedulers and operators.

Routes:
  POST /api/v1/auth/cleanup-sessions  -- run one janitor sweep
  GET  /api/v1/auth/cleanup-sessions  -- same, for manual triggering

Auth:
  "Authorization: Bearer <INTERNAL_API_SECRET>", compared in constant time.
  When INTERNAL_API_SECRET is empty the endpoint is open; protecting it is
  then the deployment's responsibility (network policy, ingress rules).
"""

from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, HTTPException, Request

from api.models import CleanupCounts, CleanupResponse
from auth.dependencies import bearer_token
from auth.janitor import SessionJanitor
from core.config import get_settings

logger = logging.getLogger("sessiongate.api")

router = APIRouter()


def _check_internal_secret(request: Request) -> None:
    secret = get_settings().internal_api_secret
    if not secret:
        return
    presented = bearer_token(request) or ""
    if not hmac.compare_digest(presented.encode("utf-8"), secret.encode("utf-8")):
        logger.warning("Rejected cleanup request from %s", request.client.host if request.client else "unknown")
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Unauthorized."},
        )


@router.api_route("/auth/cleanup-sessions", methods=["GET", "POST"], response_model=CleanupResponse)
def cleanup_sessions(request: Request) -> CleanupResponse:
    """Delete expired, invalidated and stale session rows. Idempotent."""
    _check_internal_secret(request)
    janitor: SessionJanitor = request.app.state.janitor
    result = janitor.sweep()
    return CleanupResponse(
        cleaned=CleanupCounts(expired=result.expired_removed, old=result.stale_removed, total=result.total)
    )
