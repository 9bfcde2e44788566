"""
api/routes/v1/credentials.py -- Admin management of third-party provider API keys.

Routes:
  POST   /api/v1/admin/credentials       -- store a key (encrypted at rest)
  GET    /api/v1/admin/credentials       -- list keys, masked
  DELETE /api/v1/admin/credentials/{id}  -- remove a key

The plaintext key is accepted once and never returned. Listing shows only
mask_secret() output ("sk_l...7890").
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.exc import IntegrityError

from api.models import CredentialCreate, CredentialResponse
from auth.dependencies import require_admin
from auth.encryption import mask_secret
from auth.errors import EncryptionError
from auth.models import ProviderCredential, User
from auth.store import CredentialStore

logger = logging.getLogger("sessiongate.api")

# Auth policy: every route requires admin (require_admin).
router = APIRouter()


def _to_response(credential: ProviderCredential, store: CredentialStore) -> CredentialResponse:
    try:
        masked = mask_secret(store.decrypt(credential))
    except EncryptionError as exc:
        # Stored under a previous ENCRYPTION_KEY or corrupted; still listable.
        logger.warning("Credential %r could not be decrypted for masking: %s", credential.name, exc.code)
        masked = mask_secret(None)
    return CredentialResponse(
        id=credential.id,
        name=credential.name,
        masked_key=masked,
        created_at=credential.created_at,
    )


@router.post("/admin/credentials", response_model=CredentialResponse, status_code=201)
def create_credential(
    request: Request,
    body: CredentialCreate,
    current_user: User = Depends(require_admin),
) -> CredentialResponse:
    store: CredentialStore = request.app.state.credentials
    try:
        credential_id = store.add(body.name, body.api_key, created_by=current_user.id)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A credential with that name already exists."},
        ) from exc
    logger.info("Stored credential %r (%s) for user %s", body.name, mask_secret(body.api_key), current_user.id)
    return _to_response(store.get(credential_id), store)


@router.get("/admin/credentials", response_model=list[CredentialResponse])
def list_credentials(request: Request, current_user: User = Depends(require_admin)) -> list[CredentialResponse]:
    store: CredentialStore = request.app.state.credentials
    return [_to_response(c, store) for c in store.list_all()]


@router.delete("/admin/credentials/{credential_id}", status_code=204)
def delete_credential(
    request: Request,
    credential_id: int,
    current_user: User = Depends(require_admin),
) -> Response:
    store: CredentialStore = request.app.state.credentials
    if not store.delete(credential_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Credential not found."},
        )
    return Response(status_code=204)
