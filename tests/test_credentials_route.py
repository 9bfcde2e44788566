"""
tests/test_credentials_route.py -- Integration tests for /api/v1/admin/credentials.

Covers:
  - admin-only: 401 without a token, 403 for a regular user
  - create returns the masked key; the stored value is ciphertext
  - list is masked; delete returns 204 then 404
  - a row that no longer decrypts is listed with the placeholder mask
"""

from __future__ import annotations

import re

from fastapi.testclient import TestClient

from api.main import app
from auth.models import utcnow
from auth.store import provider_credentials

BASE = "/api/v1/admin/credentials"


def test_requires_auth(client: TestClient) -> None:
    assert client.get(BASE).status_code == 401


def test_regular_user_is_forbidden(client: TestClient, registered) -> None:
    _, body = registered()
    resp = client.get(BASE, headers={"Authorization": f"Bearer {body['tokens']['access_token']}"})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"


def test_create_list_delete(client: TestClient, admin_headers) -> None:
    resp = client.post(BASE, json={"name": "openai", "api_key": "sk_live_1234567890"}, headers=admin_headers)
    assert resp.status_code == 201
    created = resp.json()
    assert created["name"] == "openai"
    assert created["masked_key"] == "sk_l...7890"

    stored = app.state.credentials.get(created["id"])
    assert re.fullmatch(r"[0-9a-f]{32}:[0-9a-f]+", stored.encrypted_key)
    assert "sk_live_1234567890" not in stored.encrypted_key
    assert app.state.credentials.reveal(created["id"]) == "sk_live_1234567890"

    listing = client.get(BASE, headers=admin_headers).json()
    assert {"id": created["id"], "name": "openai", "masked_key": "sk_l...7890"}.items() <= next(
        c for c in listing if c["id"] == created["id"]
    ).items()
    assert "sk_live_1234567890" not in str(listing)

    assert client.delete(f"{BASE}/{created['id']}", headers=admin_headers).status_code == 204
    assert client.delete(f"{BASE}/{created['id']}", headers=admin_headers).status_code == 404


def test_short_key_is_fully_masked(client: TestClient, admin_headers) -> None:
    resp = client.post(BASE, json={"name": "tiny", "api_key": "abc"}, headers=admin_headers)
    assert resp.status_code == 201
    assert resp.json()["masked_key"] == "****"


def test_duplicate_name_is_409(client: TestClient, admin_headers) -> None:
    client.post(BASE, json={"name": "dupe", "api_key": "key-number-one"}, headers=admin_headers)
    resp = client.post(BASE, json={"name": "dupe", "api_key": "key-number-two"}, headers=admin_headers)
    assert resp.status_code == 409


def test_undecryptable_row_is_listed_masked(client: TestClient, admin_headers) -> None:
    # Corrupted row: no iv separator, so decryption fails before touching the key.
    with app.state.engine.begin() as conn:
        conn.execute(
            provider_credentials.insert().values(
                name="corrupted", encrypted_key="corrupted-ciphertext", created_at=utcnow()
            )
        )
    client.post(BASE, json={"name": "healthy", "api_key": "sk_live_abcdefgh"}, headers=admin_headers)

    resp = client.get(BASE, headers=admin_headers)

    assert resp.status_code == 200
    by_name = {c["name"]: c["masked_key"] for c in resp.json()}
    assert by_name["corrupted"] == "****"
    assert by_name["healthy"] == "sk_l...efgh"
