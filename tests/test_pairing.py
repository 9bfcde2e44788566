"""
tests/test_pairing.py -- Unit tests for auth/pairing.py.

Covers:
  - initiate: 64-hex code, 5-minute window, authorization URL on app_base_url
  - authorize: pending -> authorized, tokens issued for the confirming user
  - single use: a second authorize of the same code is PairingExpired
  - expiry boundary: authorized at exactly expires_at, rejected one second later
  - unknown code -> PairingNotFound; deleted user -> UserNotFound
  - exchange: hands the parked tokens to the initiating device exactly once;
    wrong device_id, early and repeated exchanges are rejected
  - purge_expired removes closed windows only
"""

from __future__ import annotations

import re
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from auth.controller import AuthSessionController
from auth.errors import PairingError, PairingExpired, PairingNotFound, PairingPending, UserNotFound
from auth.models import PairingRequest, User
from auth.pairing import AUTHORIZED, COMPLETED, PAIRING_TTL, PENDING, DevicePairingFlow, PairingStore
from auth.sessions import SessionStore
from auth.store import UserStore


@pytest.fixture()
def pairing_store(engine, clock) -> PairingStore:
    return PairingStore(engine, clock=clock)


@pytest.fixture()
def flow(pairing_store: PairingStore, controller: AuthSessionController, user_store: UserStore, clock):
    return DevicePairingFlow(pairing_store, controller, user_store, "https://app.example.com/", clock=clock)


class TestInitiate:
    def test_ticket(self, flow: DevicePairingFlow, pairing_store: PairingStore, clock) -> None:
        ticket = flow.initiate("Work Laptop", "device-123")

        assert re.fullmatch(r"[0-9a-f]{64}", ticket.auth_code)
        assert ticket.expires_at == clock.now + PAIRING_TTL
        assert PAIRING_TTL == timedelta(minutes=5)

        url = urlparse(ticket.authorization_url)
        assert f"{url.scheme}://{url.netloc}{url.path}" == "https://app.example.com/auth/desktop"
        assert parse_qs(url.query) == {"code": [ticket.auth_code]}

        stored = pairing_store.get_by_code(ticket.auth_code)
        assert stored.status == PENDING
        assert stored.device_name == "Work Laptop"
        assert stored.device_id == "device-123"
        assert stored.user_id is None

    def test_codes_are_unique(self, flow: DevicePairingFlow) -> None:
        assert flow.initiate("a", "1").auth_code != flow.initiate("a", "1").auth_code


class TestAuthorize:
    def test_authorize_issues_tokens(
        self, flow: DevicePairingFlow, pairing_store: PairingStore, session_store: SessionStore, user: User, clock
    ) -> None:
        ticket = flow.initiate("Work Laptop", "device-123")
        issued = flow.authorize(ticket.auth_code, user.id)

        assert issued.user.id == user.id
        assert session_store.is_active(issued.refresh_token)
        stored = pairing_store.get_by_code(ticket.auth_code)
        assert stored.status == AUTHORIZED
        assert stored.user_id == user.id
        assert stored.authorized_at == clock.now

    def test_code_is_single_use(self, flow: DevicePairingFlow, user: User) -> None:
        ticket = flow.initiate("Work Laptop", "device-123")
        flow.authorize(ticket.auth_code, user.id)
        with pytest.raises(PairingExpired):
            flow.authorize(ticket.auth_code, user.id)

    def test_authorize_at_exact_expiry_succeeds(self, flow: DevicePairingFlow, user: User, clock) -> None:
        ticket = flow.initiate("Work Laptop", "device-123")
        clock.advance(minutes=5)
        assert flow.authorize(ticket.auth_code, user.id).user.id == user.id

    def test_authorize_after_expiry_fails(
        self, flow: DevicePairingFlow, pairing_store: PairingStore, user: User, clock
    ) -> None:
        ticket = flow.initiate("Work Laptop", "device-123")
        clock.advance(minutes=5, seconds=1)
        with pytest.raises(PairingExpired):
            flow.authorize(ticket.auth_code, user.id)
        assert pairing_store.get_by_code(ticket.auth_code).effective_status(clock.now) == "expired"

    def test_unknown_code(self, flow: DevicePairingFlow, user: User) -> None:
        with pytest.raises(PairingNotFound):
            flow.authorize("f" * 64, user.id)

    def test_unknown_user(self, flow: DevicePairingFlow) -> None:
        ticket = flow.initiate("Work Laptop", "device-123")
        with pytest.raises(UserNotFound):
            flow.authorize(ticket.auth_code, 99999)

    def test_pairing_errors_share_base_class(self) -> None:
        assert issubclass(PairingExpired, PairingError)
        assert issubclass(PairingNotFound, PairingError)


class TestExchange:
    def test_exchange_releases_authorized_tokens(
        self, flow: DevicePairingFlow, pairing_store: PairingStore, session_store: SessionStore, user: User
    ) -> None:
        ticket = flow.initiate("Work Laptop", "device-123")
        issued = flow.authorize(ticket.auth_code, user.id)

        collected = flow.exchange(ticket.auth_code, "device-123")

        assert collected.access_token == issued.access_token
        assert collected.refresh_token == issued.refresh_token
        assert collected.session.id == issued.session.id
        assert collected.user.id == user.id
        assert session_store.is_active(collected.refresh_token)
        stored = pairing_store.get_by_code(ticket.auth_code)
        assert stored.status == COMPLETED
        assert not stored.tokens_ready

    def test_second_exchange_fails(self, flow: DevicePairingFlow, user: User) -> None:
        ticket = flow.initiate("Work Laptop", "device-123")
        flow.authorize(ticket.auth_code, user.id)
        flow.exchange(ticket.auth_code, "device-123")
        with pytest.raises(PairingExpired):
            flow.exchange(ticket.auth_code, "device-123")

    def test_wrong_device_id(self, flow: DevicePairingFlow, user: User) -> None:
        ticket = flow.initiate("Work Laptop", "device-123")
        flow.authorize(ticket.auth_code, user.id)
        with pytest.raises(PairingNotFound):
            flow.exchange(ticket.auth_code, "someone-else")
        # The rightful device can still collect.
        assert flow.exchange(ticket.auth_code, "device-123").user.id == user.id

    def test_exchange_before_authorization(self, flow: DevicePairingFlow, pairing_store: PairingStore) -> None:
        ticket = flow.initiate("Work Laptop", "device-123")
        with pytest.raises(PairingPending):
            flow.exchange(ticket.auth_code, "device-123")
        assert pairing_store.get_by_code(ticket.auth_code).status == PENDING

    def test_exchange_after_window(self, flow: DevicePairingFlow, user: User, clock) -> None:
        ticket = flow.initiate("Work Laptop", "device-123")
        flow.authorize(ticket.auth_code, user.id)
        clock.advance(minutes=5, seconds=1)
        with pytest.raises(PairingExpired):
            flow.exchange(ticket.auth_code, "device-123")

    def test_unknown_code(self, flow: DevicePairingFlow) -> None:
        with pytest.raises(PairingNotFound):
            flow.exchange("f" * 64, "device-123")

    def test_exchange_after_session_logout(
        self, flow: DevicePairingFlow, controller: AuthSessionController, user: User
    ) -> None:
        ticket = flow.initiate("Work Laptop", "device-123")
        issued = flow.authorize(ticket.auth_code, user.id)
        controller.logout(issued.refresh_token)
        with pytest.raises(PairingExpired):
            flow.exchange(ticket.auth_code, "device-123")


class TestStore:
    def test_mark_authorized_only_once(self, pairing_store: PairingStore, user: User, clock) -> None:
        pairing_store.create(
            PairingRequest(auth_code="c" * 64, device_name="d", device_id="i", expires_at=clock.now + PAIRING_TTL)
        )
        assert pairing_store.mark_authorized("c" * 64, user.id)
        assert not pairing_store.mark_authorized("c" * 64, user.id)

    def test_release_tokens_only_once(self, pairing_store: PairingStore, user: User, clock) -> None:
        pairing_store.create(
            PairingRequest(auth_code="r" * 64, device_name="d", device_id="i", expires_at=clock.now + PAIRING_TTL)
        )
        pairing_store.mark_authorized("r" * 64, user.id)
        assert pairing_store.park_tokens("r" * 64, "acc", "ref")
        assert pairing_store.release_tokens("r" * 64, "other") is None
        assert pairing_store.release_tokens("r" * 64, "i") == ("acc", "ref", user.id)
        assert pairing_store.release_tokens("r" * 64, "i") is None

    def test_park_tokens_requires_authorized(self, pairing_store: PairingStore, clock) -> None:
        pairing_store.create(
            PairingRequest(auth_code="p" * 64, device_name="d", device_id="i", expires_at=clock.now + PAIRING_TTL)
        )
        assert not pairing_store.park_tokens("p" * 64, "acc", "ref")

    def test_purge_expired(self, pairing_store: PairingStore, clock) -> None:
        pairing_store.create(
            PairingRequest(auth_code="old", device_name="d", device_id="i", expires_at=clock.now + PAIRING_TTL)
        )
        clock.advance(minutes=10)
        pairing_store.create(
            PairingRequest(auth_code="new", device_name="d", device_id="i", expires_at=clock.now + PAIRING_TTL)
        )
        assert pairing_store.purge_expired() == 1
        assert pairing_store.get_by_code("old") is None
        assert pairing_store.get_by_code("new") is not None
