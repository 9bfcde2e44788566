"""
auth/pairing.py -- Device pairing: link a non-browser client via a signed-in browser.

Flow:
  1. The device calls DevicePairingFlow.initiate(device_name, device_id) and
     gets a random auth code plus an authorization URL
     (<app_base_url>/auth/desktop?code=<code>). Nothing is authenticated yet.
  2. The user opens the URL in a browser that is already signed in and
     confirms. The browser calls authorize(code, user_id).
  3. authorize() flips the request pending -> authorized and mints tokens for
     the device exactly as a password login would, with a session row owned
     by the confirming user. The tokens are parked on the pairing row; the
     browser never sees them.
  4. The device polls exchange(code, device_id). Once the request is
     authorized and the device_id matches the one given at initiate, the
     parked tokens are handed over exactly once and cleared from the row.

The auth code is a capability with a fixed 5-minute lifetime and single use.
Each status transition (pending -> authorized, authorized -> completed) is one
conditional UPDATE, so two concurrent callers cannot both succeed.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta
from urllib.parse import urlencode

from sqlalchemy import and_, select
from sqlalchemy.engine import Engine

from auth.controller import AuthSessionController
from auth.errors import PairingExpired, PairingNotFound, PairingPending, UserNotFound
from auth.models import IssuedTokens, PairingRequest, PairingTicket, utcnow
from auth.store import UserStore, as_utc, pairing_requests
from auth.tokens import TokenService

logger = logging.getLogger("sessiongate.pairing")

PAIRING_TTL = timedelta(minutes=5)

PENDING = "pending"
AUTHORIZED = "authorized"
COMPLETED = "completed"


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class PairingStore:
    """Repository for PairingRequest rows, keyed by auth code."""

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    def create(self, request: PairingRequest) -> PairingRequest:
        created_at = self._clock()
        with self.engine.begin() as conn:
            result = conn.execute(
                pairing_requests.insert().values(
                    auth_code=request.auth_code,
                    device_name=request.device_name,
                    device_id=request.device_id,
                    status=PENDING,
                    created_at=created_at,
                    expires_at=request.expires_at,
                )
            )
            request_id = result.inserted_primary_key[0]
        return PairingRequest(
            id=request_id,
            auth_code=request.auth_code,
            device_name=request.device_name,
            device_id=request.device_id,
            status=PENDING,
            created_at=created_at,
            expires_at=request.expires_at,
        )

    def get_by_code(self, auth_code: str) -> PairingRequest | None:
        with self.engine.connect() as conn:
            row = conn.execute(pairing_requests.select().where(pairing_requests.c.auth_code == auth_code)).fetchone()
        return _row_to_pairing(row) if row is not None else None

    def mark_authorized(self, auth_code: str, user_id: int) -> bool:
        """Move a still-valid pending request to authorized. False if it was not pending and in-window."""
        now = self._clock()
        with self.engine.begin() as conn:
            result = conn.execute(
                pairing_requests.update()
                .where(
                    and_(
                        pairing_requests.c.auth_code == auth_code,
                        pairing_requests.c.status == PENDING,
                        pairing_requests.c.expires_at >= now,
                    )
                )
                .values(status=AUTHORIZED, user_id=user_id, authorized_at=now)
            )
        return result.rowcount == 1

    def park_tokens(self, auth_code: str, access_token: str, refresh_token: str) -> bool:
        """Attach minted device tokens to an authorized request."""
        with self.engine.begin() as conn:
            result = conn.execute(
                pairing_requests.update()
                .where(and_(pairing_requests.c.auth_code == auth_code, pairing_requests.c.status == AUTHORIZED))
                .values(access_token=access_token, refresh_token=refresh_token)
            )
        return result.rowcount == 1

    def release_tokens(self, auth_code: str, device_id: str) -> tuple[str, str, int] | None:
        """Hand out the parked tokens once and clear them.

        Returns (access_token, refresh_token, user_id), or None when the request
        is not authorized, belongs to another device, has no tokens yet, was
        already completed or is past its window.
        """
        now = self._clock()
        with self.engine.begin() as conn:
            claimed = conn.execute(
                pairing_requests.update()
                .where(
                    and_(
                        pairing_requests.c.auth_code == auth_code,
                        pairing_requests.c.device_id == device_id,
                        pairing_requests.c.status == AUTHORIZED,
                        pairing_requests.c.access_token.is_not(None),
                        pairing_requests.c.expires_at >= now,
                    )
                )
                .values(status=COMPLETED)
            )
            if claimed.rowcount != 1:
                return None
            row = conn.execute(
                select(
                    pairing_requests.c.access_token,
                    pairing_requests.c.refresh_token,
                    pairing_requests.c.user_id,
                ).where(pairing_requests.c.auth_code == auth_code)
            ).one()
            conn.execute(
                pairing_requests.update()
                .where(pairing_requests.c.auth_code == auth_code)
                .values(access_token=None, refresh_token=None)
            )
        return row.access_token, row.refresh_token, row.user_id

    def purge_expired(self) -> int:
        """Delete requests whose window has closed, authorized or not."""
        with self.engine.begin() as conn:
            result = conn.execute(pairing_requests.delete().where(pairing_requests.c.expires_at < self._clock()))
        return result.rowcount


def _row_to_pairing(row) -> PairingRequest:
    return PairingRequest(
        id=row.id,
        auth_code=row.auth_code,
        device_name=row.device_name,
        device_id=row.device_id,
        status=row.status,
        user_id=row.user_id,
        created_at=as_utc(row.created_at),
        expires_at=as_utc(row.expires_at),
        authorized_at=as_utc(row.authorized_at),
        tokens_ready=row.access_token is not None,
    )


# ---------------------------------------------------------------------------
# Flow
# ---------------------------------------------------------------------------


class DevicePairingFlow:
    def __init__(
        self,
        store: PairingStore,
        controller: AuthSessionController,
        users: UserStore,
        app_base_url: str,
        ttl: timedelta = PAIRING_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._controller = controller
        self._users = users
        self._base_url = app_base_url.rstrip("/")
        self._ttl = ttl
        self._clock = clock

    def initiate(self, device_name: str, device_id: str) -> PairingTicket:
        auth_code = secrets.token_hex(32)
        expires_at = self._clock() + self._ttl
        self._store.create(
            PairingRequest(auth_code=auth_code, device_name=device_name, device_id=device_id, expires_at=expires_at)
        )
        logger.info("Pairing initiated for device %r (expires %s)", device_name, expires_at.isoformat())
        return PairingTicket(
            auth_code=auth_code,
            expires_at=expires_at,
            authorization_url=f"{self._base_url}/auth/desktop?{urlencode({'code': auth_code})}",
        )

    def authorize(self, auth_code: str, user_id: int) -> IssuedTokens:
        """Consume a pending code for `user_id` and mint device tokens.

        The tokens are returned to the caller and parked on the request for
        the device to collect through exchange().

        Raises PairingNotFound for an unknown code, PairingExpired when the
        window has closed or the code was already used, UserNotFound if the
        authorizing account no longer exists.
        """
        request = self._store.get_by_code(auth_code)
        if request is None:
            raise PairingNotFound("Unknown pairing code.")
        if request.effective_status(self._clock()) != PENDING:
            logger.info("Pairing %s rejected: %s", request.id, request.effective_status(self._clock()))
            raise PairingExpired("Pairing code has expired or was already used.")

        user = self._users.get_by_id(user_id)
        if user is None:
            raise UserNotFound("User not found.")

        if not self._store.mark_authorized(auth_code, user_id):
            # Consumed or expired between the read above and this update.
            raise PairingExpired("Pairing code has expired or was already used.")

        issued = self._controller.login(user)
        self._store.park_tokens(auth_code, issued.access_token, issued.refresh_token)
        logger.info("Pairing %s authorized by user %s for device %r", request.id, user_id, request.device_name)
        return issued

    def exchange(self, auth_code: str, device_id: str) -> IssuedTokens:
        """Release the tokens minted at authorization to the pairing device.

        Succeeds once per code, and only for the device_id given at initiate.

        Raises PairingNotFound for an unknown code or a different device,
        PairingPending while the browser has not confirmed yet, PairingExpired
        once the window has closed or the tokens were already collected.
        """
        request = self._store.get_by_code(auth_code)
        if request is None or request.device_id != device_id:
            raise PairingNotFound("Unknown pairing code.")

        now = self._clock()
        status = request.effective_status(now)
        if status == PENDING or (status == AUTHORIZED and not request.tokens_ready):
            raise PairingPending("Pairing has not been authorized yet.")
        if status != AUTHORIZED:
            logger.info("Pairing %s exchange rejected: %s", request.id, status)
            raise PairingExpired("Pairing code has expired or was already used.")

        released = self._store.release_tokens(auth_code, device_id)
        if released is None:
            # Collected or expired between the read above and this update.
            raise PairingExpired("Pairing code has expired or was already used.")
        access_token, refresh_token, user_id = released

        user = self._users.get_by_id(user_id)
        if user is None:
            raise UserNotFound("User not found.")
        session = self._controller.session_for(refresh_token)
        if session is None or not session.is_active(now):
            raise PairingExpired("The paired session is no longer active.")

        logger.info("Pairing %s exchanged by device %r", request.id, request.device_name)
        return IssuedTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=TokenService.unverified_expiry(access_token),
            refresh_expires_at=session.expires_at,
            session=session,
            user=user,
        )
