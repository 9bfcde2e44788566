"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work. The only behaviour here is Session.is_active and
PairingRequest.effective_status, which are pure functions of the row and a clock
reading.

All datetimes are timezone-aware UTC.

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone


@dataclass
class User:
    """An account owned by the surrounding application.

    The auth subsystem reads identity (id, email) and role from it and stamps
    last_sign_in_at on login. hashed_password is a bcrypt hash.
    """

    email: str
    role: str = "user"  # "admin", "user"
    subscription_tier: str = "free"
    full_name: str | None = None
    id: int | None = None
    hashed_password: str | None = None
    is_active: bool = True
    created_at: datetime | None = None
    last_sign_in_at: datetime | None = None


@dataclass
class Session:
    """One logged-in device or browser, correlated to an issued refresh token.

    invalidated_at is set once, on logout, and never cleared.
    """

    user_id: int
    refresh_token: str
    expires_at: datetime
    id: int | None = None
    created_at: datetime | None = None
    invalidated_at: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        return self.invalidated_at is None and now < self.expires_at


@dataclass
class PairingRequest:
    """A device's request to be linked to a signed-in browser session.

    status moves pending -> authorized -> completed. "expired" is never
    written; a pending or authorized row is reported expired once
    now > expires_at. completed means the device has collected its tokens.
    """

    auth_code: str
    device_name: str
    device_id: str
    expires_at: datetime
    status: str = "pending"  # "pending", "authorized", "completed", "expired"
    id: int | None = None
    user_id: int | None = None  # set when authorized
    created_at: datetime | None = None
    authorized_at: datetime | None = None
    tokens_ready: bool = False  # device tokens are waiting for exchange

    def effective_status(self, now: datetime) -> str:
        if self.status in ("pending", "authorized") and now > self.expires_at:
            return "expired"
        return self.status


@dataclass
class ProviderCredential:
    """A third-party API key stored encrypted at rest (iv:ciphertext hex)."""

    name: str
    encrypted_key: str
    id: int | None = None
    created_by: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class TokenClaims:
    """Verified claim set of an access or refresh token."""

    user_id: int
    email: str
    kind: str  # "access" or "refresh"
    issued_at: datetime
    expires_at: datetime
    role: str | None = None
    token_id: str | None = None


@dataclass(frozen=True)
class IssuedTokens:
    """Result of a successful login, device pairing or refresh."""

    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    session: Session
    user: User


@dataclass(frozen=True)
class SweepResult:
    expired_removed: int = 0
    stale_removed: int = 0
    total: int = 0


@dataclass(frozen=True)
class PairingTicket:
    """What a device receives when it starts pairing."""

    auth_code: str
    expires_at: datetime
    authorization_url: str


def utcnow() -> datetime:
    """Default clock for stores and services. Tests inject their own."""
    return datetime.now(timezone.utc)
