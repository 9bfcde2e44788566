"""
auth/tokens.py -- JWT issuing/verification, password hashing, and cookie helpers.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens are signed with two
       DIFFERENT keys (Settings.secret_key / Settings.refresh_secret_key) and
       carry a "type" claim. An access token never verifies as a refresh
       token and vice versa, even if the claim sets look alike [K1].

       Claims: sub (user id as string), email, role, type, jti, iat, exp.
       jti is 128 random bits so two refresh tokens minted for the same user
       in the same second are still distinct -- the session table keys on the
       refresh token value.

       Verification raises a precise TokenError subclass (expired, malformed,
       signature invalid). The HTTP layer collapses all three into one 401.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in AuthSessionController.authenticate() so
       response time does not reveal whether an email exists [C1].

  Keys are passed in via the Settings object given to TokenService(); this
  module never reads configuration on its own.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt
from jose.exceptions import JWTClaimsError

from auth.errors import SignatureInvalid, TokenExpired, TokenMalformed
from auth.models import TokenClaims, utcnow

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("sessiongate.auth")

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    password length well below that threshold.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Stored value is not a bcrypt hash.
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
DUMMY_HASH: str = hash_password("sessiongate_timing_dummy")


# ---------------------------------------------------------------------------
# TokenService
# ---------------------------------------------------------------------------


class TokenService:
    """Issues and verifies access and refresh tokens.

    Stateless apart from its configuration; safe to share across threads.

    Usage:
        tokens = TokenService(settings)
        raw = tokens.issue_access_token(user_id=1, email="a@b.c", role="user")
        claims = tokens.verify_access_token(raw)
    """

    def __init__(self, settings: Settings, clock: Callable[[], datetime] = utcnow) -> None:
        if settings.secret_key == settings.refresh_secret_key:
            raise ValueError("Access and refresh tokens must be signed with different keys.")
        self._keys = {ACCESS: settings.secret_key, REFRESH: settings.refresh_secret_key}
        self._ttls = {
            ACCESS: timedelta(seconds=settings.access_token_expire_seconds),
            REFRESH: timedelta(seconds=settings.refresh_token_expire_seconds),
        }
        self._clock = clock

    @property
    def access_ttl(self) -> timedelta:
        return self._ttls[ACCESS]

    @property
    def refresh_ttl(self) -> timedelta:
        return self._ttls[REFRESH]

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_access_token(self, user_id: int, email: str, role: str | None = None) -> str:
        return self._issue(ACCESS, user_id, email, role)

    def issue_refresh_token(self, user_id: int, email: str, role: str | None = None) -> str:
        return self._issue(REFRESH, user_id, email, role)

    def _issue(self, kind: str, user_id: int, email: str, role: str | None) -> str:
        now = self._clock().replace(microsecond=0)
        payload = {
            "sub": str(user_id),
            "email": email,
            "type": kind,
            "jti": secrets.token_hex(16),
            "iat": now,
            "exp": now + self._ttls[kind],
        }
        if role is not None:
            payload["role"] = role
        return jwt.encode(payload, self._keys[kind], algorithm=_ALGORITHM)

    @staticmethod
    def unverified_expiry(token: str) -> datetime:
        """Read `exp` without verifying. Only for tokens this service just issued."""
        try:
            exp = jwt.get_unverified_claims(token)["exp"]
            return datetime.fromtimestamp(int(exp), tz=timezone.utc)
        except (JWTError, KeyError, TypeError, ValueError) as exc:
            raise TokenMalformed("Token has no readable expiry.") from exc

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify_access_token(self, token: str) -> TokenClaims:
        return self._verify(ACCESS, token)

    def verify_refresh_token(self, token: str) -> TokenClaims:
        return self._verify(REFRESH, token)

    def _verify(self, kind: str, token: str) -> TokenClaims:
        """Verify `token` against the key for `kind` only.

        Order matters: the signature is checked before expiry, so an expired
        token with a bad signature is reported as SignatureInvalid.

        Expiry is judged against the injected clock, not jose's wall clock:
        a token is valid while now < exp and expired from exp onwards.
        """
        if not token:
            raise TokenMalformed("Empty token.")
        try:
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            logger.info("Rejected %s token: malformed", kind)
            raise TokenMalformed("Token could not be decoded.") from exc

        try:
            payload = jwt.decode(
                token,
                self._keys[kind],
                algorithms=[_ALGORITHM],
                options={"verify_exp": False, "verify_iat": False},
            )
        except JWTClaimsError as exc:
            logger.info("Rejected %s token: invalid claims", kind)
            raise TokenMalformed("Token claims are invalid.") from exc
        except JWTError as exc:
            logger.warning("Rejected %s token: signature_invalid", kind)
            raise SignatureInvalid("Token signature could not be verified.") from exc

        if payload.get("type") != kind:
            logger.warning("Rejected %s token: wrong_kind (%r)", kind, payload.get("type"))
            raise SignatureInvalid("Token was not issued as a %s token." % kind)

        claims = _claims_from_payload(kind, payload)
        if self._clock() >= claims.expires_at:
            logger.info("Rejected %s token: expired", kind)
            raise TokenExpired("Token has expired.")
        return claims


def _claims_from_payload(kind: str, payload: dict) -> TokenClaims:
    try:
        return TokenClaims(
            user_id=int(payload["sub"]),
            email=payload["email"],
            kind=kind,
            role=payload.get("role"),
            token_id=payload.get("jti"),
            issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise TokenMalformed("Token is missing required claims.") from exc


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookies(response, access_token: str, refresh_token: str, tokens: TokenService, secure: bool) -> None:
    """Write both tokens as httpOnly cookies on the response.

    httponly=True: JS cannot read the cookies (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    max_age: matches each token's own expiry so cookie and token expire together.
    """
    response.set_cookie(
        ACCESS_COOKIE,
        value=access_token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=int(tokens.access_ttl.total_seconds()),
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        value=refresh_token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=int(tokens.refresh_ttl.total_seconds()),
        path="/",
    )


def clear_auth_cookies(response) -> None:
    response.delete_cookie(ACCESS_COOKIE, path="/")
    response.delete_cookie(REFRESH_COOKIE, path="/")
