"""
auth/errors.py -- Exception taxonomy for the auth subsystem.

Every error carries a stable machine-readable `code`. The HTTP layer maps
these onto responses in api/main.py. All token, session and identity failures
collapse into one generic 401 so a caller never learns which check failed;
the precise class is kept for logs only.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all auth subsystem errors."""

    code = "auth_error"


# ---------------------------------------------------------------------------
# Token layer
# ---------------------------------------------------------------------------


class TokenError(AuthError):
    code = "token_error"


class TokenExpired(TokenError):
    """Signature verified but the current time is at or past `exp`."""

    code = "token_expired"


class TokenMalformed(TokenError):
    """Token could not be parsed or decoded, or is missing required claims."""

    code = "token_malformed"


class SignatureInvalid(TokenError):
    """Token parses but does not verify under the key for its kind."""

    code = "signature_invalid"


# ---------------------------------------------------------------------------
# Session layer. Logout treats both of these as success.
# ---------------------------------------------------------------------------


class SessionNotFound(AuthError):
    code = "session_not_found"


class SessionAlreadyInvalidated(AuthError):
    code = "session_already_invalidated"


class SessionPersistenceError(AuthError):
    """The session row could not be written; the issued tokens were discarded."""

    code = "session_persistence_error"


# ---------------------------------------------------------------------------
# Encryption layer
# ---------------------------------------------------------------------------


class EncryptionError(AuthError):
    code = "encryption_error"


class MalformedCiphertext(EncryptionError):
    code = "malformed_ciphertext"


class DecryptionFailure(EncryptionError):
    code = "decryption_failure"


# ---------------------------------------------------------------------------
# Pairing layer
# ---------------------------------------------------------------------------


class PairingError(AuthError):
    code = "pairing_error"


class PairingExpired(PairingError):
    """Code is past its window or no longer pending (already consumed)."""

    code = "pairing_expired"


class PairingNotFound(PairingError):
    code = "pairing_not_found"


class PairingPending(PairingError):
    """The device asked for its tokens before the browser confirmed the code."""

    code = "authorization_pending"


# ---------------------------------------------------------------------------
# Orchestration layer
# ---------------------------------------------------------------------------


class Unauthenticated(AuthError):
    code = "unauthenticated"


class InvalidCredentials(AuthError):
    """Unknown email or wrong password. Deliberately indistinguishable."""

    code = "bad_credentials"


class UserNotFound(AuthError):
    code = "user_not_found"
