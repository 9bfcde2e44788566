"""
auth/encryption.py -- Symmetric encryption of secrets at rest (stored API keys).

Format: "<ivHex>:<ciphertextHex>". AES-256-CBC with PKCS7 padding. The 32-byte
key is SHA-256 of the configured passphrase, so any passphrase length works.
A fresh 16-byte IV is drawn from `secrets` on every encrypt() call, so two
encryptions of the same plaintext never produce the same string.

One shared key for every stored secret. There is no per-secret key rotation;
this is for masking and server-side recovery of provider API keys, not a
general-purpose vault.

Layer rule: no imports from api/. The passphrase is passed in by the caller.
"""

from __future__ import annotations

import hashlib
import logging
import secrets

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from auth.errors import DecryptionFailure, MalformedCiphertext

logger = logging.getLogger("sessiongate.auth")

_IV_LENGTH = 16
_SEPARATOR = ":"
_MASK_PLACEHOLDER = "****"


class EncryptionService:
    """Encrypts and decrypts opaque secrets with a key derived from a passphrase."""

    def __init__(self, passphrase: str) -> None:
        if not passphrase:
            raise ValueError("Encryption passphrase must not be empty.")
        self._key = hashlib.sha256(passphrase.encode("utf-8")).digest()

    def _cipher(self, iv: bytes) -> Cipher:
        return Cipher(algorithms.AES(self._key), modes.CBC(iv))

    def encrypt(self, plaintext: str) -> str:
        """Return "iv:ciphertext", both hex-encoded."""
        iv = secrets.token_bytes(_IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = self._cipher(iv).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}{_SEPARATOR}{ciphertext.hex()}"

    def decrypt(self, encoded: str) -> str:
        """Reverse encrypt().

        Splits on the first ":" only. Raises MalformedCiphertext when the
        separator is missing, either half is not hex, or the IV is not 16
        bytes. Raises DecryptionFailure when the key is wrong or the data has
        been tampered with (bad padding, bad block length, non-UTF-8 output).
        """
        iv_hex, sep, body_hex = encoded.partition(_SEPARATOR)
        if not sep:
            raise MalformedCiphertext("Ciphertext is missing the iv separator.")
        try:
            iv = bytes.fromhex(iv_hex)
            body = bytes.fromhex(body_hex)
        except ValueError as exc:
            raise MalformedCiphertext("Ciphertext is not hex-encoded.") from exc
        if len(iv) != _IV_LENGTH:
            raise MalformedCiphertext(f"IV must be {_IV_LENGTH} bytes, got {len(iv)}.")

        try:
            decryptor = self._cipher(iv).decryptor()
            padded = decryptor.update(body) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            raw = unpadder.update(padded) + unpadder.finalize()
            return raw.decode("utf-8")
        except ValueError as exc:
            # cryptography raises ValueError for bad block length and bad
            # padding; UnicodeDecodeError is a ValueError subclass too.
            logger.warning("Decryption failed: %s", type(exc).__name__)
            raise DecryptionFailure("Ciphertext could not be decrypted with the configured key.") from exc


def mask_secret(secret: str | None) -> str:
    """Return a display-safe form of a secret: "sk_l...7890".

    Secrets shorter than 8 characters (including empty/None) are replaced
    entirely by a fixed placeholder so no part of them leaks.
    """
    if not secret or len(secret) < 8:
        return _MASK_PLACEHOLDER
    return f"{secret[:4]}...{secret[-4:]}"
