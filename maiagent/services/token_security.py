from __future__ import annotations

import base64
import binascii
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from maiagent.config import settings

from .errors import CredentialDecryptError


_BEARER_PATTERN = re.compile(r"(?i)\bbearer\s+[a-z0-9\-._~+/]+=*")
_TOKENISH_PATTERN = re.compile(r"(?i)\b(access|refresh|id)_token\b[^,\n]*")

NONCE_LENGTH = 12
KEY_LENGTH = 32


def redact_sensitive_text(value: str | None) -> str:
    if not value:
        return ""
    out = _BEARER_PATTERN.sub("Bearer [REDACTED]", value)
    out = _TOKENISH_PATTERN.sub("[REDACTED_TOKEN_FIELD]", out)
    return out


class TokenCipher:
    """AES-256-GCM sealing for credentials at rest.

    The stored form is base64(nonce || ciphertext+tag) with a fresh 96-bit
    nonce per call, so equal plaintexts never produce equal blobs.
    """

    def __init__(self, key_b64: str | None) -> None:
        raw = (key_b64 or "").strip()
        self._key = b""
        if not raw:
            return
        try:
            key = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise RuntimeError("ENCRYPTION_KEY must be base64 encoded.") from exc
        if len(key) != KEY_LENGTH:
            raise RuntimeError(
                f"Invalid ENCRYPTION_KEY length: expected {KEY_LENGTH} bytes, got {len(key)}"
            )
        self._key = key

    def enabled(self) -> bool:
        return bool(self._key)

    def encrypt(self, value: str) -> str:
        aead = self._aead()
        nonce = os.urandom(NONCE_LENGTH)
        sealed = aead.encrypt(nonce, value.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, value: str) -> str:
        aead = self._aead()
        try:
            combined = base64.b64decode(value.encode("ascii"), validate=True)
        except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
            raise CredentialDecryptError("Stored credential is not valid base64.") from exc
        if len(combined) <= NONCE_LENGTH:
            raise CredentialDecryptError("Stored credential is truncated.")
        nonce, sealed = combined[:NONCE_LENGTH], combined[NONCE_LENGTH:]
        try:
            raw = aead.decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            raise CredentialDecryptError(
                "Stored credential failed authentication; it was altered or sealed "
                "with a different key."
            ) from exc
        return raw.decode("utf-8")

    def _aead(self) -> AESGCM:
        if not self._key:
            raise RuntimeError("ENCRYPTION_KEY not configured")
        return AESGCM(self._key)


def build_token_cipher_from_env() -> TokenCipher:
    return TokenCipher(key_b64=settings.encryption_key)
