"""Zero-storage tokens for the agent gateway.

A token wraps an API key and its expiry so a hosted gateway can hand out a
single URL (``/mcp?token=...``) without keeping a session table:

    token = base64url(nonce[12] || tag[16] || AES-256-GCM(json{"k", "exp"}))

The AES key is SHA-256(TOKEN_SECRET). When no secret is configured, the key
is derived from the process id plus a random seed drawn at import, so tokens
work for the lifetime of this process and are worthless anywhere else.

decode() never raises: every failure (bad encoding, short buffer, tag
mismatch, bad JSON, bad fields, bad key format, expiry) returns None.
mint() raises ValidationError for bad input.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import os
import re
import secrets
import time
from typing import Callable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from gateway.errors import ValidationError

logger = logging.getLogger("gateway.tokens")

CREDENTIAL_PREFIX = "key_"
MIN_CREDENTIAL_LENGTH = 20

NONCE_LENGTH = 12
TAG_LENGTH = 16

DEFAULT_TTL_MS = 30 * 24 * 60 * 60 * 1000

_TOKEN_ALPHABET = re.compile(r"^[A-Za-z0-9_-]+$")

# Drawn once per process; see derive_key().
_PROCESS_SEED = secrets.token_hex(16)


def is_valid_credential(value: object) -> bool:
    """Check the API key format: 'key_' prefix and at least 20 characters."""
    return (
        isinstance(value, str)
        and value.startswith(CREDENTIAL_PREFIX)
        and len(value) >= MIN_CREDENTIAL_LENGTH
    )


def derive_key(secret: Optional[str]) -> bytes:
    """Derive the 32-byte AES key from the configured secret.

    Without a secret the key comes from process-local entropy, so tokens
    cannot be decoded after a restart or by another instance.
    """
    if secret:
        material = str(secret)
    else:
        material = f"ephemeral-{os.getpid()}-{_PROCESS_SEED}"
    return hashlib.sha256(material.encode("utf-8")).digest()


def _now_ms() -> int:
    return int(time.time() * 1000)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    if not _TOKEN_ALPHABET.match(text):
        raise ValueError("token contains characters outside the base64url alphabet")
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class TokenCodec:
    """Mints and decodes self-verifying, expiring API key tokens."""

    def __init__(
        self,
        secret: Optional[str] = None,
        ttl_ms: int = DEFAULT_TTL_MS,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.ttl_ms = int(ttl_ms)
        self.ephemeral = not secret
        self._aead = AESGCM(derive_key(secret))
        self._clock = clock or _now_ms

    @classmethod
    def from_settings(cls, settings) -> "TokenCodec":
        """Build a codec from gateway Settings."""
        return cls(secret=settings.token_secret, ttl_ms=settings.token_ttl_ms)

    def mint(self, credential: str) -> str:
        """Encrypt an API key into a token.

        Args:
            credential: API key to wrap

        Returns:
            URL-safe token string; two calls never return the same token

        Raises:
            ValidationError: If the key is missing or not in key_... format
        """
        token, _expires_at = self.mint_with_expiry(credential)
        return token

    def mint_with_expiry(self, credential: str) -> tuple[str, int]:
        """Like mint(), also returning the expiry (epoch ms) sealed into the token.

        The expiry is reported even when it is already in the past (zero or
        negative TTL), unlike expires_at() which only answers for live tokens.
        """
        if not credential or not isinstance(credential, str):
            raise ValidationError("credential required to mint token", field="credential")
        if not is_valid_credential(credential):
            raise ValidationError(
                f'invalid credential format: must start with "{CREDENTIAL_PREFIX}" '
                f"and be at least {MIN_CREDENTIAL_LENGTH} characters",
                field="credential",
            )

        expires_at = int(self._clock()) + self.ttl_ms
        payload = {"k": credential, "exp": expires_at}
        plaintext = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        nonce = os.urandom(NONCE_LENGTH)

        # AESGCM appends the tag to the ciphertext; the wire format wants it first.
        sealed = self._aead.encrypt(nonce, plaintext, None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return _b64url_encode(nonce + tag + ciphertext), expires_at

    def expires_at(self, token: str) -> Optional[int]:
        """Return the expiry (epoch ms) of a valid token, or None."""
        payload = self._open(token)
        return payload["exp"] if payload else None

    def decode(self, token: Optional[str]) -> Optional[str]:
        """Recover the API key from a token, or None if it is not usable."""
        payload = self._open(token)
        return payload["k"] if payload else None

    def _open(self, token: Optional[str]) -> Optional[dict]:
        if not token or not isinstance(token, str):
            return None

        try:
            raw = _b64url_decode(token)
        except (ValueError, binascii.Error):
            return None

        # Reject before any crypto work.
        if len(raw) < NONCE_LENGTH + TAG_LENGTH:
            return None

        nonce = raw[:NONCE_LENGTH]
        tag = raw[NONCE_LENGTH:NONCE_LENGTH + TAG_LENGTH]
        ciphertext = raw[NONCE_LENGTH + TAG_LENGTH:]

        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
            payload = json.loads(plaintext.decode("utf-8"))
        except (InvalidTag, ValueError):
            return None

        if not isinstance(payload, dict):
            return None
        credential = payload.get("k")
        expires_at = payload.get("exp")
        if not isinstance(expires_at, (int, float)) or isinstance(expires_at, bool):
            return None
        if not is_valid_credential(credential):
            return None
        if self._clock() >= expires_at:
            logger.debug("token_expired exp=%s", expires_at)
            return None

        return {"k": credential, "exp": int(expires_at)}
