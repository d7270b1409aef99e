"""Versioned envelope encryption for per-tenant integration credentials.

Ciphertext layout (base64 encoded at rest)::

    nonce (12 bytes) || tag (16 bytes) || encrypted bytes

Several master-key versions may be loaded at once. ``encrypt`` defaults to the
highest version; ``decrypt`` needs the version stored next to the ciphertext,
so rotating keys never requires rewriting existing rows in place.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import re
import secrets
from typing import Mapping, Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from switchyard.errors import KeyVersionNotFound, VaultConfigurationError

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16
MASTER_KEY_ENV_PATTERN = re.compile(r"^SECRETS_MASTER_KEY_V(\d+)$")


def load_master_keys(environ: Optional[Mapping[str, str]] = None) -> dict[int, bytes]:
    """Collect ``SECRETS_MASTER_KEY_V<n>`` values (base64, 32 bytes each)."""
    source = os.environ if environ is None else environ
    keys: dict[int, bytes] = {}
    for name, raw_value in source.items():
        match = MASTER_KEY_ENV_PATTERN.match(name)
        if not match or not raw_value:
            continue
        version = int(match.group(1))
        if version < 1:
            continue
        try:
            key = base64.b64decode(raw_value, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("%s is not valid base64; skipping", name)
            continue
        if len(key) != KEY_LENGTH:
            logger.warning("%s must decode to %s bytes (got %s); skipping", name, KEY_LENGTH, len(key))
            continue
        keys[version] = key
    return keys


def generate_master_key() -> str:
    return base64.b64encode(secrets.token_bytes(KEY_LENGTH)).decode("ascii")


class SecretsVault:
    """AES-256-GCM vault keyed by master-key version."""

    def __init__(self, keys: Mapping[int, bytes]):
        if not keys:
            raise VaultConfigurationError()
        for version, key in keys.items():
            if len(key) != KEY_LENGTH:
                raise VaultConfigurationError(f"Master key version {version} must be {KEY_LENGTH} bytes")
        self._keys = {int(version): bytes(key) for version, key in keys.items()}

    @classmethod
    def from_settings(cls, settings, environ: Optional[Mapping[str, str]] = None) -> "SecretsVault":
        """Build the vault at startup.

        Without any master key this refuses to start in production. Elsewhere it
        only falls back to a throwaway in-memory key when
        ``vault_allow_ephemeral_key`` is set, because secrets written under such a
        key are unreadable after a restart.
        """
        keys = load_master_keys(environ)
        if keys:
            logger.info("Secrets vault loaded key versions %s", sorted(keys))
            return cls(keys)
        if settings.is_production or not settings.vault_allow_ephemeral_key:
            raise VaultConfigurationError(
                "No SECRETS_MASTER_KEY_V<n> configured; refusing to start without a persistent key"
            )
        logger.warning(
            "No SECRETS_MASTER_KEY_V<n> configured; using an ephemeral key (environment=%s). "
            "Secrets stored now will not survive a restart.",
            settings.environment,
        )
        return cls({1: secrets.token_bytes(KEY_LENGTH)})

    @property
    def key_versions(self) -> list[int]:
        return sorted(self._keys)

    def current_key_version(self) -> int:
        return max(self._keys)

    def _key(self, version: int) -> bytes:
        key = self._keys.get(int(version))
        if key is None:
            raise KeyVersionNotFound(version)
        return key

    def encrypt(self, plaintext: str, key_version: Optional[int] = None) -> tuple[str, int]:
        version = self.current_key_version() if key_version is None else int(key_version)
        aead = AESGCM(self._key(version))
        nonce = os.urandom(NONCE_LENGTH)
        sealed = aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        # cryptography appends the tag; the stored layout puts it after the nonce.
        encrypted, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(nonce + tag + encrypted).decode("ascii"), version

    def decrypt(self, ciphertext: str, key_version: int) -> str:
        """Decrypt a stored value.

        Raises ``KeyVersionNotFound`` for an unknown version and
        ``cryptography.exceptions.InvalidTag`` when the ciphertext was altered.
        """
        aead = AESGCM(self._key(key_version))
        blob = base64.b64decode(ciphertext)
        if len(blob) < NONCE_LENGTH + TAG_LENGTH:
            raise ValueError("Ciphertext is too short")
        nonce = blob[:NONCE_LENGTH]
        tag = blob[NONCE_LENGTH:NONCE_LENGTH + TAG_LENGTH]
        encrypted = blob[NONCE_LENGTH + TAG_LENGTH:]
        return aead.decrypt(nonce, encrypted + tag, None).decode("utf-8")
