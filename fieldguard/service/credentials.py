from __future__ import annotations

import base64
import binascii
import hmac
import secrets
from typing import Tuple

from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw

from fieldguard.config import Settings
from fieldguard.logging import get_logger

logger = get_logger(__name__)


class CredentialVerifier:
    """Argon2id hashing for user and supervisor PINs.

    Hash and salt are stored separately as base64 so the KDF parameters can
    change without re-encoding existing rows; verification recomputes the raw
    digest and compares in constant time.
    """

    def __init__(self, settings: Settings) -> None:
        self.time_cost = settings.argon2_time_cost
        self.memory_cost = settings.argon2_memory_cost
        self.parallelism = settings.argon2_parallelism
        self.salt_length = settings.argon2_salt_length
        self.hash_length = settings.argon2_hash_length

    def _derive(self, secret: str, salt: bytes) -> bytes:
        return hash_secret_raw(
            secret=secret.encode("utf-8"),
            salt=salt,
            time_cost=self.time_cost,
            memory_cost=self.memory_cost,
            parallelism=self.parallelism,
            hash_len=self.hash_length,
            type=Type.ID,
        )

    def hash(self, secret: str) -> Tuple[str, str]:
        """Return ``(hash_b64, salt_b64)`` for a new secret with a fresh salt."""
        salt = secrets.token_bytes(self.salt_length)
        digest = self._derive(secret, salt)
        return (
            base64.b64encode(digest).decode("ascii"),
            base64.b64encode(salt).decode("ascii"),
        )

    def verify(self, secret: str, stored_hash: str, stored_salt: str) -> bool:
        try:
            expected = base64.b64decode(stored_hash, validate=True)
            salt = base64.b64decode(stored_salt, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("credential_record_malformed")
            return False
        if not expected or len(salt) < 8:
            logger.warning("credential_record_malformed")
            return False
        try:
            candidate = hash_secret_raw(
                secret=secret.encode("utf-8"),
                salt=salt,
                time_cost=self.time_cost,
                memory_cost=self.memory_cost,
                parallelism=self.parallelism,
                hash_len=len(expected),
                type=Type.ID,
            )
        except HashingError as exc:
            logger.warning("credential_hash_failed", error=str(exc))
            return False
        return hmac.compare_digest(candidate, expected)
