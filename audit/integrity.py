"""HMAC-SHA256 integrity tags over encrypted envelopes."""

from __future__ import annotations

import hashlib
import hmac

from audit.crypto import derive_key, normalize_master_key
from audit.schemas import EncryptedEnvelope

HMAC_KEY_LABEL = b"audit-hmac-key"


def derive_hmac_key(master_key: bytes | str, iterations: int) -> bytes:
    return derive_key(normalize_master_key(master_key), HMAC_KEY_LABEL, iterations)


class IntegrityChecker:
    """Signs and verifies envelopes with a key separate from the cipher keys."""

    def __init__(self, hmac_key: bytes) -> None:
        self._key = hmac_key

    @classmethod
    def from_master_key(cls, master_key: bytes | str, iterations: int) -> "IntegrityChecker":
        return cls(derive_hmac_key(master_key, iterations))

    def sign(self, envelope: EncryptedEnvelope) -> str:
        return hmac.new(self._key, envelope.canonical_bytes(), hashlib.sha256).hexdigest()

    def verify(self, envelope: EncryptedEnvelope, expected: str) -> bool:
        actual = self.sign(envelope)
        return hmac.compare_digest(actual.encode("utf-8"), expected.encode("utf-8"))
