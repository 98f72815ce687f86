"""
Per-event key derivation and envelope encryption.

Every event gets its own PBKDF2-SHA256 key from the master key and a fresh
random salt. AES-256-GCM is preferred; if it fails for any reason the payload
is encrypted with AES-256-CBC instead and the envelope records which
algorithm was used so the reader can pick the matching path.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import time
from collections.abc import Callable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from audit.errors import AuthenticationFailed, DecryptionError
from audit.schemas import CBC_ALGORITHM, GCM_ALGORITHM, KEY_DERIVATION, EncryptedEnvelope

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
GCM_NONCE_LENGTH = 12
GCM_TAG_LENGTH = 16
CBC_IV_LENGTH = 16

FallbackHandler = Callable[[Exception], None]


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"), validate=True)


def normalize_master_key(key: bytes | str) -> bytes:
    if isinstance(key, str):
        key = key.encode("utf-8")
    if not key:
        raise ValueError("Master encryption key must not be empty")
    return bytes(key)


def generate_master_key() -> bytes:
    return os.urandom(KEY_LENGTH)


def derive_key(master_key: bytes, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(master_key)


class EnvelopeCipher:
    """Encrypts and decrypts single payloads into EncryptedEnvelope objects."""

    def __init__(
        self,
        master_key: bytes | str,
        iterations: int = 10000,
        salt_length: int = 16,
        algorithm: str = GCM_ALGORITHM,
        on_fallback: FallbackHandler | None = None,
    ) -> None:
        self._master_key = normalize_master_key(master_key)
        self.iterations = iterations
        self.salt_length = salt_length
        self.algorithm = algorithm
        self.on_fallback = on_fallback

    def encrypt(self, plaintext: bytes) -> EncryptedEnvelope:
        if self.algorithm == CBC_ALGORITHM:
            return self.encrypt_cbc(plaintext)
        try:
            return self.encrypt_gcm(plaintext)
        except Exception as exc:  # noqa: BLE001 - any GCM failure degrades to CBC
            if self.on_fallback is not None:
                self.on_fallback(exc)
            else:
                logger.warning("GCM encryption failed, falling back to CBC: %s", exc)
            return self.encrypt_cbc(plaintext)

    def encrypt_gcm(self, plaintext: bytes) -> EncryptedEnvelope:
        salt = os.urandom(self.salt_length)
        nonce = os.urandom(GCM_NONCE_LENGTH)
        key = derive_key(self._master_key, salt, self.iterations)
        aad = json.dumps(
            {
                "timestamp": int(time.time() * 1000),
                "algorithm": GCM_ALGORITHM,
                "key_derivation": KEY_DERIVATION,
            },
            separators=(",", ":"),
        ).encode("utf-8")
        sealed = AESGCM(key).encrypt(nonce, plaintext, aad)
        ciphertext, tag = sealed[:-GCM_TAG_LENGTH], sealed[-GCM_TAG_LENGTH:]
        return EncryptedEnvelope(
            salt=_b64(salt),
            iv=_b64(nonce),
            algorithm=GCM_ALGORITHM,
            data=_b64(ciphertext),
            iterations=self.iterations,
            auth_tag=_b64(tag),
            aad=_b64(aad),
        )

    def encrypt_cbc(self, plaintext: bytes) -> EncryptedEnvelope:
        salt = os.urandom(self.salt_length)
        iv = os.urandom(CBC_IV_LENGTH)
        key = derive_key(self._master_key, salt, self.iterations)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext) + padder.finalize()
        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return EncryptedEnvelope(
            salt=_b64(salt),
            iv=_b64(iv),
            algorithm=CBC_ALGORITHM,
            data=_b64(ciphertext),
            iterations=self.iterations,
        )

    def decrypt(self, envelope: EncryptedEnvelope) -> bytes:
        if "gcm" in envelope.algorithm.lower():
            return self.decrypt_gcm(envelope)
        return self.decrypt_cbc(envelope)

    def decrypt_gcm(self, envelope: EncryptedEnvelope) -> bytes:
        if envelope.auth_tag is None:
            raise AuthenticationFailed("GCM envelope has no authentication tag")
        try:
            salt = _unb64(envelope.salt)
            nonce = _unb64(envelope.iv)
            ciphertext = _unb64(envelope.data)
            tag = _unb64(envelope.auth_tag)
            aad = _unb64(envelope.aad) if envelope.aad is not None else None
        except ValueError as exc:
            raise DecryptionError(f"GCM decryption failed: {exc}") from exc
        key = derive_key(self._master_key, salt, envelope.iterations)
        try:
            return AESGCM(key).decrypt(nonce, ciphertext + tag, aad)
        except InvalidTag as exc:
            raise AuthenticationFailed("GCM decryption failed: authentication tag mismatch") from exc
        except ValueError as exc:
            raise DecryptionError(f"GCM decryption failed: {exc}") from exc

    def decrypt_cbc(self, envelope: EncryptedEnvelope) -> bytes:
        try:
            salt = _unb64(envelope.salt)
            iv = _unb64(envelope.iv)
            ciphertext = _unb64(envelope.data)
            key = derive_key(self._master_key, salt, envelope.iterations)
            decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError as exc:
            raise DecryptionError(f"CBC decryption failed: {exc}") from exc
