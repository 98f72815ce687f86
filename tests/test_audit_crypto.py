import pytest

from audit.crypto import EnvelopeCipher, derive_key, generate_master_key
from audit.errors import AuthenticationFailed
from audit.integrity import IntegrityChecker
from audit.schemas import CBC_ALGORITHM, GCM_ALGORITHM

KEY = b"0123456789abcdef0123456789abcdef"


def _cipher(**kwargs):
    return EnvelopeCipher(KEY, iterations=1000, **kwargs)


def test_gcm_round_trip():
    cipher = _cipher()
    envelope = cipher.encrypt(b"hello audit")

    assert envelope.algorithm == GCM_ALGORITHM
    assert envelope.auth_tag is not None
    assert envelope.aad is not None
    assert cipher.decrypt(envelope) == b"hello audit"


def test_cbc_round_trip_when_configured():
    cipher = _cipher(algorithm=CBC_ALGORITHM)
    envelope = cipher.encrypt(b"hello audit")

    assert envelope.algorithm == CBC_ALGORITHM
    assert envelope.auth_tag is None
    assert cipher.decrypt(envelope) == b"hello audit"


def test_each_encryption_uses_fresh_salt_and_iv():
    cipher = _cipher()
    first = cipher.encrypt(b"same")
    second = cipher.encrypt(b"same")

    assert first.salt != second.salt
    assert first.iv != second.iv
    assert first.data != second.data


def test_gcm_failure_falls_back_to_cbc(monkeypatch):
    fallbacks = []

    def broken_gcm(self, plaintext):
        raise RuntimeError("gcm unavailable")

    monkeypatch.setattr(EnvelopeCipher, "encrypt_gcm", broken_gcm)
    cipher = _cipher(on_fallback=fallbacks.append)
    envelope = cipher.encrypt(b"payload")

    assert envelope.algorithm == CBC_ALGORITHM
    assert len(fallbacks) == 1
    assert cipher.decrypt(envelope) == b"payload"


def test_wrong_key_fails_gcm_authentication():
    envelope = _cipher().encrypt(b"payload")
    other = EnvelopeCipher(b"another master key", iterations=1000)

    with pytest.raises(AuthenticationFailed):
        other.decrypt(envelope)


def test_tampered_gcm_ciphertext_fails_authentication():
    cipher = _cipher()
    envelope = cipher.encrypt(b"payload that is long enough")
    flipped = "A" if envelope.data[0] != "A" else "B"
    tampered = envelope.model_copy(update={"data": flipped + envelope.data[1:]})

    with pytest.raises(AuthenticationFailed):
        cipher.decrypt(tampered)


def test_key_derivation_is_deterministic_per_salt():
    salt = b"s" * 16
    assert derive_key(KEY, salt, 1000) == derive_key(KEY, salt, 1000)
    assert derive_key(KEY, salt, 1000) != derive_key(KEY, b"t" * 16, 1000)
    assert len(generate_master_key()) == 32


def test_integrity_tag_detects_envelope_changes():
    checker = IntegrityChecker.from_master_key(KEY, 1000)
    envelope = _cipher().encrypt(b"payload")
    tag = checker.sign(envelope)

    assert checker.verify(envelope, tag) is True
    changed = envelope.model_copy(update={"iterations": 2000})
    assert checker.verify(changed, tag) is False


def test_integrity_key_depends_on_master_key():
    envelope = _cipher().encrypt(b"payload")
    tag = IntegrityChecker.from_master_key(KEY, 1000).sign(envelope)
    other = IntegrityChecker.from_master_key(b"another master key", 1000)

    assert other.verify(envelope, tag) is False
