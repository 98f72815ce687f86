"""Audit logger errors and reported (non-raised) failure records."""

from __future__ import annotations

from dataclasses import dataclass


class AuditError(Exception):
    kind: str = "audit-error"


class AuditIOError(AuditError):
    """Filesystem failure while writing or reading audit data."""

    kind = "io-error"


class DecryptionError(AuditError):
    kind = "decryption-error"


class AuthenticationFailed(DecryptionError):
    """The cipher's own authentication tag rejected the ciphertext."""

    kind = "authentication-failed"


@dataclass(frozen=True)
class IntegrityFailure:
    """A log line skipped because its integrity could not be established."""

    file_path: str
    line_number: int
    reason: str
    expected: str | None = None
    actual: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": "integrity-failure",
            "file_path": self.file_path,
            "line_number": self.line_number,
            "reason": self.reason,
            "expected": self.expected,
            "actual": self.actual,
        }
