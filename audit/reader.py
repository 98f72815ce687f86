"""Read path for audit log files: integrity check, decrypt, decompress, decode."""

from __future__ import annotations

import gzip
import logging
import zlib
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError

from audit.crypto import EnvelopeCipher, normalize_master_key
from audit.errors import (
    AuditError,
    AuditIOError,
    AuthenticationFailed,
    DecryptionError,
    IntegrityFailure,
)
from audit.integrity import IntegrityChecker
from audit.schemas import AuditEvent, LogEntry, LogHeader

logger = logging.getLogger(__name__)

ReaderListener = Callable[[str, dict[str, object]], None]


@dataclass(frozen=True)
class LineOutcome:
    line_number: int
    event: AuditEvent | None = None
    failure: IntegrityFailure | None = None
    error: str | None = None


@dataclass
class VerificationReport:
    file_path: str
    total: int = 0
    valid: int = 0
    unreadable: int = 0
    integrity_failures: list[IntegrityFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.integrity_failures and self.unreadable == 0

    def to_dict(self) -> dict[str, object]:
        return {
            "file_path": self.file_path,
            "total": self.total,
            "valid": self.valid,
            "unreadable": self.unreadable,
            "integrity_failures": [failure.to_dict() for failure in self.integrity_failures],
        }


class AuditLogReader:
    """
    Decodes audit log files written with the same master key.

    Lines that fail their integrity check or cannot be decoded are skipped and
    reported through ``emit``; only a missing file or an unreadable header
    aborts a read. The HMAC key is derived with the iteration count recorded
    in each file's header. With ``require_integrity`` every entry must carry
    a valid tag, whatever the file header declares.
    """

    def __init__(
        self,
        master_key: bytes | str,
        emit: ReaderListener | None = None,
        require_integrity: bool = True,
    ) -> None:
        self._master_key = normalize_master_key(master_key)
        self._cipher = EnvelopeCipher(self._master_key)
        self._checkers: dict[int, IntegrityChecker] = {}
        self._emit = emit
        self.require_integrity = require_integrity
        self.integrity_checks = 0
        self.integrity_failures = 0

    def _checker(self, iterations: int) -> IntegrityChecker:
        checker = self._checkers.get(iterations)
        if checker is None:
            checker = IntegrityChecker.from_master_key(self._master_key, iterations)
            self._checkers[iterations] = checker
        return checker

    def _report(self, kind: str, payload: dict[str, object]) -> None:
        if self._emit is not None:
            self._emit(kind, payload)
        else:
            logger.warning("audit %s: %s", kind, payload)

    def read(self, file_path: str | Path) -> list[AuditEvent]:
        return [
            outcome.event
            for outcome in self.iter_file(Path(file_path))
            if outcome.event is not None
        ]

    def verify(self, file_path: str | Path) -> VerificationReport:
        report = VerificationReport(file_path=str(file_path))
        for outcome in self.iter_file(Path(file_path)):
            report.total += 1
            if outcome.event is not None:
                report.valid += 1
            elif outcome.failure is not None:
                report.integrity_failures.append(outcome.failure)
            else:
                report.unreadable += 1
        return report

    def iter_file(self, path: Path) -> Iterator[LineOutcome]:
        try:
            raw = path.read_bytes()
        except OSError as exc:
            raise AuditIOError(f"Failed to read audit logs: {exc}") from exc
        lines = [
            (number, line)
            for number, line in enumerate(raw.split(b"\n"), start=1)
            if line.strip()
        ]
        if not lines:
            return
        try:
            header = LogHeader.model_validate_json(lines[0][1])
        except ValidationError as exc:
            raise AuditError(f"Failed to read audit logs: invalid header in {path}") from exc
        for number, line in lines[1:]:
            yield self._read_line(path, header, number, line)

    def _integrity_failure(
        self,
        path: Path,
        line_number: int,
        reason: str,
        expected: str | None = None,
        actual: str | None = None,
    ) -> LineOutcome:
        failure = IntegrityFailure(
            file_path=str(path),
            line_number=line_number,
            reason=reason,
            expected=expected,
            actual=actual,
        )
        self.integrity_failures += 1
        self._report("integrity-failure", failure.to_dict())
        return LineOutcome(line_number, failure=failure)

    def _unreadable(self, path: Path, line_number: int, message: str) -> LineOutcome:
        self._report(
            "error",
            {"message": message, "file_path": str(path), "line_number": line_number},
        )
        return LineOutcome(line_number, error=message)

    def _read_line(
        self,
        path: Path,
        header: LogHeader,
        line_number: int,
        line: bytes,
    ) -> LineOutcome:
        try:
            entry = LogEntry.model_validate_json(line)
        except ValidationError as exc:
            return self._unreadable(path, line_number, f"Failed to parse log entry: {exc}")

        if entry.integrity is not None or self.require_integrity:
            self.integrity_checks += 1
            if entry.integrity is None:
                return self._integrity_failure(path, line_number, "missing integrity tag")
            checker = self._checker(header.encryption.iterations)
            if not checker.verify(entry.data, entry.integrity):
                return self._integrity_failure(
                    path,
                    line_number,
                    "hmac mismatch",
                    expected=entry.integrity,
                    actual=checker.sign(entry.data),
                )

        try:
            plaintext = self._cipher.decrypt(entry.data)
        except AuthenticationFailed as exc:
            return self._integrity_failure(path, line_number, str(exc))
        except DecryptionError as exc:
            return self._unreadable(path, line_number, str(exc))

        if entry.compressed:
            try:
                plaintext = gzip.decompress(plaintext)
            except (OSError, EOFError, zlib.error) as exc:
                return self._unreadable(path, line_number, f"Decompression failed: {exc}")

        try:
            event = AuditEvent.model_validate_json(plaintext)
        except ValidationError as exc:
            return self._unreadable(path, line_number, f"Failed to decode audit event: {exc}")
        return LineOutcome(line_number, event=event)
