"""
Encrypted, tamper-evident audit logger.

Events pass through normalize -> serialize -> compress -> encrypt -> HMAC on
the caller's side of ``submit``; that half is synchronous, so the write queue
receives entries in exactly the order they were submitted. A single writer
task drains the queue, rotates files and appends lines.
"""

from __future__ import annotations

import asyncio
import gzip
import logging
import os
import platform
import socket
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from audit.crypto import EnvelopeCipher, generate_master_key
from audit.errors import AuditError, AuditIOError
from audit.integrity import IntegrityChecker
from audit.reader import AuditLogReader, VerificationReport
from audit.rotation import LogFileSet
from audit.schemas import (
    AuditEvent,
    AuditLoggerConfig,
    CompressionInfo,
    EncryptionInfo,
    IntegrityInfo,
    LogEntry,
    LogHeader,
)

logger = logging.getLogger(__name__)

AuditListener = Callable[[str, dict[str, object]], None]

_ROTATION_CHECK = object()
_LOG_LEVELS = {
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "integrity-failure": logging.ERROR,
    "log-rotation": logging.INFO,
}


@dataclass
class _WriteRequest:
    entry: LogEntry
    future: asyncio.Future[None]


def process_metadata() -> dict[str, object]:
    return {
        "pid": os.getpid(),
        "hostname": socket.gethostname(),
        "platform": sys.platform,
        "python_version": platform.python_version(),
    }


def normalize_event(event: AuditEvent | Mapping[str, Any], source: str) -> AuditEvent:
    """Fill defaults and process metadata; caller-supplied metadata wins."""
    if isinstance(event, AuditEvent):
        data = event.model_dump()
    else:
        data = dict(event)
    data = {key: value for key, value in data.items() if value is not None}
    data.setdefault("source", source)
    data["metadata"] = {**process_metadata(), **dict(data.get("metadata") or {})}
    return AuditEvent.model_validate(data)


class EncryptedAuditLogger:
    """
    Durable audit trail with per-entry encryption, integrity tags and rotation.

    The writer task and rotation timer start on first use (or ``start()``) and
    need a running event loop. ``destroy()`` waits for every accepted entry to
    reach disk before releasing resources.
    """

    def __init__(
        self,
        config: AuditLoggerConfig | None = None,
        encryption_key: bytes | str | None = None,
    ) -> None:
        self.config = config or AuditLoggerConfig()
        if encryption_key is None:
            logger.warning(
                "No audit encryption key supplied; generated an ephemeral key, "
                "logs from this process cannot be read back after it exits"
            )
            encryption_key = generate_master_key()
        self._listeners: list[AuditListener] = []
        self._stats = {
            "total_logs": 0,
            "encrypted_logs": 0,
            "compressed_logs": 0,
            "rotated_files": 0,
            "fallback_encryptions": 0,
        }
        self._cipher = EnvelopeCipher(
            encryption_key,
            iterations=self.config.kdf_iterations,
            salt_length=self.config.salt_length,
            algorithm=self.config.algorithm,
            on_fallback=self._on_cipher_fallback,
        )
        self._integrity = IntegrityChecker.from_master_key(
            encryption_key, self.config.kdf_iterations
        )
        self._reader = AuditLogReader(
            encryption_key,
            emit=self._emit,
            require_integrity=self.config.enable_integrity_check,
        )
        self._files = LogFileSet(
            self.config.log_dir,
            max_files=self.config.max_files,
            sync_writes=self.config.sync_writes,
        )
        self._queue: asyncio.Queue[object] | None = None
        self._writer: asyncio.Task[None] | None = None
        self._rotation_timer: asyncio.Task[None] | None = None
        self._closed = False
        self._destroyed = False

        self._initialize_log_directory()

    # -- listeners -----------------------------------------------------------------

    def add_listener(self, listener: AuditListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: AuditListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, kind: str, payload: dict[str, object]) -> None:
        logger.log(_LOG_LEVELS.get(kind, logging.DEBUG), "audit %s: %s", kind, payload)
        for listener in list(self._listeners):
            try:
                listener(kind, payload)
            except Exception as exc:  # noqa: BLE001 - listeners must not break logging
                logger.warning("Audit listener failed on %s: %s", kind, exc)

    def _on_cipher_fallback(self, exc: Exception) -> None:
        self._stats["fallback_encryptions"] += 1
        self._emit(
            "warning",
            {"message": "GCM encryption failed, falling back to CBC", "error": str(exc)},
        )

    # -- files ---------------------------------------------------------------------

    @property
    def current_log_file(self) -> Path:
        return self._files.current.path

    @property
    def current_log_size(self) -> int:
        return self._files.current_size

    @property
    def log_files(self) -> list[Path]:
        return [info.path for info in self._files.files]

    def _build_header(self) -> LogHeader:
        return LogHeader(
            pid=os.getpid(),
            hostname=socket.gethostname(),
            encryption=EncryptionInfo(
                algorithm=self.config.algorithm,
                iterations=self.config.kdf_iterations,
            ),
            compression=CompressionInfo(
                enabled=self.config.enable_compression,
                level=self.config.compression_level,
                threshold=self.config.compression_threshold,
            ),
            integrity=IntegrityInfo(enabled=self.config.enable_integrity_check),
        )

    def _initialize_log_directory(self) -> None:
        try:
            self._files.ensure_directory()
            self._files.scan_existing()
            info = self._files.create_file(self._build_header())
        except OSError as exc:
            raise AuditIOError(f"Failed to initialize log directory: {exc}") from exc
        self._emit("log-file-created", {"file_name": str(info.path)})
        self._prune()

    def _prune(self) -> None:
        for path, error in self._files.prune():
            if error is None:
                self._emit("log-file-deleted", {"file_name": path.name})
            else:
                self._emit(
                    "error",
                    {"message": f"Failed to delete old log file {path.name}: {error}"},
                )

    async def _rotate(self) -> None:
        self._emit("log-rotation", {"old_file": str(self._files.current.path)})
        try:
            info = await asyncio.to_thread(self._files.create_file, self._build_header())
        except OSError as exc:
            self._emit("error", {"message": f"Log rotation failed: {exc}"})
            return
        self._emit("log-file-created", {"file_name": str(info.path)})
        self._prune()
        self._stats["rotated_files"] += 1

    # -- write path ----------------------------------------------------------------

    async def start(self) -> None:
        self._ensure_started()

    def _ensure_started(self) -> asyncio.Queue[object]:
        if self._queue is None:
            self._queue = asyncio.Queue()
            self._writer = asyncio.create_task(self._drain(), name="audit-log-writer")
            self._rotation_timer = asyncio.create_task(
                self._rotation_check_loop(), name="audit-log-rotation"
            )
        return self._queue

    def _seal(self, event: AuditEvent) -> LogEntry:
        payload = event.model_dump_json().encode("utf-8")
        compressed = False
        if (
            self.config.enable_compression
            and len(payload) > self.config.compression_threshold
        ):
            try:
                payload = gzip.compress(
                    payload, compresslevel=self.config.compression_level, mtime=0
                )
                compressed = True
                self._stats["compressed_logs"] += 1
            except Exception as exc:  # noqa: BLE001 - fall back to uncompressed
                self._emit("warning", {"message": f"Compression failed: {exc}"})
        envelope = self._cipher.encrypt(payload)
        integrity = (
            self._integrity.sign(envelope) if self.config.enable_integrity_check else None
        )
        return LogEntry(
            timestamp=event.timestamp.isoformat(),
            compressed=compressed,
            data=envelope,
            integrity=integrity,
        )

    def submit(self, event: AuditEvent | Mapping[str, Any]) -> asyncio.Future[None]:
        """Seal ``event`` and queue it; the returned future resolves once written."""
        if self._closed:
            raise AuditError("Audit logger has been destroyed")
        queue = self._ensure_started()
        try:
            audit_event = normalize_event(event, self.config.source)
            entry = self._seal(audit_event)
        except (ValidationError, ValueError, TypeError) as exc:
            self._emit("error", {"message": f"Failed to log audit event: {exc}"})
            raise AuditError(f"Failed to log audit event: {exc}") from exc
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        queue.put_nowait(_WriteRequest(entry, future))
        return future

    async def log_audit_event(self, event: AuditEvent | Mapping[str, Any]) -> None:
        await self.submit(event)

    async def _drain(self) -> None:
        queue = self._ensure_started()
        while True:
            request = await queue.get()
            try:
                if request is _ROTATION_CHECK:
                    if self._files.should_rotate_proactively(self.config.max_file_size):
                        await self._rotate()
                elif isinstance(request, _WriteRequest):
                    await self._write(request)
            except asyncio.CancelledError:
                if isinstance(request, _WriteRequest) and not request.future.done():
                    request.future.set_exception(
                        AuditIOError("Audit writer stopped before the entry was written")
                    )
                raise
            except Exception as exc:  # noqa: BLE001 - the writer must outlive one bad entry
                logger.exception("Audit writer failed: %s", exc)
                if isinstance(request, _WriteRequest) and not request.future.done():
                    request.future.set_exception(AuditError(str(exc)))
            finally:
                queue.task_done()

    async def _write(self, request: _WriteRequest) -> None:
        line = request.entry.to_line()
        if self._files.should_rotate(len(line), self.config.max_file_size):
            await self._rotate()
        try:
            await asyncio.to_thread(self._files.append, line)
        except OSError as exc:
            self._emit("error", {"message": f"Failed to write audit log entry: {exc}"})
            if not request.future.done():
                error = AuditIOError(f"Failed to write audit log entry: {exc}")
                error.__cause__ = exc
                request.future.set_exception(error)
            return
        self._stats["total_logs"] += 1
        self._stats["encrypted_logs"] += 1
        if not request.future.done():
            request.future.set_result(None)

    async def _rotation_check_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.check_interval)
            if self._queue is not None:
                self._queue.put_nowait(_ROTATION_CHECK)

    # -- read path -----------------------------------------------------------------

    def read_audit_logs(self, file_path: str | Path) -> list[AuditEvent]:
        """Decrypt every readable entry of one file, skipping tampered lines."""
        return self._reader.read(file_path)

    def read_all_audit_logs(self) -> list[AuditEvent]:
        events: list[AuditEvent] = []
        for path in self.log_files:
            if path.exists():
                events.extend(self._reader.read(path))
        return events

    def verify_log_file(self, file_path: str | Path) -> VerificationReport:
        return self._reader.verify(file_path)

    # -- lifecycle -----------------------------------------------------------------

    def get_stats(self) -> dict[str, object]:
        return {
            **self._stats,
            "integrity_checks": self._reader.integrity_checks,
            "integrity_failures": self._reader.integrity_failures,
            "current_log_file": str(self._files.current.path),
            "current_log_size": self._files.current_size,
            "total_log_files": len(self._files.files),
            "queued_entries": self._queue.qsize() if self._queue is not None else 0,
            "config": {
                "max_file_size": self.config.max_file_size,
                "max_files": self.config.max_files,
                "encryption_enabled": True,
                "algorithm": self.config.algorithm,
                "compression_enabled": self.config.enable_compression,
                "integrity_check_enabled": self.config.enable_integrity_check,
            },
        }

    async def destroy(self) -> None:
        """Stop the timer, flush the queue, stop the writer. Never raises.

        The flush waits at most ``config.shutdown_timeout`` seconds; entries
        still queued after that fail with ``AuditIOError``.
        """
        if self._destroyed:
            return
        self._closed = True
        self._destroyed = True
        try:
            if self._rotation_timer is not None:
                self._rotation_timer.cancel()
                await asyncio.gather(self._rotation_timer, return_exceptions=True)
            if self._queue is not None:
                await asyncio.wait_for(self._queue.join(), self.config.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Audit queue not drained after %.1fs, dropping %d queued entries",
                self.config.shutdown_timeout,
                self._queue.qsize() if self._queue is not None else 0,
            )
        except Exception as exc:  # noqa: BLE001 - teardown runs on failing paths
            logger.error("Audit logger shutdown failed: %s", exc)
        finally:
            if self._writer is not None:
                self._writer.cancel()
                await asyncio.gather(self._writer, return_exceptions=True)
            self._fail_queued()
            self._listeners.clear()

    def _fail_queued(self) -> None:
        if self._queue is None:
            return
        while not self._queue.empty():
            request = self._queue.get_nowait()
            self._queue.task_done()
            if isinstance(request, _WriteRequest) and not request.future.done():
                request.future.set_exception(
                    AuditIOError("Audit logger destroyed before the entry was written")
                )

    async def __aenter__(self) -> "EncryptedAuditLogger":
        await self.start()
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.destroy()
