"""
Audit log file set: naming, headers, appends, rotation and retention.

Only the logger's writer task (and its constructor) touches an instance of
``LogFileSet``, so none of the bookkeeping here is locked.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from audit.schemas import LogHeader

logger = logging.getLogger(__name__)

LOG_SUFFIX = ".audit"
LOG_PREFIX = "audit-"
PROACTIVE_ROTATION_RATIO = 0.9


def log_file_name(created: datetime, pid: int) -> str:
    stamp = created.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    stamp = stamp.replace(":", "-").replace(".", "-")
    return f"{LOG_PREFIX}{stamp}-{pid}{LOG_SUFFIX}"


@dataclass
class LogFileInfo:
    path: Path
    created: datetime
    size: int = 0
    entries: int = 0

    @property
    def name(self) -> str:
        return self.path.name


class LogFileSet:
    """The retained log files of one directory, oldest first."""

    def __init__(self, log_dir: str | Path, max_files: int, sync_writes: bool = True) -> None:
        self.log_dir = Path(log_dir)
        self.max_files = max_files
        self.sync_writes = sync_writes
        self.files: list[LogFileInfo] = []
        self._current: LogFileInfo | None = None

    @property
    def current(self) -> LogFileInfo:
        if self._current is None:
            raise RuntimeError("No current audit log file")
        return self._current

    @property
    def current_size(self) -> int:
        return self._current.size if self._current is not None else 0

    def ensure_directory(self) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        try:
            os.chmod(self.log_dir, 0o700)
        except OSError as exc:
            logger.debug("Could not restrict permissions on %s: %s", self.log_dir, exc)

    def scan_existing(self) -> list[LogFileInfo]:
        found: list[LogFileInfo] = []
        for path in sorted(self.log_dir.glob(f"{LOG_PREFIX}*{LOG_SUFFIX}")):
            try:
                stat = path.stat()
            except OSError as exc:
                logger.warning("Skipping unreadable audit log %s: %s", path, exc)
                continue
            found.append(
                LogFileInfo(
                    path=path,
                    created=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    size=stat.st_size,
                )
            )
        self.files = found
        return list(found)

    def create_file(self, header: LogHeader) -> LogFileInfo:
        created = header.created
        path = self.log_dir / log_file_name(created, header.pid)
        while path.exists():
            created = created + timedelta(microseconds=1)
            path = self.log_dir / log_file_name(created, header.pid)
        data = header.to_line()
        with open(path, "xb") as handle:
            handle.write(data)
            handle.flush()
            if self.sync_writes:
                os.fsync(handle.fileno())
        os.chmod(path, 0o600)
        info = LogFileInfo(path=path, created=created, size=len(data))
        self.files.append(info)
        self._current = info
        return info

    def should_rotate(self, incoming: int, max_file_size: int) -> bool:
        if self._current is None:
            return True
        if self._current.entries == 0:
            return False
        return self._current.size + incoming > max_file_size

    def should_rotate_proactively(self, max_file_size: int) -> bool:
        if self._current is None or self._current.entries == 0:
            return False
        return self._current.size > max_file_size * PROACTIVE_ROTATION_RATIO

    def prune(self) -> list[tuple[Path, OSError | None]]:
        """Delete the oldest files until at most ``max_files`` remain."""
        outcomes: list[tuple[Path, OSError | None]] = []
        while len(self.files) > self.max_files:
            oldest = self.files[0]
            if oldest is self._current:
                break
            self.files.pop(0)
            try:
                oldest.path.unlink(missing_ok=True)
                outcomes.append((oldest.path, None))
            except OSError as exc:
                outcomes.append((oldest.path, exc))
        return outcomes

    def append(self, data: bytes) -> None:
        """Append one whole line to the current file, or nothing at all."""
        info = self.current
        with open(info.path, "ab", buffering=0) as handle:
            offset = handle.seek(0, os.SEEK_END)
            try:
                view = memoryview(data)
                while view:
                    written = handle.write(view)
                    view = view[written:]
                if self.sync_writes:
                    os.fsync(handle.fileno())
            except OSError:
                try:
                    handle.truncate(offset)
                except OSError as exc:
                    logger.error("Could not roll back partial write to %s: %s", info.path, exc)
                raise
        info.size += len(data)
        info.entries += 1
