"""
Secure command runner: sandboxed execution with an encrypted audit trail.

Every executor lifecycle event becomes an audit event. Audit writes are
submitted without blocking the execution path and awaited on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import platform
import uuid
from collections.abc import Mapping, Sequence

from audit.errors import AuditError
from audit.logger import EncryptedAuditLogger
from audit.schemas import AuditCategory, AuditLevel
from harness.config import HarnessConfig
from harness.failure_taxonomy import FailureAnalyzer
from sandbox.executor import ExecutionOptions, ExecutionResult, SandboxExecutor

logger = logging.getLogger(__name__)

# executor event kind -> (category, action, level)
EVENT_MAPPING: dict[str, tuple[AuditCategory, str, AuditLevel]] = {
    "execution-started": (AuditCategory.EXECUTION, "COMMAND_STARTED", AuditLevel.INFO),
    "execution-completed": (AuditCategory.EXECUTION, "COMMAND_COMPLETED", AuditLevel.INFO),
    "security-violation": (AuditCategory.SECURITY, "SECURITY_VIOLATION", AuditLevel.CRITICAL),
    "resource-exhausted": (AuditCategory.SECURITY, "RESOURCE_EXHAUSTED", AuditLevel.ERROR),
    "command-failed": (AuditCategory.EXECUTION, "COMMAND_FAILED", AuditLevel.ERROR),
}

_FAILURE_KINDS = {"security-violation", "resource-exhausted", "command-failed"}


class SecureCommandRunner:
    """Owns one SandboxExecutor and one EncryptedAuditLogger."""

    def __init__(
        self,
        config: HarnessConfig | None = None,
        encryption_key: bytes | str | None = None,
        executor: SandboxExecutor | None = None,
        audit_logger: EncryptedAuditLogger | None = None,
    ) -> None:
        self.config = config or HarnessConfig()
        self.session_id = self.config.session_id or uuid.uuid4().hex
        self.executor = executor or SandboxExecutor(self.config.sandbox)
        self.audit_logger = audit_logger or EncryptedAuditLogger(
            self.config.audit, encryption_key
        )
        self.failures = FailureAnalyzer()
        self._pending: set[asyncio.Future[None]] = set()
        self._started = False
        self._shut_down = False
        self.executor.add_listener(self._on_execution_event)

    def _submit(
        self,
        category: AuditCategory,
        action: str,
        level: AuditLevel,
        details: Mapping[str, object],
    ) -> asyncio.Future[None]:
        future = self.audit_logger.submit(
            {
                "category": category,
                "action": action,
                "level": level,
                "user_id": self.config.user_id,
                "session_id": self.session_id,
                "details": dict(details),
            }
        )
        self._pending.add(future)
        future.add_done_callback(self._write_done)
        return future

    def _write_done(self, future: asyncio.Future[None]) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Audit write failed: %s", exc)

    def _on_execution_event(self, kind: str, payload: dict[str, object]) -> None:
        mapping = EVENT_MAPPING.get(kind)
        if mapping is None:
            return
        if kind in _FAILURE_KINDS or (
            kind == "execution-completed" and not payload.get("success")
        ):
            self.failures.record_event(kind, payload)
        category, action, level = mapping
        try:
            self._submit(category, action, level, payload)
        except AuditError as exc:
            logger.error("Could not audit %s event: %s", kind, exc)

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        await self.audit_logger.start()
        await self._submit(
            AuditCategory.SYSTEM,
            "STARTUP",
            AuditLevel.INFO,
            {
                "python_version": platform.python_version(),
                "sandbox_dir": str(self.executor.sandbox_dir),
                "log_file": str(self.audit_logger.current_log_file),
                "policy": self.executor.policy.to_dict(),
            },
        )
        logger.info("Secure runner started (session %s)", self.session_id)

    async def run(
        self,
        command: str,
        arguments: Sequence[str] = (),
        options: ExecutionOptions | None = None,
    ) -> ExecutionResult:
        """Execute ``command`` in the sandbox; errors propagate after being audited."""
        await self.start()
        return await self.executor.execute(command, arguments, options)

    def get_stats(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "executor": self.executor.get_stats(),
            "audit": self.audit_logger.get_stats(),
            "failures": self.failures.get_top_failures(),
        }

    async def shutdown(self) -> None:
        """Log SHUTDOWN, flush pending audit writes, release everything. Never raises."""
        if self._shut_down:
            return
        self._shut_down = True
        try:
            if self._started:
                executor_stats = {
                    key: value
                    for key, value in self.executor.get_stats().items()
                    if key != "config"
                }
                self._submit(
                    AuditCategory.SYSTEM,
                    "SHUTDOWN",
                    AuditLevel.INFO,
                    {
                        "executor_stats": executor_stats,
                        "failures": dict(self.failures.get_top_failures()),
                    },
                )
            if self._pending:
                await asyncio.gather(*list(self._pending), return_exceptions=True)
        except Exception as exc:  # noqa: BLE001 - shutdown continues regardless
            logger.error("Failed to record shutdown: %s", exc)
        await self.executor.cleanup()
        await self.audit_logger.destroy()

    async def __aenter__(self) -> "SecureCommandRunner":
        await self.start()
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.shutdown()
