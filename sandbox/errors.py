"""
Error taxonomy for sandboxed execution.

Every error carries a machine-readable ``kind`` plus a ``details`` mapping with
enough context (violated rule, pattern, offending argument, signal) to explain
the rejection without exposing unrelated sandbox internals.
"""

from __future__ import annotations

from collections.abc import Mapping


class SandboxError(Exception):
    """Base class for all sandbox failures."""

    kind: str = "sandbox-error"

    def __init__(self, message: str, details: Mapping[str, object] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, object] = dict(details or {})

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "message": self.message,
            "details": dict(self.details),
        }


class SecurityViolation(SandboxError):
    """Command rejected by the security policy before anything was spawned."""

    kind = "security-violation"

    def __init__(
        self,
        message: str,
        rule: str,
        details: Mapping[str, object] | None = None,
    ) -> None:
        merged = {"rule": rule, **dict(details or {})}
        super().__init__(message, merged)
        self.rule = rule


class ResourceExhausted(SandboxError):
    """Process forcibly terminated for breaching a time, output or memory limit."""

    kind = "resource-exhausted"

    def __init__(
        self,
        message: str,
        reason: str,
        details: Mapping[str, object] | None = None,
    ) -> None:
        merged = {"reason": reason, **dict(details or {})}
        super().__init__(message, merged)
        self.reason = reason


class CommandFailed(SandboxError):
    """Process could not be started."""

    kind = "command-failed"


class SandboxSetupError(SandboxError):
    """Sandbox directory could not be created."""

    kind = "system-error"
