"""Failure classification and analysis."""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum

from sandbox.errors import CommandFailed, ResourceExhausted, SandboxError, SecurityViolation
from sandbox.executor import ExecutionResult
from sandbox.policy import RULE_BLOCKED_COMMAND, RULE_DANGEROUS_PATTERN, RULE_UNSAFE_PATH


class FailureType(str, Enum):
    BLOCKED_COMMAND = "blocked_command"
    DANGEROUS_PATTERN = "dangerous_pattern"
    UNSAFE_PATH = "unsafe_path"
    TIMEOUT = "timeout"
    OUTPUT_LIMIT = "output_limit"
    MEMORY_LIMIT = "memory_limit"
    CPU_LIMIT = "cpu_limit"
    FILE_SIZE_LIMIT = "file_size_limit"
    KILLED = "killed"
    LAUNCH_FAILED = "launch_failed"
    NONZERO_EXIT = "nonzero_exit"
    OTHER = "other"


_RULES = {
    RULE_BLOCKED_COMMAND: FailureType.BLOCKED_COMMAND,
    RULE_DANGEROUS_PATTERN: FailureType.DANGEROUS_PATTERN,
    RULE_UNSAFE_PATH: FailureType.UNSAFE_PATH,
}

_REASONS = {
    "timeout": FailureType.TIMEOUT,
    "output-limit": FailureType.OUTPUT_LIMIT,
    "memory-limit": FailureType.MEMORY_LIMIT,
    "cpu-limit": FailureType.CPU_LIMIT,
    "file-size-limit": FailureType.FILE_SIZE_LIMIT,
    "signal": FailureType.KILLED,
}


class FailureAnalyzer:
    def __init__(self):
        self.failures: dict[FailureType, int] = {ft: 0 for ft in FailureType}

    def classify(self, failure: SandboxError | ExecutionResult | str) -> FailureType:
        if isinstance(failure, SecurityViolation):
            return _RULES.get(failure.rule, FailureType.OTHER)
        if isinstance(failure, ResourceExhausted):
            return _REASONS.get(failure.reason, FailureType.OTHER)
        if isinstance(failure, CommandFailed):
            return FailureType.LAUNCH_FAILED
        if isinstance(failure, ExecutionResult):
            if failure.exit_code is None:
                return FailureType.KILLED
            return FailureType.NONZERO_EXIT
        if isinstance(failure, str):
            return self.classify_error(failure)
        return FailureType.OTHER

    def classify_event(self, kind: str, payload: Mapping[str, object]) -> FailureType:
        """Classify an executor lifecycle event payload."""
        details = payload.get("details")
        details = details if isinstance(details, Mapping) else {}
        if kind == "security-violation":
            return _RULES.get(str(details.get("rule")), FailureType.OTHER)
        if kind == "resource-exhausted":
            return _REASONS.get(str(details.get("reason")), FailureType.OTHER)
        if kind == "command-failed":
            return FailureType.LAUNCH_FAILED
        if kind == "execution-completed":
            if payload.get("exit_code") is None:
                return FailureType.KILLED
            return FailureType.NONZERO_EXIT
        return FailureType.OTHER

    def classify_error(self, error_msg: str) -> FailureType:
        error_lower = error_msg.lower()

        if 'cpu time' in error_lower:
            return FailureType.CPU_LIMIT
        elif 'timeout' in error_lower or 'time limit' in error_lower:
            return FailureType.TIMEOUT
        elif 'not allowed in sandbox' in error_lower:
            return FailureType.BLOCKED_COMMAND
        elif 'dangerous pattern' in error_lower:
            return FailureType.DANGEROUS_PATTERN
        elif 'unsafe path' in error_lower:
            return FailureType.UNSAFE_PATH
        elif 'output' in error_lower and 'limit' in error_lower:
            return FailureType.OUTPUT_LIMIT
        elif 'file size' in error_lower:
            return FailureType.FILE_SIZE_LIMIT
        elif 'memory' in error_lower:
            return FailureType.MEMORY_LIMIT
        elif 'execution failed' in error_lower or 'cleaned up' in error_lower:
            return FailureType.LAUNCH_FAILED
        else:
            return FailureType.OTHER

    def record_failure(self, failure: SandboxError | ExecutionResult | str) -> FailureType:
        failure_type = self.classify(failure)
        self.failures[failure_type] += 1
        return failure_type

    def record_event(self, kind: str, payload: Mapping[str, object]) -> FailureType:
        failure_type = self.classify_event(kind, payload)
        self.failures[failure_type] += 1
        return failure_type

    def get_failure_stats(self) -> dict[FailureType, int]:
        return dict(self.failures)

    def get_top_failures(self, n: int = 5) -> list[tuple[str, int]]:
        sorted_failures = sorted(
            self.failures.items(),
            key=lambda x: x[1],
            reverse=True
        )
        return [(ft.value, count) for ft, count in sorted_failures[:n] if count > 0]
