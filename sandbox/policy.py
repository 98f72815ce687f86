"""
Sandbox execution policy and command validation.

The validator functions in this module are pure: they never touch the
filesystem or spawn anything, so they can be unit-tested in isolation from
process execution.
"""

from __future__ import annotations

import os
import re
import tempfile
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sandbox.errors import SecurityViolation

RULE_BLOCKED_COMMAND = "blocked-command"
RULE_DANGEROUS_PATTERN = "dangerous-pattern"
RULE_UNSAFE_PATH = "unsafe-path"

BLOCKED_COMMANDS = [
    "rm",
    "rmdir",
    "del",
    "format",
    "fdisk",
    "sudo",
    "su",
    "passwd",
    "chmod",
    "chown",
    "iptables",
    "netstat",
    "ss",
    "lsof",
    "kill",
    "killall",
    "pkill",
    "systemctl",
    "service",
    "init",
    "shutdown",
    "reboot",
    "mount",
    "umount",
    "dd",
    "nc",
    "ncat",
]

BLOCKED_PATTERNS = [
    r"[;&|`$]",  # command injection
    r"\.\./",  # path traversal
    r"/dev/(sd|hd|nvme|mem|kmem|port)",  # raw devices
    r"/etc/",
    r"/proc/",
    r"/sys/",
]

ALLOWED_ENV_VARS = [
    "PATH",
    "HOME",
    "USER",
    "SHELL",
    "LANG",
    "LC_ALL",
    "LC_CTYPE",
    "NODE_ENV",
    "NODE_PATH",
    "DEBUG",
]


def default_allowed_paths() -> list[str]:
    return [
        "/tmp",
        "/var/tmp",
        os.getcwd(),
        tempfile.gettempdir(),
    ]


class ResourceLimits(BaseModel):
    """Best-effort per-process resource limits."""

    model_config = ConfigDict(frozen=True)

    max_memory_mb: int = Field(default=256, ge=16)
    max_cpu_time: float = Field(default=30, gt=0, description="Seconds before SIGTERM")
    max_output_bytes: int = Field(default=10 * 1024 * 1024, ge=1)
    max_open_files: int = Field(default=100, ge=8)
    max_processes: int = Field(default=10, ge=1)
    kill_grace_seconds: float = Field(default=5.0, ge=0)
    resource_check_interval: float = Field(default=1.0, gt=0)

    @property
    def max_stderr_bytes(self) -> int:
        return max(1, self.max_output_bytes // 10)


class SecurityLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed_paths: list[str] = Field(default_factory=default_allowed_paths)
    blocked_commands: list[str] = Field(default_factory=lambda: list(BLOCKED_COMMANDS))
    blocked_patterns: list[str] = Field(default_factory=lambda: list(BLOCKED_PATTERNS))
    allowed_env_vars: list[str] = Field(default_factory=lambda: list(ALLOWED_ENV_VARS))

    @field_validator("blocked_patterns")
    @classmethod
    def patterns_compile(cls, value: list[str]) -> list[str]:
        for pattern in value:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"Invalid blocked pattern {pattern!r}: {exc}") from exc
        return value


class NetworkLimits(BaseModel):
    """Declarative network policy; enforcement belongs to the container layer."""

    model_config = ConfigDict(frozen=True)

    allow_network: bool = False
    allowed_hosts: list[str] = Field(default_factory=list)
    allowed_ports: list[int] = Field(default_factory=list)
    block_outgoing: bool = True


class ExecutionPolicy(BaseModel):
    """Complete policy for one executor. Immutable after construction."""

    model_config = ConfigDict(frozen=True)

    resources: ResourceLimits = Field(default_factory=ResourceLimits)
    security: SecurityLimits = Field(default_factory=SecurityLimits)
    network: NetworkLimits = Field(default_factory=NetworkLimits)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExecutionPolicy":
        return cls.model_validate(data)

    def with_overrides(self, overrides: Mapping[str, Any] | None) -> "ExecutionPolicy":
        """Return a new policy with ``overrides`` deep-merged on top of this one."""
        if not overrides:
            return self
        merged = _deep_merge(self.to_dict(), overrides)
        return ExecutionPolicy.model_validate(merged)


def _deep_merge(base: dict[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for key, value in overrides.items():
        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            result[key] = _deep_merge(current, value)
        else:
            result[key] = value
    return result


@dataclass(frozen=True)
class PolicyVerdict:
    allowed: bool
    rule: str | None = None
    message: str | None = None
    pattern: str | None = None
    argument: str | None = None

    def details(self) -> dict[str, object]:
        data: dict[str, object] = {}
        if self.pattern is not None:
            data["pattern"] = self.pattern
        if self.argument is not None:
            data["argument"] = self.argument
        return data


ALLOWED = PolicyVerdict(allowed=True)


def contains_unsafe_path(argument: str, allowed_paths: Iterable[str]) -> bool:
    """Return True for traversal sequences or absolute paths outside the allow-list."""
    if "../" in argument or "..\\" in argument:
        return True
    if os.path.isabs(argument):
        return not any(argument.startswith(base) for base in allowed_paths)
    return False


def evaluate(
    command: str,
    arguments: Sequence[str],
    limits: SecurityLimits | None = None,
) -> PolicyVerdict:
    """Decide whether ``command`` with ``arguments`` may run under ``limits``."""
    limits = limits or SecurityLimits()

    if command in limits.blocked_commands:
        return PolicyVerdict(
            allowed=False,
            rule=RULE_BLOCKED_COMMAND,
            message=f'Command "{command}" is not allowed in sandbox',
        )

    full_command = " ".join([command, *arguments])
    for pattern in limits.blocked_patterns:
        if re.search(pattern, full_command):
            return PolicyVerdict(
                allowed=False,
                rule=RULE_DANGEROUS_PATTERN,
                message=f"Command contains dangerous pattern: {pattern}",
                pattern=pattern,
            )

    for argument in arguments:
        if contains_unsafe_path(argument, limits.allowed_paths):
            return PolicyVerdict(
                allowed=False,
                rule=RULE_UNSAFE_PATH,
                message=f"Argument contains unsafe path: {argument}",
                argument=argument,
            )

    return ALLOWED


def validate(
    command: str,
    arguments: Sequence[str],
    limits: SecurityLimits | None = None,
) -> None:
    """Raise SecurityViolation if the command is not permitted."""
    verdict = evaluate(command, arguments, limits)
    if verdict.allowed:
        return
    raise SecurityViolation(
        verdict.message or "Command rejected by sandbox policy",
        rule=verdict.rule or "unknown",
        details={"command": command, **verdict.details()},
    )
