"""
Sandbox Module

Policy-checked execution environment for external commands.

This module provides:
- Pure command/argument/path validation against a security policy
- A per-executor sandbox directory (work/, tmp/, output/)
- Restricted environment variables and scoped working directory
- Output caps and timeout escalation (SIGTERM, then SIGKILL)
- Memory, CPU, descriptor and process limits (platform-dependent)

WARNING: This sandbox is NOT full OS-level isolation. It applies best-effort
process-level limits; use an external container layer for stronger isolation.
"""

__version__ = "0.1.0"

from .errors import (
    CommandFailed,
    ResourceExhausted,
    SandboxError,
    SandboxSetupError,
    SecurityViolation,
)
from .executor import ExecutionOptions, ExecutionRequest, ExecutionResult, SandboxExecutor
from .policy import ExecutionPolicy, NetworkLimits, ResourceLimits, SecurityLimits

__all__ = [
    "CommandFailed",
    "ExecutionOptions",
    "ExecutionPolicy",
    "ExecutionRequest",
    "ExecutionResult",
    "NetworkLimits",
    "ResourceExhausted",
    "ResourceLimits",
    "SandboxError",
    "SandboxExecutor",
    "SandboxSetupError",
    "SecurityLimits",
    "SecurityViolation",
]
