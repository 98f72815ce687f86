"""
Subprocess-based sandbox executor for external commands.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import signal
import subprocess
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, cast

import psutil

from sandbox import policy
from sandbox.errors import CommandFailed, ResourceExhausted, SecurityViolation
from sandbox.policy import ExecutionPolicy, ResourceLimits
from sandbox.workspace import SandboxDirectory, build_environment

logger = logging.getLogger(__name__)

_POSIX = os.name == "posix"
_READ_CHUNK = 64 * 1024
_KILL_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)
_TERMINATING_SIGNALS = {int(signal.SIGTERM), int(_KILL_SIGNAL)}
_RLIMIT_SIGNALS = {
    int(getattr(signal, name)): reason
    for name, reason in (("SIGXCPU", "cpu-limit"), ("SIGXFSZ", "file-size-limit"))
    if hasattr(signal, name)
}

_REASON_MESSAGES = {
    "timeout": "Process exceeded its time limit",
    "cpu-limit": "Process exceeded its CPU time limit",
    "file-size-limit": "Process exceeded its file size limit",
    "output-limit": "Process exceeded its output size limit",
    "memory-limit": "Process exceeded its memory limit",
    "signal": "Process terminated due to resource limits or security violation",
}

EventListener = Callable[[str, dict[str, object]], None]


@dataclass(frozen=True)
class ExecutionOptions:
    cwd: str | None = None  # relative to the sandbox work/ directory
    env: Mapping[str, str] = field(default_factory=dict)
    timeout_seconds: float | None = None
    uid: int | None = None
    gid: int | None = None


@dataclass(frozen=True)
class ExecutionRequest:
    command: str
    arguments: tuple[str, ...] = ()
    options: ExecutionOptions = field(default_factory=ExecutionOptions)


@dataclass(frozen=True)
class ExecutionResult:
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: float
    success: bool
    pid: int
    signal: int | None = None
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    memory_peak_mb: float | None = None


def _signal_name(signum: int | None) -> str | None:
    if signum is None:
        return None
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


def _send_signal(process: asyncio.subprocess.Process, signum: int) -> None:
    """Signal the whole process group where supported, else the process itself."""
    if process.returncode is not None:
        return
    try:
        if _POSIX:
            os.killpg(process.pid, signum)
        elif signum == _KILL_SIGNAL:
            process.kill()
        else:
            process.terminate()
    except ProcessLookupError:
        pass
    except PermissionError as exc:
        logger.debug("Cannot signal process %s: %s", process.pid, exc)


class _Supervisor:
    """Timers and termination escalation for one running process."""

    def __init__(self, process: asyncio.subprocess.Process, grace_seconds: float) -> None:
        self.process = process
        self.grace_seconds = grace_seconds
        self.reason: str | None = None
        self.memory_peak_mb: float | None = None
        self._loop = asyncio.get_running_loop()
        self._timeout: asyncio.TimerHandle | None = None
        self._escalation: asyncio.TimerHandle | None = None

    def arm_timeout(self, seconds: float) -> None:
        self._timeout = self._loop.call_later(seconds, self.terminate, "timeout")

    def terminate(self, reason: str) -> None:
        if self.process.returncode is not None:
            return
        if self.reason is None:
            self.reason = reason
            logger.warning("Terminating process %s: %s", self.process.pid, reason)
        _send_signal(self.process, signal.SIGTERM)
        if self._escalation is None:
            self._escalation = self._loop.call_later(self.grace_seconds, self.kill)

    def kill(self) -> None:
        if self.process.returncode is None:
            logger.warning("Process %s ignored SIGTERM, sending SIGKILL", self.process.pid)
            _send_signal(self.process, _KILL_SIGNAL)

    def cancel(self) -> None:
        if self._timeout is not None:
            self._timeout.cancel()
        if self._escalation is not None:
            self._escalation.cancel()


async def _pump(
    stream: asyncio.StreamReader,
    cap: int,
    on_overflow: Callable[[], None],
) -> tuple[bytes, bool]:
    """Read a stream to EOF, keeping at most ``cap`` bytes."""
    buffer = bytearray()
    total = 0
    overflowed = False
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        total += len(chunk)
        if len(buffer) < cap:
            buffer.extend(chunk[: cap - len(buffer)])
        if total > cap and not overflowed:
            overflowed = True
            on_overflow()
    return bytes(buffer), overflowed


def _limit_resources(limits: ResourceLimits, timeout: float) -> Callable[[], None]:
    """Return a preexec_fn to enforce resource limits on Unix.

    ``max_memory_mb`` is enforced on resident memory by the sampler, not by an
    address-space rlimit. The CPU rlimit stays above the wall-clock timeout.
    """

    def _apply_limits() -> None:
        try:
            import resource
        except ImportError:
            return

        def _set(name: str, soft: int, hard: int) -> None:
            limit = getattr(resource, name, None)
            if limit is None:
                return
            try:
                _current, current_hard = resource.getrlimit(limit)
                if current_hard != resource.RLIM_INFINITY:
                    soft = min(soft, current_hard)
                    hard = min(hard, current_hard)
                resource.setrlimit(limit, (soft, hard))
            except (ValueError, OSError):
                return

        cpu_seconds = max(1, math.ceil(max(timeout, limits.max_cpu_time))) + 1
        _set("RLIMIT_CPU", cpu_seconds, cpu_seconds + 1)
        _set("RLIMIT_NOFILE", limits.max_open_files, limits.max_open_files)
        _set("RLIMIT_NPROC", limits.max_processes, limits.max_processes)

    return _apply_limits


class SandboxExecutor:
    """
    Execute external commands in a restricted environment with best-effort limits.

    Each instance owns one sandbox directory, created here and removed by
    ``cleanup()``. On Unix the child runs in its own process group with rlimits
    applied; elsewhere only the wall-clock timeout and output caps apply.
    """

    def __init__(
        self,
        policy: ExecutionPolicy | None = None,
        overrides: Mapping[str, Any] | None = None,
        sandbox_parent: str | Path | None = None,
    ) -> None:
        self.policy: ExecutionPolicy = (policy or ExecutionPolicy()).with_overrides(overrides)
        self.directory = SandboxDirectory.create(sandbox_parent)
        self._active: dict[int, asyncio.subprocess.Process] = {}
        self._listeners: list[EventListener] = []
        self._closed = False
        self._stats = self._empty_stats()

    @property
    def sandbox_dir(self) -> Path:
        return self.directory.root

    @staticmethod
    def _empty_stats() -> dict[str, int]:
        return {
            "total_executed": 0,
            "successful_executions": 0,
            "failed_executions": 0,
            "security_violations": 0,
            "resource_violations": 0,
        }

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, kind: str, payload: dict[str, object]) -> None:
        for listener in list(self._listeners):
            try:
                listener(kind, payload)
            except Exception as exc:  # noqa: BLE001 - listeners must not break execution
                logger.warning("Executor listener failed on %s: %s", kind, exc)

    def validate_command(self, command: str, arguments: Sequence[str] = ()) -> None:
        policy.validate(command, arguments, self.policy.security)

    async def execute(
        self,
        command: str,
        arguments: Sequence[str] = (),
        options: ExecutionOptions | None = None,
    ) -> ExecutionResult:
        request = ExecutionRequest(command, tuple(arguments), options or ExecutionOptions())
        base = {"command": command, "arguments": list(request.arguments)}
        self._stats["total_executed"] += 1
        try:
            result = await self._execute(request)
        except SecurityViolation as exc:
            self._stats["security_violations"] += 1
            self._emit("security-violation", {**base, **exc.to_dict()})
            raise
        except ResourceExhausted as exc:
            self._stats["resource_violations"] += 1
            self._stats["failed_executions"] += 1
            self._emit("resource-exhausted", {**base, **exc.to_dict()})
            raise
        except CommandFailed as exc:
            self._stats["failed_executions"] += 1
            self._emit("command-failed", {**base, **exc.to_dict()})
            raise

        if result.success:
            self._stats["successful_executions"] += 1
        else:
            self._stats["failed_executions"] += 1
        self._emit(
            "execution-completed",
            {
                **base,
                "exit_code": result.exit_code,
                "signal": _signal_name(result.signal),
                "success": result.success,
                "duration_ms": result.duration_ms,
                "pid": result.pid,
            },
        )
        return result

    async def _execute(self, request: ExecutionRequest) -> ExecutionResult:
        if self._closed:
            raise CommandFailed(
                "Sandbox has been cleaned up",
                details={"command": request.command},
            )
        policy.validate(request.command, request.arguments, self.policy.security)
        cwd = self.directory.resolve_cwd(request.options.cwd)
        env = build_environment(
            self.directory,
            self.policy.security.allowed_env_vars,
            overrides=request.options.env,
        )
        timeout = request.options.timeout_seconds or self.policy.resources.max_cpu_time
        return await self._run(request, cwd, env, timeout)

    async def _run(
        self,
        request: ExecutionRequest,
        cwd: Path,
        env: dict[str, str],
        timeout: float,
    ) -> ExecutionResult:
        limits = self.policy.resources
        spawn_kwargs: dict[str, Any] = {}
        if _POSIX:
            spawn_kwargs["start_new_session"] = True
            spawn_kwargs["preexec_fn"] = _limit_resources(limits, timeout)
            if request.options.uid is not None:
                spawn_kwargs["user"] = request.options.uid
            if request.options.gid is not None:
                spawn_kwargs["group"] = request.options.gid

        start = time.perf_counter()
        try:
            process = await asyncio.create_subprocess_exec(
                request.command,
                *request.arguments,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env=env,
                **spawn_kwargs,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as exc:
            raise CommandFailed(
                f"Process execution failed: {exc}",
                details={"command": request.command, "error": exc.__class__.__name__},
            ) from exc

        pid = process.pid
        self._active[pid] = process
        self._emit(
            "execution-started",
            {
                "command": request.command,
                "arguments": list(request.arguments),
                "pid": pid,
                "timeout_seconds": timeout,
            },
        )
        supervisor = _Supervisor(process, limits.kill_grace_seconds)
        supervisor.arm_timeout(timeout)
        sampler = asyncio.create_task(self._sample_resources(process, supervisor))
        stdout_reader = cast(asyncio.StreamReader, process.stdout)
        stderr_reader = cast(asyncio.StreamReader, process.stderr)
        try:
            (stdout, stdout_over), (stderr, stderr_over), returncode = await asyncio.gather(
                _pump(
                    stdout_reader,
                    limits.max_output_bytes,
                    lambda: supervisor.terminate("output-limit"),
                ),
                _pump(
                    stderr_reader,
                    limits.max_stderr_bytes,
                    lambda: supervisor.terminate("output-limit"),
                ),
                process.wait(),
            )
        finally:
            supervisor.cancel()
            sampler.cancel()
            if process.returncode is None:
                _send_signal(process, _KILL_SIGNAL)
            self._active.pop(pid, None)

        duration_ms = (time.perf_counter() - start) * 1000
        signum = -returncode if returncode < 0 else None

        if (
            supervisor.reason is not None
            or signum in _TERMINATING_SIGNALS
            or signum in _RLIMIT_SIGNALS
        ):
            reason = supervisor.reason or _RLIMIT_SIGNALS.get(signum, "signal")
            raise ResourceExhausted(
                _REASON_MESSAGES.get(reason, _REASON_MESSAGES["signal"]),
                reason=reason,
                details={
                    "signal": _signal_name(signum),
                    "exit_code": None if signum is not None else returncode,
                    "duration_ms": duration_ms,
                    "pid": pid,
                    "timeout_seconds": timeout,
                },
            )

        exit_code = None if signum is not None else returncode
        return ExecutionResult(
            exit_code=exit_code,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration_ms=duration_ms,
            success=exit_code == 0,
            pid=pid,
            signal=signum,
            stdout_truncated=stdout_over,
            stderr_truncated=stderr_over,
            memory_peak_mb=supervisor.memory_peak_mb,
        )

    async def _sample_resources(
        self,
        process: asyncio.subprocess.Process,
        supervisor: _Supervisor,
    ) -> None:
        limits = self.policy.resources
        try:
            handle = psutil.Process(process.pid)
        except psutil.Error:
            return
        while process.returncode is None:
            await asyncio.sleep(limits.resource_check_interval)
            try:
                rss = handle.memory_info().rss
                for child in handle.children(recursive=True):
                    try:
                        rss += child.memory_info().rss
                    except psutil.Error:
                        continue
            except psutil.Error:
                # No data this round; the process may be exiting.
                continue
            memory_mb = rss / (1024 * 1024)
            if supervisor.memory_peak_mb is None or memory_mb > supervisor.memory_peak_mb:
                supervisor.memory_peak_mb = memory_mb
            if memory_mb > limits.max_memory_mb:
                supervisor.terminate("memory-limit")

    async def cleanup(self) -> None:
        """Terminate tracked processes and remove the sandbox directory. Never raises."""
        self._closed = True
        try:
            processes = list(self._active.values())
            for process in processes:
                _send_signal(process, signal.SIGTERM)
            if processes:
                waiters = [asyncio.create_task(process.wait()) for process in processes]
                _done, pending = await asyncio.wait(
                    waiters, timeout=self.policy.resources.kill_grace_seconds
                )
                for process in processes:
                    if process.returncode is None:
                        logger.warning("Force killing sandboxed process %s", process.pid)
                        _send_signal(process, _KILL_SIGNAL)
                for waiter in pending:
                    waiter.cancel()
        except Exception as exc:  # noqa: BLE001 - teardown runs on failing paths
            logger.warning("Sandbox process cleanup failed: %s", exc)
        finally:
            try:
                self.directory.remove()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Sandbox directory removal failed: %s", exc)

    def get_stats(self) -> dict[str, object]:
        return {
            **self._stats,
            "active_processes": len(self._active),
            "sandbox_dir": str(self.directory.root),
            "config": self.policy.to_dict(),
        }

    def reset_stats(self) -> None:
        self._stats = self._empty_stats()

    async def __aenter__(self) -> "SandboxExecutor":
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.cleanup()
