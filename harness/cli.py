"""CLI interface for sandboxed execution and audit log inspection."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer

from audit.errors import AuditError
from audit.reader import AuditLogReader
from audit.rotation import LOG_PREFIX, LOG_SUFFIX
from harness.config import HarnessConfig, load_config, load_master_key
from harness.secure_runner import SecureCommandRunner
from sandbox.errors import ResourceExhausted, SandboxError, SecurityViolation
from sandbox.executor import ExecutionOptions
from sandbox.policy import evaluate

app = typer.Typer(help="Sandboxed command execution with encrypted audit logs")

_PASSTHROUGH = {"allow_extra_args": True, "ignore_unknown_options": True}


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level"),
) -> None:
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(config_path: Optional[str]) -> HarnessConfig:
    if config_path is None:
        return HarnessConfig()
    try:
        return load_config(config_path)
    except FileNotFoundError as e:
        typer.secho(f"❌ Config file not found: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except ValueError as e:
        typer.secho(f"❌ Invalid config: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


def _reader(config: HarnessConfig) -> AuditLogReader:
    try:
        key = load_master_key(config.key_file, create=False)
    except (FileNotFoundError, ValueError) as e:
        typer.secho(f"❌ {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    return AuditLogReader(
        key,
        emit=_report_read_problem,
        require_integrity=config.audit.enable_integrity_check,
    )


def _report_read_problem(kind: str, payload: dict[str, object]) -> None:
    location = f"line {payload.get('line_number')}"
    if kind == "integrity-failure":
        typer.secho(f"⚠️  Integrity failure at {location}: {payload.get('reason')}", fg=typer.colors.YELLOW, err=True)
    elif kind == "error":
        typer.secho(f"⚠️  Skipped {location}: {payload.get('message')}", fg=typer.colors.YELLOW, err=True)


def _log_files(config: HarnessConfig, file: Optional[str]) -> list[Path]:
    if file is not None:
        return [Path(file)]
    log_dir = Path(config.audit.log_dir)
    if not log_dir.exists():
        typer.secho(f"❌ Log directory not found: {log_dir}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    return sorted(log_dir.glob(f"{LOG_PREFIX}*{LOG_SUFFIX}"))


@app.command(context_settings=_PASSTHROUGH)
def check(
    command: str = typer.Argument(..., help="Command to validate"),
    arguments: Optional[list[str]] = typer.Argument(None, help="Command arguments"),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to harness YAML config"),
) -> None:
    """Check a command against the sandbox policy without running it."""
    config = _load(config_path)
    verdict = evaluate(command, arguments or [], config.sandbox.security)

    if verdict.allowed:
        typer.secho("✅ Command allowed", fg=typer.colors.GREEN)
        return

    typer.secho(f"❌ Blocked ({verdict.rule}): {verdict.message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(1)


@app.command("exec", context_settings=_PASSTHROUGH)
def exec_command(
    command: str = typer.Argument(..., help="Command to run"),
    arguments: Optional[list[str]] = typer.Argument(None, help="Command arguments"),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to harness YAML config"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Timeout in seconds"),
    cwd: Optional[str] = typer.Option(None, "--cwd", help="Working directory inside the sandbox"),
) -> None:
    """Run a command in the sandbox and audit the execution."""
    config = _load(config_path)
    try:
        key = load_master_key(config.key_file)
    except (OSError, ValueError) as e:
        typer.secho(f"❌ Could not load audit key: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    options = ExecutionOptions(cwd=cwd, timeout_seconds=timeout)

    async def _run():
        async with SecureCommandRunner(config, encryption_key=key) as runner:
            return await runner.run(command, arguments or [], options)

    try:
        result = asyncio.run(_run())
    except SecurityViolation as e:
        typer.secho(f"❌ Security violation ({e.rule}): {e.message}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except ResourceExhausted as e:
        typer.secho(f"❌ Resource limit ({e.reason}): {e.message}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except SandboxError as e:
        typer.secho(f"❌ Execution failed: {e.message}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except AuditError as e:
        typer.secho(f"❌ Audit logging failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    if result.stdout:
        typer.echo(result.stdout, nl=False)
    if result.stderr:
        typer.echo(result.stderr, nl=False, err=True)
    if result.stdout_truncated or result.stderr_truncated:
        typer.secho("⚠️  Output truncated", fg=typer.colors.YELLOW, err=True)
    raise typer.Exit(result.exit_code if result.exit_code is not None else 1)


@app.command()
def read_logs(
    file: Optional[str] = typer.Argument(None, help="Log file (default: all files in the log directory)"),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to harness YAML config"),
) -> None:
    """Decrypt and print audit events as JSON lines."""
    config = _load(config_path)
    reader = _reader(config)

    for path in _log_files(config, file):
        try:
            events = reader.read(path)
        except AuditError as e:
            typer.secho(f"❌ {e}", fg=typer.colors.RED, err=True)
            raise typer.Exit(1)
        for event in events:
            typer.echo(event.to_json())


@app.command()
def verify(
    file: Optional[str] = typer.Argument(None, help="Log file (default: all files in the log directory)"),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to harness YAML config"),
    as_json: bool = typer.Option(False, "--json", help="Print reports as JSON"),
) -> None:
    """Verify integrity of audit log files."""
    config = _load(config_path)
    reader = _reader(config)

    all_ok = True
    for path in _log_files(config, file):
        try:
            report = reader.verify(path)
        except AuditError as e:
            typer.secho(f"❌ {e}", fg=typer.colors.RED, err=True)
            raise typer.Exit(1)

        all_ok = all_ok and report.ok
        if as_json:
            typer.echo(json.dumps(report.to_dict()))
            continue

        color = typer.colors.GREEN if report.ok else typer.colors.RED
        marker = "✓" if report.ok else "✗"
        typer.secho(f"  {marker} {path.name}", fg=color)
        typer.echo(
            f"    Entries: {report.total} | Valid: {report.valid} | "
            f"Integrity failures: {len(report.integrity_failures)} | Unreadable: {report.unreadable}"
        )

    if not all_ok:
        raise typer.Exit(1)


@app.command()
def list_logs(
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to harness YAML config"),
) -> None:
    """List audit log files in the log directory."""
    config = _load(config_path)
    files = _log_files(config, None)

    if not files:
        typer.secho("No audit logs found.", fg=typer.colors.YELLOW)
        return

    typer.secho(f"\n📁 Found {len(files)} log file(s):\n", fg=typer.colors.BLUE)

    for path in files:
        with open(path, "rb") as f:
            entries = max(0, sum(1 for line in f if line.strip()) - 1)
        typer.echo(f"  {path.name}")
        typer.echo(f"    Size: {path.stat().st_size} bytes | Entries: {entries}")


if __name__ == "__main__":
    app()
