import sys

import pytest

from audit.schemas import AuditLoggerConfig
from harness.config import HarnessConfig
from harness.failure_taxonomy import FailureType
from harness.secure_runner import SecureCommandRunner
from sandbox.errors import SecurityViolation
from sandbox.policy import ExecutionPolicy

KEY = b"secure-runner-test-key"


def _config(tmp_path):
    return HarnessConfig(
        sandbox=ExecutionPolicy().with_overrides(
            {"resources": {"kill_grace_seconds": 0.5}}
        ),
        audit=AuditLoggerConfig(
            log_dir=str(tmp_path / "logs"),
            kdf_iterations=1000,
            sync_writes=False,
        ),
        user_id="tester",
        session_id="session-1",
    )


@pytest.mark.asyncio
async def test_execution_is_audited_from_startup_to_shutdown(tmp_path):
    runner = SecureCommandRunner(_config(tmp_path), encryption_key=KEY)
    async with runner:
        result = await runner.run(sys.executable, ["-c", "print(1+1)"])
        sandbox_dir = runner.executor.sandbox_dir

    assert result.stdout.strip() == "2"
    assert not sandbox_dir.exists()

    events = runner.audit_logger.read_all_audit_logs()
    actions = [(event.category, event.action) for event in events]
    assert actions == [
        ("SYSTEM", "STARTUP"),
        ("EXECUTION", "COMMAND_STARTED"),
        ("EXECUTION", "COMMAND_COMPLETED"),
        ("SYSTEM", "SHUTDOWN"),
    ]
    assert all(event.user_id == "tester" for event in events)
    assert all(event.session_id == "session-1" for event in events)
    assert events[2].details["exit_code"] == 0


@pytest.mark.asyncio
async def test_security_violation_is_audited_as_critical(tmp_path):
    runner = SecureCommandRunner(_config(tmp_path), encryption_key=KEY)
    async with runner:
        with pytest.raises(SecurityViolation):
            await runner.run("rm", ["-rf", "/"])

    events = runner.audit_logger.read_all_audit_logs()
    violation = [event for event in events if event.action == "SECURITY_VIOLATION"]
    assert len(violation) == 1
    assert violation[0].level == "CRITICAL"
    assert violation[0].category == "SECURITY"
    assert violation[0].details["details"]["rule"] == "blocked-command"
    assert runner.failures.get_failure_stats()[FailureType.BLOCKED_COMMAND] == 1


@pytest.mark.asyncio
async def test_failed_command_is_recorded(tmp_path):
    runner = SecureCommandRunner(_config(tmp_path), encryption_key=KEY)
    async with runner:
        result = await runner.run(sys.executable, ["-c", "import sys\nsys.exit(4)"])
        stats = runner.get_stats()

    assert result.exit_code == 4
    assert stats["failures"] == [("nonzero_exit", 1)]
    assert stats["executor"]["failed_executions"] == 1


@pytest.mark.asyncio
async def test_shutdown_is_idempotent(tmp_path):
    runner = SecureCommandRunner(_config(tmp_path), encryption_key=KEY)
    await runner.start()
    await runner.shutdown()
    await runner.shutdown()

    actions = [event.action for event in runner.audit_logger.read_all_audit_logs()]
    assert actions == ["STARTUP", "SHUTDOWN"]
