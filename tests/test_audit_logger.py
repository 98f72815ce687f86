import asyncio
import base64
import json
import os
import stat

import pytest

from audit.crypto import EnvelopeCipher
from audit.errors import AuditError, AuditIOError
from audit.logger import EncryptedAuditLogger
from audit.schemas import CBC_ALGORITHM, GCM_ALGORITHM, AuditCategory, AuditEvent, AuditLevel, AuditLoggerConfig

KEY = b"test-master-key-for-audit-logger"


def _config(tmp_path, **kwargs):
    defaults = {
        "log_dir": str(tmp_path / "logs"),
        "kdf_iterations": 1000,
        "sync_writes": False,
    }
    defaults.update(kwargs)
    return AuditLoggerConfig(**defaults)


def _logger(tmp_path, events=None, **kwargs):
    audit_logger = EncryptedAuditLogger(_config(tmp_path, **kwargs), encryption_key=KEY)
    if events is not None:
        audit_logger.add_listener(lambda kind, payload: events.append((kind, payload)))
    return audit_logger


def _entry_lines(path):
    lines = path.read_text(encoding="utf-8").splitlines()
    return lines[0], lines[1:]


@pytest.mark.asyncio
async def test_event_round_trip_with_defaults(tmp_path):
    audit_logger = _logger(tmp_path)
    async with audit_logger:
        await audit_logger.log_audit_event({"action": "TEST_ACTION", "details": {"n": 1}})

    events = audit_logger.read_audit_logs(audit_logger.current_log_file)
    assert len(events) == 1
    event = events[0]
    assert event.action == "TEST_ACTION"
    assert event.level == "INFO"
    assert event.category == "GENERAL"
    assert event.source == "sandbox-runner"
    assert event.details == {"n": 1}
    assert event.metadata["pid"] == os.getpid()
    assert "hostname" in event.metadata


@pytest.mark.asyncio
async def test_accepts_audit_event_models_and_enums(tmp_path):
    audit_logger = _logger(tmp_path)
    async with audit_logger:
        await audit_logger.log_audit_event(
            AuditEvent(
                level=AuditLevel.CRITICAL,
                category=AuditCategory.SECURITY,
                action="SECURITY_VIOLATION",
                user_id="alice",
                metadata={"pid": 1},
            )
        )

    event = audit_logger.read_audit_logs(audit_logger.current_log_file)[0]
    assert event.level == "CRITICAL"
    assert event.category == "SECURITY"
    assert event.user_id == "alice"
    assert event.metadata["pid"] == 1


@pytest.mark.asyncio
async def test_concurrent_submissions_keep_call_order(tmp_path):
    audit_logger = _logger(tmp_path)
    async with audit_logger:
        await asyncio.gather(
            *(audit_logger.log_audit_event({"action": f"EVENT_{i}"}) for i in range(25))
        )
        futures = [audit_logger.submit({"action": f"SUBMIT_{i}"}) for i in range(25)]
        await asyncio.gather(*futures)

    actions = [event.action for event in audit_logger.read_all_audit_logs()]
    expected = [f"EVENT_{i}" for i in range(25)] + [f"SUBMIT_{i}" for i in range(25)]
    assert actions == expected


@pytest.mark.asyncio
async def test_rotation_keeps_every_event_retrievable(tmp_path):
    events = []
    audit_logger = _logger(tmp_path, events, max_file_size=2048, max_files=100)
    async with audit_logger:
        for i in range(50):
            await audit_logger.log_audit_event(
                {"action": "ROTATE", "details": {"index": i, "padding": "p" * 200}}
            )
        stats = audit_logger.get_stats()

    assert stats["rotated_files"] >= 1
    assert stats["total_logs"] == 50
    assert any(kind == "log-rotation" for kind, _ in events)
    files = audit_logger.log_files
    assert len(files) > 1
    for path in files:
        assert path.stat().st_size <= 2048
    indexes = [event.details["index"] for event in audit_logger.read_all_audit_logs()]
    assert indexes == list(range(50))


@pytest.mark.asyncio
async def test_tiny_size_threshold_gives_one_entry_per_file(tmp_path):
    audit_logger = _logger(tmp_path, max_file_size=100, max_files=100)
    async with audit_logger:
        for i in range(50):
            await audit_logger.log_audit_event({"action": "TINY", "details": {"index": i}})
        stats = audit_logger.get_stats()

    files = audit_logger.log_files
    assert len(files) == 50
    for path in files:
        header, lines = _entry_lines(path)
        assert len(header) > 100
        assert len(lines) == 1
    assert stats["total_logs"] == 50
    assert stats["rotated_files"] == 49
    indexes = [event.details["index"] for event in audit_logger.read_all_audit_logs()]
    assert indexes == list(range(50))


@pytest.mark.asyncio
async def test_retention_prunes_oldest_files(tmp_path):
    events = []
    audit_logger = _logger(tmp_path, events, max_file_size=1, max_files=3)
    async with audit_logger:
        for i in range(6):
            await audit_logger.log_audit_event({"action": "PRUNE", "details": {"index": i}})

    remaining = sorted((tmp_path / "logs").glob("audit-*.audit"))
    assert len(remaining) == 3
    assert any(kind == "log-file-deleted" for kind, _ in events)
    indexes = [event.details["index"] for event in audit_logger.read_all_audit_logs()]
    assert indexes == [3, 4, 5]


@pytest.mark.asyncio
async def test_existing_files_are_pruned_at_startup(tmp_path):
    for _ in range(4):
        audit_logger = _logger(tmp_path, max_files=2)
        async with audit_logger:
            await audit_logger.log_audit_event({"action": "BOOT"})

    assert len(list((tmp_path / "logs").glob("audit-*.audit"))) == 2


@pytest.mark.asyncio
async def test_proactive_rotation_check(tmp_path):
    audit_logger = _logger(tmp_path, max_file_size=1, check_interval=0.05)
    async with audit_logger:
        await audit_logger.log_audit_event({"action": "FIRST"})
        first_file = audit_logger.current_log_file
        await asyncio.sleep(0.3)
        stats = audit_logger.get_stats()

    assert stats["rotated_files"] == 1
    assert audit_logger.current_log_file != first_file


@pytest.mark.asyncio
async def test_entries_are_gcm_encrypted_on_disk(tmp_path):
    audit_logger = _logger(tmp_path)
    async with audit_logger:
        await audit_logger.log_audit_event(
            {"action": "SECRET", "details": {"token": "TOPSECRET-MARKER"}}
        )

    raw = audit_logger.current_log_file.read_bytes()
    assert b"TOPSECRET-MARKER" not in raw
    header, lines = _entry_lines(audit_logger.current_log_file)
    header = json.loads(header)
    entry = json.loads(lines[0])
    assert header["version"] == "1.0"
    assert header["encryption"]["algorithm"] == GCM_ALGORITHM
    assert entry["encrypted"] is True
    assert entry["data"]["algorithm"] == GCM_ALGORITHM
    assert entry["data"]["auth_tag"]
    assert len(entry["integrity"]) == 64


@pytest.mark.asyncio
async def test_log_files_are_owner_only(tmp_path):
    audit_logger = _logger(tmp_path)
    async with audit_logger:
        await audit_logger.log_audit_event({"action": "PERMS"})

    if os.name == "posix":
        assert stat.S_IMODE(audit_logger.current_log_file.stat().st_mode) == 0o600


@pytest.mark.asyncio
async def test_large_events_are_compressed(tmp_path):
    audit_logger = _logger(tmp_path)
    async with audit_logger:
        await audit_logger.log_audit_event({"action": "BIG", "details": {"blob": "a" * 5000}})
        await audit_logger.log_audit_event({"action": "SMALL"})
        stats = audit_logger.get_stats()

    assert stats["compressed_logs"] == 1
    _, lines = _entry_lines(audit_logger.current_log_file)
    assert json.loads(lines[0])["compressed"] is True
    assert json.loads(lines[1])["compressed"] is False
    events = audit_logger.read_audit_logs(audit_logger.current_log_file)
    assert events[0].details["blob"] == "a" * 5000


@pytest.mark.asyncio
async def test_cbc_fallback_is_counted_and_readable(tmp_path, monkeypatch):
    def broken_gcm(self, plaintext):
        raise RuntimeError("gcm unavailable")

    monkeypatch.setattr(EnvelopeCipher, "encrypt_gcm", broken_gcm)
    events = []
    audit_logger = _logger(tmp_path, events)
    async with audit_logger:
        await audit_logger.log_audit_event({"action": "FALLBACK"})
        stats = audit_logger.get_stats()

    assert stats["fallback_encryptions"] == 1
    assert any(kind == "warning" for kind, _ in events)
    _, lines = _entry_lines(audit_logger.current_log_file)
    assert json.loads(lines[0])["data"]["algorithm"] == CBC_ALGORITHM
    assert audit_logger.read_audit_logs(audit_logger.current_log_file)[0].action == "FALLBACK"


def _tamper(path, index, mutate):
    header, lines = _entry_lines(path)
    entry = json.loads(lines[index])
    mutate(entry)
    lines[index] = json.dumps(entry)
    path.write_text("\n".join([header, *lines]) + "\n", encoding="utf-8")


def _flip_ciphertext(entry):
    data = entry["data"]["data"]
    entry["data"]["data"] = ("A" if data[0] != "A" else "B") + data[1:]


@pytest.mark.asyncio
async def test_tampered_ciphertext_is_skipped_and_reported(tmp_path):
    audit_logger = _logger(tmp_path)
    async with audit_logger:
        for i in range(3):
            await audit_logger.log_audit_event({"action": f"EVENT_{i}"})

    _tamper(audit_logger.current_log_file, 1, _flip_ciphertext)
    failures = []
    audit_logger.add_listener(lambda kind, payload: failures.append(payload) if kind == "integrity-failure" else None)
    events = audit_logger.read_audit_logs(audit_logger.current_log_file)

    assert [event.action for event in events] == ["EVENT_0", "EVENT_2"]
    assert len(failures) == 1
    assert failures[0]["reason"] == "hmac mismatch"
    assert audit_logger.get_stats()["integrity_failures"] == 1


@pytest.mark.asyncio
async def test_tampered_integrity_tag_is_detected(tmp_path):
    audit_logger = _logger(tmp_path)
    async with audit_logger:
        await audit_logger.log_audit_event({"action": "TAGGED"})

    def flip_tag(entry):
        tag = entry["integrity"]
        entry["integrity"] = ("0" if tag[0] != "0" else "1") + tag[1:]

    _tamper(audit_logger.current_log_file, 0, flip_tag)
    report = audit_logger.verify_log_file(audit_logger.current_log_file)

    assert report.ok is False
    assert report.valid == 0
    assert len(report.integrity_failures) == 1


@pytest.mark.asyncio
async def test_gcm_tag_catches_tampering_without_hmac(tmp_path):
    audit_logger = _logger(tmp_path, enable_integrity_check=False)
    async with audit_logger:
        await audit_logger.log_audit_event({"action": "NO_HMAC"})

    _, lines = _entry_lines(audit_logger.current_log_file)
    assert json.loads(lines[0])["integrity"] is None
    _tamper(audit_logger.current_log_file, 0, _flip_ciphertext)
    report = audit_logger.verify_log_file(audit_logger.current_log_file)

    assert len(report.integrity_failures) == 1
    assert report.integrity_failures[0].reason.startswith("GCM decryption failed")


@pytest.mark.asyncio
async def test_header_cannot_switch_off_integrity_checks(tmp_path):
    audit_logger = _logger(tmp_path, algorithm=CBC_ALGORITHM)
    async with audit_logger:
        await audit_logger.log_audit_event({"action": "ORIGINAL"})

    path = audit_logger.current_log_file
    header, lines = _entry_lines(path)
    header = json.loads(header)
    header["integrity"]["enabled"] = False
    entry = json.loads(lines[0])
    entry["integrity"] = None
    iv = bytearray(base64.b64decode(entry["data"]["iv"]))
    iv[0] ^= 0x01
    entry["data"]["iv"] = base64.b64encode(bytes(iv)).decode("ascii")
    path.write_text(json.dumps(header) + "\n" + json.dumps(entry) + "\n", encoding="utf-8")

    failures = []
    audit_logger.add_listener(lambda kind, payload: failures.append(payload) if kind == "integrity-failure" else None)
    events = audit_logger.read_audit_logs(path)

    assert events == []
    assert len(failures) == 1
    assert failures[0]["reason"] == "missing integrity tag"
    assert audit_logger.verify_log_file(path).ok is False


@pytest.mark.asyncio
async def test_wrong_key_reads_nothing(tmp_path):
    audit_logger = _logger(tmp_path)
    async with audit_logger:
        await audit_logger.log_audit_event({"action": "PRIVATE"})

    other = EncryptedAuditLogger(_config(tmp_path / "other"), encryption_key=b"a different key")
    assert other.read_audit_logs(audit_logger.current_log_file) == []
    assert other.get_stats()["integrity_failures"] == 1


@pytest.mark.asyncio
async def test_corrupt_line_is_skipped(tmp_path):
    events = []
    audit_logger = _logger(tmp_path, events)
    async with audit_logger:
        await audit_logger.log_audit_event({"action": "BEFORE"})
    with open(audit_logger.current_log_file, "a", encoding="utf-8") as f:
        f.write("this is not json\n")

    audit_logger.add_listener(lambda kind, payload: events.append((kind, payload)))
    actions = [event.action for event in audit_logger.read_audit_logs(audit_logger.current_log_file)]

    assert actions == ["BEFORE"]
    assert any(kind == "error" for kind, _ in events)
    report = audit_logger.verify_log_file(audit_logger.current_log_file)
    assert (report.total, report.valid, report.unreadable) == (2, 1, 1)


@pytest.mark.asyncio
async def test_write_failure_raises_audit_io_error(tmp_path, monkeypatch):
    events = []
    audit_logger = _logger(tmp_path, events)
    async with audit_logger:
        size_before = audit_logger.current_log_size

        def failing_append(data):
            raise OSError("disk full")

        monkeypatch.setattr(audit_logger._files, "append", failing_append)
        with pytest.raises(AuditIOError):
            await audit_logger.log_audit_event({"action": "LOST"})
        assert audit_logger.current_log_size == size_before
        assert any(kind == "error" for kind, _ in events)

        monkeypatch.undo()
        await audit_logger.log_audit_event({"action": "KEPT"})

    actions = [event.action for event in audit_logger.read_audit_logs(audit_logger.current_log_file)]
    assert actions == ["KEPT"]


@pytest.mark.asyncio
async def test_destroy_drains_pending_writes(tmp_path):
    audit_logger = _logger(tmp_path)
    await audit_logger.start()
    futures = [audit_logger.submit({"action": "PENDING", "details": {"i": i}}) for i in range(10)]
    await audit_logger.destroy()

    assert all(future.done() for future in futures)
    events = audit_logger.read_audit_logs(audit_logger.current_log_file)
    assert [event.details["i"] for event in events] == list(range(10))


@pytest.mark.asyncio
async def test_destroy_gives_up_on_a_stuck_writer(tmp_path, monkeypatch, caplog):
    async def stuck_write(request):
        await asyncio.Event().wait()

    audit_logger = _logger(tmp_path, shutdown_timeout=0.2)
    monkeypatch.setattr(audit_logger, "_write", stuck_write)
    await audit_logger.start()
    in_flight = audit_logger.submit({"action": "STUCK"})
    queued = audit_logger.submit({"action": "QUEUED"})
    await asyncio.sleep(0)

    await asyncio.wait_for(audit_logger.destroy(), timeout=5)

    for future in (in_flight, queued):
        assert isinstance(future.exception(), AuditIOError)
    assert "not drained" in caplog.text


@pytest.mark.asyncio
async def test_submit_after_destroy_is_rejected(tmp_path):
    audit_logger = _logger(tmp_path)
    await audit_logger.destroy()
    await audit_logger.destroy()

    with pytest.raises(AuditError):
        audit_logger.submit({"action": "LATE"})


@pytest.mark.asyncio
async def test_invalid_event_is_rejected(tmp_path):
    audit_logger = _logger(tmp_path)
    async with audit_logger:
        with pytest.raises(AuditError):
            await audit_logger.log_audit_event({"details": "not a mapping"})
