import asyncio
import json
from pathlib import Path

import pytest

from uem_gateway.audit.logger import AuditLogger
from uem_gateway.audit.writer import AuditValidationError, AuditWriter
from uem_gateway.models.context import RequestContext
from uem_gateway.storage.memory import InMemoryStorage

SCHEMA_PATH = (
    Path(__file__).resolve().parents[2] / "docs" / "contracts" / "v1" / "usage-record.schema.json"
)


def _context() -> RequestContext:
    return RequestContext(
        user_id="user-1",
        domain_id="domain-a",
        tenant_id="tenant-a",
        session_id="session-1",
        ip_address="10.0.0.1",
        user_agent="pytest",
        request_id="req-1",
    )


def _record(logger: AuditLogger, **overrides: object) -> dict[str, object] | None:
    kwargs: dict[str, object] = {
        "context": _context(),
        "endpoint": "script-generation",
        "request_id": "req-1",
        "success": True,
        "tokens_in": 70,
        "tokens_out": 30,
        "cost": 0.0008,
        "latency_ms": 12,
        "http_status": 200,
        "model": "gpt-4o",
    }
    kwargs.update(overrides)
    return asyncio.run(logger.record(**kwargs))  # type: ignore[arg-type]


def test_record_persists_validated_usage(tmp_path: Path) -> None:
    storage = InMemoryStorage()
    writer = AuditWriter(schema_path=SCHEMA_PATH, log_path=tmp_path / "usage.jsonl")
    logger = AuditLogger(storage=storage, writer=writer)

    record = _record(logger)

    assert record is not None
    rows = asyncio.run(storage.list_usage_records())
    assert len(rows) == 1
    assert rows[0]["total_tokens"] == 100
    assert rows[0]["final_state"] == "RESPONDED"
    assert rows[0]["tenant_id"] == "tenant-a"
    assert (tmp_path / "usage.jsonl").exists()


def test_record_is_skipped_when_disabled(tmp_path: Path) -> None:
    storage = InMemoryStorage()
    writer = AuditWriter(schema_path=SCHEMA_PATH, log_path=tmp_path / "usage.jsonl")
    logger = AuditLogger(storage=storage, writer=writer, enabled=False)

    assert _record(logger) is None
    assert asyncio.run(storage.list_usage_records()) == []


def test_record_swallows_storage_failure(caplog: pytest.LogCaptureFixture) -> None:
    class _BrokenStorage(InMemoryStorage):
        async def persist_usage_record(self, record: dict[str, object]) -> None:
            raise RuntimeError("disk full")

    logger = AuditLogger(storage=_BrokenStorage(), writer=AuditWriter(schema_path=SCHEMA_PATH))

    with caplog.at_level("WARNING", logger="uemgw.audit"):
        record = _record(logger, success=False, http_status=502, final_state="FAILED")

    assert record is not None
    assert any(item.getMessage() == "audit_write_failed" for item in caplog.records)


def test_record_swallows_storage_timeout() -> None:
    class _SlowStorage(InMemoryStorage):
        async def persist_usage_record(self, record: dict[str, object]) -> None:
            await asyncio.sleep(1)

    logger = AuditLogger(
        storage=_SlowStorage(), writer=AuditWriter(schema_path=SCHEMA_PATH), timeout_s=0.01
    )

    assert _record(logger) is not None


def test_invalid_record_is_not_persisted() -> None:
    storage = InMemoryStorage()
    logger = AuditLogger(storage=storage, writer=AuditWriter(schema_path=SCHEMA_PATH))

    _record(logger, tokens_in=-1)

    assert asyncio.run(storage.list_usage_records()) == []


def test_writer_rejects_unknown_fields() -> None:
    writer = AuditWriter(schema_path=SCHEMA_PATH)
    with pytest.raises(AuditValidationError):
        writer.validate({"record_id": "r1", "unexpected": True})


def test_writer_chains_payload_hashes(tmp_path: Path) -> None:
    log_path = tmp_path / "usage.jsonl"
    logger = AuditLogger(
        storage=InMemoryStorage(), writer=AuditWriter(schema_path=SCHEMA_PATH, log_path=log_path)
    )

    _record(logger, request_id="req-1")
    _record(logger, request_id="req-2")

    lines = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
    assert lines[0]["prev_hash"] == ""
    assert lines[1]["prev_hash"] == lines[0]["payload_hash"]
    assert AuditWriter(schema_path=SCHEMA_PATH, log_path=log_path).verify_chain() is True


def test_verify_chain_detects_tampering(tmp_path: Path) -> None:
    log_path = tmp_path / "usage.jsonl"
    writer = AuditWriter(schema_path=SCHEMA_PATH, log_path=log_path)
    logger = AuditLogger(storage=InMemoryStorage(), writer=writer)
    _record(logger, request_id="req-1")
    _record(logger, request_id="req-2")

    lines = log_path.read_text(encoding="utf-8").splitlines()
    first = json.loads(lines[0])
    first["cost_usd"] = 0.0
    lines[0] = json.dumps(first)
    log_path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    assert writer.verify_chain() is False
