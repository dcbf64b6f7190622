from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from openstack_tool.logging import JsonFormatter, LogConfig, PlainFormatter, setup_logging
from openstack_tool.schema import CleanupOutcome, OrphanRecord, OutcomeStatus
from openstack_tool.util.serialization import REDACTED_VALUE, dumps_document, sanitize_for_json


def _record(msg: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="unit",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_sanitize_for_json_redacts_sensitive_fields() -> None:
    payload = {
        "ssh_password": "secret",
        "tokenValue": "abc",
        "nested": {"client_secret": "s3", "safe": 1},
    }

    sanitized = sanitize_for_json(payload)

    assert sanitized["ssh_password"] == REDACTED_VALUE
    assert sanitized["tokenValue"] == REDACTED_VALUE
    assert sanitized["nested"]["client_secret"] == REDACTED_VALUE
    assert sanitized["nested"]["safe"] == 1


def test_sanitize_for_json_handles_datetime_bytes_and_enums() -> None:
    ts = datetime(2024, 1, 1, tzinfo=timezone.utc)
    payload = {"when": ts, "blob": b"bytes", "status": OutcomeStatus.PENDING}

    sanitized = sanitize_for_json(payload)

    assert sanitized["when"] == "2024-01-01T00:00:00+00:00"
    assert sanitized["blob"] == "bytes"
    assert sanitized["status"] == "pending"


def test_dumps_document_uses_record_to_dict() -> None:
    doc = json.loads(
        dumps_document(
            {
                "missing": [OrphanRecord("vm1", "Running")],
                "results": [CleanupOutcome("vm1", "Unknown", OutcomeStatus.SUCCESS, command="delete vm1")],
            }
        )
    )

    assert doc["missing"] == [{"instance_name": "vm1", "tenant_name": "Unknown", "status": "Running"}]
    assert doc["results"][0]["status"] == "success"


def test_json_formatter_skips_non_serializable_extras() -> None:
    record = _record(good={"a": 1, "b": [1, 2]}, bad={"obj": object()})

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "hello"
    assert payload["good"] == {"a": 1, "b": [1, 2]}
    assert "bad" not in payload
    assert payload["timestamp"].endswith("Z")


def test_plain_formatter_prefixes_step_and_phase() -> None:
    record = _record("Inventory fetch complete", step="fetching_inventories", phase="complete", duration_ms=12)

    line = PlainFormatter().format(record)

    assert "[fetching_inventories:complete] Inventory fetch complete (duration_ms=12)" in line
    assert " INFO unit: " in line


def test_setup_logging_writes_to_stderr_and_quiets_libraries(capsys) -> None:
    setattr(setup_logging, "_configured", False)
    root = logging.getLogger()
    previous_handlers, previous_level = root.handlers[:], root.level
    try:
        setup_logging(LogConfig(level="DEBUG", json_logs=True))
        logging.getLogger("openstack_tool.unit").debug("visible", extra={"step": "run"})

        captured = capsys.readouterr()
        assert captured.out == ""
        assert json.loads(captured.err.strip().splitlines()[-1])["step"] == "run"
        assert logging.getLogger("paramiko").level == logging.WARNING
    finally:
        root.handlers = previous_handlers
        root.setLevel(previous_level)
        setattr(setup_logging, "_configured", False)
