import json
import logging

import pytest

from dbportal.core import audit


def test_audit_event_carries_payload(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="dbportal.audit"):
        audit.audit(audit.JOB_ENQUEUED, job_id="j1", resource_key="postgresql:i:app")

    record = caplog.records[-1]
    assert record.levelno == logging.INFO
    assert record.audit["action"] == "job.enqueued"
    assert record.audit["outcome"] == "SUCCESS"
    assert record.audit["job_id"] == "j1"
    assert "[AUDIT] job.enqueued" in record.getMessage()


def test_non_success_outcome_logs_warning(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="dbportal.audit"):
        audit.audit(audit.JOB_FAILED, outcome="FAILURE", error="boom")
    assert caplog.records[-1].levelno == logging.WARNING


def test_json_formatter_emits_audit_payload() -> None:
    record = logging.LogRecord("dbportal.audit", logging.INFO, __file__, 1, "hello %s", ("x",), None)
    record.audit = {"action": "lock.acquired", "key": "k"}

    entry = json.loads(audit.JsonFormatter().format(record))

    assert entry["message"] == "hello x"
    assert entry["level"] == "INFO"
    assert entry["audit"] == {"action": "lock.acquired", "key": "k"}
