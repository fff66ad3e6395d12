"""
Structured audit events for the execution pipeline.

Every event goes to the ``dbportal.audit`` logger at INFO (or WARNING for
failures) with the event fields attached as ``extra={"audit": {...}}`` so a
JSON formatter can emit them verbatim.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

audit_logger = logging.getLogger("dbportal.audit")

JOB_ENQUEUED = "job.enqueued"
JOB_COALESCED = "job.coalesced"
JOB_STARTED = "job.started"
JOB_SUCCEEDED = "job.succeeded"
JOB_FAILED = "job.failed"
JOB_RETRY = "job.retry"
JOB_EXPIRED = "job.expired"
LOCK_ACQUIRED = "lock.acquired"
LOCK_RELEASED = "lock.released"
SCRIPT_REJECTED = "script.rejected"
WORKER_STARTED = "worker.started"
WORKER_STOPPED = "worker.stopped"


def audit(action: str, *, outcome: str = "SUCCESS", **details: Any) -> None:
    """Emit one audit event. ``details`` must be JSON-friendly (str() fallback)."""
    payload = {
        "action": action,
        "outcome": outcome,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **details,
    }
    level = logging.INFO if outcome == "SUCCESS" else logging.WARNING
    audit_logger.log(
        level,
        "[AUDIT] %s %s",
        action,
        json.dumps(details, default=str, sort_keys=True),
        extra={"audit": payload},
    )


class JsonFormatter(logging.Formatter):
    """One JSON object per line; carries the ``audit`` payload when present."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        audit_payload = getattr(record, "audit", None)
        if audit_payload:
            entry["audit"] = audit_payload
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", *, json_format: bool = False) -> None:
    handler = logging.StreamHandler()
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())
