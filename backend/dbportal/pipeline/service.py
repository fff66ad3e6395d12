"""
ExecutionPipeline: the one object that owns the queue, the lock, the request
store, the dispatcher and the worker pool.

Built once at startup (``ExecutionPipeline.from_settings()``) and handed to
whatever needs it; ``shutdown()`` drains in-flight work and releases locks.
"""

import logging
import threading
import uuid
from typing import Any

from sqlalchemy.engine import Engine

from dbportal.core import audit
from dbportal.core.config import settings
from dbportal.core.errors import ConflictError, ValidationError
from dbportal.core.lock import ResourceLock
from dbportal.core.redis_client import create_redis
from dbportal.engines.document.parser import check_operators
from dbportal.engines.executor import ExecutionDispatcher
from dbportal.engines.script import validate_script
from dbportal.models_portal import (
    DatabaseTypeEnum,
    QueryRequest,
    RequestStatusEnum,
    SubmissionTypeEnum,
)
from dbportal.schemas_portal import JobPayload, ScriptValidation

from .queue import JobQueue, RetryPolicy, SweepReport
from .requests import RequestStore
from .worker import WorkerPool

_log = logging.getLogger(__name__)

SYSTEM_APPROVER = "system"


class ExecutionPipeline:
    def __init__(
        self,
        engine: Engine,
        *,
        queue: JobQueue | None = None,
        requests: RequestStore | None = None,
        locks: ResourceLock | None = None,
        dispatcher: ExecutionDispatcher | None = None,
        retry_policy: RetryPolicy | None = None,
        concurrency: int | None = None,
        worker_id: str | None = None,
        maintenance_interval: float | None = None,
    ) -> None:
        self.engine = engine
        self.queue = queue or JobQueue(engine)
        self.requests = requests or RequestStore(engine)
        self.locks = locks or ResourceLock()
        self.dispatcher = dispatcher or ExecutionDispatcher()
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.maintenance_interval = (
            maintenance_interval
            if maintenance_interval is not None
            else settings.MAINTENANCE_INTERVAL_SECONDS
        )
        self.workers = WorkerPool(
            self.queue,
            self.requests,
            self.locks,
            self.dispatcher,
            concurrency=concurrency,
            on_settled=self.admit_waiting,
            worker_id=worker_id,
        )
        self._maintenance_stop = threading.Event()
        self._maintenance_thread: threading.Thread | None = None

    @classmethod
    def from_settings(cls, engine: Engine | None = None, **kwargs: Any) -> "ExecutionPipeline":
        """Wire everything from settings: portal DB engine, Redis lock when REDIS_URL is set."""
        if engine is None:
            from dbportal.core.db import engine as default_engine

            engine = default_engine
        redis_client = create_redis() if settings.lock_enabled_redis else None
        return cls(engine, locks=ResourceLock(redis_client), **kwargs)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def validate_submission(self, request: QueryRequest) -> ScriptValidation:
        """Static checks run before a request may be approved."""
        if request.submission_type == SubmissionTypeEnum.SCRIPT:
            validation = validate_script(request.script_content or "")
            if not (request.script_content or "").strip():
                validation = ScriptValidation(
                    valid=False, errors=["Script content is empty", *validation.errors]
                )
            if not validation.valid:
                audit.audit(
                    audit.SCRIPT_REJECTED,
                    outcome="REJECTED",
                    request_id=str(request.id),
                    file_name=request.script_file_name,
                    errors=validation.errors,
                )
            return validation

        query = request.query or ""
        if not query.strip():
            return ScriptValidation(valid=False, errors=["Query is empty"])
        if request.database_type == DatabaseTypeEnum.MONGODB:
            try:
                check_operators(query)
            except ValidationError as e:
                return ScriptValidation(valid=False, errors=[str(e)])
        return ScriptValidation(valid=True)

    def approve_and_enqueue(self, request_id: uuid.UUID, approved_by: str) -> uuid.UUID | None:
        """
        pending -> approved, then enqueue. Returns the job id, or None when the
        resource key is busy; the request then waits and is admitted once the
        current job for its key settles.
        """
        request = self.requests.get(request_id)
        validation = self.validate_submission(request)
        if not validation.valid:
            raise ValidationError("; ".join(validation.errors))
        request = self.requests.approve(request_id, approved_by)
        return self.enqueue(request, approved_by)

    def enqueue(self, request: QueryRequest, approved_by: str) -> uuid.UUID | None:
        if request.status != RequestStatusEnum.APPROVED:
            raise ConflictError(
                f"Only approved requests can be queued (status is "
                f"{RequestStatusEnum(request.status).value})"
            )
        payload = JobPayload(
            job_id=str(uuid.uuid4()),
            resource_key=request.resource_key,
            request_id=request.id,
            approved_by=approved_by,
        )
        return self.queue.enqueue(request.resource_key, payload, self.retry_policy)

    def withdraw(self, request_id: uuid.UUID, user_id: str) -> QueryRequest:
        request = self.requests.withdraw(request_id, user_id)
        self.queue.cancel_for_request(request_id)
        return request

    def admit_waiting(self, resource_key: str | None = None) -> list[uuid.UUID]:
        """
        Enqueue the oldest approved request that has no job yet, one per key
        with nothing outstanding. ``resource_key=None`` walks every key.
        """
        if resource_key is not None:
            candidates = []
            if not self.queue.has_outstanding(resource_key):
                waiting = self.requests.waiting_for_key(resource_key)
                if waiting is not None:
                    candidates.append(waiting)
        else:
            candidates = self.requests.waiting()

        admitted: list[uuid.UUID] = []
        seen: set[str] = set()
        for request in candidates:
            key = request.resource_key
            if key in seen:
                continue
            seen.add(key)
            if resource_key is None and self.queue.has_outstanding(key):
                continue
            job_id = self.enqueue(request, request.approver_email or SYSTEM_APPROVER)
            if job_id is not None:
                _log.info("Admitted waiting request %s for key=%s", request.id, key)
                admitted.append(job_id)
        return admitted

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def run_maintenance(self) -> SweepReport:
        """
        Reconcile queue, requests and locks:
        expired jobs fail their request; jobs whose lease ran out are retried
        (request back to approved) or fail it; expired in-process leases are
        dropped; approved requests without a job are admitted.
        """
        report = self.queue.sweep()
        for item in report.reclaimed:
            self.requests.reset_to_approved(item.request_id)
        for item in report.failed:
            self.requests.mark_failed(
                item.request_id,
                f"Execution failed after {item.attempts} attempt(s): {item.reason}",
            )
        for item in report.expired:
            self.requests.mark_failed(item.request_id, item.reason)
        self.locks.sweep()
        self.admit_waiting()
        return report

    def _maintenance_loop(self) -> None:
        while not self._maintenance_stop.wait(self.maintenance_interval):
            try:
                self.run_maintenance()
            except Exception:
                _log.exception("Maintenance sweep failed")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, *, maintenance: bool = True) -> None:
        self.workers.start()
        if maintenance and self._maintenance_thread is None:
            self._maintenance_stop.clear()
            self._maintenance_thread = threading.Thread(
                target=self._maintenance_loop, name="dbportal-maintenance", daemon=True
            )
            self._maintenance_thread.start()

    def shutdown(self, grace: float | None = None) -> bool:
        """Stop maintenance and workers, drain up to *grace* seconds, release locks."""
        self._maintenance_stop.set()
        if self._maintenance_thread is not None:
            self._maintenance_thread.join(timeout=5.0)
            self._maintenance_thread = None
        drained = self.workers.stop(grace)
        self.dispatcher.close()
        _log.info("Execution pipeline stopped drained=%s", drained)
        return drained

    def status(self) -> dict:
        return {
            "workers": self.workers.status(),
            "jobs": self.queue.counts(),
            "pools": self.dispatcher.pools.stats(),
        }
