"""
Worker pool: N slot threads that claim jobs from the queue and run them.

Per job:
1. take the resource lock for the job's key (busy -> transient, retried)
2. load the request; anything but ``approved`` is skipped, except a request
   its own earlier attempt left ``executing``, which is resumed
3. CAS approved -> executing, start the heartbeat (lock refresh + job lease)
4. build the execution target and dispatch it
5. compress large output, redact secrets from errors, CAS executing -> executed|failed
6. release the lock (always), then complete the job

Transient failures (lock busy, target unreachable, portal DB hiccup) go back to
the queue; when its retries are spent the request fails with the last reason.
Executor errors are final for the request and never retried. Any other failure
after the claim hands the request back to ``approved`` before the job is retried.
"""

import logging
import os
import socket
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any

from sqlalchemy.exc import OperationalError

from dbportal.core import audit
from dbportal.core.compression import byte_size, compress, format_bytes, should_compress
from dbportal.core.config import settings
from dbportal.core.errors import (
    UNKNOWN_ERROR,
    LockBusyError,
    NotFoundError,
    TransientError,
    ValidationError,
    error_message,
    redact,
)
from dbportal.core.lock import LockToken, ResourceLock
from dbportal.engines.executor import ExecutionDispatcher, build_target, target_secrets
from dbportal.models_portal import ExecutionJob, JobStateEnum, QueryRequest, RequestStatusEnum
from dbportal.schemas_portal import ExecutionResult, JobPayload

from .queue import JobQueue
from .requests import RequestStore

_log = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class _Heartbeat:
    """Keeps the lock and the job lease alive while a job runs."""

    def __init__(
        self,
        locks: ResourceLock,
        token: LockToken,
        queue: JobQueue,
        job_id: uuid.UUID,
        interval: float,
    ) -> None:
        self._locks = locks
        self._token = token
        self._queue = queue
        self._job_id = job_id
        self._interval = interval
        self._stopped = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"heartbeat-{str(job_id)[:8]}", daemon=True
        )

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stopped.set()
        self._thread.join(timeout=self._interval + 1.0)

    def _run(self) -> None:
        while not self._stopped.wait(self._interval):
            if not self._locks.refresh(self._token):
                _log.warning("Lock lease lost for key=%s job=%s", self._token.key, self._job_id)
            try:
                if not self._queue.touch(self._job_id):
                    _log.warning("Job %s is no longer active", self._job_id)
            except Exception:
                _log.warning("Failed to extend lease of job %s", self._job_id, exc_info=True)


class WorkerPool:
    """
    start() / stop(grace) / status(); process_job(job) runs one claimed job.
    """

    def __init__(
        self,
        queue: JobQueue,
        requests: RequestStore,
        locks: ResourceLock,
        dispatcher: ExecutionDispatcher,
        *,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        lock_ttl_ms: int | None = None,
        compression_threshold: int | None = None,
        on_settled: Callable[[str], Any] | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.queue = queue
        self.requests = requests
        self.locks = locks
        self.dispatcher = dispatcher
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL_SECONDS
        )
        self.lock_ttl_ms = lock_ttl_ms or settings.LOCK_TTL_MS
        self.compression_threshold = (
            compression_threshold
            if compression_threshold is not None
            else settings.RESULT_COMPRESSION_THRESHOLD_BYTES
        )
        self.on_settled = on_settled
        self.worker_id = worker_id or default_worker_id()

        self._stop_event = threading.Event()
        self._executor: ThreadPoolExecutor | None = None
        self._futures: list[Future] = []
        self._in_flight: set[uuid.UUID] = set()
        self._stats = {"processed": 0, "succeeded": 0, "failed": 0, "retried": 0, "skipped": 0}
        self._state_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._executor is not None and not self._stop_event.is_set()

    def start(self) -> None:
        if self._executor is not None:
            return
        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="dbportal-worker"
        )
        self._futures = [
            self._executor.submit(self._slot_loop, slot) for slot in range(self.concurrency)
        ]
        _log.info(
            "Worker pool started worker_id=%s concurrency=%d queue=%s",
            self.worker_id,
            self.concurrency,
            self.queue.name,
        )
        audit.audit(audit.WORKER_STARTED, worker_id=self.worker_id, concurrency=self.concurrency)

    def stop(self, grace: float | None = None) -> bool:
        """
        Stop claiming, wait up to *grace* seconds for in-flight jobs, then
        force-release every lock this process holds. True if all slots drained.
        """
        grace = settings.WORKER_SHUTDOWN_GRACE_SECONDS if grace is None else grace
        self._stop_event.set()
        drained = True
        if self._executor is not None:
            _, pending = wait(self._futures, timeout=grace)
            drained = not pending
            if pending:
                with self._state_lock:
                    in_flight = sorted(str(j) for j in self._in_flight)
                _log.warning(
                    "Shutdown grace of %.1fs elapsed; abandoning in-flight job(s): %s",
                    grace,
                    in_flight,
                )
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
            self._futures = []
        self.locks.release_all()
        audit.audit(
            audit.WORKER_STOPPED,
            outcome="SUCCESS" if drained else "TIMEOUT",
            worker_id=self.worker_id,
        )
        return drained

    def status(self) -> dict[str, Any]:
        with self._state_lock:
            return {
                "worker_id": self.worker_id,
                "running": self.running,
                "concurrency": self.concurrency,
                "in_flight": len(self._in_flight),
                "lock_backend": self.locks.backend,
                "locks_held": self.locks.held_count(),
                **self._stats,
            }

    def _slot_loop(self, slot: int) -> None:
        _log.debug("Worker slot %d started", slot)
        while not self._stop_event.is_set():
            try:
                job = self.queue.fetch(self.worker_id)
            except Exception:
                _log.exception("Failed to fetch job from queue %s", self.queue.name)
                self._stop_event.wait(self.poll_interval)
                continue
            if job is None:
                self._stop_event.wait(self.poll_interval)
                continue
            try:
                self.process_job(job)
            except Exception:
                _log.exception("Unexpected error while processing job %s", job.id)
        _log.debug("Worker slot %d stopped", slot)

    # ------------------------------------------------------------------
    # One job
    # ------------------------------------------------------------------

    def process_job(self, job: ExecutionJob) -> None:
        payload = JobPayload.model_validate(job.data)
        with self._state_lock:
            self._in_flight.add(job.id)
        try:
            try:
                self._execute(job, payload)
            except (TransientError, OperationalError) as e:
                _log.warning("Job %s hit a transient failure: %s", job.id, error_message(e))
                self._retry_or_fail(job, payload, error_message(e))
            except Exception as e:
                _log.exception("Job %s raised", job.id)
                self._retry_or_fail(job, payload, error_message(e))
            else:
                self.queue.complete(job.id)
        finally:
            with self._state_lock:
                self._in_flight.discard(job.id)
                self._stats["processed"] += 1
            self._settled(payload.resource_key)

    def _execute(self, job: ExecutionJob, payload: JobPayload) -> None:
        key = payload.resource_key
        token = self.locks.acquire(key, self.lock_ttl_ms)
        if token is None:
            raise LockBusyError(key)
        heartbeat: _Heartbeat | None = None
        try:
            try:
                request = self.requests.get(payload.request_id)
            except NotFoundError:
                _log.warning("Job %s: request %s no longer exists", job.id, payload.request_id)
                self._count("skipped")
                return
            if request.status == RequestStatusEnum.EXECUTING and job.retry_count > 0:
                # Only this job holds the key, so a request still executing was
                # left behind by one of its own earlier attempts
                _log.warning(
                    "Job %s: resuming request %s left executing by a previous attempt",
                    job.id,
                    request.id,
                )
            elif request.status != RequestStatusEnum.APPROVED:
                _log.info(
                    "Job %s: request %s is %s, skipping",
                    job.id,
                    request.id,
                    RequestStatusEnum(request.status).value,
                )
                self._count("skipped")
                return
            elif not self.requests.mark_executing(request.id):
                _log.info("Job %s: request %s was claimed elsewhere", job.id, request.id)
                self._count("skipped")
                return

            audit.audit(
                audit.JOB_STARTED,
                job_id=str(job.id),
                request_id=str(request.id),
                resource_key=key,
                attempt=job.retry_count + 1,
                worker_id=self.worker_id,
            )
            heartbeat = _Heartbeat(
                self.locks, token, self.queue, job.id, self._heartbeat_interval()
            )
            heartbeat.start()

            try:
                result, secrets = self._run(request)
                self._finish(job, request, result, secrets)
            except Exception:
                # Give the request back so the retry can claim it again;
                # a no-op once the result is recorded
                self._give_back(request.id)
                raise
        finally:
            if heartbeat is not None:
                heartbeat.stop()
            self.locks.release(token)

    def _run(self, request: QueryRequest) -> tuple[ExecutionResult, tuple[str | None, ...]]:
        try:
            instance = self.requests.get_instance(request.instance_id)
            target = build_target(request, instance)
        except (NotFoundError, ValidationError) as e:
            return ExecutionResult.failed(error_message(e)), ()
        secrets = target_secrets(target)
        try:
            return self.dispatcher.dispatch(target), secrets
        except TransientError:
            raise
        except Exception as e:
            _log.exception("Executor raised for request %s", request.id)
            return ExecutionResult.failed(error_message(e)), secrets

    def _finish(
        self,
        job: ExecutionJob,
        request: QueryRequest,
        result: ExecutionResult,
        secrets: tuple[str | None, ...],
    ) -> None:
        updates: dict[str, Any] = {}
        if result.output and should_compress(result.output, self.compression_threshold):
            original = byte_size(result.output)
            encoded = compress(result.output)
            updates.update(output=encoded, is_compressed=True, original_size=original)
            _log.info(
                "Compressed result of request %s: %s -> %s",
                request.id,
                format_bytes(original),
                format_bytes(byte_size(encoded)),
            )
        if not result.success:
            updates["error"] = redact(result.error or UNKNOWN_ERROR, secrets)
        if updates:
            result = result.model_copy(update=updates)

        if not self.requests.record_result(request.id, result):
            _log.warning("Request %s left executing before its result was recorded", request.id)

        details = {
            "job_id": str(job.id),
            "request_id": str(request.id),
            "resource_key": request.resource_key,
        }
        if result.success:
            self._count("succeeded")
            audit.audit(audit.JOB_SUCCEEDED, row_count=result.row_count, **details)
        else:
            self._count("failed")
            audit.audit(audit.JOB_FAILED, outcome="FAILURE", error=result.error, **details)

    def _retry_or_fail(self, job: ExecutionJob, payload: JobPayload, reason: str) -> None:
        reason = redact(reason)
        state = self.queue.fail(job.id, reason)
        if state == JobStateEnum.RETRY:
            self._count("retried")
            return
        if state != JobStateEnum.FAILED:
            return
        attempts = job.retry_count + 1
        message = f"Execution failed after {attempts} attempt(s): {reason}"
        self.requests.mark_failed(payload.request_id, message)
        self._count("failed")
        audit.audit(
            audit.JOB_FAILED,
            outcome="FAILURE",
            job_id=str(job.id),
            request_id=str(payload.request_id),
            resource_key=payload.resource_key,
            error=message,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _give_back(self, request_id: uuid.UUID) -> None:
        try:
            self.requests.reset_to_approved(request_id)
        except Exception:
            _log.warning(
                "Could not return request %s to approved; the next attempt resumes it",
                request_id,
                exc_info=True,
            )

    def _heartbeat_interval(self) -> float:
        lease_s = self.queue.lease.total_seconds()
        return max(min(self.lock_ttl_ms / 1000.0, lease_s) / 3.0, 0.05)

    def _count(self, name: str) -> None:
        with self._state_lock:
            self._stats[name] += 1

    def _settled(self, resource_key: str) -> None:
        if self.on_settled is None:
            return
        try:
            self.on_settled(resource_key)
        except Exception:
            _log.exception("Admitting next request for key=%s failed", resource_key)
