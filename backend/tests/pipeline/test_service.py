"""Tests for ExecutionPipeline: admission, coalescing, maintenance, lifecycle."""

import threading
import time
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.engine import Engine
from sqlmodel import Session

from dbportal.core.errors import ConflictError, ValidationError
from dbportal.core.lock import ResourceLock
from dbportal.models_portal import DatabaseTypeEnum, JobStateEnum, RequestStatusEnum
from dbportal.pipeline.queue import JobQueue, RetryPolicy
from dbportal.pipeline.service import ExecutionPipeline
from dbportal.schemas_portal import ExecutionResult
from tests.utils.request import create_random_instance, create_random_request


def _pipeline(engine: Engine, **kwargs) -> ExecutionPipeline:
    dispatcher = MagicMock()
    dispatcher.dispatch.return_value = ExecutionResult.ok("done")
    options = {
        "queue": JobQueue(engine, name="service_test", lease_seconds=60),
        "locks": ResourceLock(),
        "dispatcher": dispatcher,
        "retry_policy": RetryPolicy(retry_limit=1, backoff_schedule=(0,)),
        "concurrency": 2,
        "worker_id": "svc-test",
        "maintenance_interval": 0.1,
    }
    options.update(kwargs)
    pipeline = ExecutionPipeline(engine, **options)
    pipeline.workers.poll_interval = 0.05
    return pipeline


@pytest.fixture
def pipeline(engine: Engine) -> ExecutionPipeline:
    return _pipeline(engine)


def _run_next(pipeline: ExecutionPipeline) -> None:
    job = pipeline.queue.fetch("svc-test")
    assert job is not None
    pipeline.workers.process_job(job)


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------


def test_approve_and_enqueue(db: Session, pipeline: ExecutionPipeline) -> None:
    req = create_random_request(db, create_random_instance(db), status=RequestStatusEnum.PENDING)

    job_id = pipeline.approve_and_enqueue(req.id, "boss@example.com")

    assert job_id is not None
    stored = pipeline.requests.get(req.id)
    assert stored.status == RequestStatusEnum.APPROVED
    assert stored.approver_email == "boss@example.com"
    job = pipeline.queue.get(job_id)
    assert job.singleton_key == req.resource_key
    assert job.data["approvedBy"] == "boss@example.com"
    assert job.data["requestId"] == str(req.id)


def test_dangerous_script_is_rejected_before_approval(
    db: Session, pipeline: ExecutionPipeline
) -> None:
    req = create_random_request(
        db,
        create_random_instance(db),
        status=RequestStatusEnum.PENDING,
        script="import subprocess\nsubprocess.run(['ls'])",
    )

    with pytest.raises(ValidationError, match="subprocess module is not allowed"):
        pipeline.approve_and_enqueue(req.id, "boss@example.com")

    assert pipeline.requests.get(req.id).status == RequestStatusEnum.PENDING
    assert pipeline.queue.has_outstanding(req.resource_key) is False


def test_empty_script_is_rejected(db: Session, pipeline: ExecutionPipeline) -> None:
    req = create_random_request(
        db, create_random_instance(db), status=RequestStatusEnum.PENDING, script="   \n"
    )
    validation = pipeline.validate_submission(req)
    assert validation.valid is False
    assert validation.errors == ["Script content is empty"]


def test_mongo_query_with_where_operator_is_rejected(
    db: Session, pipeline: ExecutionPipeline
) -> None:
    inst = create_random_instance(db, database_type=DatabaseTypeEnum.MONGODB)
    req = create_random_request(
        db,
        inst,
        status=RequestStatusEnum.PENDING,
        query='db.users.find({"$where": "this.a > 1"})',
    )
    with pytest.raises(ValidationError):
        pipeline.approve_and_enqueue(req.id, "boss@example.com")


def test_valid_query_passes_validation(db: Session, pipeline: ExecutionPipeline) -> None:
    req = create_random_request(db, create_random_instance(db), query="SELECT now()")
    assert pipeline.validate_submission(req).valid is True


def test_enqueue_requires_approved_request(db: Session, pipeline: ExecutionPipeline) -> None:
    req = create_random_request(db, create_random_instance(db), status=RequestStatusEnum.PENDING)
    with pytest.raises(ConflictError):
        pipeline.enqueue(req, "boss@example.com")


def test_withdraw_pending_request(db: Session, pipeline: ExecutionPipeline) -> None:
    req = create_random_request(
        db, create_random_instance(db), status=RequestStatusEnum.PENDING, user_id="alice"
    )
    withdrawn = pipeline.withdraw(req.id, "alice")
    assert withdrawn.status == RequestStatusEnum.WITHDRAWN


def test_withdraw_approved_request_conflicts(db: Session, pipeline: ExecutionPipeline) -> None:
    req = create_random_request(db, create_random_instance(db), user_id="alice")
    with pytest.raises(ConflictError, match="status is approved"):
        pipeline.withdraw(req.id, "alice")


# ---------------------------------------------------------------------------
# Coalescing
# ---------------------------------------------------------------------------


def test_second_request_for_same_key_waits_then_runs(
    db: Session, pipeline: ExecutionPipeline
) -> None:
    inst = create_random_instance(db)
    first = create_random_request(db, inst, status=RequestStatusEnum.PENDING)
    second = create_random_request(db, inst, status=RequestStatusEnum.PENDING)
    assert first.resource_key == second.resource_key

    assert pipeline.approve_and_enqueue(first.id, "boss@example.com") is not None
    assert pipeline.approve_and_enqueue(second.id, "boss@example.com") is None
    assert pipeline.requests.get(second.id).status == RequestStatusEnum.APPROVED

    # First job settles; the waiting request is admitted for the same key
    _run_next(pipeline)
    assert pipeline.requests.get(first.id).status == RequestStatusEnum.EXECUTED
    assert pipeline.queue.has_outstanding(second.resource_key) is True

    _run_next(pipeline)
    assert pipeline.requests.get(second.id).status == RequestStatusEnum.EXECUTED
    assert pipeline.dispatcher.dispatch.call_count == 2


def test_admit_waiting_walks_every_key(db: Session, pipeline: ExecutionPipeline) -> None:
    inst = create_random_instance(db, databases=["a", "b"])
    a1 = create_random_request(db, inst, database_name="a")
    create_random_request(db, inst, database_name="a")
    b1 = create_random_request(db, inst, database_name="b")

    admitted = pipeline.admit_waiting()

    assert len(admitted) == 2
    jobs = {pipeline.queue.get(j).request_id for j in admitted}
    assert jobs == {a1.id, b1.id}
    assert pipeline.admit_waiting() == []


def test_admit_waiting_skips_busy_key(db: Session, pipeline: ExecutionPipeline) -> None:
    inst = create_random_instance(db)
    first = create_random_request(db, inst)
    create_random_request(db, inst)
    assert pipeline.enqueue(first, "boss@example.com") is not None

    assert pipeline.admit_waiting(first.resource_key) == []


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


def test_maintenance_reclaims_lost_job_and_reapproves_request(
    engine: Engine, db: Session
) -> None:
    pipeline = _pipeline(engine, queue=JobQueue(engine, name="service_test", lease_seconds=0.01))
    req = create_random_request(db, create_random_instance(db))
    job_id = pipeline.enqueue(req, "boss@example.com")

    # Simulate a worker that claimed the job and died mid-execution
    assert pipeline.queue.fetch("crashed-worker") is not None
    assert pipeline.requests.mark_executing(req.id)
    time.sleep(0.05)

    report = pipeline.run_maintenance()

    assert [item.job_id for item in report.reclaimed] == [job_id]
    assert pipeline.queue.get(job_id).state == JobStateEnum.RETRY
    assert pipeline.requests.get(req.id).status == RequestStatusEnum.APPROVED


def test_maintenance_fails_request_when_lost_job_has_no_retries(
    engine: Engine, db: Session
) -> None:
    pipeline = _pipeline(
        engine,
        queue=JobQueue(engine, name="service_test", lease_seconds=0.01),
        retry_policy=RetryPolicy(retry_limit=0),
    )
    req = create_random_request(db, create_random_instance(db))
    pipeline.enqueue(req, "boss@example.com")
    assert pipeline.queue.fetch("crashed-worker") is not None
    assert pipeline.requests.mark_executing(req.id)
    time.sleep(0.05)

    report = pipeline.run_maintenance()

    assert len(report.failed) == 1
    stored = pipeline.requests.get(req.id)
    assert stored.status == RequestStatusEnum.FAILED
    assert stored.execution_error == (
        "Execution failed after 1 attempt(s): Lease expired on worker crashed-worker"
    )


def test_maintenance_expires_stale_job(engine: Engine, db: Session) -> None:
    pipeline = _pipeline(
        engine, retry_policy=RetryPolicy(expire_in=timedelta(milliseconds=10))
    )
    req = create_random_request(db, create_random_instance(db))
    job_id = pipeline.enqueue(req, "boss@example.com")
    time.sleep(0.05)

    report = pipeline.run_maintenance()

    assert [item.job_id for item in report.expired] == [job_id]
    assert pipeline.queue.get(job_id).state == JobStateEnum.EXPIRED
    stored = pipeline.requests.get(req.id)
    assert stored.status == RequestStatusEnum.FAILED
    assert stored.execution_error == "Job expired before it could run"


def test_maintenance_admits_orphaned_approved_request(
    db: Session, pipeline: ExecutionPipeline
) -> None:
    req = create_random_request(db, create_random_instance(db))

    pipeline.run_maintenance()

    assert pipeline.queue.has_outstanding(req.resource_key) is True


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def test_start_runs_approved_requests_and_shutdown_drains(
    db: Session, pipeline: ExecutionPipeline
) -> None:
    inst = create_random_instance(db)
    reqs = [
        create_random_request(db, inst, status=RequestStatusEnum.PENDING) for _ in range(3)
    ]
    for r in reqs:
        pipeline.approve_and_enqueue(r.id, "boss@example.com")

    pipeline.start()
    try:
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            statuses = {pipeline.requests.get(r.id).status for r in reqs}
            if statuses == {RequestStatusEnum.EXECUTED}:
                break
            time.sleep(0.05)
        assert statuses == {RequestStatusEnum.EXECUTED}
    finally:
        drained = pipeline.shutdown(grace=5)

    assert drained is True
    assert pipeline.locks.held_count() == 0
    pipeline.dispatcher.close.assert_called_once()
    status = pipeline.status()
    assert status["workers"]["running"] is False
    assert status["jobs"].get("completed") == 3


def test_same_key_executions_never_overlap_under_live_pool(
    engine: Engine, db: Session
) -> None:
    windows: list[tuple[float, float]] = []
    windows_lock = threading.Lock()

    def slow_dispatch(_target):
        start = time.monotonic()
        time.sleep(0.1)
        end = time.monotonic()
        with windows_lock:
            windows.append((start, end))
        return ExecutionResult.ok("done")

    pipeline = _pipeline(engine, concurrency=3)
    pipeline.dispatcher.dispatch.side_effect = slow_dispatch
    inst = create_random_instance(db)
    reqs = [
        create_random_request(db, inst, status=RequestStatusEnum.PENDING) for _ in range(3)
    ]
    for r in reqs:
        pipeline.approve_and_enqueue(r.id, "boss@example.com")

    pipeline.start()
    try:
        deadline = time.monotonic() + 15
        while time.monotonic() < deadline:
            if all(pipeline.requests.get(r.id).status == RequestStatusEnum.EXECUTED for r in reqs):
                break
            time.sleep(0.05)
    finally:
        pipeline.shutdown(grace=5)

    assert [pipeline.requests.get(r.id).status for r in reqs] == [RequestStatusEnum.EXECUTED] * 3
    assert len(windows) == 3
    ordered = sorted(windows)
    for (_, prev_end), (next_start, _) in zip(ordered, ordered[1:]):
        assert prev_end <= next_start
