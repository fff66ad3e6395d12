"""
Durable job queue on the portal database (``execution_job`` table).

- Singleton key: a partial unique index on (queue, singleton_key) over the
  outstanding states (created, retry, active) rejects a second enqueue for the
  same resource key while one is queued or in flight.
- Claim: ``SELECT ... FOR UPDATE SKIP LOCKED`` picks the oldest due job, then a
  compare-and-set UPDATE on its state moves it to ``active`` with a lease.
- Failure: retry with backoff from the job's own RetryPolicy snapshot until
  the retry limit is spent, then ``failed``.
- Expiry: ``expire_at`` is absolute; past it a queued job is abandoned.
- Sweep: expires stale jobs and reclaims ``active`` jobs whose lease ran out
  (worker crashed or hung).
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from dbportal.core import audit
from dbportal.core.config import settings
from dbportal.core.errors import NotFoundError
from dbportal.models_portal import (
    CLAIMABLE_JOB_STATES,
    OUTSTANDING_JOB_STATES,
    ExecutionJob,
    JobStateEnum,
)
from dbportal.schemas_portal import JobPayload

_log = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# RetryPolicy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often and how late a job may be retried.

    backoff_schedule holds the delays (ms) before retry 1, 2, ... When retries
    outnumber the schedule, the last delay is reused, doubled per extra retry
    if backoff_growth is set.
    """

    retry_limit: int = 3
    backoff_schedule: tuple[int, ...] = (1000, 3000, 10000)
    backoff_growth: bool = True
    expire_in: timedelta = timedelta(hours=1)

    def __post_init__(self) -> None:
        if self.retry_limit < 0:
            raise ValueError("retry_limit must be >= 0")
        if not self.backoff_schedule or any(d < 0 for d in self.backoff_schedule):
            raise ValueError("backoff_schedule must be a non-empty list of non-negative delays")
        if self.expire_in <= timedelta(0):
            raise ValueError("expire_in must be positive")

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            retry_limit=settings.MAX_JOB_RETRIES,
            backoff_schedule=tuple(settings.RETRY_BACKOFF_MS),
            backoff_growth=settings.RETRY_BACKOFF_GROWTH,
            expire_in=timedelta(seconds=settings.JOB_EXPIRE_SECONDS),
        )

    def delay_for(self, retry_number: int) -> timedelta:
        """Delay before retry number *retry_number* (1-based)."""
        if retry_number < 1:
            raise ValueError("retry_number is 1-based")
        schedule = self.backoff_schedule
        if retry_number <= len(schedule):
            delay_ms = schedule[retry_number - 1]
        elif self.backoff_growth:
            delay_ms = schedule[-1] * 2 ** (retry_number - len(schedule))
        else:
            delay_ms = schedule[-1]
        return timedelta(milliseconds=delay_ms)


def _policy_of(job: ExecutionJob) -> RetryPolicy:
    return RetryPolicy(
        retry_limit=job.retry_limit,
        backoff_schedule=tuple(int(d) for d in job.backoff_schedule) or (0,),
        backoff_growth=job.retry_backoff,
    )


# ---------------------------------------------------------------------------
# Sweep report
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SweptJob:
    job_id: uuid.UUID
    request_id: uuid.UUID
    singleton_key: str
    attempts: int
    reason: str


@dataclass
class SweepReport:
    """What a sweep changed. Requests behind these jobs need follow-up."""

    expired: list[SweptJob] = field(default_factory=list)
    reclaimed: list[SweptJob] = field(default_factory=list)  # back to retry
    failed: list[SweptJob] = field(default_factory=list)  # lease lost, no retries left

    @property
    def total(self) -> int:
        return len(self.expired) + len(self.reclaimed) + len(self.failed)


def _swept(job: ExecutionJob, reason: str) -> SweptJob:
    return SweptJob(
        job_id=job.id,
        request_id=job.request_id,
        singleton_key=job.singleton_key,
        attempts=job.retry_count + 1,
        reason=reason,
    )


# ---------------------------------------------------------------------------
# JobQueue
# ---------------------------------------------------------------------------


class JobQueue:
    """
    enqueue / fetch / complete / fail / touch / cancel_for_request / sweep
    over one named queue. Every call runs in its own short transaction.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        name: str | None = None,
        lease_seconds: float | None = None,
    ) -> None:
        self.engine = engine
        self.name = name or settings.QUEUE_NAME
        self.lease = timedelta(
            seconds=lease_seconds if lease_seconds is not None else settings.JOB_LEASE_SECONDS
        )

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(
        self,
        resource_key: str,
        payload: JobPayload,
        policy: RetryPolicy | None = None,
    ) -> uuid.UUID | None:
        """Persist a job. Returns its id, or None when *resource_key* already has
        an outstanding job (coalesced, nothing created)."""
        policy = policy or RetryPolicy.from_settings()
        now = _utc_now()
        job_id = uuid.UUID(payload.job_id)
        job = ExecutionJob(
            id=job_id,
            queue=self.name,
            singleton_key=resource_key,
            request_id=payload.request_id,
            data=payload.to_wire(),
            state=JobStateEnum.CREATED,
            retry_limit=policy.retry_limit,
            retry_count=0,
            backoff_schedule=list(policy.backoff_schedule),
            retry_backoff=policy.backoff_growth,
            start_after=now,
            expire_at=now + policy.expire_in,
            created_at=now,
        )
        with Session(self.engine) as session:
            session.add(job)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                _log.info("Job coalesced: key=%s already has an outstanding job", resource_key)
                audit.audit(
                    audit.JOB_COALESCED,
                    outcome="SKIPPED",
                    resource_key=resource_key,
                    request_id=str(payload.request_id),
                )
                return None

        audit.audit(
            audit.JOB_ENQUEUED,
            job_id=payload.job_id,
            resource_key=resource_key,
            request_id=str(payload.request_id),
            approved_by=payload.approved_by,
            retry_limit=policy.retry_limit,
        )
        return job_id

    def cancel_for_request(self, request_id: uuid.UUID) -> int:
        """Cancel queued (unclaimed) jobs of a request. In-flight jobs are untouched."""
        with Session(self.engine) as session:
            result = session.connection().execute(
                update(ExecutionJob)
                .where(
                    ExecutionJob.request_id == request_id,
                    ExecutionJob.state.in_(CLAIMABLE_JOB_STATES),
                )
                .values(state=JobStateEnum.CANCELLED, completed_at=_utc_now())
            )
            session.commit()
        if result.rowcount:
            _log.info("Cancelled %d queued job(s) for request %s", result.rowcount, request_id)
        return result.rowcount

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def fetch(self, worker_id: str) -> ExecutionJob | None:
        """Atomically claim the oldest due job, or None if nothing is claimable."""
        now = _utc_now()
        with Session(self.engine) as session:
            candidate = session.exec(
                select(ExecutionJob)
                .where(
                    ExecutionJob.queue == self.name,
                    ExecutionJob.state.in_(CLAIMABLE_JOB_STATES),
                    ExecutionJob.start_after <= now,
                    ExecutionJob.expire_at > now,
                )
                .order_by(ExecutionJob.created_at)
                .limit(1)
                .with_for_update(skip_locked=True)
            ).first()
            if candidate is None:
                return None

            job_id, prior_state = candidate.id, candidate.state
            result = session.connection().execute(
                update(ExecutionJob)
                .where(ExecutionJob.id == job_id, ExecutionJob.state == prior_state)
                .values(
                    state=JobStateEnum.ACTIVE,
                    worker_id=worker_id,
                    started_at=now,
                    lease_until=now + self.lease,
                )
            )
            if result.rowcount != 1:
                # Another worker won the race
                session.rollback()
                return None
            session.commit()
            return self._detached(session, job_id)

    def complete(self, job_id: uuid.UUID) -> bool:
        """Mark an active job completed. False if it is no longer active (e.g. reclaimed)."""
        with Session(self.engine) as session:
            result = session.connection().execute(
                update(ExecutionJob)
                .where(ExecutionJob.id == job_id, ExecutionJob.state == JobStateEnum.ACTIVE)
                .values(
                    state=JobStateEnum.COMPLETED,
                    completed_at=_utc_now(),
                    lease_until=None,
                )
            )
            session.commit()
        return result.rowcount == 1

    def fail(self, job_id: uuid.UUID, error: str) -> JobStateEnum:
        """
        Record a transient failure. Returns the job's new state: ``retry`` when
        attempts remain (start_after pushed out by the backoff), else ``failed``.
        """
        now = _utc_now()
        with Session(self.engine) as session:
            job = session.get(ExecutionJob, job_id, with_for_update=True)
            if job is None:
                raise NotFoundError("Job")
            if job.state != JobStateEnum.ACTIVE:
                return job.state

            job.last_error = error
            job.worker_id = None
            job.lease_until = None
            if job.retry_count < job.retry_limit:
                job.retry_count += 1
                delay = _policy_of(job).delay_for(job.retry_count)
                job.state = JobStateEnum.RETRY
                job.start_after = now + delay
                _log.info(
                    "Job %s retry %d/%d in %.1fs: %s",
                    job_id,
                    job.retry_count,
                    job.retry_limit,
                    delay.total_seconds(),
                    error,
                )
                audit.audit(
                    audit.JOB_RETRY,
                    outcome="RETRY",
                    job_id=str(job_id),
                    retry=job.retry_count,
                    delay_ms=int(delay.total_seconds() * 1000),
                    error=error,
                )
            else:
                job.state = JobStateEnum.FAILED
                job.completed_at = now
                _log.warning("Job %s failed, retries exhausted: %s", job_id, error)
            state = job.state
            session.add(job)
            session.commit()
        return state

    def touch(self, job_id: uuid.UUID) -> bool:
        """Extend the lease of an active job. False if the job is no longer active."""
        with Session(self.engine) as session:
            result = session.connection().execute(
                update(ExecutionJob)
                .where(ExecutionJob.id == job_id, ExecutionJob.state == JobStateEnum.ACTIVE)
                .values(lease_until=_utc_now() + self.lease)
            )
            session.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get(self, job_id: uuid.UUID) -> ExecutionJob | None:
        with Session(self.engine) as session:
            if session.get(ExecutionJob, job_id) is None:
                return None
            return self._detached(session, job_id)

    def has_outstanding(self, resource_key: str) -> bool:
        with Session(self.engine) as session:
            found = session.exec(
                select(ExecutionJob.id).where(
                    ExecutionJob.queue == self.name,
                    ExecutionJob.singleton_key == resource_key,
                    ExecutionJob.state.in_(OUTSTANDING_JOB_STATES),
                )
            ).first()
        return found is not None

    def counts(self) -> dict[str, int]:
        """Job count per state for this queue (states with no jobs are 0)."""
        out = {s.value: 0 for s in JobStateEnum}
        with Session(self.engine) as session:
            rows = session.exec(
                select(ExecutionJob.state, func.count())
                .where(ExecutionJob.queue == self.name)
                .group_by(ExecutionJob.state)
            ).all()
        for state, n in rows:
            out[JobStateEnum(state).value] = n
        return out

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep(self, now: datetime | None = None) -> SweepReport:
        """
        Expire queued jobs past expire_at and reclaim active jobs whose lease
        ran out: back to retry while attempts remain, else failed (or expired
        when past expire_at).
        """
        now = now or _utc_now()
        report = SweepReport()
        with Session(self.engine) as session:
            stale = session.exec(
                select(ExecutionJob)
                .where(
                    ExecutionJob.queue == self.name,
                    ExecutionJob.state.in_(CLAIMABLE_JOB_STATES),
                    ExecutionJob.expire_at <= now,
                )
                .with_for_update(skip_locked=True)
            ).all()
            for job in stale:
                job.state = JobStateEnum.EXPIRED
                job.completed_at = now
                session.add(job)
                report.expired.append(_swept(job, "Job expired before it could run"))

            lost = session.exec(
                select(ExecutionJob)
                .where(
                    ExecutionJob.queue == self.name,
                    ExecutionJob.state == JobStateEnum.ACTIVE,
                    ExecutionJob.lease_until < now,
                )
                .with_for_update(skip_locked=True)
            ).all()
            for job in lost:
                self._reclaim(job, now, report)
                session.add(job)
            session.commit()

        for item in report.expired:
            audit.audit(
                audit.JOB_EXPIRED,
                outcome="EXPIRED",
                job_id=str(item.job_id),
                request_id=str(item.request_id),
                resource_key=item.singleton_key,
            )
        if report.total:
            _log.info(
                "Queue sweep: expired=%d reclaimed=%d failed=%d",
                len(report.expired),
                len(report.reclaimed),
                len(report.failed),
            )
        return report

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _reclaim(job: ExecutionJob, now: datetime, report: SweepReport) -> None:
        worker = job.worker_id
        job.worker_id = None
        job.lease_until = None
        job.last_error = f"Lease expired on worker {worker}"
        if _as_utc(job.expire_at) <= now:
            job.state = JobStateEnum.EXPIRED
            job.completed_at = now
            report.expired.append(_swept(job, "Job expired while running"))
        elif job.retry_count < job.retry_limit:
            report.reclaimed.append(_swept(job, job.last_error))
            job.retry_count += 1
            job.state = JobStateEnum.RETRY
            job.start_after = now + _policy_of(job).delay_for(job.retry_count)
        else:
            job.state = JobStateEnum.FAILED
            job.completed_at = now
            report.failed.append(_swept(job, job.last_error))
        _log.warning("Reclaimed job %s (lease lost) -> %s", job.id, job.state.value)

    @staticmethod
    def _detached(session: Session, job_id: uuid.UUID) -> Any:
        job = session.get(ExecutionJob, job_id, populate_existing=True)
        session.expunge(job)
        return job
