"""
Request state machine over ``query_requests``.

    pending -> approved -> executing -> executed | failed
    pending -> rejected | withdrawn

Every status change is a compare-and-set on the prior status, so two actors
(approver and worker, or two workers) can never both win the same transition.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import exists, update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from dbportal.core.compression import decompress
from dbportal.core.errors import ConflictError, NotFoundError, ValidationError
from dbportal.models_portal import (
    OUTSTANDING_JOB_STATES,
    DatabaseInstance,
    DatabaseTypeEnum,
    ExecutionJob,
    QueryRequest,
    RequestStatusEnum,
)
from dbportal.schemas_portal import ExecutionResult

_log = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset(
    {
        RequestStatusEnum.EXECUTED,
        RequestStatusEnum.FAILED,
        RequestStatusEnum.REJECTED,
        RequestStatusEnum.WITHDRAWN,
    }
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_resource_key(key: str) -> tuple[DatabaseTypeEnum, uuid.UUID, str]:
    """Inverse of QueryRequest.resource_key; the database name may contain ':'."""
    try:
        db_type, instance_id, database_name = key.split(":", 2)
        return DatabaseTypeEnum(db_type), uuid.UUID(instance_id), database_name
    except ValueError as e:
        raise ValidationError(f"Invalid resource key: {key!r}") from e


class RequestStore:
    """Reads and CAS transitions for QueryRequest rows. Returned rows are detached."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, request_id: uuid.UUID) -> QueryRequest:
        with Session(self.engine) as session:
            request = session.get(QueryRequest, request_id)
            if request is None:
                raise NotFoundError("Request")
            session.expunge(request)
            return request

    def get_instance(self, instance_id: uuid.UUID) -> DatabaseInstance:
        with Session(self.engine) as session:
            instance = session.get(DatabaseInstance, instance_id)
            if instance is None:
                raise NotFoundError("Database instance")
            session.expunge(instance)
            return instance

    def get_result(self, request_id: uuid.UUID) -> ExecutionResult | None:
        """Stored outcome with the output decompressed; None until the request has run."""
        request = self.get(request_id)
        if request.status not in (RequestStatusEnum.EXECUTED, RequestStatusEnum.FAILED):
            return None
        output = request.execution_result
        original_size = None
        if output is not None and request.is_compressed:
            output = decompress(output)
            original_size = len(output.encode("utf-8"))
        return ExecutionResult(
            success=request.status == RequestStatusEnum.EXECUTED,
            output=output,
            error=request.execution_error,
            executed_at=request.executed_at or request.updated_at,
            is_compressed=request.is_compressed,
            original_size=original_size,
        )

    def waiting_for_key(self, resource_key: str) -> QueryRequest | None:
        """Oldest approved request for *resource_key* that has no outstanding job."""
        db_type, instance_id, database_name = parse_resource_key(resource_key)
        with Session(self.engine) as session:
            request = session.exec(
                self._waiting_query()
                .where(
                    QueryRequest.database_type == db_type,
                    QueryRequest.instance_id == instance_id,
                    QueryRequest.database_name == database_name,
                )
                .limit(1)
            ).first()
            if request is None:
                return None
            session.expunge(request)
            return request

    def waiting(self, limit: int = 500) -> list[QueryRequest]:
        """Approved requests without an outstanding job, oldest approval first."""
        with Session(self.engine) as session:
            rows = list(session.exec(self._waiting_query().limit(limit)).all())
            for row in rows:
                session.expunge(row)
        return rows

    @staticmethod
    def _waiting_query() -> Any:
        has_job = exists().where(
            ExecutionJob.request_id == QueryRequest.id,
            ExecutionJob.state.in_(OUTSTANDING_JOB_STATES),
        )
        return (
            select(QueryRequest)
            .where(QueryRequest.status == RequestStatusEnum.APPROVED, ~has_job)
            .order_by(QueryRequest.updated_at, QueryRequest.created_at)
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def create(self, request: QueryRequest) -> QueryRequest:
        with Session(self.engine) as session:
            session.add(request)
            session.commit()
            session.refresh(request)
            session.expunge(request)
        return request

    def transition(
        self,
        request_id: uuid.UUID,
        expected: RequestStatusEnum | tuple[RequestStatusEnum, ...],
        new: RequestStatusEnum,
        **values: Any,
    ) -> bool:
        """Set status to *new* only if it currently is *expected*. True if applied."""
        allowed = expected if isinstance(expected, tuple) else (expected,)
        with Session(self.engine) as session:
            result = session.connection().execute(
                update(QueryRequest)
                .where(QueryRequest.id == request_id, QueryRequest.status.in_(allowed))
                .values(status=new, updated_at=_utc_now(), **values)
            )
            session.commit()
        applied = result.rowcount == 1
        if applied:
            _log.info("Request %s -> %s", request_id, new.value)
        else:
            _log.info(
                "Request %s not moved to %s (expected %s)",
                request_id,
                new.value,
                "/".join(s.value for s in allowed),
            )
        return applied

    def approve(self, request_id: uuid.UUID, approver_email: str) -> QueryRequest:
        self._require(
            self.transition(
                request_id,
                RequestStatusEnum.PENDING,
                RequestStatusEnum.APPROVED,
                approver_email=approver_email,
            ),
            request_id,
            "approved",
        )
        return self.get(request_id)

    def reject(
        self, request_id: uuid.UUID, approver_email: str, reason: str | None = None
    ) -> QueryRequest:
        self._require(
            self.transition(
                request_id,
                RequestStatusEnum.PENDING,
                RequestStatusEnum.REJECTED,
                approver_email=approver_email,
                rejection_reason=reason,
            ),
            request_id,
            "rejected",
        )
        return self.get(request_id)

    def withdraw(self, request_id: uuid.UUID, user_id: str) -> QueryRequest:
        """Submitter withdraws a request that has not been decided yet."""
        request = self.get(request_id)
        if request.user_id != user_id:
            raise ValidationError("Only the submitter can withdraw this request")
        self._require(
            self.transition(request_id, RequestStatusEnum.PENDING, RequestStatusEnum.WITHDRAWN),
            request_id,
            "withdrawn",
        )
        return self.get(request_id)

    def mark_executing(self, request_id: uuid.UUID) -> bool:
        return self.transition(request_id, RequestStatusEnum.APPROVED, RequestStatusEnum.EXECUTING)

    def reset_to_approved(self, request_id: uuid.UUID) -> bool:
        """Undo a claim whose worker disappeared, so the request can run again."""
        return self.transition(request_id, RequestStatusEnum.EXECUTING, RequestStatusEnum.APPROVED)

    def record_result(self, request_id: uuid.UUID, result: ExecutionResult) -> bool:
        """Persist an executor outcome: executing -> executed | failed."""
        new = RequestStatusEnum.EXECUTED if result.success else RequestStatusEnum.FAILED
        return self.transition(
            request_id,
            RequestStatusEnum.EXECUTING,
            new,
            execution_result=result.output,
            execution_error=None if result.success else result.error,
            is_compressed=result.is_compressed,
            executed_at=result.executed_at,
        )

    def mark_failed(self, request_id: uuid.UUID, error: str) -> bool:
        """Fail a request that never produced an executor result (retries exhausted, expiry)."""
        return self.transition(
            request_id,
            (RequestStatusEnum.APPROVED, RequestStatusEnum.EXECUTING),
            RequestStatusEnum.FAILED,
            execution_error=error,
            executed_at=_utc_now(),
        )

    def _require(self, applied: bool, request_id: uuid.UUID, verb: str) -> None:
        if applied:
            return
        current = self.get(request_id)
        raise ConflictError(
            f"Request cannot be {verb}: status is {RequestStatusEnum(current.status).value}"
        )
