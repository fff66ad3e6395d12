"""
Portal models used by the execution pipeline.

Entities: DatabaseInstance (target coordinates), QueryRequest (approval
lifecycle + execution fields), ExecutionJob (durable job queue row).
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Column, DateTime, Index, Text, text
from sqlalchemy import Enum as SQLEnum
from sqlmodel import Field, SQLModel


def _utc_now() -> datetime:
    """Timezone-aware UTC now (replaces deprecated datetime.utcnow())."""
    return datetime.now(timezone.utc)


def _enum_column(enum_cls: type[Enum], *, default: Any = None, index: bool = False) -> Any:
    kwargs: dict[str, Any] = {} if default is None else {"default": default}
    return Field(
        sa_column=Column(
            SQLEnum(
                enum_cls,
                native_enum=False,
                length=32,
                values_callable=lambda x: [e.value for e in x],
            ),
            nullable=False,
            index=index,
        ),
        **kwargs,
    )


def _ts_column(*, nullable: bool = True, index: bool = False) -> Any:
    return Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=nullable, index=index),
    )


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class DatabaseTypeEnum(str, Enum):
    """Target database kinds."""

    POSTGRESQL = "postgresql"
    MONGODB = "mongodb"


class SubmissionTypeEnum(str, Enum):
    QUERY = "query"
    SCRIPT = "script"


class RequestStatusEnum(str, Enum):
    """Request lifecycle: pending → approved → executing → executed|failed (or rejected/withdrawn)."""

    PENDING = "pending"
    APPROVED = "approved"
    EXECUTING = "executing"
    EXECUTED = "executed"
    FAILED = "failed"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class JobStateEnum(str, Enum):
    CREATED = "created"
    RETRY = "retry"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


OUTSTANDING_JOB_STATES = (JobStateEnum.CREATED, JobStateEnum.RETRY, JobStateEnum.ACTIVE)
CLAIMABLE_JOB_STATES = (JobStateEnum.CREATED, JobStateEnum.RETRY)

# ---------------------------------------------------------------------------
# DatabaseInstance - target connection coordinates
# ---------------------------------------------------------------------------


class DatabaseInstance(SQLModel, table=True):
    __tablename__ = "database_instances"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    name: str = Field(max_length=255, index=True)
    type: DatabaseTypeEnum = _enum_column(DatabaseTypeEnum, index=True)
    host: str = Field(max_length=255)
    port: int = Field(default=5432)
    username: str | None = Field(default=None, max_length=255)
    password: str | None = Field(default=None, max_length=1024)  # Fernet (core.security)
    use_ssl: bool = Field(default=False)
    databases: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(
        default_factory=_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


# ---------------------------------------------------------------------------
# QueryRequest - submission + approval lifecycle
# ---------------------------------------------------------------------------


class QueryRequest(SQLModel, table=True):
    __tablename__ = "query_requests"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: str = Field(max_length=255, index=True)
    user_email: str = Field(max_length=255)
    database_type: DatabaseTypeEnum = _enum_column(DatabaseTypeEnum)
    instance_id: uuid.UUID = Field(index=True)
    instance_name: str = Field(max_length=255)
    database_name: str = Field(max_length=255)
    submission_type: SubmissionTypeEnum = _enum_column(SubmissionTypeEnum)
    query: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    script_file_name: str | None = Field(default=None, max_length=255)
    script_content: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    comments: str = Field(default="", sa_column=Column(Text, nullable=False))
    pod_id: str = Field(default="", max_length=255)
    pod_name: str = Field(default="", max_length=255)
    status: RequestStatusEnum = _enum_column(
        RequestStatusEnum, default=RequestStatusEnum.PENDING, index=True
    )
    approver_email: str | None = Field(default=None, max_length=255)
    rejection_reason: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    execution_result: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    execution_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    is_compressed: bool = Field(default=False)
    executed_at: datetime | None = _ts_column()
    warnings: list[str] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    created_at: datetime = Field(
        default_factory=_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    @property
    def resource_key(self) -> str:
        """Queue key: {db_type}:{instance_id}:{database_name}.

        Database-level, not table-level: scripts may touch several tables and
        arbitrary script content cannot be parsed reliably for table scope.
        """
        db_type = getattr(self.database_type, "value", self.database_type)
        return f"{db_type}:{self.instance_id}:{self.database_name}"


# ---------------------------------------------------------------------------
# ExecutionJob - durable queue
# ---------------------------------------------------------------------------

_OUTSTANDING_SQL = "state IN ('created', 'retry', 'active')"


class ExecutionJob(SQLModel, table=True):
    __tablename__ = "execution_job"
    __table_args__ = (
        # At most one outstanding job per singleton key.
        Index(
            "uq_execution_job_singleton_outstanding",
            "queue",
            "singleton_key",
            unique=True,
            postgresql_where=text(_OUTSTANDING_SQL),
            sqlite_where=text(_OUTSTANDING_SQL),
        ),
        Index("ix_execution_job_claim", "queue", "state", "start_after"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    queue: str = Field(max_length=128)
    singleton_key: str = Field(max_length=512)
    request_id: uuid.UUID = Field(index=True)
    data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    state: JobStateEnum = _enum_column(JobStateEnum, default=JobStateEnum.CREATED)
    retry_limit: int = Field(default=0)
    retry_count: int = Field(default=0)
    backoff_schedule: list[float] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    retry_backoff: bool = Field(default=True)
    worker_id: str | None = Field(default=None, max_length=128)
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    start_after: datetime = Field(
        default_factory=_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    expire_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    lease_until: datetime | None = _ts_column()
    started_at: datetime | None = _ts_column()
    completed_at: datetime | None = _ts_column()
    created_at: datetime = Field(
        default_factory=_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
