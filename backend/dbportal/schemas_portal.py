"""
Pydantic schemas for the execution pipeline: executor results and the job payload.
"""

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionResult(BaseModel):
    """What an executor returns. Executors never raise for query/script errors."""

    success: bool
    output: str | None = None
    error: str | None = None
    row_count: int | None = None
    executed_at: datetime = Field(default_factory=_utc_now)
    # Set by the worker after compression
    is_compressed: bool = False
    original_size: int | None = None

    @classmethod
    def ok(cls, output: str, *, row_count: int | None = None) -> "ExecutionResult":
        return cls(success=True, output=output, row_count=row_count)

    @classmethod
    def failed(cls, error: str, *, output: str | None = None) -> "ExecutionResult":
        return cls(success=False, error=error, output=output)


class JobPayload(BaseModel):
    """Wire schema of a queued job: ``{jobId, resourceKey, requestId, approvedBy}``."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    job_id: str = Field(alias="jobId")
    resource_key: str = Field(alias="resourceKey")
    request_id: uuid.UUID = Field(alias="requestId")
    approved_by: str = Field(alias="approvedBy")

    def to_wire(self) -> dict[str, str]:
        return self.model_dump(mode="json", by_alias=True)


class ScriptValidation(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
