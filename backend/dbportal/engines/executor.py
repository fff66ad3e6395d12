"""
Execution dispatch: approved request -> typed execution target -> executor.

build_target() turns a QueryRequest and its DatabaseInstance into one of
PostgresQuery | MongoQuery | ScriptRun. ExecutionDispatcher routes each kind to
its executor through a registry keyed by target type, acquiring a pooled
connection first. Failing to obtain a connection raises TargetUnavailableError
(retried by the queue); query and script errors come back as failed results.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from cryptography.fernet import InvalidToken

from dbportal.core.errors import TargetUnavailableError, ValidationError, error_message, redact
from dbportal.core.pool import PoolManager, TargetCoordinates, resolve_coordinates
from dbportal.engines.document import MongoQueryExecutor
from dbportal.engines.script import ScriptDbConfig, ScriptRunner
from dbportal.engines.sql import PostgresQueryExecutor
from dbportal.models_portal import (
    DatabaseInstance,
    DatabaseTypeEnum,
    QueryRequest,
    SubmissionTypeEnum,
)
from dbportal.schemas_portal import ExecutionResult

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PostgresQuery:
    target: TargetCoordinates
    sql: str


@dataclass(frozen=True)
class MongoQuery:
    target: TargetCoordinates
    query: str


@dataclass(frozen=True)
class ScriptRun:
    target: TargetCoordinates
    source: str


ExecutionTarget = PostgresQuery | MongoQuery | ScriptRun


def build_target(request: QueryRequest, instance: DatabaseInstance) -> ExecutionTarget:
    """Resolve what to run and where. Raises ValidationError for unrunnable requests."""
    if DatabaseTypeEnum(instance.type) != DatabaseTypeEnum(request.database_type):
        raise ValidationError(
            f"Instance {instance.name!r} is {DatabaseTypeEnum(instance.type).value}, "
            f"request targets {DatabaseTypeEnum(request.database_type).value}"
        )
    try:
        target = resolve_coordinates(instance, request.database_name)
    except InvalidToken as e:
        raise ValidationError(
            f"Stored credentials for instance {instance.name!r} cannot be decrypted"
        ) from e
    except ValueError as e:
        raise ValidationError(str(e)) from e

    if request.submission_type == SubmissionTypeEnum.SCRIPT:
        if not (request.script_content or "").strip():
            raise ValidationError("Script content is empty")
        return ScriptRun(target=target, source=request.script_content or "")

    if not (request.query or "").strip():
        raise ValidationError("Query is empty")
    if target.database_type == DatabaseTypeEnum.MONGODB:
        return MongoQuery(target=target, query=request.query or "")
    return PostgresQuery(target=target, sql=request.query or "")


def target_secrets(target: ExecutionTarget) -> tuple[str | None, ...]:
    """Values that must never appear in persisted error text."""
    return (target.target.password,)


class ExecutionDispatcher:
    """
    dispatch(target) -> ExecutionResult
    """

    def __init__(
        self,
        pools: PoolManager | None = None,
        *,
        postgres: PostgresQueryExecutor | None = None,
        mongo: MongoQueryExecutor | None = None,
        scripts: ScriptRunner | None = None,
    ) -> None:
        self.pools = pools or PoolManager()
        self.postgres = postgres or PostgresQueryExecutor()
        self.mongo = mongo or MongoQueryExecutor()
        self.scripts = scripts or ScriptRunner()
        self._handlers: dict[type, Callable[[Any], ExecutionResult]] = {
            PostgresQuery: self._run_postgres,
            MongoQuery: self._run_mongo,
            ScriptRun: self._run_script,
        }

    def dispatch(self, target: ExecutionTarget) -> ExecutionResult:
        handler = self._handlers.get(type(target))
        if handler is None:
            raise TypeError(f"No executor registered for {type(target).__name__}")
        return handler(target)

    def close(self) -> None:
        self.pools.dispose()

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _run_postgres(self, job: PostgresQuery) -> ExecutionResult:
        try:
            conn = self.pools.get_connection(job.target)
        except Exception as e:
            raise self._unavailable(job.target, e) from e
        try:
            return self.postgres.execute(conn, job.sql)
        finally:
            self.pools.release(conn, job.target)

    def _run_mongo(self, job: MongoQuery) -> ExecutionResult:
        try:
            client = self.pools.get_mongo_client(job.target)
        except Exception as e:
            raise self._unavailable(job.target, e) from e
        return self.mongo.execute(client[job.target.database], job.query)

    def _run_script(self, job: ScriptRun) -> ExecutionResult:
        target = job.target
        is_mongo = target.database_type == DatabaseTypeEnum.MONGODB
        db_config = ScriptDbConfig(
            database_type=target.database_type.value,
            database_name=target.database,
            postgres_url=None if is_mongo else target.postgres_url(),
            mongo_url=target.mongo_url() if is_mongo else None,
        )
        return self.scripts.run(job.source, db_config)

    @staticmethod
    def _unavailable(target: TargetCoordinates, exc: Exception) -> TargetUnavailableError:
        reason = redact(error_message(exc), (target.password,))
        _log.warning("Target %s unavailable: %s", target.pool_key, reason)
        return TargetUnavailableError(
            f"Could not connect to {target.database_type.value} target "
            f"{target.host}:{target.port}/{target.database}: {reason}"
        )
