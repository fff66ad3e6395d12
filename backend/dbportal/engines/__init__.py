"""
Engines: PostgreSQL queries, MongoDB queries, sandboxed Python scripts, and
the dispatcher that routes an approved request to one of them.
"""

from dbportal.engines.executor import (
    ExecutionDispatcher,
    ExecutionTarget,
    MongoQuery,
    PostgresQuery,
    ScriptRun,
    build_target,
)

__all__ = [
    "ExecutionDispatcher",
    "ExecutionTarget",
    "MongoQuery",
    "PostgresQuery",
    "ScriptRun",
    "build_target",
]
