"""
Relational (PostgreSQL) query execution.

Exports: PostgresQueryExecutor.
"""

from dbportal.engines.sql.executor import PostgresQueryExecutor

__all__ = ["PostgresQueryExecutor"]
