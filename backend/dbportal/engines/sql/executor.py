"""
Execute an approved SQL query against a PostgreSQL target.

- Statements are split on ``;`` (quote, dollar-quote and comment aware) and run
  sequentially on one connection inside one transaction.
- ``statement_timeout`` bounds every statement; a cancelled statement is reported
  with a fixed, user-facing message.
- Commit on success, rollback on any failure.

Output text:
- single row-returning statement: JSON array of row objects
- single statement without rows: ``"N row(s) affected"`` or ``"Query executed successfully"``
- several statements: JSON array with one entry per statement (rows list or rowcount)
"""

import json
import logging
from typing import Any

import psycopg

from dbportal.core.config import settings
from dbportal.core.errors import error_message
from dbportal.core.pool import cursor_to_dicts, execute
from dbportal.schemas_portal import ExecutionResult

_log = logging.getLogger(__name__)

QUERY_SUCCESS = "Query executed successfully"


def _timeout_message(timeout_ms: int) -> str:
    return (
        f"Query exceeded {timeout_ms // 1000} second timeout. "
        "Please optimize your query or add filters to reduce execution time."
    )


def _split_statements(sql: str) -> list[str]:
    """Split SQL into statements on ``;`` while respecting quoted strings.

    Handles single-quoted (``'...'``), double-quoted (``"..."``), and
    dollar-quoted (``$$...$$`` or ``$tag$...$tag$``) literals plus ``--`` and
    ``/* */`` comments so that semicolons inside them are not treated as
    statement terminators.
    """
    stmts: list[str] = []
    current: list[str] = []
    i = 0
    length = len(sql)

    while i < length:
        ch = sql[i]

        if ch in ("'", '"'):
            quote = ch
            current.append(ch)
            i += 1
            while i < length:
                c = sql[i]
                current.append(c)
                if c == quote:
                    if i + 1 < length and sql[i + 1] == quote:
                        current.append(sql[i + 1])
                        i += 2
                        continue
                    i += 1
                    break
                i += 1
            continue

        if ch == "$":
            tag_end = sql.find("$", i + 1)
            tag = sql[i : tag_end + 1] if tag_end != -1 else ""
            if tag and (tag == "$$" or tag[1:-1].replace("_", "a").isalnum()):
                close = sql.find(tag, tag_end + 1)
                if close == -1:
                    current.append(sql[i:])
                    i = length
                else:
                    current.append(sql[i : close + len(tag)])
                    i = close + len(tag)
                continue

        if ch == "-" and i + 1 < length and sql[i + 1] == "-":
            end = sql.find("\n", i)
            if end == -1:
                current.append(sql[i:])
                i = length
            else:
                current.append(sql[i : end + 1])
                i = end + 1
            continue

        if ch == "/" and i + 1 < length and sql[i + 1] == "*":
            end = sql.find("*/", i + 2)
            if end == -1:
                current.append(sql[i:])
                i = length
            else:
                current.append(sql[i : end + 2])
                i = end + 2
            continue

        if ch == ";":
            stmt = "".join(current).strip()
            if stmt:
                stmts.append(stmt)
            current = []
            i += 1
            continue

        current.append(ch)
        i += 1

    tail = "".join(current).strip()
    if tail:
        stmts.append(tail)
    return stmts


def _to_json(value: Any) -> str:
    return json.dumps(value, default=str, indent=2, ensure_ascii=False)


class PostgresQueryExecutor:
    """
    execute(conn, sql) -> ExecutionResult. Query errors are returned, not raised.
    """

    def __init__(self, *, timeout_ms: int | None = None) -> None:
        self.timeout_ms = timeout_ms if timeout_ms is not None else settings.TARGET_QUERY_TIMEOUT_MS

    def execute(self, conn: Any, sql: str) -> ExecutionResult:
        statements = _split_statements(sql)
        if not statements:
            return ExecutionResult.failed("Query is empty")

        try:
            results: list[Any] = []
            for stmt in statements:
                cur = execute(conn, stmt, timeout_ms=self.timeout_ms)
                try:
                    if cur.description:
                        results.append(cursor_to_dicts(cur))
                    else:
                        results.append(cur.rowcount if cur.rowcount is not None else -1)
                finally:
                    cur.close()
            conn.commit()
        except psycopg.errors.QueryCanceled as e:
            self._rollback(conn)
            _log.warning("Postgres statement cancelled: %s", e)
            return ExecutionResult.failed(_timeout_message(self.timeout_ms))
        except Exception as e:
            self._rollback(conn)
            _log.info("Postgres query failed: %s", e)
            return ExecutionResult.failed(error_message(e))

        return self._format(results)

    @staticmethod
    def _format(results: list[Any]) -> ExecutionResult:
        if len(results) > 1:
            total = sum(len(r) if isinstance(r, list) else max(r, 0) for r in results)
            return ExecutionResult.ok(_to_json(results), row_count=total)

        single = results[0]
        if isinstance(single, list):
            return ExecutionResult.ok(_to_json(single), row_count=len(single))
        if single >= 0:
            return ExecutionResult.ok(f"{single} row(s) affected", row_count=single)
        return ExecutionResult.ok(QUERY_SUCCESS)

    @staticmethod
    def _rollback(conn: Any) -> None:
        try:
            conn.rollback()
        except Exception:
            _log.debug("Rollback failed", exc_info=True)
