"""
Execute a parsed MongoDB command against a pymongo ``Database``.

Reads (find, findOne, aggregate, countDocuments) carry ``maxTimeMS``. Write
results are reported as plain documents (``insertedId``, ``matchedCount``, ...).
Output is Extended JSON (relaxed) so ObjectId and dates survive as text.
"""

import logging
import time
from typing import Any

from bson import json_util
from pymongo.database import Database
from pymongo.results import DeleteResult, InsertManyResult, InsertOneResult, UpdateResult

from dbportal.core.config import settings
from dbportal.core.errors import error_message
from dbportal.schemas_portal import ExecutionResult

from .parser import MongoCommand, parse_query

_log = logging.getLogger(__name__)

_JSON_OPTIONS = json_util.JSONOptions(json_mode=json_util.JSONMode.RELAXED)

READ_METHODS = frozenset({"find", "findOne", "aggregate", "countDocuments"})
WRITE_METHODS = frozenset(
    {"insertOne", "insertMany", "updateOne", "updateMany", "deleteOne", "deleteMany"}
)


def _write_result_to_dict(result: Any) -> Any:
    if isinstance(result, InsertOneResult):
        return {"acknowledged": result.acknowledged, "insertedId": result.inserted_id}
    if isinstance(result, InsertManyResult):
        return {
            "acknowledged": result.acknowledged,
            "insertedCount": len(result.inserted_ids),
            "insertedIds": list(result.inserted_ids),
        }
    if isinstance(result, UpdateResult):
        return {
            "acknowledged": result.acknowledged,
            "matchedCount": result.matched_count,
            "modifiedCount": result.modified_count,
            "upsertedId": result.upserted_id,
        }
    if isinstance(result, DeleteResult):
        return {"acknowledged": result.acknowledged, "deletedCount": result.deleted_count}
    return result


class MongoQueryExecutor:
    """
    execute(db, query) -> ExecutionResult. Parse and query errors are returned, not raised.
    """

    def __init__(self, *, timeout_ms: int | None = None) -> None:
        self.timeout_ms = timeout_ms if timeout_ms is not None else settings.TARGET_QUERY_TIMEOUT_MS

    def execute(self, db: Database, query: str) -> ExecutionResult:
        start = time.monotonic()
        try:
            command = parse_query(query)
            result = _write_result_to_dict(self._run(db, command))
        except Exception as e:
            msg = error_message(e)
            _log.info(
                "MongoDB query failed: %s duration_ms=%d",
                msg,
                int((time.monotonic() - start) * 1000),
            )
            return ExecutionResult.failed(msg)

        _log.info(
            "MongoDB query executed method=%s duration_ms=%d",
            command.method,
            int((time.monotonic() - start) * 1000),
        )
        row_count = len(result) if isinstance(result, list) else 1
        return ExecutionResult.ok(
            json_util.dumps(result, indent=2, json_options=_JSON_OPTIONS),
            row_count=row_count,
        )

    def _run(self, db: Database, command: MongoCommand) -> Any:
        coll = db[command.collection]
        method = command.method
        first, second = command.arg(0), command.arg(1)

        if method == "find":
            return list(coll.find(first or {}).max_time_ms(self.timeout_ms))
        if method == "findOne":
            return coll.find_one(first or {}, max_time_ms=self.timeout_ms)
        if method == "aggregate":
            return list(coll.aggregate(first or [], maxTimeMS=self.timeout_ms))
        if method == "countDocuments":
            return coll.count_documents(first or {}, maxTimeMS=self.timeout_ms)

        if method == "insertOne":
            if first is None:
                raise ValueError("insertOne requires a document")
            return coll.insert_one(first)
        if method == "insertMany":
            if first is None:
                raise ValueError("insertMany requires documents array")
            return coll.insert_many(first)
        if method in ("updateOne", "updateMany"):
            if first is None or second is None:
                raise ValueError(f"{method} requires filter and update")
            op = coll.update_one if method == "updateOne" else coll.update_many
            return op(first, second)
        if method in ("deleteOne", "deleteMany"):
            if first is None:
                raise ValueError(f"{method} requires a filter")
            op = coll.delete_one if method == "deleteOne" else coll.delete_many
            return op(first)

        raise ValueError(f"Unsupported MongoDB method: {method}")
