"""
Parse shell-style MongoDB queries into a collection, a method and JSON arguments.

Accepted forms::

    db.orders.find({"status": "open"})
    db["order-items"].aggregate([{"$match": {}}])
    db.orders.updateOne({"_id": 1}, {"$set": {"x": 2}})

Arguments must be JSON. Server-side JavaScript (``$where``, ``$function``,
``$accumulator``, ``mapReduce``, ``$expr``, inline ``function(``) is rejected
before parsing.
"""

import json
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from dbportal.core.errors import ValidationError

QUERY_RE = re.compile(
    r"^db(?:\[[\"'](?P<bracket>[^\]\"']+)[\"']\]|\.(?P<dot>[^.(]+))\.(?P<method>\w+)\((?P<args>.*)\)$",
    re.DOTALL,
)

DANGEROUS_OPERATORS = ("$where", "$function", "$accumulator", "mapReduce", "$expr")
_DANGEROUS = {op.lower(): op for op in DANGEROUS_OPERATORS}
_JS_FUNCTION_RE = re.compile(r"\bfunction\s*\(")
# Fallback for arguments that are not JSON: a name followed by ':' in key position
_KEY_RE = re.compile(r"""(?:^|[{,\s(])["']?([$\w]+)["']?\s*:""")


@dataclass(frozen=True)
class MongoCommand:
    collection: str
    method: str
    args: list[Any] = field(default_factory=list)

    def arg(self, index: int) -> Any:
        """Positional argument or None when absent."""
        return self.args[index] if index < len(self.args) else None


def _keys(value: Any) -> Iterator[str]:
    if isinstance(value, dict):
        for k, v in value.items():
            yield k
            yield from _keys(v)
    elif isinstance(value, list):
        for item in value:
            yield from _keys(item)


def check_operators(query: str) -> None:
    """
    Raise ValidationError if *query* uses server-side JavaScript.

    Operators are matched as document keys (or as the method name for
    mapReduce), so the same words inside string values are allowed.
    """
    try:
        command = _split(query)
    except ValidationError:
        command = None
    if command is not None:
        names = [command.method, *_keys(command.args)]
    else:
        names = [m.group(1) for m in _KEY_RE.finditer(query)]
        names += re.findall(r"\.\s*(\w+)\s*\(", query)
    for name in names:
        op = _DANGEROUS.get(name.lower())
        if op is not None:
            raise ValidationError(f'Dangerous operator "{op}" is not allowed in queries')
    if _JS_FUNCTION_RE.search(query):
        raise ValidationError("JavaScript functions are not allowed in queries")


def _parse_args(raw: str) -> list[Any]:
    if not raw.strip():
        return []
    try:
        parsed = json.loads(f"[{raw}]")
    except json.JSONDecodeError:
        try:
            return [json.loads(raw)]
        except json.JSONDecodeError:
            raise ValidationError("Invalid query arguments. Must be valid JSON.") from None
    return parsed


def _split(query: str) -> MongoCommand | None:
    match = QUERY_RE.match(query.strip())
    if match is None:
        return None
    collection = (match.group("bracket") or match.group("dot")).strip()
    return MongoCommand(
        collection=collection,
        method=match.group("method"),
        args=_parse_args(match.group("args")),
    )


def parse_query(query: str) -> MongoCommand:
    """Validate and split *query*; raises ValidationError with a user-facing message."""
    check_operators(query)
    command = _split(query)
    if command is None:
        raise ValidationError(
            "Invalid MongoDB query format. Expected: db.collection.method({...}) "
            'or db["collection"].method({...})'
        )
    return command
