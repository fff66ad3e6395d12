"""
Document-store (MongoDB) query execution.

Exports: MongoQueryExecutor, MongoCommand, check_operators, parse_query.
"""

from .executor import MongoQueryExecutor
from .parser import MongoCommand, check_operators, parse_query

__all__ = ["MongoQueryExecutor", "MongoCommand", "check_operators", "parse_query"]
