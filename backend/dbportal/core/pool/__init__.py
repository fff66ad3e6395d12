"""
Target database connections and pools.

psycopg for PostgreSQL targets, pymongo for MongoDB targets.
"""

from .connect import (
    TargetCoordinates,
    connect_mongo,
    connect_postgres,
    cursor_to_dicts,
    execute,
    resolve_coordinates,
)
from .manager import PoolManager

__all__ = [
    "TargetCoordinates",
    "connect_mongo",
    "connect_postgres",
    "cursor_to_dicts",
    "execute",
    "resolve_coordinates",
    "PoolManager",
]
