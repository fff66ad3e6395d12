"""
Connection helpers for target databases.

Uses psycopg (PostgreSQL) or pymongo (MongoDB) based on the instance type.
Credentials are decrypted here, at connect time, and never leave this module
except inside the connection object or the script sandbox environment.
"""

from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import psycopg
from pymongo import MongoClient

from dbportal.core.config import settings
from dbportal.core.security import decrypt_value
from dbportal.models_portal import DatabaseInstance, DatabaseTypeEnum


@dataclass(frozen=True)
class TargetCoordinates:
    """Resolved connection coordinates for one (instance, database) pair."""

    instance_id: str
    database_type: DatabaseTypeEnum
    host: str
    port: int
    database: str
    username: str | None = None
    password: str | None = None
    use_ssl: bool = False

    @property
    def pool_key(self) -> str:
        return f"{self.instance_id}:{self.database}"

    def postgres_url(self) -> str:
        auth = ""
        if self.username:
            auth = quote(self.username, safe="")
            if self.password:
                auth += ":" + quote(self.password, safe="")
            auth += "@"
        sslmode = "require" if self.use_ssl else settings.TARGET_POSTGRES_SSLMODE
        return (
            f"postgresql://{auth}{self.host}:{self.port}/{quote(self.database, safe='')}"
            f"?sslmode={sslmode}"
        )

    def mongo_url(self) -> str:
        auth = ""
        if self.username:
            auth = quote(self.username, safe="")
            if self.password:
                auth += ":" + quote(self.password, safe="")
            auth += "@"
        url = f"mongodb://{auth}{self.host}:{self.port}/{quote(self.database, safe='')}"
        if self.use_ssl:
            url += "?tls=true"
        return url


def resolve_coordinates(instance: DatabaseInstance, database: str) -> TargetCoordinates:
    """Build coordinates for *database* on *instance*; the stored password is decrypted."""
    if instance.databases and database not in instance.databases:
        raise ValueError(f"Database {database!r} is not registered on instance {instance.name!r}")
    return TargetCoordinates(
        instance_id=str(instance.id),
        database_type=DatabaseTypeEnum(instance.type),
        host=instance.host,
        port=instance.port,
        database=database,
        username=instance.username,
        password=decrypt_value(instance.password) if instance.password else None,
        use_ssl=instance.use_ssl,
    )


def connect_postgres(target: TargetCoordinates) -> Any:
    """Open a psycopg connection (autocommit off; the executor commits)."""
    return psycopg.connect(
        host=target.host,
        port=int(target.port),
        dbname=target.database,
        user=target.username,
        password=target.password or "",
        connect_timeout=settings.TARGET_CONNECT_TIMEOUT,
        sslmode="require" if target.use_ssl else settings.TARGET_POSTGRES_SSLMODE,
        application_name="db-query-portal-worker",
    )


def connect_mongo(target: TargetCoordinates) -> MongoClient:
    """Create a MongoClient and verify the server is reachable (ping)."""
    client: MongoClient = MongoClient(
        target.mongo_url(),
        maxPoolSize=settings.TARGET_POOL_SIZE,
        serverSelectionTimeoutMS=settings.TARGET_CONNECT_TIMEOUT * 1000,
        connectTimeoutMS=settings.TARGET_CONNECT_TIMEOUT * 1000,
        socketTimeoutMS=settings.TARGET_QUERY_TIMEOUT_MS,
    )
    client.admin.command("ping")
    return client


def execute(
    conn: Any,
    sql: str,
    params: dict | list | tuple | None = None,
    *,
    timeout_ms: int | None = None,
) -> Any:
    """
    Execute SQL and return the cursor. Caller uses cursor_to_dicts(cursor) or cursor.rowcount.

    timeout_ms: applied as Postgres statement_timeout for the duration of the statement.
    """
    if timeout_ms is not None and timeout_ms > 0:
        cur_set = conn.cursor()
        try:
            cur_set.execute("SELECT set_config('statement_timeout', %s, true)", (str(timeout_ms),))
        finally:
            try:
                cur_set.close()
            except Exception:
                pass

    cur = conn.cursor()
    if params is not None:
        cur.execute(sql, params)
    else:
        cur.execute(sql)
    return cur


def cursor_to_dicts(cursor: Any) -> list[dict[str, Any]]:
    """Convert cursor result to list of dicts."""
    desc = cursor.description
    if not desc:
        return []
    names = [d[0] for d in desc]
    return [dict(zip(names, row, strict=True)) for row in cursor.fetchall()]
