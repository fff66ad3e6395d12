import secrets
import warnings
from typing import Annotated, Any, Literal

from pydantic import (
    BeforeValidator,
    HttpUrl,
    PostgresDsn,
    computed_field,
    model_validator,
)
from pydantic_core import MultiHostUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Self


def parse_ms_list(v: Any) -> list[int]:
    """Accept "1000,3000,10000" (env) or a list of ints."""
    if isinstance(v, str):
        return [int(i.strip()) for i in v.split(",") if i.strip()]
    if isinstance(v, (list, tuple)):
        return [int(i) for i in v]
    raise ValueError(v)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Use top level .env file (one level above ./backend/)
        env_file="../.env",
        env_ignore_empty=True,
        extra="ignore",
    )
    PROJECT_NAME: str = "db-query-portal-worker"
    SECRET_KEY: str = secrets.token_urlsafe(32)
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"

    SENTRY_DSN: HttpUrl | None = None
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # Portal database: holds query_requests, database_instances and the job table
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "db_query_portal"
    DATABASE_URL: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return str(
            MultiHostUrl.build(
                scheme="postgresql+psycopg",
                username=self.POSTGRES_USER,
                password=self.POSTGRES_PASSWORD,
                host=self.POSTGRES_SERVER,
                port=self.POSTGRES_PORT,
                path=self.POSTGRES_DB,
            )
        )

    # Redis: resource lock backend. Empty REDIS_URL = in-process locks only.
    REDIS_URL: str = ""
    REDIS_SOCKET_TIMEOUT: float = 5.0

    # Queue & worker
    QUEUE_NAME: str = "query_execution"
    WORKER_CONCURRENCY: int = 4
    WORKER_POLL_INTERVAL_SECONDS: float = 1.0
    WORKER_SHUTDOWN_GRACE_SECONDS: float = 30.0
    LOCK_TTL_MS: int = 300_000
    MAX_JOB_RETRIES: int = 3
    RETRY_BACKOFF_MS: Annotated[list[int] | str, BeforeValidator(parse_ms_list)] = [
        1000,
        3000,
        10000,
    ]
    RETRY_BACKOFF_GROWTH: bool = True
    JOB_EXPIRE_SECONDS: int = 3600
    JOB_LEASE_SECONDS: int = 120
    MAINTENANCE_INTERVAL_SECONDS: float = 15.0

    # Script sandbox
    SCRIPT_TIMEOUT_MS: int = 30_000
    SCRIPT_MAX_MEMORY_MB: int = 512
    SCRIPT_MODULE_PATH: str = ""

    # Results
    RESULT_COMPRESSION_THRESHOLD_BYTES: int = 100 * 1024

    # Target databases
    TARGET_QUERY_TIMEOUT_MS: int = 60_000
    TARGET_CONNECT_TIMEOUT: int = 10
    TARGET_POOL_SIZE: int = 5
    TARGET_POOL_MAX_AGE_SEC: int = 600
    TARGET_POSTGRES_SSLMODE: str = "prefer"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def lock_enabled_redis(self) -> bool:
        return bool(self.REDIS_URL.strip())

    def _check_default_secret(self, var_name: str, value: str | None) -> None:
        if value == "changethis":
            message = (
                f'The value of {var_name} is "changethis", '
                "for security, please change it, at least for deployments."
            )
            if self.ENVIRONMENT == "local":
                warnings.warn(message, stacklevel=1)
            else:
                raise ValueError(message)

    @model_validator(mode="after")
    def _enforce_non_default_secrets(self) -> Self:
        self._check_default_secret("SECRET_KEY", self.SECRET_KEY)
        self._check_default_secret("POSTGRES_PASSWORD", self.POSTGRES_PASSWORD)
        return self

    @model_validator(mode="after")
    def _check_worker_limits(self) -> Self:
        if self.WORKER_CONCURRENCY < 1:
            raise ValueError("WORKER_CONCURRENCY must be >= 1")
        if not self.RETRY_BACKOFF_MS:
            raise ValueError("RETRY_BACKOFF_MS must contain at least one delay")
        return self


settings = Settings()  # type: ignore
