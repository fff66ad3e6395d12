from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from dbportal.core.config import settings

engine = create_engine(str(settings.SQLALCHEMY_DATABASE_URI), pool_pre_ping=True)


def init_db(bind: Engine | None = None) -> None:
    # Tables should be created with migrations in long-lived deployments;
    # create_all is idempotent and enough for the worker's own tables.
    from dbportal import models_portal  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)
