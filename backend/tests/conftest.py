from collections.abc import Generator

import pytest
from sqlalchemy.engine import Engine
from sqlmodel import Session, create_engine

from dbportal.core.db import init_db


@pytest.fixture
def engine(tmp_path) -> Generator[Engine, None, None]:
    """File-backed SQLite portal database; shared safely by worker threads."""
    eng = create_engine(
        f"sqlite:///{tmp_path / 'portal.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine: Engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
