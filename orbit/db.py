from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from orbit.config import database_url

DATABASE_URL = database_url()
is_sqlite = DATABASE_URL.startswith("sqlite")
connect_args = {"check_same_thread": False} if is_sqlite else {}
poolclass = StaticPool if DATABASE_URL == "sqlite://" or ":memory:" in DATABASE_URL else None

engine = create_engine(
    DATABASE_URL,
    echo=False,
    connect_args=connect_args,
    poolclass=poolclass,
)


def _ensure_sqlite_dir(engine: Engine) -> None:
    database = engine.url.database
    if engine.url.get_backend_name() == "sqlite" and database and database != ":memory:":
        Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)


def init_db(engine: Engine) -> None:
    # Ensure models are imported before creating tables.
    import orbit.models  # noqa: F401

    _ensure_sqlite_dir(engine)
    SQLModel.metadata.create_all(engine)


@contextmanager
def session_scope(bind: Engine | None = None) -> Iterator[Session]:
    with Session(bind or engine) as session:
        yield session
