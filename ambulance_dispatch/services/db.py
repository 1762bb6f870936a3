from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ambulance_dispatch.core.config import get_settings
from ambulance_dispatch.models.base import Base
from ambulance_dispatch.models import booking, driver, queue_entry  # noqa: F401

# Poll jobs and webhook requests write from different threads; wait instead of failing on a locked file.
SQLITE_BUSY_TIMEOUT_MS = 5000


def build_engine(database_url: str) -> Engine:
    url = make_url(database_url)
    if not url.drivername.startswith("sqlite"):
        return create_engine(database_url, echo=False, pool_pre_ping=True)

    in_memory = not url.database or url.database == ":memory:"
    if in_memory:
        # one shared connection, otherwise every session sees its own empty database
        engine = create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        db_path = Path(url.database).expanduser()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            f"sqlite:///{db_path}",
            echo=False,
            connect_args={"check_same_thread": False},
        )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record) -> None:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        cursor.close()

    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


_engine = build_engine(get_settings().database_url)
SessionLocal = make_session_factory(_engine)


def init_db(engine: Engine | None = None) -> None:
    Base.metadata.create_all(bind=engine or _engine)


@contextmanager
def db_session(factory: sessionmaker | None = None) -> Generator[Session, None, None]:
    session: Session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
