"""SQLite engine and session for the persistent index."""

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from mirrorbox.config import get_index_db_path

Base = declarative_base()


def _enable_wal(dbapi_conn, _record) -> None:
    """WAL lets readers proceed while a writer holds the index."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def create_index_engine(db_path: Optional[Union[str, Path]] = None) -> Engine:
    """Create the engine and tables. Defaults to the configured index path."""
    path = Path(db_path) if db_path else get_index_db_path()
    engine = create_engine(
        f"sqlite:///{path}",
        echo=False,
        connect_args={"check_same_thread": False},
    )
    event.listen(engine, "connect", _enable_wal)
    # Register tables with Base before create_all
    from mirrorbox.db import models  # noqa: F401

    Base.metadata.create_all(engine)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(engine, class_=Session, expire_on_commit=False, autoflush=False)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Yield a session; commit on success, roll back on error."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
