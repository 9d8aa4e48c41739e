"""SQLite engine and session handling for the identity database."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

Base = declarative_base()

BUSY_TIMEOUT_MS = 5000


def _on_connect(dbapi_conn, _record) -> None:  # noqa: ANN001
    cursor = dbapi_conn.cursor()
    try:
        # membership rows rely on cascading deletes
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    finally:
        cursor.close()


def create_store_engine(db_path: Path) -> Engine:
    """Engine for the store file, creating its directory and the schema."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        f"sqlite:///{db_path}",
        # login, token checks and group sync run on different threads
        connect_args={"check_same_thread": False},
    )
    event.listen(engine, "connect", _on_connect)
    Base.metadata.create_all(engine)
    return engine


def session_factory(engine: Engine) -> sessionmaker[Session]:
    # records are copied out of the session before it closes
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    """Commit when the block succeeds; roll back and re-raise otherwise."""
    with factory() as session:
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        session.commit()
