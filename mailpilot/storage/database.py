"""
Database engine and session management.

SQLite by default (a file under data/); any SQLAlchemy URL works, e.g.
postgresql+psycopg://... when several deployments share one store.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from mailpilot.storage.models import Base

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine for `database_url`, creating the SQLite directory if needed.
    """
    url = make_url(database_url)
    connect_args = {}
    if url.get_backend_name() == "sqlite":
        # Sessions are opened from worker threads (asyncio.to_thread).
        connect_args["check_same_thread"] = False
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    return create_engine(
        database_url,
        connect_args=connect_args,
        pool_pre_ping=True,
        echo=echo,
    )


def init_db(engine: Engine) -> None:
    """
    Create tables if they don't exist.

    Raises:
        RuntimeError: if the schema cannot be created.
    """
    try:
        Base.metadata.create_all(bind=engine)
        logger.info(
            "database.initialized",
            extra={"action": "database.initialized", "backend": engine.url.get_backend_name()},
        )
    except Exception as e:
        logger.error(
            "database.init_failed",
            extra={"action": "database.init_failed", "error": str(e)},
        )
        raise RuntimeError(f"Failed to initialize database: {e}") from e


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Commit on success, roll back on any exception, always close."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
