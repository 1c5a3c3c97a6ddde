"""Database engine and session construction.

WHAT:
    Builds the SQLAlchemy engine and session factory from a URL and exposes
    a transactional scope used by the order store and reconciliation.

WHY:
    - The engine is created once at process start (create_app, workers, tests)
      and passed explicitly; nothing here opens a connection at import time.
    - Services receive a `sessionmaker` so tests can hand in a SQLite factory.

USAGE:
    engine = build_engine(settings.DATABASE_URL)
    SessionLocal = build_session_factory(engine)

    with session_scope(SessionLocal) as db:
        db.add(order)
    # committed here, rolled back if the block raised

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - postmatch/services/order_store.py (per-batch transactions)
"""

import logging
from contextlib import contextmanager
from typing import Dict, Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .models import Base

logger = logging.getLogger(__name__)


def engine_connect_args(database_url: str, statement_timeout: Optional[float] = None) -> Dict:
    """DBAPI connect arguments for the given URL.

    PostgreSQL gets a server-side `statement_timeout` so a single hanging
    statement inside an order batch is cancelled by the server.
    """
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": 30}
    if database_url.startswith("postgresql") and statement_timeout:
        return {"options": f"-c statement_timeout={int(statement_timeout * 1000)}"}
    return {}


def build_engine(database_url: str, statement_timeout: Optional[float] = None) -> Engine:
    """Create an engine with pool settings suited to the backend.

    NOTE: SQLite engines (tests/dev) do not support pool_size/max_overflow.
    Batches run on worker threads, so SQLite needs check_same_thread=False and
    a generous busy timeout while concurrent writers serialize on the file lock.
    """
    connect_args = engine_connect_args(database_url, statement_timeout)
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args=connect_args)

    return create_engine(
        database_url,
        connect_args=connect_args,
        pool_size=10,           # Base pool size
        max_overflow=20,        # Allow up to 30 total connections under load
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def create_schema(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(bind=engine)
    logger.info("[DATABASE] Schema ensured on %s", engine.url.render_as_string(hide_password=True))


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Open a session, commit on success, roll back on error, always close.

    Example:
        with session_scope(SessionLocal) as db:
            db.add(item)
    """
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
