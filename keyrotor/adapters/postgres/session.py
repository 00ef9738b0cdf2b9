"""Database session management and nested transaction scopes."""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from keyrotor.settings import Settings, get_settings

logger = logging.getLogger(__name__)

_TX_DEPTH = "keyrotor_tx_depth"


def build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url:
            # One shared connection, or every thread would see its own empty database
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)

        @event.listens_for(engine, "connect")
        def _enable_sqlite_fks(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine
    return create_engine(database_url, pool_pre_ping=True)


def build_session_factory(settings: Optional[Settings] = None) -> sessionmaker:
    settings = settings or get_settings()
    engine = build_engine(settings.database_url)
    logger.info(f"Initialized database engine ({engine.dialect.name})")
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """Run a unit of work; only the outermost scope commits or rolls back.

    Stores sharing one Session share the scope, so the pool engine can wrap
    the rotation engine's commit in a single atomic transaction.
    """
    depth = db.info.get(_TX_DEPTH, 0)
    db.info[_TX_DEPTH] = depth + 1
    try:
        yield db
        if depth == 0:
            db.commit()
    except BaseException:
        if depth == 0:
            db.rollback()
        raise
    finally:
        db.info[_TX_DEPTH] = depth


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    db = factory()
    try:
        yield db
    finally:
        db.close()
