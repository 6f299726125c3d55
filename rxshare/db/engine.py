"""Engine and session helpers for the record store.

The engine is created lazily from :func:`get_database_settings` so tests can
point the application at an in-memory database with :func:`configure_database`
before anything touches the default SQLite file.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

import sqlalchemy as sa
import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from rxshare.db.config import get_database_settings
from rxshare.db.models import Base
from rxshare.errors import TransientStoreError

logger = structlog.get_logger(__name__)

_ENGINE: Optional[Engine] = None
_SESSION_FACTORY: Optional[sessionmaker] = None


def _create_engine() -> Engine:
    settings = get_database_settings()
    engine = sa.create_engine(settings.url, **settings.engine_options())
    logger.info("database_engine_created", dialect=engine.dialect.name)
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


def configure_database(target: Engine | sessionmaker) -> sessionmaker:
    """Point the module-level session factory at *target* (used in tests)."""

    global _ENGINE, _SESSION_FACTORY

    if isinstance(target, sessionmaker):
        _SESSION_FACTORY = target
        _ENGINE = target.kw.get("bind")
        return target

    _ENGINE = target
    _SESSION_FACTORY = make_session_factory(target)
    return _SESSION_FACTORY


def get_engine() -> Engine:
    global _ENGINE
    if _ENGINE is None:
        _ENGINE = _create_engine()
    return _ENGINE


def get_session_factory() -> sessionmaker:
    global _SESSION_FACTORY
    if _SESSION_FACTORY is None:
        _SESSION_FACTORY = make_session_factory(get_engine())
    return _SESSION_FACTORY


def init_schema(engine: Optional[Engine] = None) -> None:
    """Create any missing tables."""

    with translate_store_errors("init_schema"):
        Base.metadata.create_all(engine or get_engine())


@contextmanager
def translate_store_errors(operation: str) -> Iterator[None]:
    """Re-raise connectivity failures as :class:`TransientStoreError`."""

    try:
        yield
    except OperationalError as exc:
        logger.warning("store_operational_error", operation=operation, error=str(exc.orig))
        raise TransientStoreError(operation=operation) from exc
    except DBAPIError as exc:
        if not exc.connection_invalidated:
            raise
        logger.warning("store_connection_invalidated", operation=operation)
        raise TransientStoreError(operation=operation) from exc


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """Yield a session that commits on success and rolls back on error."""

    session: Session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "configure_database",
    "get_engine",
    "get_session_factory",
    "init_schema",
    "make_session_factory",
    "session_scope",
    "translate_store_errors",
]
