"""Database engine and helpers.

This module configures the SQLModel/SQLAlchemy engine from
`settings.DATABASE_URL` (a local SQLite file by default) and provides the
session dependency used by the FastAPI routes plus the `unit_of_work`
helper that services use to make multi-step writes atomic.
"""

import logging
from contextlib import contextmanager

from sqlmodel import SQLModel, Session, create_engine

from .config import settings

logger = logging.getLogger("academia.database")

_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(settings.DATABASE_URL, echo=False, connect_args=_connect_args)


def create_db_and_tables(bind=None):
    """Create database tables using SQLModel metadata.

    This function is intended for local development and tests;
    production deployments should rely on a proper migration tool
    (alembic) instead.
    """
    # models must be imported so their tables are registered on the metadata
    from . import models  # noqa: F401
    SQLModel.metadata.create_all(bind or engine)


def get_session():
    """Yield a database `Session` for FastAPI dependency injection.

    The generator yields a session and ensures it is closed when the
    request scope finishes.
    """
    with Session(engine) as session:
        yield session


@contextmanager
def unit_of_work(session: Session):
    """Run a block of writes as one transaction on `session`.

    Everything flushed inside the block is committed when it exits
    normally. Any exception rolls the whole block back and is re-raised,
    so callers never observe a partially applied operation.
    """
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("unit of work rolled back")
        raise
