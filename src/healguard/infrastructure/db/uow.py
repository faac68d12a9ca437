# src/healguard/infrastructure/db/uow.py
"""Unit of Work used by scheduled jobs and background tasks (outside a request)."""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy.orm import Session, sessionmaker

from .base import SessionLocal
from .models import Base

log = logging.getLogger(__name__)


def create_tables(bind=None):
    """Creates all tables defined in the models package (dev / tests; production uses Alembic)."""
    from .base import engine
    log.info("Creating database tables if they do not exist...")
    try:
        Base.metadata.create_all(bind or engine)
        log.info("Database tables checked/created successfully.")
    except Exception as e:
        log.critical(f"Failed to create database tables: {e}", exc_info=True)
        raise


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.
    This handles session creation, commit, rollback, and closing.
    """
    session = (factory or SessionLocal)()
    log.debug(f"Session {id(session)} opened.")
    try:
        yield session
        session.commit()
        log.debug(f"Session {id(session)} committed.")
    except Exception as e:
        log.error(f"Session {id(session)} rollback due to exception: {e}", exc_info=True)
        session.rollback()
        raise
    finally:
        session.close()
        log.debug(f"Session {id(session)} closed.")
