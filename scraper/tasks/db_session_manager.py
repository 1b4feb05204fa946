"""
Database sessions for the schedule maintenance tasks.

A task owns one session: committed when the block exits cleanly, rolled
back when it raises, closed either way.
"""
import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy.orm import Session

from scraper.db.database import SessionLocal

logger = logging.getLogger(__name__)


@contextmanager
def get_celery_db_session(task_name: str = "task") -> Generator[Session, None, None]:
    """
    Usage:
        with get_celery_db_session("reconcile_schedules") as db:
            report = ReconciliationService(registry).reconcile(db)
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception as e:
        logger.error(f"{task_name}: rolling back session after error: {e}")
        db.rollback()
        raise
    finally:
        db.close()
        logger.debug(f"{task_name}: session closed")
