"""
Migration Lock

Mutual exclusion between runners pointed at the same database. The lock is
held for a whole migrate or rollback batch and released on every exit path.

PostgreSQL uses a session-level advisory lock on a dedicated connection.
Other backends insert a fixed row into ``schema_migrations_lock``; the
primary key makes a second insert fail until the holder deletes it. A runner
killed while holding the row leaves it behind; ``force_release`` clears it.
"""

import logging
import os
import socket
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, Integer, String, delete, insert, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from ...error_handling import LockError
from .version_manager import MigrationBase

logger = logging.getLogger(__name__)

LOCK_ROW_ID = 1
# Arbitrary constant shared by every dbtasks runner
ADVISORY_LOCK_KEY = 4_920_318_157


class MigrationLockRow(MigrationBase):
    """Single-row lock table for backends without advisory locks"""
    __tablename__ = 'schema_migrations_lock'

    id = Column(Integer, primary_key=True, autoincrement=False)
    holder = Column(String(255), nullable=False)
    acquired_at = Column(DateTime, nullable=False)


def default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class MigrationLock:
    """
    Context manager guarding a migration batch

    Usage:
        with MigrationLock(engine):
            ...  # plan and execute
    """

    def __init__(self, engine: Engine, holder: Optional[str] = None):
        self.engine = engine
        self.holder = holder or default_holder()
        self.use_advisory_lock = engine.dialect.name == 'postgresql'
        self._connection: Optional[Connection] = None
        self.acquired = False

    def acquire(self):
        """
        Take the lock without waiting

        Raises:
            LockError: If another runner holds it
        """
        if self.acquired:
            return
        if self.use_advisory_lock:
            self._acquire_advisory()
        else:
            self._acquire_row()
        self.acquired = True
        logger.debug(f"Migration lock acquired by {self.holder}")

    def release(self):
        if not self.acquired:
            return
        try:
            if self.use_advisory_lock:
                self._release_advisory()
            else:
                self._release_row()
        finally:
            self.acquired = False
        logger.debug(f"Migration lock released by {self.holder}")

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_value, tb):
        self.release()
        return False

    def _acquire_advisory(self):
        conn = self.engine.connect()
        try:
            got_lock = conn.execute(
                text("SELECT pg_try_advisory_lock(:key)"), {"key": ADVISORY_LOCK_KEY}
            ).scalar()
            conn.commit()
        except Exception:
            conn.close()
            raise
        if not got_lock:
            conn.close()
            raise LockError("Another migration run holds the advisory lock")
        self._connection = conn

    def _release_advisory(self):
        conn = self._connection
        self._connection = None
        try:
            conn.execute(
                text("SELECT pg_advisory_unlock(:key)"), {"key": ADVISORY_LOCK_KEY}
            )
            conn.commit()
        finally:
            conn.close()

    def _ensure_lock_table(self):
        MigrationBase.metadata.create_all(self.engine, tables=[MigrationLockRow.__table__])

    def _acquire_row(self):
        self._ensure_lock_table()
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(MigrationLockRow).values(
                    id=LOCK_ROW_ID,
                    holder=self.holder,
                    acquired_at=datetime.now(timezone.utc).replace(tzinfo=None),
                ))
        except IntegrityError as e:
            current = self.current_holder()
            raise LockError(
                f"Migration lock is held by {current or 'another runner'}; "
                f"run 'dbtasks unlock' if that runner is no longer alive"
            ) from e

    def _release_row(self):
        with self.engine.begin() as conn:
            conn.execute(delete(MigrationLockRow).where(
                MigrationLockRow.id == LOCK_ROW_ID,
                MigrationLockRow.holder == self.holder,
            ))

    def current_holder(self) -> Optional[str]:
        """Holder of the lock row, if any"""
        if self.use_advisory_lock:
            return None
        self._ensure_lock_table()
        with self.engine.connect() as conn:
            return conn.execute(
                select(MigrationLockRow.holder).where(MigrationLockRow.id == LOCK_ROW_ID)
            ).scalar()

    def force_release(self) -> Optional[str]:
        """
        Delete a lock row left behind by a dead runner

        Returns:
            The previous holder, or None when the lock was free
        """
        if self.use_advisory_lock:
            # Advisory locks die with their session
            return None
        previous = self.current_holder()
        if previous is not None:
            with self.engine.begin() as conn:
                conn.execute(delete(MigrationLockRow).where(MigrationLockRow.id == LOCK_ROW_ID))
            logger.warning(f"Forcibly released migration lock held by {previous}")
        return previous
