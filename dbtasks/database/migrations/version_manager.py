"""
Version Manager for Database Migrations

Keeps the schema version ledger: one row per applied migration in the
``schema_migrations`` table of the target database. ``record`` and ``erase``
run on the caller's connection so they commit or roll back together with
the migration's own schema changes.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from sqlalchemy import Column, DateTime, Integer, String, delete, func, insert, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

LEDGER_TABLE = 'schema_migrations'

# Separate base so the ledger never mixes with application models
MigrationBase = declarative_base()


class MigrationVersion(MigrationBase):
    """Model for tracking applied migrations"""
    __tablename__ = LEDGER_TABLE

    version = Column(String(50), primary_key=True)
    name = Column(String(255), nullable=False)
    applied_at = Column(DateTime, nullable=False)
    checksum = Column(String(64))  # For integrity verification
    execution_time_ms = Column(Integer)  # Performance tracking


class VersionManager:
    """
    Reads and writes the schema version ledger

    Read methods accept an optional connection so the runner can see its own
    uncommitted state; without one they open a short-lived session.
    """

    def __init__(self, engine: Engine):
        """
        Args:
            engine: SQLAlchemy engine instance
        """
        self.engine = engine
        self.session_factory = sessionmaker(bind=engine)
        self.ensure_table()

    def ensure_table(self):
        """Create the ledger table if it doesn't exist"""
        MigrationBase.metadata.create_all(self.engine, tables=[MigrationVersion.__table__])
        logger.debug(f"Ledger table {LEDGER_TABLE} ensured")

    def _scalar(self, statement, conn: Optional[Connection]):
        if conn is not None:
            return conn.execute(statement).scalar()
        session = self.session_factory()
        try:
            return session.execute(statement).scalar()
        finally:
            session.close()

    def _rows(self, statement, conn: Optional[Connection]):
        if conn is not None:
            return conn.execute(statement).all()
        session = self.session_factory()
        try:
            return session.execute(statement).all()
        finally:
            session.close()

    def current_version(self, conn: Optional[Connection] = None) -> Optional[str]:
        """
        Get the current schema version

        Returns:
            Highest applied version or None if no migrations applied
        """
        return self._scalar(select(func.max(MigrationVersion.version)), conn)

    def applied_versions(self, conn: Optional[Connection] = None) -> List[str]:
        """Applied versions, ascending"""
        rows = self._rows(
            select(MigrationVersion.version).order_by(MigrationVersion.version.asc()),
            conn,
        )
        return [row.version for row in rows]

    def applied_entries(self, conn: Optional[Connection] = None) -> List[Dict]:
        """
        Get list of all applied migrations

        Returns:
            List of migration records with metadata
        """
        rows = self._rows(
            select(
                MigrationVersion.version,
                MigrationVersion.name,
                MigrationVersion.applied_at,
                MigrationVersion.checksum,
                MigrationVersion.execution_time_ms,
            ).order_by(MigrationVersion.version.asc()),
            conn,
        )
        return [{
            'version': row.version,
            'name': row.name,
            'applied_at': row.applied_at.isoformat() if row.applied_at else None,
            'checksum': row.checksum,
            'execution_time_ms': row.execution_time_ms,
        } for row in rows]

    def is_applied(self, version: str, conn: Optional[Connection] = None) -> bool:
        """Check if a specific version has been applied"""
        statement = select(func.count()).select_from(MigrationVersion).where(
            MigrationVersion.version == version
        )
        return bool(self._scalar(statement, conn))

    def record(self, conn: Connection, migration, execution_time_ms: Optional[int] = None):
        """
        Record a successfully applied migration

        Args:
            conn: Connection holding the migration's transaction
            migration: Applied migration
            execution_time_ms: Execution time in milliseconds
        """
        conn.execute(insert(MigrationVersion).values(
            version=migration.version,
            name=migration.name,
            applied_at=datetime.now(timezone.utc).replace(tzinfo=None),
            checksum=migration.checksum,
            execution_time_ms=execution_time_ms,
        ))
        logger.debug(f"Recorded migration {migration.version}: {migration.name}")

    def erase(self, conn: Connection, version: str):
        """
        Remove a migration record (used during rollback)

        Args:
            conn: Connection holding the revert transaction
            version: Version to remove
        """
        result = conn.execute(
            delete(MigrationVersion).where(MigrationVersion.version == version)
        )
        if result.rowcount == 0:
            logger.warning(f"Migration record not found: {version}")
        else:
            logger.debug(f"Removed migration record: {version}")

    def verify_checksums(self, migrations: Iterable, conn: Optional[Connection] = None) -> List[str]:
        """
        Compare recorded checksums against the files on disk

        Returns:
            Versions whose file changed after being applied
        """
        recorded = {e['version']: e['checksum'] for e in self.applied_entries(conn)}
        mismatched = []
        for migration in migrations:
            stored = recorded.get(migration.version)
            if stored and stored != migration.checksum:
                logger.warning(
                    f"Migration {migration.version} checksum mismatch! "
                    f"Expected {stored[:16]}, got {migration.checksum[:16]}"
                )
                mismatched.append(migration.version)
        return mismatched
