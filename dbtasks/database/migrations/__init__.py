"""
Database Migration System for dbtasks

Versioned migrations with a ledger table, transactional apply/revert and a
batch lock. Works with any database SQLAlchemy supports; SQLite and
PostgreSQL get fully transactional migrations.
"""

from .file_store import Migration, MigrationFileStore
from .migration_runner import MigrationRunner
from .version_manager import VersionManager

__all__ = ['Migration', 'MigrationFileStore', 'MigrationRunner', 'VersionManager']
