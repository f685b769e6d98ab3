"""
Migration Executor

Applies or reverts a single migration. The schema changes and the ledger
write share one transaction, so a failure leaves neither behind on
databases with transactional DDL (SQLite, PostgreSQL). On MySQL and Oracle
DDL commits implicitly; a failure there can leave the migration partially
applied, which is logged but not repaired.
"""

import logging
import time

from sqlalchemy.engine import Engine

from ...error_handling import DbTasksError, MigrationError
from .file_store import Migration
from .version_manager import VersionManager

logger = logging.getLogger(__name__)

TRANSACTIONAL_DDL_DIALECTS = {'sqlite', 'postgresql', 'mssql'}


class MigrationExecutor:
    """Runs one migration's directives against the target database"""

    def __init__(self, engine: Engine, version_manager: VersionManager):
        self.engine = engine
        self.version_manager = version_manager

    @property
    def supports_transactional_ddl(self) -> bool:
        return self.engine.dialect.name in TRANSACTIONAL_DDL_DIALECTS

    def _warn_non_transactional(self, migration: Migration):
        if not self.supports_transactional_ddl:
            logger.warning(
                f"{self.engine.dialect.name} commits DDL implicitly; migration "
                f"{migration.version} may be left partially applied if it fails"
            )

    def apply(self, migration: Migration) -> int:
        """
        Run the forward directives and record the version

        Returns:
            Execution time in milliseconds

        Raises:
            MigrationError: If any directive or the ledger write fails
        """
        logger.info(f"Applying migration {migration.version}: {migration.name}")
        self._warn_non_transactional(migration)
        start_time = time.time()

        try:
            with self.engine.begin() as conn:
                for directive in migration.directives:
                    logger.debug(f"  {migration.version} -> {directive.describe()}")
                    directive.apply(conn)
                execution_time_ms = int((time.time() - start_time) * 1000)
                self.version_manager.record(conn, migration, execution_time_ms)
        except DbTasksError:
            raise
        except Exception as e:
            logger.error(f"Migration {migration.version} FAILED: {e}")
            raise MigrationError(migration.version, e, direction="up") from e

        logger.info(f"Migration {migration.version} applied ({execution_time_ms}ms)")
        return execution_time_ms

    def revert(self, migration: Migration) -> int:
        """
        Run the inverse directives and erase the version

        Returns:
            Execution time in milliseconds

        Raises:
            IrreversibleMigrationError: If a directive has no inverse; nothing is executed
            MigrationError: If any directive or the ledger delete fails
        """
        # Computed up front so an irreversible migration never half-runs
        inverses = migration.inverse_directives()

        logger.info(f"Reverting migration {migration.version}: {migration.name}")
        self._warn_non_transactional(migration)
        start_time = time.time()

        try:
            with self.engine.begin() as conn:
                for directive in inverses:
                    logger.debug(f"  {migration.version} -> {directive.describe()}")
                    directive.apply(conn)
                self.version_manager.erase(conn, migration.version)
        except DbTasksError:
            raise
        except Exception as e:
            logger.error(f"Rollback of migration {migration.version} FAILED: {e}")
            raise MigrationError(migration.version, e, direction="down") from e

        execution_time_ms = int((time.time() - start_time) * 1000)
        logger.info(f"Migration {migration.version} reverted ({execution_time_ms}ms)")
        return execution_time_ms
