"""
Migration Runner for Database Schema Changes

Runs batches of migrations: takes the migration lock, loads the file store,
refuses to touch a diverged ledger, plans, and executes migrations one at a
time. The first failure stops the batch; migrations committed before it stay
committed.
"""

import logging
import time
from pathlib import Path
from typing import Dict, List, Optional

from sqlalchemy.engine import Engine

from ...error_handling import MigrationError
from ..config import check_connection
from . import planner
from .executor import MigrationExecutor
from .file_store import MigrationFileStore
from .lock import MigrationLock
from .planner import MigrationPlan
from .version_manager import VersionManager

logger = logging.getLogger(__name__)


class MigrationRunner:
    """
    Executes database migrations

    Features:
    - One transaction per migration, shared with its ledger write
    - Lock held across the whole batch
    - Divergence check before any mutation
    - Per-migration timing
    """

    def __init__(self, engine: Engine, migrations_path, lock_holder: Optional[str] = None):
        """
        Initialize migration runner

        Args:
            engine: SQLAlchemy engine instance
            migrations_path: Path to migration files directory
            lock_holder: Identifier written to the lock row (host:pid by default)
        """
        self.engine = engine
        check_connection(engine)

        self.migrations_path = Path(migrations_path)
        self.file_store = MigrationFileStore(self.migrations_path)
        self.version_manager = VersionManager(engine)
        self.executor = MigrationExecutor(engine, self.version_manager)
        self.lock_holder = lock_holder
        self.db_type = engine.dialect.name

        logger.debug(f"Migration runner initialized for {self.db_type} database")
        logger.debug(f"Migrations path: {self.migrations_path}")

    def lock(self) -> MigrationLock:
        return MigrationLock(self.engine, self.lock_holder)

    def current_version(self) -> Optional[str]:
        return self.version_manager.current_version()

    def _execute_plan(self, plan: MigrationPlan, start_time: float) -> Dict:
        """Run a plan, stopping at the first failure"""
        results: List[Dict] = []
        failed_migration = None

        for migration in plan:
            step_start = time.time()
            try:
                if plan.direction == 'up':
                    execution_time_ms = self.executor.apply(migration)
                    status = 'applied'
                else:
                    execution_time_ms = self.executor.revert(migration)
                    status = 'reverted'
            except MigrationError as e:
                failed_migration = {
                    'version': migration.version,
                    'name': migration.name,
                    'status': 'failed',
                    'error': str(e),
                    'execution_time_ms': int((time.time() - step_start) * 1000),
                }
                results.append(failed_migration)
                break

            results.append({
                'version': migration.version,
                'name': migration.name,
                'status': status,
                'execution_time_ms': execution_time_ms,
            })

        total_time_ms = int((time.time() - start_time) * 1000)
        verb = 'Applied' if plan.direction == 'up' else 'Rolled back'
        succeeded = len(results) - (1 if failed_migration else 0)

        if failed_migration:
            message = (
                f"Migration {failed_migration['version']} failed after "
                f"{succeeded} successful migration(s)"
            )
        else:
            message = f"{verb} {succeeded} migration(s) successfully"

        return {
            'success': failed_migration is None,
            'message': message,
            'direction': plan.direction,
            'migrations': results,
            'failed_migration': failed_migration,
            'total_time_ms': total_time_ms,
            'current_version': self.version_manager.current_version(),
        }

    def _noop_result(self, direction: str, message: str, start_time: float) -> Dict:
        return {
            'success': True,
            'message': message,
            'direction': direction,
            'migrations': [],
            'failed_migration': None,
            'total_time_ms': int((time.time() - start_time) * 1000),
            'current_version': self.version_manager.current_version(),
        }

    def run_migrations(self, target_version: Optional[str] = None) -> Dict:
        """
        Run all pending migrations up to target version

        Args:
            target_version: Stop at this version (None = run all)

        Returns:
            Migration run results

        Raises:
            LoadError, DivergedLedgerError, LockError: Before anything is executed
        """
        logger.info("Starting migration run")
        start_time = time.time()

        with self.lock():
            migrations = self.file_store.list()
            applied = self.version_manager.applied_versions()
            plan = planner.plan_forward(applied, migrations, target_version)

            if plan.is_empty:
                logger.info("No pending migrations")
                return self._noop_result('up', 'No pending migrations', start_time)

            logger.info(f"Found {len(plan)} pending migration(s)")
            return self._execute_plan(plan, start_time)

    def rollback(self, steps: Optional[int] = 1, target_version: Optional[str] = None) -> Dict:
        """
        Revert the newest migrations

        Args:
            steps: Number of migrations to revert
            target_version: Revert everything newer than this version instead

        Returns:
            Rollback operation results
        """
        if target_version is not None:
            logger.info(f"Starting rollback to version {target_version}")
        else:
            logger.info(f"Starting rollback of {steps} migration(s)")
        start_time = time.time()

        with self.lock():
            migrations = self.file_store.list()
            applied = self.version_manager.applied_versions()
            plan = planner.plan_rollback(applied, migrations, steps, target_version)

            if plan.is_empty:
                logger.info("Nothing to roll back")
                return self._noop_result('down', 'Nothing to roll back', start_time)

            return self._execute_plan(plan, start_time)

    def redo(self, steps: int = 1) -> Dict:
        """
        Roll back the newest migrations and apply them again

        Returns:
            Combined results; 'rollback' and 'migrate' hold the two phases
        """
        rollback_result = self.rollback(steps=steps)
        reverted = [m['version'] for m in rollback_result['migrations']
                    if m['status'] == 'reverted']

        if not rollback_result['success'] or not reverted:
            return {
                'success': rollback_result['success'],
                'message': rollback_result['message'],
                'rollback': rollback_result,
                'migrate': None,
            }

        migrate_result = self.run_migrations(target_version=max(reverted))
        return {
            'success': migrate_result['success'],
            'message': f"Redid {len(reverted)} migration(s)" if migrate_result['success']
                       else migrate_result['message'],
            'rollback': rollback_result,
            'migrate': migrate_result,
        }

    def get_migration_status(self) -> Dict:
        """
        Get migration status

        Returns:
            Status information including pending and unknown migrations
        """
        migrations = self.file_store.list()
        entries = self.version_manager.applied_entries()
        applied = [e['version'] for e in entries]
        snapshot = planner.status(applied, migrations)

        rows = []
        for migration in migrations:
            if migration.version in snapshot.applied:
                state = 'up'
            elif migration.version in snapshot.skipped:
                state = 'skipped'
            else:
                state = 'down'
            rows.append({'version': migration.version, 'name': migration.name, 'status': state})
        for entry in entries:
            if entry['version'] in snapshot.unknown:
                rows.append({'version': entry['version'], 'name': entry['name'],
                             'status': 'up', 'missing_file': True})
        rows.sort(key=lambda row: row['version'])

        result = snapshot.to_dict()
        result.update({
            'database_type': self.db_type,
            'migrations': rows,
            'checksum_mismatches': self.version_manager.verify_checksums(migrations),
            'total_migration_files': len(migrations),
            'migrations_path': str(self.migrations_path),
        })
        return result
