"""
Database Initialization Service for dbtasks

Creates databases, loads seed data, and chains create + migrate + seed into
a single setup step. Handles SQLite files as well as server databases
(PostgreSQL, MySQL).
"""

import importlib.util
import logging
import time
from pathlib import Path
from typing import Dict, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import make_url

from ..error_handling import ConnectionError as DBConnectionError, SeedError
from .config import DatabaseConfig, check_connection, mask_url
from .migrations.directives import Execute
from .migrations.migration_runner import MigrationRunner

logger = logging.getLogger(__name__)

# Database each server dialect connects to while creating the target
MAINTENANCE_DATABASES = {
    'postgresql': 'postgres',
    'mysql': None,
}


class DatabaseInitializer:
    """
    Database setup tasks for one configured environment

    Features:
    - Database creation (SQLite directory, server CREATE DATABASE)
    - Connectivity validation
    - Seed data loading from Python or SQL files
    - Full setup: create, migrate, seed
    """

    def __init__(self, config: DatabaseConfig):
        """
        Args:
            config: Database configuration instance
        """
        self.config = config
        self.migration_runner: Optional[MigrationRunner] = None

        logger.debug(f"Database initializer created for {self.config.environment} environment")

    @property
    def engine(self):
        return self.config.get_engine()

    def get_migration_runner(self) -> MigrationRunner:
        if self.migration_runner is None:
            self.migration_runner = MigrationRunner(self.engine, self.config.migrations_path)
        return self.migration_runner

    def create_database(self) -> Dict:
        """
        Create the configured database if it does not exist

        Returns:
            Creation results
        """
        url = self.config.database_url

        if self.config.is_sqlite:
            db_path = self.config.sqlite_path
            if db_path is None:
                return {'success': True, 'created': False,
                        'message': 'In-memory SQLite database needs no creation'}
            existed = db_path.exists()
            db_path.parent.mkdir(parents=True, exist_ok=True)
            # Connecting creates the file
            check_connection(self.engine)
            message = f"Database {db_path} already exists" if existed else f"Created database {db_path}"
            logger.info(message)
            return {'success': True, 'created': not existed, 'message': message}

        target = make_url(url)
        dialect = target.get_backend_name()
        if dialect not in MAINTENANCE_DATABASES:
            raise DBConnectionError(
                f"Creating databases is not supported for {dialect}", mask_url(url)
            )

        server_url = target.set(database=MAINTENANCE_DATABASES[dialect])
        server_engine = create_engine(server_url, isolation_level="AUTOCOMMIT")
        try:
            check_connection(server_engine)
            with server_engine.connect() as conn:
                quoted = conn.dialect.identifier_preparer.quote(target.database)
                if dialect == 'postgresql':
                    exists = conn.execute(
                        text("SELECT 1 FROM pg_database WHERE datname = :name"),
                        {"name": target.database},
                    ).scalar() is not None
                else:
                    exists = conn.execute(
                        text("SELECT 1 FROM information_schema.schemata WHERE schema_name = :name"),
                        {"name": target.database},
                    ).scalar() is not None

                if not exists:
                    conn.execute(text(f"CREATE DATABASE {quoted}"))
        finally:
            server_engine.dispose()

        message = (f"Database {target.database} already exists" if exists
                   else f"Created database {target.database}")
        logger.info(message)
        return {'success': True, 'created': not exists, 'message': message}

    def test_connection(self) -> Dict:
        """
        Test database connectivity and basic operations

        Returns:
            Connection test results

        Raises:
            ConnectionError: If the database cannot be reached
        """
        start_time = time.time()
        check_connection(self.engine)

        with self.engine.connect() as connection:
            test_value = connection.execute(text("SELECT 1")).scalar()

        table_names = inspect(self.engine).get_table_names()
        return {
            'success': test_value == 1,
            'connection_time_ms': int((time.time() - start_time) * 1000),
            'database_type': self.engine.dialect.name,
            'table_count': len(table_names),
            'tables': table_names,
            'url_masked': mask_url(self.config.database_url),
        }

    def _resolve_seeds_path(self, seeds_path=None) -> Optional[Path]:
        if seeds_path:
            return Path(seeds_path)
        default = Path(self.config.seeds_path)
        for candidate in (default, default.with_suffix('.py'), default.with_suffix('.sql')):
            if candidate.exists():
                return candidate
        return None

    def seed(self, seeds_path=None) -> Dict:
        """
        Load seed data inside one transaction

        A ``.py`` seed file must define ``run(connection)``; a ``.sql`` file is
        executed statement by statement.

        Returns:
            Seeding results

        Raises:
            SeedError: If the seed file is invalid or fails
        """
        path = self._resolve_seeds_path(seeds_path)
        if path is None or not path.exists():
            message = f"No seed file found at {path or self.config.seeds_path}"
            logger.info(message)
            return {'success': True, 'seeded': False, 'message': message}

        logger.info(f"Loading seed data from {path}")
        start_time = time.time()

        if path.suffix == '.py':
            seed_func = self._load_seed_function(path)
        elif path.suffix == '.sql':
            seed_func = Execute(path.read_text(encoding='utf-8')).apply
        else:
            raise SeedError(f"Unsupported seed file type: {path.name}", str(path))

        try:
            with self.engine.begin() as conn:
                seed_func(conn)
        except Exception as e:
            logger.error(f"Seeding from {path} failed: {e}")
            raise SeedError(f"Seeding from {path.name} failed: {e}", str(path)) from e

        execution_time_ms = int((time.time() - start_time) * 1000)
        message = f"Loaded seed data from {path.name} ({execution_time_ms}ms)"
        logger.info(message)
        return {'success': True, 'seeded': True, 'message': message,
                'execution_time_ms': execution_time_ms}

    def _load_seed_function(self, path: Path):
        spec = importlib.util.spec_from_file_location("dbtasks_seeds", path)
        if spec is None or spec.loader is None:
            raise SeedError(f"Cannot load seed file {path.name}", str(path))
        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            raise SeedError(f"Failed to load seed file {path.name}: {e}", str(path)) from e

        seed_func = getattr(module, 'run', None)
        if not callable(seed_func):
            raise SeedError(f"Seed file {path.name} must define run(connection)", str(path))
        return seed_func

    def setup(self, seed_data: bool = True) -> Dict:
        """
        Complete database initialization process: create, migrate, seed

        Returns:
            Results per step; stops at the first failing step
        """
        logger.info(f"Setting up {self.config.environment} database")
        start_time = time.time()
        results = {'create': None, 'migrate': None, 'seed': None}

        results['create'] = self.create_database()

        migrate_result = self.get_migration_runner().run_migrations()
        results['migrate'] = migrate_result
        if not migrate_result['success']:
            return {
                'success': False,
                'step': 'migrate',
                'message': migrate_result['message'],
                'results': results,
                'total_time_ms': int((time.time() - start_time) * 1000),
            }

        if seed_data:
            results['seed'] = self.seed()

        return {
            'success': True,
            'message': 'Database setup completed successfully',
            'results': results,
            'total_time_ms': int((time.time() - start_time) * 1000),
        }

    def get_database_health(self) -> Dict:
        """
        Database health check

        Returns:
            Connection info and migration status
        """
        health_data = {
            'timestamp': time.time(),
            'environment': self.config.environment,
        }
        try:
            health_data['connection'] = self.test_connection()
        except DBConnectionError as e:
            health_data['status'] = 'unhealthy'
            health_data['issues'] = [str(e)]
            return health_data

        migration_status = self.get_migration_runner().get_migration_status()
        health_data['migrations'] = migration_status

        issues = []
        if migration_status['state'] != 'UpToDate':
            issues.append(f"Schema is {migration_status['state']}")
        if migration_status['checksum_mismatches']:
            issues.append("Applied migration files were modified")

        health_data['status'] = 'healthy' if not issues else 'degraded'
        health_data['issues'] = issues
        return health_data
