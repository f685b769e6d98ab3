"""
Error Handling and Logging for dbtasks

Provides the exception hierarchy shared by the migration components and the
centralized logging configuration used by the command line driver. None of
these errors are retried: migrations are not assumed to be idempotent, so
every failure propagates to the caller, which halts the batch.
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Optional, List


# Custom exception classes for better error categorization
class DbTasksError(Exception):
    """Base exception for dbtasks errors"""
    pass


class ConfigurationError(DbTasksError):
    """Missing or invalid database configuration"""
    def __init__(self, message: str, environment: Optional[str] = None):
        super().__init__(message)
        self.environment = environment


class LoadError(DbTasksError):
    """Malformed or duplicate migration definitions"""
    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class ConnectionError(DbTasksError):
    """Target database cannot be reached"""
    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class MigrationError(DbTasksError):
    """
    A schema directive failed while applying or reverting a migration.

    Attributes:
        version: Version of the failed migration
        cause: Underlying exception (if any)
    """
    def __init__(self, version: str, cause, direction: str = "up"):
        action = "apply" if direction == "up" else "revert"
        super().__init__(f"Failed to {action} migration {version}: {cause}")
        self.version = version
        self.cause = cause
        self.direction = direction
        self.timestamp = datetime.now(timezone.utc)


class IrreversibleMigrationError(MigrationError):
    """A revert reached a directive without a known inverse"""
    def __init__(self, version: str, directive: str):
        super().__init__(version, f"{directive} cannot be reverted", direction="down")
        self.directive = directive


class DivergedLedgerError(DbTasksError):
    """
    The ledger references versions absent from the migration directory.

    Requires manual resolution: either restore the missing migration files
    or delete the stale rows from the ledger table.
    """
    def __init__(self, versions: List[str]):
        listed = ", ".join(versions)
        super().__init__(
            f"Schema ledger references unknown migration version(s): {listed}"
        )
        self.versions = list(versions)


class LockError(DbTasksError):
    """Another runner holds the migration lock"""
    pass


class SeedError(DbTasksError):
    """Loading seed data failed"""
    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class LoggingManager:
    """
    Centralized logging configuration and management
    """

    LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    @staticmethod
    def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None):
        """
        Setup logging configuration

        Args:
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
            log_file: Optional log file path
        """
        formatter = logging.Formatter(LoggingManager.LOG_FORMAT)
        level = getattr(logging, log_level.upper(), logging.INFO)

        root_logger = logging.getLogger()
        root_logger.setLevel(level)

        # Replace handlers from a previous call so repeated CLI runs in one
        # process do not duplicate output
        for handler in list(root_logger.handlers):
            if getattr(handler, '_dbtasks_handler', False):
                root_logger.removeHandler(handler)
                handler.close()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        console_handler._dbtasks_handler = True
        root_logger.addHandler(console_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            file_handler._dbtasks_handler = True
            root_logger.addHandler(file_handler)

        # SQLAlchemy is chatty at INFO once echo is enabled
        if level > logging.DEBUG:
            logging.getLogger('sqlalchemy').setLevel(logging.WARNING)

        for logger_name in ('dbtasks', 'dbtasks.database', 'dbtasks.database.migrations'):
            logging.getLogger(logger_name).setLevel(level)

    @staticmethod
    def get_logger(name: str) -> logging.Logger:
        """Get a logger namespaced under dbtasks"""
        return logging.getLogger(f"dbtasks.{name}")
