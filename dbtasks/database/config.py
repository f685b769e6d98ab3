"""
Database Configuration for dbtasks

Resolves which connection settings to use for the active environment and
builds SQLAlchemy engines from them. Settings come from, in order of
precedence:

- an explicit database URL (``--database-url`` / ``DATABASE_URL``)
- the environment block of a YAML file (``config/database.yml``)
- built-in defaults: SQLite for development/test, PostgreSQL from
  ``DB_*`` variables for production

The configuration object is passed explicitly to every component; there is
no module-level active connection.
"""

import os
import logging
from pathlib import Path
from typing import Dict, Optional, Any

import yaml
from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.exc import ArgumentError, InterfaceError, OperationalError

from ..error_handling import ConfigurationError, ConnectionError as DBConnectionError

logger = logging.getLogger(__name__)

DEFAULT_ENVIRONMENT = "development"
DEFAULT_CONFIG_PATH = os.path.join("config", "database.yml")
DEFAULT_MIGRATIONS_PATH = os.path.join("db", "migrate")
DEFAULT_SEEDS_PATH = os.path.join("db", "seeds.py")

# Environment variables consulted for the active environment, first match wins
ENVIRONMENT_VARIABLES = ("DBTASKS_ENV", "ENVIRONMENT")

ADAPTER_DRIVERS = {
    "sqlite": "sqlite",
    "sqlite3": "sqlite",
    "postgres": "postgresql",
    "postgresql": "postgresql",
    "mysql": "mysql",
    "mysql2": "mysql",
}


def resolve_environment(environment: Optional[str] = None) -> str:
    """Pick the active environment name"""
    if environment:
        return environment
    for variable in ENVIRONMENT_VARIABLES:
        value = os.getenv(variable)
        if value:
            return value
    return DEFAULT_ENVIRONMENT


def mask_url(url: str) -> str:
    """Mask credentials in a database URL for logging"""
    try:
        return make_url(url).render_as_string(hide_password=True)
    except ArgumentError:
        return url


def _expand(value: Any) -> Any:
    if isinstance(value, str):
        return os.path.expandvars(value)
    return value


class DatabaseConfig:
    """Database configuration for one environment"""

    def __init__(
        self,
        environment: Optional[str] = None,
        config_path: Optional[str] = None,
        database_url: Optional[str] = None,
        migrations_path: Optional[str] = None,
        seeds_path: Optional[str] = None,
        root: Optional[str] = None,
        load_env_file: bool = True,
    ):
        """
        Args:
            environment: Environment block to load (development, test, production...)
            config_path: YAML file with one block per environment
            database_url: Explicit SQLAlchemy URL, overrides the YAML block
            migrations_path: Directory holding migration files
            seeds_path: Seed file (.py or .sql)
            root: Project root that relative paths are resolved against
            load_env_file: Load a .env file from the project root first
        """
        self.root = Path(root) if root else Path(os.getcwd())
        if load_env_file:
            load_dotenv(self.root / ".env")

        self.environment = resolve_environment(environment)
        self.config_path = self._resolve(config_path or DEFAULT_CONFIG_PATH)
        explicit_url = database_url or os.getenv("DATABASE_URL")
        self.settings = self._load_settings(required=not explicit_url)
        self.database_url = self._get_database_url(explicit_url)
        self.migrations_path = self._resolve(
            migrations_path
            or self.settings.get("migrations_path")
            or os.getenv("DBTASKS_MIGRATIONS_PATH")
            or DEFAULT_MIGRATIONS_PATH
        )
        self.seeds_path = self._resolve(
            seeds_path or self.settings.get("seeds_path") or DEFAULT_SEEDS_PATH
        )
        self.engine: Optional[Engine] = None

        logger.debug(
            f"Loaded {self.environment} configuration: {mask_url(self.database_url)}"
        )

    def _resolve(self, path) -> Path:
        path = Path(path)
        return path if path.is_absolute() else self.root / path

    def _load_settings(self, required: bool = True) -> Dict:
        """
        Read the block for the active environment from the YAML file

        Args:
            required: Raise when the environment has no block; False when an
                explicit URL already names the database
        """
        if not self.config_path.exists():
            logger.debug(f"No configuration file at {self.config_path}, using defaults")
            return {}

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                document = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Cannot read configuration file {self.config_path}: {e}",
                self.environment,
            ) from e

        if not isinstance(document, dict):
            raise ConfigurationError(
                f"Configuration file {self.config_path} must map environments to settings",
                self.environment,
            )

        block = document.get(self.environment)
        if block is None and not required:
            logger.debug(
                f"Environment '{self.environment}' is not in {self.config_path}, "
                f"using the explicit database URL"
            )
            return {}
        if block is None:
            raise ConfigurationError(
                f"Environment '{self.environment}' is not defined in {self.config_path}",
                self.environment,
            )
        if not isinstance(block, dict):
            raise ConfigurationError(
                f"Environment '{self.environment}' in {self.config_path} must be a mapping",
                self.environment,
            )

        return {key: _expand(value) for key, value in block.items()}

    def _get_database_url(self, explicit_url: Optional[str]) -> str:
        """Get database URL based on environment"""
        if explicit_url:
            return explicit_url

        if self.settings:
            return self._url_from_settings(self.settings)

        if self.environment == "production":
            # PostgreSQL configuration for production
            return URL.create(
                "postgresql",
                username=os.getenv("DB_USER", "postgres"),
                password=os.getenv("DB_PASSWORD") or None,
                host=os.getenv("DB_HOST", "localhost"),
                port=int(os.getenv("DB_PORT", "5432")),
                database=os.getenv("DB_NAME", "dbtasks"),
            ).render_as_string(hide_password=False)

        # SQLite file per environment for everything else
        db_path = self.root / "db" / f"{self.environment}.sqlite3"
        return f"sqlite:///{db_path}"

    def _url_from_settings(self, settings: Dict) -> str:
        if settings.get("url"):
            return settings["url"]

        adapter = settings.get("adapter")
        if not adapter:
            raise ConfigurationError(
                f"Environment '{self.environment}' needs an 'adapter' or 'url'",
                self.environment,
            )
        drivername = ADAPTER_DRIVERS.get(adapter, adapter)

        database = settings.get("database")
        if drivername.startswith("sqlite"):
            if database and database != ":memory:" and not os.path.isabs(database):
                database = str(self.root / database)
            return f"sqlite:///{database}" if database else "sqlite://"

        port = settings.get("port")
        return URL.create(
            drivername,
            username=settings.get("username"),
            password=settings.get("password"),
            host=settings.get("host"),
            port=int(port) if port else None,
            database=database,
        ).render_as_string(hide_password=False)

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def sqlite_path(self) -> Optional[Path]:
        """Filesystem path of a file-backed SQLite database"""
        if not self.is_sqlite:
            return None
        database = make_url(self.database_url).database
        if not database or database == ":memory:":
            return None
        return Path(database)

    def create_engine(self, **kwargs) -> Engine:
        """Create SQLAlchemy engine with appropriate configuration"""
        engine_config = {}

        echo = self.settings.get("echo", os.getenv("DB_ECHO", "false"))
        engine_config["echo"] = str(echo).lower() == "true"
        engine_config["pool_pre_ping"] = True

        if self.is_sqlite:
            engine_config["connect_args"] = {"check_same_thread": False}
        else:
            engine_config["pool_size"] = int(
                self.settings.get(
                    "pool_size", self.settings.get("pool", os.getenv("DB_POOL_SIZE", "5"))
                )
            )
            engine_config["max_overflow"] = int(os.getenv("DB_MAX_OVERFLOW", "10"))
            engine_config["pool_timeout"] = int(
                self.settings.get("timeout", os.getenv("DB_POOL_TIMEOUT", "30"))
            )
            engine_config["pool_recycle"] = int(os.getenv("DB_POOL_RECYCLE", "3600"))

        engine_config.update(kwargs)

        if self.sqlite_path is not None:
            self._ensure_sqlite_directory(self.sqlite_path)

        try:
            engine = create_engine(self.database_url, **engine_config)
        except (ArgumentError, ImportError) as e:
            raise ConfigurationError(
                f"Cannot create engine for {mask_url(self.database_url)}: {e}",
                self.environment,
            ) from e

        if engine.dialect.name == "sqlite":
            enable_sqlite_transactional_ddl(engine)

        self.engine = engine
        return engine

    def _ensure_sqlite_directory(self, db_path: Path):
        """Create the directory holding a SQLite file so migrate works without create"""
        try:
            os.makedirs(db_path.parent, exist_ok=True)
        except OSError as e:
            url = mask_url(self.database_url)
            raise DBConnectionError(f"Cannot create directory for {url}: {e}", url) from e

    def get_engine(self) -> Engine:
        """Return the engine, creating it on first use"""
        if self.engine is None:
            self.create_engine()
        return self.engine

    def dispose(self):
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None

    def get_connection_info(self) -> Dict:
        """Get connection information for debugging"""
        return {
            "environment": self.environment,
            "database_url": mask_url(self.database_url),
            "config_path": str(self.config_path),
            "migrations_path": str(self.migrations_path),
            "engine_created": self.engine is not None,
        }


def enable_sqlite_transactional_ddl(engine: Engine):
    """
    Make pysqlite run DDL inside the transaction SQLAlchemy opens.

    The sqlite3 driver only emits BEGIN before DML, so CREATE/ALTER/DROP would
    otherwise autocommit and survive a rollback.
    """

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def check_connection(engine: Engine):
    """
    Open and close one connection

    Raises:
        ConnectionError: If the database cannot be reached
    """
    try:
        with engine.connect():
            pass
    except (OperationalError, InterfaceError) as e:
        url = engine.url.render_as_string(hide_password=True)
        raise DBConnectionError(f"Cannot connect to {url}: {e}", url) from e
