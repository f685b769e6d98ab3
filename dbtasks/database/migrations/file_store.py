"""
Migration File Store

Reads versioned migration definitions from a directory. Two formats are
accepted, both named ``<14-digit-timestamp>_<snake_case_name>``:

- ``.py`` modules defining a module-level ``directives`` list
- ``.sql`` scripts with header comments::

    -- Migration: create_dogs
    -- Description: Create the dogs table
    -- Rollback: DROP TABLE dogs;

    CREATE TABLE dogs (id INTEGER PRIMARY KEY, name VARCHAR(255));

The store is read-only except for ``create``, which scaffolds a new file.
"""

import hashlib
import importlib.util
import logging
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

from ...error_handling import IrreversibleMigrationError, LoadError
from .directives import Directive, Execute

logger = logging.getLogger(__name__)

MIGRATION_FILE_PATTERN = re.compile(r'^(\d{14})_([a-z0-9_]+)\.(py|sql)$')
MIGRATION_NAME_PATTERN = re.compile(r'^[a-z][a-z0-9_]*$')
VERSION_FORMAT = '%Y%m%d%H%M%S'

PY_TEMPLATE = '''"""
Migration: {version}_{name}
Created: {created}
"""

from dbtasks.database.migrations.directives import (
    add_column,
    add_index,
    column,
    create_table,
    drop_table,
    execute,
    remove_column,
    remove_index,
    rename_column,
    rename_table,
)

directives = [
]
'''

SQL_TEMPLATE = '''-- Migration: {name}
-- Description:
-- Rollback:

'''


class Migration:
    """One versioned migration loaded from disk"""

    def __init__(self, version: str, name: str, path: Path, directives: List[Directive],
                 checksum: str, description: str = ''):
        self.version = version
        self.name = name
        self.path = path
        self.directives = directives
        self.checksum = checksum
        self.description = description

    def inverse_directives(self) -> List[Directive]:
        """
        Directives that revert this migration, newest change first

        Raises:
            IrreversibleMigrationError: If any directive has no inverse
        """
        inverses = []
        for directive in reversed(self.directives):
            inverse = directive.inverse()
            if inverse is None:
                raise IrreversibleMigrationError(self.version, directive.describe())
            inverses.append(inverse)
        return inverses

    @property
    def reversible(self) -> bool:
        return all(d.inverse() is not None for d in self.directives)

    def __repr__(self):
        return f"<Migration {self.version}_{self.name}>"


def calculate_checksum(path: Path) -> str:
    """Calculate SHA-256 checksum of a migration file"""
    return hashlib.sha256(path.read_bytes()).hexdigest()


def to_snake_case(name: str) -> str:
    """CreateDogs / create-dogs / 'create dogs' -> create_dogs"""
    name = re.sub(r'(?<=[a-z0-9])([A-Z])', r'_\1', name.strip())
    name = re.sub(r'[^A-Za-z0-9]+', '_', name)
    return name.strip('_').lower()


class MigrationFileStore:
    """Lists and scaffolds migration files in one directory"""

    def __init__(self, migrations_path):
        self.migrations_path = Path(migrations_path)

    def _migration_files(self) -> List[Path]:
        if not self.migrations_path.is_dir():
            logger.debug(f"Migrations directory {self.migrations_path} does not exist")
            return []

        files = []
        for path in sorted(self.migrations_path.iterdir()):
            if not path.is_file() or path.suffix not in ('.py', '.sql'):
                continue
            if path.name.startswith(('_', '.')):
                continue
            if not MIGRATION_FILE_PATTERN.match(path.name):
                raise LoadError(
                    f"Malformed migration file name '{path.name}', "
                    f"expected <14-digit-timestamp>_<snake_case_name>{path.suffix}",
                    str(path),
                )
            files.append(path)
        return files

    def list(self) -> List[Migration]:
        """
        Load every migration, sorted by version ascending

        Raises:
            LoadError: On malformed files or colliding versions
        """
        migrations: Dict[str, Migration] = {}

        for path in self._migration_files():
            version, name, extension = MIGRATION_FILE_PATTERN.match(path.name).groups()

            if version in migrations:
                raise LoadError(
                    f"Duplicate migration version {version}: "
                    f"{migrations[version].path.name} and {path.name}",
                    str(path),
                )

            if extension == 'py':
                migration = self._load_python(path, version, name)
            else:
                migration = self._load_sql(path, version, name)
            migrations[version] = migration

        logger.debug(f"Loaded {len(migrations)} migration(s) from {self.migrations_path}")
        return [migrations[v] for v in sorted(migrations)]

    def versions(self) -> List[str]:
        return [m.version for m in self.list()]

    def get(self, version: str) -> Optional[Migration]:
        for migration in self.list():
            if migration.version == version:
                return migration
        return None

    def _load_python(self, path: Path, version: str, name: str) -> Migration:
        spec = importlib.util.spec_from_file_location(f"dbtasks_migration_{version}", path)
        if spec is None or spec.loader is None:
            raise LoadError(f"Cannot load migration module {path.name}", str(path))

        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except LoadError:
            raise
        except Exception as e:
            raise LoadError(f"Failed to load migration {path.name}: {e}", str(path)) from e

        directives = getattr(module, 'directives', None)
        if not isinstance(directives, (list, tuple)):
            raise LoadError(
                f"Migration {path.name} must define a 'directives' list", str(path)
            )
        for directive in directives:
            if not isinstance(directive, Directive):
                raise LoadError(
                    f"Migration {path.name} contains a non-directive entry: {directive!r}",
                    str(path),
                )

        return Migration(
            version=version,
            name=name,
            path=path,
            directives=list(directives),
            checksum=calculate_checksum(path),
            description=(module.__doc__ or '').strip(),
        )

    def _load_sql(self, path: Path, version: str, name: str) -> Migration:
        """Parse header comments and SQL body of a .sql migration"""
        content = path.read_text(encoding='utf-8')

        description = ''
        rollback_sql = ''
        lines = content.split('\n')
        for line in lines:
            line = line.strip()
            if line.startswith('-- Description:'):
                description = line.replace('-- Description:', '', 1).strip()
            elif line.startswith('-- Rollback:'):
                rollback_sql = line.replace('-- Rollback:', '', 1).strip()

        # Main SQL without comment lines
        sql_lines = [line for line in lines if not line.strip().startswith('--')]
        sql = '\n'.join(sql_lines).strip()
        directives = [Execute(sql, rollback_sql or None)] if sql else []

        return Migration(
            version=version,
            name=name,
            path=path,
            directives=directives,
            checksum=calculate_checksum(path),
            description=description,
        )

    def create(self, name: str, fmt: str = 'py', now: Optional[datetime] = None) -> Path:
        """
        Scaffold a new migration file

        Args:
            name: Migration name, converted to snake_case
            fmt: 'py' for a directive module, 'sql' for a SQL script
            now: Timestamp to derive the version from (UTC now by default)

        Returns:
            Path of the created file
        """
        if fmt not in ('py', 'sql'):
            raise LoadError(f"Unknown migration format '{fmt}'")

        snake_name = to_snake_case(name or '')
        if not MIGRATION_NAME_PATTERN.match(snake_name):
            raise LoadError(f"Invalid migration name '{name}'")

        self.migrations_path.mkdir(parents=True, exist_ok=True)

        existing_versions = set()
        for path in self.migrations_path.iterdir():
            match = MIGRATION_FILE_PATTERN.match(path.name)
            if not match:
                continue
            existing_versions.add(match.group(1))
            if match.group(2) == snake_name:
                raise LoadError(
                    f"Another migration is already named '{snake_name}': {path.name}",
                    str(path),
                )

        stamp = now or datetime.now(timezone.utc)
        version = stamp.strftime(VERSION_FORMAT)
        # Two migrations created within the same second get consecutive versions
        while version in existing_versions:
            stamp += timedelta(seconds=1)
            version = stamp.strftime(VERSION_FORMAT)

        path = self.migrations_path / f"{version}_{snake_name}.{fmt}"
        template = PY_TEMPLATE if fmt == 'py' else SQL_TEMPLATE
        path.write_text(
            template.format(version=version, name=snake_name, created=stamp.isoformat()),
            encoding='utf-8',
        )

        logger.info(f"Created migration {path}")
        return path
