#!/usr/bin/env python3
"""
dbtasks command line interface

Database tasks modelled on the familiar rake db:* workflow:

    dbtasks create-migration --name=create_dogs
    dbtasks migrate [--env=production] [--version=VERSION]
    dbtasks rollback [--steps=N | --version=VERSION]
    dbtasks redo [--steps=N]
    dbtasks status
    dbtasks version
    dbtasks create
    dbtasks seed
    dbtasks setup
    dbtasks health
    dbtasks unlock

The environment is selected with --env, DBTASKS_ENV or ENVIRONMENT and
defaults to development. Exit code is 0 on full success, 1 otherwise.
"""

import argparse
import json
import os
import sys
from typing import Dict, List, Optional

from . import __version__
from .database.config import DatabaseConfig
from .database.init_db import DatabaseInitializer
from .database.migrations.file_store import MigrationFileStore
from .database.migrations.lock import MigrationLock
from .database.migrations.migration_runner import MigrationRunner
from .database.migrations.planner import validate_version
from .error_handling import DbTasksError, LoggingManager

logger = LoggingManager.get_logger('cli')


def _print_migration_lines(migrations: List[Dict]):
    for result in migrations:
        line = (
            f"  {result['version']} {result['name']}: "
            f"{result['status']} ({result['execution_time_ms']}ms)"
        )
        if result.get('error'):
            line += f"\n    {result['error']}"
        print(line)


def _print_run_result(result: Dict) -> int:
    _print_migration_lines(result['migrations'])
    print(result['message'])
    print(f"Current version: {result['current_version'] or 'none'}")
    return 0 if result['success'] else 1


def _runner(config: DatabaseConfig) -> MigrationRunner:
    return MigrationRunner(config.get_engine(), config.migrations_path)


def cmd_create_migration(config: DatabaseConfig, args) -> int:
    store = MigrationFileStore(config.migrations_path)
    path = store.create(args.name, fmt='sql' if args.sql else 'py')
    print(f"Created {path}")
    return 0


def cmd_migrate(config: DatabaseConfig, args) -> int:
    result = _runner(config).run_migrations(target_version=args.version)
    return _print_run_result(result)


def cmd_rollback(config: DatabaseConfig, args) -> int:
    if args.version is not None:
        result = _runner(config).rollback(steps=None, target_version=args.version)
    else:
        result = _runner(config).rollback(steps=args.steps)
    return _print_run_result(result)


def cmd_redo(config: DatabaseConfig, args) -> int:
    result = _runner(config).redo(steps=args.steps)
    _print_migration_lines(result['rollback']['migrations'])
    if result['migrate']:
        _print_migration_lines(result['migrate']['migrations'])
    print(result['message'])
    return 0 if result['success'] else 1


def cmd_status(config: DatabaseConfig, args) -> int:
    status = _runner(config).get_migration_status()

    print(f"database: {status['database_type']} ({config.environment})")
    print(f"state: {status['state']}")
    print(f"current version: {status['current_version'] or 'none'}")
    print()
    print(f" {'Status':<8} {'Migration ID':<16} Migration Name")
    print("-" * 50)
    for row in status['migrations']:
        name = '** NO FILE **' if row.get('missing_file') else row['name']
        print(f" {row['status']:^8} {row['version']:<16} {name}")

    for version in status['checksum_mismatches']:
        print(f"warning: {version} was modified after it was applied")

    return 1 if status['state'] == 'Diverged' else 0


def cmd_version(config: DatabaseConfig, args) -> int:
    current = _runner(config).current_version()
    print(f"Current version: {current or 'none'}")
    return 0


def cmd_create(config: DatabaseConfig, args) -> int:
    result = DatabaseInitializer(config).create_database()
    print(result['message'])
    return 0


def cmd_seed(config: DatabaseConfig, args) -> int:
    result = DatabaseInitializer(config).seed()
    print(result['message'])
    return 0


def cmd_setup(config: DatabaseConfig, args) -> int:
    result = DatabaseInitializer(config).setup(seed_data=not args.skip_seed)
    steps = result['results']
    print(steps['create']['message'])
    if steps['migrate']:
        _print_migration_lines(steps['migrate']['migrations'])
        print(steps['migrate']['message'])
    if steps['seed']:
        print(steps['seed']['message'])
    print(result['message'])
    return 0 if result['success'] else 1


def cmd_health(config: DatabaseConfig, args) -> int:
    health = DatabaseInitializer(config).get_database_health()
    print(json.dumps(health, indent=2, default=str))
    return 0 if health['status'] == 'healthy' else 1


def cmd_unlock(config: DatabaseConfig, args) -> int:
    previous = MigrationLock(config.get_engine()).force_release()
    print(f"Released lock held by {previous}" if previous else "Migration lock is free")
    return 0


COMMANDS = {
    'create-migration': cmd_create_migration,
    'migrate': cmd_migrate,
    'rollback': cmd_rollback,
    'redo': cmd_redo,
    'status': cmd_status,
    'version': cmd_version,
    'create': cmd_create,
    'seed': cmd_seed,
    'setup': cmd_setup,
    'health': cmd_health,
    'unlock': cmd_unlock,
}


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {value}")
    return number


def migration_version(value: str) -> str:
    try:
        return validate_version(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='dbtasks',
        description='Schema migrations and database tasks',
    )
    parser.add_argument('--version-info', action='version', version=f"dbtasks {__version__}")
    parser.add_argument('--env', help='Environment block to use (default: development)')
    parser.add_argument('--config', help='Database YAML file (default: config/database.yml)')
    parser.add_argument('--database-url', help='SQLAlchemy URL, overrides the YAML file')
    parser.add_argument('--migrations-path', help='Migration directory (default: db/migrate)')
    parser.add_argument('--seeds-path', help='Seed file (default: db/seeds.py or db/seeds.sql)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    parser.add_argument('--log-file', help='Also write logs to this file')

    # Accept --env after the command too; SUPPRESS keeps the global value otherwise
    env_option = argparse.ArgumentParser(add_help=False)
    env_option.add_argument('--env', default=argparse.SUPPRESS, help=argparse.SUPPRESS)

    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND')
    subparsers.required = True

    create_migration = subparsers.add_parser('create-migration', parents=[env_option], help='Scaffold a migration file')
    create_migration.add_argument('--name', required=True, help='Migration name, e.g. create_dogs')
    create_migration.add_argument('--sql', action='store_true', help='Create a .sql migration')

    migrate = subparsers.add_parser('migrate', parents=[env_option], help='Apply pending migrations')
    migrate.add_argument('--version', type=migration_version, help='Stop after this version')

    rollback = subparsers.add_parser('rollback', parents=[env_option], help='Revert applied migrations')
    target = rollback.add_mutually_exclusive_group()
    target.add_argument('--steps', type=positive_int, default=1,
                        help='Number of migrations to revert (default: 1)')
    target.add_argument('--version', type=migration_version,
                        help='Revert everything newer than this version')

    redo = subparsers.add_parser('redo', parents=[env_option], help='Revert and re-apply the newest migrations')
    redo.add_argument('--steps', type=positive_int, default=1)

    subparsers.add_parser('status', parents=[env_option], help='Show applied and pending migrations')
    subparsers.add_parser('version', parents=[env_option], help='Print the current schema version')
    subparsers.add_parser('create', parents=[env_option], help='Create the database')

    subparsers.add_parser('seed', parents=[env_option], help='Load seed data')

    setup = subparsers.add_parser('setup', parents=[env_option], help='Create, migrate and seed the database')
    setup.add_argument('--skip-seed', action='store_true')

    subparsers.add_parser('health', parents=[env_option], help='Report connection and migration health as JSON')
    subparsers.add_parser('unlock', parents=[env_option], help='Clear a migration lock left by a dead runner')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = 'DEBUG' if args.verbose else os.getenv('DBTASKS_LOG_LEVEL', 'INFO')
    LoggingManager.setup_logging(log_level=log_level, log_file=args.log_file)

    config = None
    try:
        config = DatabaseConfig(
            environment=args.env,
            config_path=args.config,
            database_url=args.database_url,
            migrations_path=args.migrations_path,
            seeds_path=args.seeds_path,
        )
        return COMMANDS[args.command](config, args)
    except DbTasksError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        logger.error(f"{args.command} failed with unexpected error: {e}", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        if config is not None:
            config.dispose()


if __name__ == '__main__':
    sys.exit(main())
