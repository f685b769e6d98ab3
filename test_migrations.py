#!/usr/bin/env python3
"""
dbtasks Migration Testing and Validation

Test suite covering the migration components:
- File store loading and scaffolding
- Schema directives and their inverses
- Ledger bookkeeping
- Planning (forward, rollback, divergence)
- Batch execution, locking and failure handling
"""

import shutil
import tempfile
import textwrap
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

from sqlalchemy import inspect, text

from dbtasks.database.config import DatabaseConfig
from dbtasks.database.migrations import planner
from dbtasks.database.migrations.directives import (
    add_column,
    add_index,
    column,
    create_table,
    drop_table,
    execute,
    rename_column,
    rename_table,
    split_statements,
)
from dbtasks.database.migrations.executor import MigrationExecutor
from dbtasks.database.migrations.file_store import Migration, MigrationFileStore
from dbtasks.database.migrations.lock import MigrationLock
from dbtasks.database.migrations.migration_runner import MigrationRunner
from dbtasks.database.migrations.version_manager import VersionManager
from dbtasks.error_handling import (
    DivergedLedgerError,
    IrreversibleMigrationError,
    LoadError,
    LockError,
    MigrationError,
)

V1 = "20150914201353"
V2 = "20150915010000"
V3 = "20150916120000"

CREATE_DOGS = """
from dbtasks.database.migrations.directives import create_table, column

directives = [
    create_table("dogs", [
        column("name", "string", null=False),
        column("breed", "string"),
    ], timestamps=True),
]
"""

ADD_OWNER = """
from dbtasks.database.migrations.directives import add_column, add_index

directives = [
    add_column("dogs", "owner", "string"),
    add_index("dogs", ["name"]),
]
"""

CREATE_OWNERS = """
from dbtasks.database.migrations.directives import create_table, column

directives = [
    create_table("owners", [column("name", "string")]),
]
"""

BROKEN = """
from dbtasks.database.migrations.directives import create_table, column, execute

directives = [
    create_table("cats", [column("name", "string")]),
    execute("INSERT INTO no_such_table (id) VALUES (1)"),
]
"""


class MigrationTestBase(unittest.TestCase):
    """Base class with an isolated SQLite database and migration directory"""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.migrations_path = Path(self.tmpdir) / "db" / "migrate"
        self.migrations_path.mkdir(parents=True)
        self.db_path = Path(self.tmpdir) / "test.sqlite3"

        self.config = DatabaseConfig(
            environment="test",
            database_url=f"sqlite:///{self.db_path}",
            root=self.tmpdir,
            load_env_file=False,
        )
        self.engine = self.config.create_engine()

    def tearDown(self):
        self.config.dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def write_migration(self, filename: str, body: str) -> Path:
        path = self.migrations_path / filename
        path.write_text(textwrap.dedent(body).lstrip(), encoding="utf-8")
        return path

    def table_names(self):
        return sorted(inspect(self.engine).get_table_names())

    def user_tables(self):
        return [t for t in self.table_names() if not t.startswith("schema_migrations")]

    def column_names(self, table):
        return [c["name"] for c in inspect(self.engine).get_columns(table)]

    def schema_snapshot(self):
        inspector = inspect(self.engine)
        return {
            table: sorted(c["name"] for c in inspector.get_columns(table))
            for table in inspector.get_table_names()
            if not table.startswith("schema_migrations")
        }


def make_migration(version, name="m", directives=None):
    return Migration(version, name, Path(f"{version}_{name}.py"), directives or [], "0" * 64)


class TestMigrationFileStore(MigrationTestBase):
    """File store loading and scaffolding"""

    def test_list_sorted_by_version(self):
        self.write_migration(f"{V2}_add_owner.py", ADD_OWNER)
        self.write_migration(f"{V1}_create_dogs.py", CREATE_DOGS)

        migrations = MigrationFileStore(self.migrations_path).list()

        self.assertEqual([m.version for m in migrations], [V1, V2])
        self.assertEqual(migrations[0].name, "create_dogs")
        self.assertEqual(len(migrations[1].directives), 2)
        self.assertEqual(len(migrations[0].checksum), 64)

    def test_missing_directory_is_empty(self):
        store = MigrationFileStore(Path(self.tmpdir) / "nowhere")
        self.assertEqual(store.list(), [])

    def test_duplicate_version_raises_load_error(self):
        self.write_migration(f"{V1}_create_dogs.py", CREATE_DOGS)
        self.write_migration(f"{V1}_create_cats.sql", "CREATE TABLE cats (id INTEGER);")

        with self.assertRaises(LoadError):
            MigrationFileStore(self.migrations_path).list()

    def test_malformed_file_name_raises_load_error(self):
        self.write_migration("1_create_dogs.py", CREATE_DOGS)

        with self.assertRaises(LoadError):
            MigrationFileStore(self.migrations_path).list()

    def test_non_migration_files_are_skipped(self):
        self.write_migration("__init__.py", "")
        self.write_migration("README.md", "notes")
        self.write_migration(f"{V1}_create_dogs.py", CREATE_DOGS)

        versions = MigrationFileStore(self.migrations_path).versions()
        self.assertEqual(versions, [V1])

    def test_module_without_directives_raises_load_error(self):
        self.write_migration(f"{V1}_empty.py", "x = 1\n")

        with self.assertRaises(LoadError):
            MigrationFileStore(self.migrations_path).list()

    def test_module_with_import_error_raises_load_error(self):
        self.write_migration(f"{V1}_broken.py", "import no_such_module_here\ndirectives = []\n")

        with self.assertRaises(LoadError):
            MigrationFileStore(self.migrations_path).list()

    def test_unknown_column_type_raises_load_error(self):
        self.write_migration(f"{V1}_bad_type.py", """
            from dbtasks.database.migrations.directives import create_table, column
            directives = [create_table("dogs", [column("name", "varchar2")])]
        """)

        with self.assertRaises(LoadError):
            MigrationFileStore(self.migrations_path).list()

    def test_sql_migration_headers(self):
        self.write_migration(f"{V1}_create_cats.sql", """
            -- Migration: create_cats
            -- Description: Create the cats table
            -- Rollback: DROP TABLE cats;

            CREATE TABLE cats (id INTEGER PRIMARY KEY, name VARCHAR(255));
        """)

        migration = MigrationFileStore(self.migrations_path).get(V1)

        self.assertEqual(migration.description, "Create the cats table")
        self.assertEqual(len(migration.directives), 1)
        self.assertIn("CREATE TABLE cats", migration.directives[0].sql)
        self.assertEqual(migration.directives[0].reverse_sql, "DROP TABLE cats;")
        self.assertTrue(migration.reversible)

    def test_create_scaffolds_loadable_migration(self):
        store = MigrationFileStore(self.migrations_path)
        now = datetime(2015, 9, 14, 20, 13, 53, tzinfo=timezone.utc)

        path = store.create("CreateDogs", now=now)

        self.assertEqual(path.name, f"{V1}_create_dogs.py")
        migration = store.get(V1)
        self.assertEqual(migration.directives, [])

    def test_create_sql_template_loads(self):
        store = MigrationFileStore(self.migrations_path)
        path = store.create("create_cats", fmt="sql")

        self.assertEqual(path.suffix, ".sql")
        self.assertEqual(len(store.list()), 1)

    def test_create_rejects_existing_name(self):
        store = MigrationFileStore(self.migrations_path)
        store.create("create_dogs")

        with self.assertRaises(LoadError):
            store.create("create_dogs")

    def test_create_rejects_invalid_name(self):
        with self.assertRaises(LoadError):
            MigrationFileStore(self.migrations_path).create("1234")

    def test_create_in_same_second_gets_next_version(self):
        store = MigrationFileStore(self.migrations_path)
        now = datetime(2015, 9, 14, 20, 13, 53, tzinfo=timezone.utc)

        first = store.create("create_dogs", now=now)
        second = store.create("create_cats", now=now)

        self.assertTrue(first.name.startswith(V1))
        self.assertTrue(second.name.startswith("20150914201354"))


class TestVersionManager(MigrationTestBase):
    """Ledger bookkeeping"""

    def test_empty_ledger(self):
        ledger = VersionManager(self.engine)

        self.assertIsNone(ledger.current_version())
        self.assertEqual(ledger.applied_versions(), [])
        self.assertIn("schema_migrations", self.table_names())

    def test_record_and_erase(self):
        ledger = VersionManager(self.engine)

        with self.engine.begin() as conn:
            ledger.record(conn, make_migration(V1, "create_dogs"), 12)
            ledger.record(conn, make_migration(V2, "add_owner"), 3)

        self.assertEqual(ledger.current_version(), V2)
        self.assertEqual(ledger.applied_versions(), [V1, V2])
        self.assertTrue(ledger.is_applied(V1))
        entry = ledger.applied_entries()[0]
        self.assertEqual(entry["name"], "create_dogs")
        self.assertEqual(entry["execution_time_ms"], 12)
        self.assertIsNotNone(entry["applied_at"])

        with self.engine.begin() as conn:
            ledger.erase(conn, V2)

        self.assertEqual(ledger.applied_versions(), [V1])

    def test_record_rolls_back_with_transaction(self):
        ledger = VersionManager(self.engine)

        with self.assertRaises(RuntimeError):
            with self.engine.begin() as conn:
                ledger.record(conn, make_migration(V1), 1)
                raise RuntimeError("boom")

        self.assertEqual(ledger.applied_versions(), [])

    def test_verify_checksums(self):
        ledger = VersionManager(self.engine)
        migration = make_migration(V1)
        with self.engine.begin() as conn:
            ledger.record(conn, migration, 1)

        self.assertEqual(ledger.verify_checksums([migration]), [])

        migration.checksum = "f" * 64
        self.assertEqual(ledger.verify_checksums([migration]), [V1])


class TestDirectivesAndExecutor(MigrationTestBase):
    """Directive application, inverses and transactional execution"""

    def setUp(self):
        super().setUp()
        self.ledger = VersionManager(self.engine)
        self.executor = MigrationExecutor(self.engine, self.ledger)

    def test_create_table_adds_id_and_timestamps(self):
        migration = make_migration(V1, "create_dogs", [
            create_table("dogs", [column("name", "string")], timestamps=True),
        ])

        self.executor.apply(migration)

        self.assertEqual(
            self.column_names("dogs"), ["id", "name", "created_at", "updated_at"]
        )
        self.assertEqual(self.ledger.applied_versions(), [V1])

    def test_apply_then_revert_restores_schema(self):
        with self.engine.begin() as conn:
            conn.execute(text("CREATE TABLE kennels (id INTEGER PRIMARY KEY, city VARCHAR(50))"))
        before = self.schema_snapshot()

        migration = make_migration(V1, "many_changes", [
            create_table("dogs", [column("name", "string"), column("breed", "string")]),
            add_column("dogs", "age", "integer", default=0),
            add_index("dogs", ["breed"]),
            rename_column("kennels", "city", "town"),
            rename_table("kennels", "shelters"),
            execute("CREATE VIEW dog_names AS SELECT name FROM dogs",
                    "DROP VIEW dog_names"),
        ])

        self.executor.apply(migration)
        self.assertIn("shelters", self.user_tables())
        self.assertIn("age", self.column_names("dogs"))
        self.assertIn("town", self.column_names("shelters"))

        self.executor.revert(migration)

        self.assertEqual(self.schema_snapshot(), before)
        self.assertEqual(self.ledger.applied_versions(), [])

    def test_failed_directive_rolls_back_schema_and_ledger(self):
        migration = make_migration(V1, "broken", [
            create_table("cats", [column("name", "string")]),
            execute("INSERT INTO no_such_table (id) VALUES (1)"),
        ])

        with self.assertRaises(MigrationError) as ctx:
            self.executor.apply(migration)

        self.assertEqual(ctx.exception.version, V1)
        self.assertIsNotNone(ctx.exception.cause)
        self.assertEqual(ctx.exception.timestamp.tzinfo, timezone.utc)
        self.assertNotIn("cats", self.table_names())
        self.assertEqual(self.ledger.applied_versions(), [])

    def test_irreversible_revert_touches_nothing(self):
        with self.engine.begin() as conn:
            conn.execute(text("CREATE TABLE legacy (id INTEGER PRIMARY KEY)"))
        migration = make_migration(V1, "cleanup", [
            create_table("dogs", [column("name", "string")]),
            drop_table("legacy"),
        ])
        self.executor.apply(migration)

        with self.assertRaises(IrreversibleMigrationError):
            self.executor.revert(migration)

        self.assertIn("dogs", self.table_names())
        self.assertEqual(self.ledger.applied_versions(), [V1])

    def test_split_statements_keeps_quoted_semicolons(self):
        script = """
            INSERT INTO notes (body) VALUES ('a;b');  -- trailing; comment
            /* block; comment */
            INSERT INTO notes (body) VALUES ('it''s; fine');
        """

        statements = split_statements(script)

        self.assertEqual(statements, [
            "INSERT INTO notes (body) VALUES ('a;b')",
            "INSERT INTO notes (body) VALUES ('it''s; fine')",
        ])

    def test_execute_with_semicolon_in_literal(self):
        migration = make_migration(V1, "notes", [
            create_table("notes", [column("body", "string")]),
            execute("INSERT INTO notes (body) VALUES ('a;b'); "
                    "INSERT INTO notes (body) VALUES ('c')"),
        ])

        self.executor.apply(migration)

        with self.engine.connect() as conn:
            bodies = conn.execute(text("SELECT body FROM notes ORDER BY body")).scalars().all()
        self.assertEqual(bodies, ["a;b", "c"])

    def test_drop_table_with_columns_is_reversible(self):
        directive = drop_table("dogs", [column("name", "string")])
        self.assertEqual(directive.inverse().describe(), "create_table(dogs)")
        self.assertIsNone(execute("DELETE FROM dogs").inverse())


class TestMigrationPlanner(unittest.TestCase):
    """Planning is pure and does not need a database"""

    def setUp(self):
        self.store = [make_migration(V1), make_migration(V2), make_migration(V3)]

    def test_forward_plan_after_current_version(self):
        migrations = [make_migration(V1), make_migration(V2)]

        plan = planner.plan_forward([V1], migrations)

        self.assertEqual(plan.versions, [V2])
        self.assertEqual(plan.direction, "up")

    def test_forward_plan_is_sorted_difference(self):
        shuffled = [self.store[2], self.store[0], self.store[1]]

        self.assertEqual(planner.plan_forward([], shuffled).versions, [V1, V2, V3])
        self.assertEqual(planner.plan_forward([V1, V2], shuffled).versions, [V3])
        self.assertTrue(planner.plan_forward([V1, V2, V3], shuffled).is_empty)

    def test_forward_plan_respects_target(self):
        plan = planner.plan_forward([], self.store, target_version=V2)
        self.assertEqual(plan.versions, [V1, V2])

    def test_forward_plan_ignores_older_unapplied(self):
        plan = planner.plan_forward([V2], self.store)
        self.assertEqual(plan.versions, [V3])

        snapshot = planner.status([V2], self.store)
        self.assertEqual(snapshot.skipped, [V1])
        self.assertEqual(snapshot.pending, [V3])

    def test_rollback_steps(self):
        applied = [V1, V2]

        one = planner.plan_rollback(applied, self.store, steps=1)
        self.assertEqual(one.versions, [V2])
        self.assertEqual(one.target_version, V1)

        many = planner.plan_rollback(applied, self.store, steps=5)
        self.assertEqual(many.versions, [V2, V1])
        self.assertIsNone(many.target_version)

    def test_rollback_to_target_version(self):
        plan = planner.plan_rollback([V1, V2, V3], self.store, steps=None, target_version=V1)
        self.assertEqual(plan.versions, [V3, V2])

    def test_rollback_rejects_bad_steps(self):
        with self.assertRaises(ValueError):
            planner.plan_rollback([V1], self.store, steps=0)

    def test_malformed_target_version_is_rejected(self):
        for bad in ("9", "2015091420135", "201509142013530", "latest"):
            with self.assertRaises(ValueError):
                planner.plan_forward([], self.store, target_version=bad)
            with self.assertRaises(ValueError):
                planner.plan_rollback([V1], self.store, steps=None, target_version=bad)

        self.assertEqual(planner.validate_version(V2), V2)

    def test_status_states(self):
        self.assertEqual(planner.status([], self.store).state, planner.PENDING)
        self.assertEqual(planner.status([V1, V2, V3], self.store).state, planner.UP_TO_DATE)
        self.assertEqual(planner.status([], []).state, planner.UP_TO_DATE)

        diverged = planner.status([V1, "20990101000000"], self.store)
        self.assertEqual(diverged.state, planner.DIVERGED)
        self.assertEqual(diverged.unknown, ["20990101000000"])

    def test_diverged_ledger_blocks_planning(self):
        applied = [V1, "20990101000000"]

        with self.assertRaises(DivergedLedgerError) as ctx:
            planner.plan_forward(applied, self.store)
        self.assertEqual(ctx.exception.versions, ["20990101000000"])

        with self.assertRaises(DivergedLedgerError):
            planner.plan_rollback(applied, self.store, steps=1)


class TestMigrationRunner(MigrationTestBase):
    """Batch execution against a real SQLite database"""

    def runner(self):
        return MigrationRunner(self.engine, self.migrations_path)

    def test_migrate_applies_pending_in_order(self):
        self.write_migration(f"{V2}_add_owner.py", ADD_OWNER)
        self.write_migration(f"{V1}_create_dogs.py", CREATE_DOGS)

        result = self.runner().run_migrations()

        self.assertTrue(result["success"], result["message"])
        self.assertEqual([m["version"] for m in result["migrations"]], [V1, V2])
        self.assertEqual({m["status"] for m in result["migrations"]}, {"applied"})
        self.assertEqual(result["current_version"], V2)
        self.assertIn("owner", self.column_names("dogs"))

    def test_rerun_with_nothing_pending_is_noop(self):
        self.write_migration(f"{V1}_create_dogs.py", CREATE_DOGS)
        runner = self.runner()
        runner.run_migrations()

        result = runner.run_migrations()

        self.assertTrue(result["success"])
        self.assertEqual(result["migrations"], [])
        self.assertEqual(result["current_version"], V1)

    def test_migrate_only_new_version(self):
        self.write_migration(f"{V1}_create_dogs.py", CREATE_DOGS)
        runner = self.runner()
        runner.run_migrations()
        self.write_migration(f"{V2}_create_owners.py", CREATE_OWNERS)

        result = runner.run_migrations()

        self.assertEqual([m["version"] for m in result["migrations"]], [V2])

    def test_rollback_one_step_reverts_newest_once(self):
        self.write_migration(f"{V1}_create_dogs.py", CREATE_DOGS)
        self.write_migration(f"{V2}_create_owners.py", CREATE_OWNERS)
        runner = self.runner()
        runner.run_migrations()

        with mock.patch.object(runner.executor, "revert", wraps=runner.executor.revert) as revert:
            result = runner.rollback(steps=1)

        self.assertTrue(result["success"])
        revert.assert_called_once()
        self.assertEqual(revert.call_args[0][0].version, V2)
        self.assertEqual(runner.version_manager.applied_versions(), [V1])
        self.assertNotIn("owners", self.table_names())
        self.assertIn("dogs", self.table_names())

    def test_rollback_with_nothing_applied(self):
        result = self.runner().rollback(steps=1)

        self.assertTrue(result["success"])
        self.assertEqual(result["migrations"], [])

    def test_failure_halts_batch_and_keeps_earlier_commits(self):
        self.write_migration(f"{V1}_create_dogs.py", CREATE_DOGS)
        self.write_migration(f"{V2}_broken.py", BROKEN)
        self.write_migration(f"{V3}_create_owners.py", CREATE_OWNERS)
        runner = self.runner()

        result = runner.run_migrations()

        self.assertFalse(result["success"])
        self.assertEqual(result["failed_migration"]["version"], V2)
        self.assertEqual([m["status"] for m in result["migrations"]], ["applied", "failed"])
        self.assertEqual(runner.version_manager.applied_versions(), [V1])
        self.assertEqual(self.user_tables(), ["dogs"])
        # Lock is released even though the batch failed
        self.assertIsNone(MigrationLock(self.engine).current_holder())

    def test_diverged_ledger_refuses_to_run(self):
        self.write_migration(f"{V1}_create_dogs.py", CREATE_DOGS)
        owners = self.write_migration(f"{V2}_create_owners.py", CREATE_OWNERS)
        runner = self.runner()
        runner.run_migrations()
        owners.unlink()
        self.write_migration(f"{V3}_add_owner.py", ADD_OWNER)
        before = self.schema_snapshot()

        status = runner.get_migration_status()
        self.assertEqual(status["state"], "Diverged")
        self.assertEqual(status["unknown"], [V2])
        self.assertTrue(any(row.get("missing_file") for row in status["migrations"]))

        with self.assertRaises(DivergedLedgerError):
            runner.run_migrations()
        with self.assertRaises(DivergedLedgerError):
            runner.rollback(steps=1)

        self.assertEqual(self.schema_snapshot(), before)
        self.assertEqual(runner.version_manager.applied_versions(), [V1, V2])

    def test_lock_contention_raises(self):
        self.write_migration(f"{V1}_create_dogs.py", CREATE_DOGS)
        runner = self.runner()

        with MigrationLock(self.engine, holder="other-host:1"):
            with self.assertRaises(LockError):
                runner.run_migrations()
            self.assertEqual(runner.version_manager.applied_versions(), [])

        self.assertTrue(runner.run_migrations()["success"])

    def test_force_release_clears_stale_lock(self):
        stale = MigrationLock(self.engine, holder="dead-host:42")
        stale.acquire()

        previous = MigrationLock(self.engine).force_release()

        self.assertEqual(previous, "dead-host:42")
        self.assertIsNone(MigrationLock(self.engine).current_holder())

    def test_redo_reapplies_newest(self):
        self.write_migration(f"{V1}_create_dogs.py", CREATE_DOGS)
        self.write_migration(f"{V2}_create_owners.py", CREATE_OWNERS)
        runner = self.runner()
        runner.run_migrations()

        result = runner.redo(steps=1)

        self.assertTrue(result["success"])
        self.assertEqual([m["version"] for m in result["rollback"]["migrations"]], [V2])
        self.assertEqual([m["version"] for m in result["migrate"]["migrations"]], [V2])
        self.assertEqual(runner.version_manager.applied_versions(), [V1, V2])

    def test_status_reports_pending_and_modified_files(self):
        dogs = self.write_migration(f"{V1}_create_dogs.py", CREATE_DOGS)
        runner = self.runner()
        runner.run_migrations()
        self.write_migration(f"{V2}_create_owners.py", CREATE_OWNERS)
        dogs.write_text(dogs.read_text() + "\n# edited\n")

        status = runner.get_migration_status()

        self.assertEqual(status["state"], "Pending")
        self.assertEqual(status["pending"], [V2])
        self.assertEqual(status["checksum_mismatches"], [V1])
        self.assertEqual(
            [(row["version"], row["status"]) for row in status["migrations"]],
            [(V1, "up"), (V2, "down")],
        )


if __name__ == "__main__":
    unittest.main()
