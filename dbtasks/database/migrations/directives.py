"""
Schema Directives

Declarative schema changes used to write migrations. Each directive knows
how to apply itself to a connection and which directive undoes it, so a
migration only lists its forward changes and the runner derives the revert
sequence. Directives whose inverse cannot be derived (dropping a table
without its column list, raw SQL without reverse SQL) return ``None`` from
``inverse()``.

Example migration file (``db/migrate/20150914201353_create_dogs.py``)::

    from dbtasks.database.migrations.directives import create_table, column

    directives = [
        create_table("dogs", [
            column("name", "string"),
            column("breed", "string"),
        ], timestamps=True),
    ]
"""

import re
from typing import List, Optional, Sequence, Union

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    JSON,
    LargeBinary,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    Time,
    func,
    text,
)
from sqlalchemy.engine import Connection
from sqlalchemy.schema import CreateColumn

from ...error_handling import LoadError

COLUMN_TYPES = {
    "string": lambda limit: String(limit or 255),
    "text": lambda limit: Text(),
    "integer": lambda limit: Integer(),
    "bigint": lambda limit: BigInteger(),
    "float": lambda limit: Float(),
    "decimal": lambda limit: Numeric(limit or 10, 2),
    "boolean": lambda limit: Boolean(),
    "date": lambda limit: Date(),
    "datetime": lambda limit: DateTime(),
    "timestamp": lambda limit: DateTime(),
    "time": lambda limit: Time(),
    "binary": lambda limit: LargeBinary(limit),
    "json": lambda limit: JSON(),
}


class ColumnSpec:
    """Column definition that can be rebuilt any number of times"""

    def __init__(self, name: str, type_name: str, null: bool = True, default=None,
                 primary_key: bool = False, limit: Optional[int] = None,
                 unique: bool = False):
        if type_name not in COLUMN_TYPES:
            known = ", ".join(sorted(COLUMN_TYPES))
            raise LoadError(f"Unknown column type '{type_name}' for '{name}' (known: {known})")
        self.name = name
        self.type_name = type_name
        self.null = null
        self.default = default
        self.primary_key = primary_key
        self.limit = limit
        self.unique = unique

    def to_column(self) -> Column:
        server_default = None
        if self.default is not None:
            if isinstance(self.default, bool):
                server_default = "1" if self.default else "0"
            else:
                server_default = str(self.default)

        return Column(
            self.name,
            COLUMN_TYPES[self.type_name](self.limit),
            nullable=self.null and not self.primary_key,
            primary_key=self.primary_key,
            unique=self.unique,
            server_default=server_default,
        )

    def __repr__(self):
        return f"column({self.name!r}, {self.type_name!r})"


def column(name: str, type_name: str, **options) -> ColumnSpec:
    """Declare a column: ``column("name", "string", null=False, limit=100)``"""
    return ColumnSpec(name, type_name, **options)


# Quoted strings and comments are matched whole so their semicolons never split
SQL_TOKEN_PATTERN = re.compile(
    r"'(?:[^']|'')*'"
    r'|"(?:[^"]|"")*"'
    r"|--[^\n]*"
    r"|/\*.*?\*/"
    r"|;"
    r"|[^'\";/-]+"
    r"|.",
    re.DOTALL,
)


def split_statements(sql: str) -> List[str]:
    """Split a SQL script on semicolons outside string literals and comments"""
    statements = []
    current = []
    for token in SQL_TOKEN_PATTERN.findall(sql):
        if token == ';':
            statements.append(''.join(current))
            current = []
        elif not token.startswith(('--', '/*')):
            current.append(token)
    statements.append(''.join(current))
    return [s.strip() for s in statements if s.strip()]


def _quote(conn: Connection, identifier: str) -> str:
    return conn.dialect.identifier_preparer.quote(identifier)


def _table_columns(columns: Sequence[ColumnSpec], id: bool, timestamps: bool) -> List[Column]:
    result = []
    if id:
        result.append(Column("id", Integer, primary_key=True, autoincrement=True))
    result.extend(spec.to_column() for spec in columns)
    if timestamps:
        for name in ("created_at", "updated_at"):
            result.append(
                Column(name, DateTime, nullable=False,
                       server_default=func.current_timestamp())
            )
    return result


def _index_name(table: str, columns: Sequence[str]) -> str:
    return f"index_{table}_on_{'_and_'.join(columns)}"


class Directive:
    """A single schema change"""

    def apply(self, conn: Connection):
        raise NotImplementedError

    def inverse(self) -> Optional["Directive"]:
        """Directive that undoes this one, or None when irreversible"""
        return None

    def describe(self) -> str:
        return type(self).__name__


class CreateTable(Directive):

    def __init__(self, name: str, columns: Sequence[ColumnSpec], id: bool = True,
                 timestamps: bool = False):
        self.name = name
        self.columns = list(columns)
        self.id = id
        self.timestamps = timestamps

    def apply(self, conn):
        table = Table(self.name, MetaData(),
                      *_table_columns(self.columns, self.id, self.timestamps))
        table.create(conn)

    def inverse(self):
        return DropTable(self.name, self.columns, id=self.id, timestamps=self.timestamps)

    def describe(self):
        return f"create_table({self.name})"


class DropTable(Directive):

    def __init__(self, name: str, columns: Optional[Sequence[ColumnSpec]] = None,
                 id: bool = True, timestamps: bool = False):
        self.name = name
        self.columns = list(columns) if columns is not None else None
        self.id = id
        self.timestamps = timestamps

    def apply(self, conn):
        Table(self.name, MetaData()).drop(conn)

    def inverse(self):
        if self.columns is None:
            return None
        return CreateTable(self.name, self.columns, id=self.id, timestamps=self.timestamps)

    def describe(self):
        return f"drop_table({self.name})"


class AddColumn(Directive):

    def __init__(self, table: str, spec: ColumnSpec):
        self.table = table
        self.spec = spec

    def apply(self, conn):
        col = self.spec.to_column()
        # CreateColumn needs the column bound to a table for some dialects
        Table(self.table, MetaData(), col)
        definition = CreateColumn(col).compile(dialect=conn.dialect)
        conn.execute(text(
            f"ALTER TABLE {_quote(conn, self.table)} ADD COLUMN {definition}"
        ))

    def inverse(self):
        return RemoveColumn(self.table, self.spec)

    def describe(self):
        return f"add_column({self.table}, {self.spec.name})"


class RemoveColumn(Directive):

    def __init__(self, table: str, column: Union[str, ColumnSpec]):
        self.table = table
        if isinstance(column, ColumnSpec):
            self.name = column.name
            self.spec = column
        else:
            self.name = column
            self.spec = None

    def apply(self, conn):
        conn.execute(text(
            f"ALTER TABLE {_quote(conn, self.table)} DROP COLUMN {_quote(conn, self.name)}"
        ))

    def inverse(self):
        if self.spec is None:
            return None
        return AddColumn(self.table, self.spec)

    def describe(self):
        return f"remove_column({self.table}, {self.name})"


class RenameTable(Directive):

    def __init__(self, old_name: str, new_name: str):
        self.old_name = old_name
        self.new_name = new_name

    def apply(self, conn):
        conn.execute(text(
            f"ALTER TABLE {_quote(conn, self.old_name)} RENAME TO {_quote(conn, self.new_name)}"
        ))

    def inverse(self):
        return RenameTable(self.new_name, self.old_name)

    def describe(self):
        return f"rename_table({self.old_name}, {self.new_name})"


class RenameColumn(Directive):

    def __init__(self, table: str, old_name: str, new_name: str):
        self.table = table
        self.old_name = old_name
        self.new_name = new_name

    def apply(self, conn):
        conn.execute(text(
            f"ALTER TABLE {_quote(conn, self.table)} "
            f"RENAME COLUMN {_quote(conn, self.old_name)} TO {_quote(conn, self.new_name)}"
        ))

    def inverse(self):
        return RenameColumn(self.table, self.new_name, self.old_name)

    def describe(self):
        return f"rename_column({self.table}, {self.old_name}, {self.new_name})"


class AddIndex(Directive):

    def __init__(self, table: str, columns: Sequence[str], name: Optional[str] = None,
                 unique: bool = False):
        self.table = table
        self.columns = [columns] if isinstance(columns, str) else list(columns)
        self.name = name or _index_name(table, self.columns)
        self.unique = unique

    def _index(self) -> Index:
        table = Table(self.table, MetaData(), *[Column(c) for c in self.columns])
        return Index(self.name, *[table.c[c] for c in self.columns], unique=self.unique)

    def apply(self, conn):
        self._index().create(conn)

    def inverse(self):
        return RemoveIndex(self.table, self.columns, name=self.name, unique=self.unique)

    def describe(self):
        return f"add_index({self.table}, {self.name})"


class RemoveIndex(AddIndex):

    def apply(self, conn):
        self._index().drop(conn)

    def inverse(self):
        return AddIndex(self.table, self.columns, name=self.name, unique=self.unique)

    def describe(self):
        return f"remove_index({self.table}, {self.name})"


class Execute(Directive):
    """Raw SQL, reversible only when ``reverse_sql`` is given"""

    def __init__(self, sql: str, reverse_sql: Optional[str] = None):
        self.sql = sql
        self.reverse_sql = reverse_sql

    def apply(self, conn):
        # One statement per execute for better error reporting
        for statement in split_statements(self.sql):
            conn.execute(text(statement))

    def inverse(self):
        if not self.reverse_sql:
            return None
        return Execute(self.reverse_sql, self.sql)

    def describe(self):
        first_line = self.sql.strip().splitlines()[0] if self.sql.strip() else ""
        return f"execute({first_line[:60]})"


# ActiveRecord-flavoured constructors used in migration files
def create_table(name, columns, id=True, timestamps=False):
    return CreateTable(name, columns, id=id, timestamps=timestamps)


def drop_table(name, columns=None, id=True, timestamps=False):
    return DropTable(name, columns, id=id, timestamps=timestamps)


def add_column(table, name_or_spec, type_name=None, **options):
    spec = name_or_spec
    if not isinstance(spec, ColumnSpec):
        spec = column(name_or_spec, type_name, **options)
    return AddColumn(table, spec)


def remove_column(table, name_or_spec, type_name=None, **options):
    spec = name_or_spec
    if type_name is not None:
        spec = column(name_or_spec, type_name, **options)
    return RemoveColumn(table, spec)


def rename_table(old_name, new_name):
    return RenameTable(old_name, new_name)


def rename_column(table, old_name, new_name):
    return RenameColumn(table, old_name, new_name)


def add_index(table, columns, name=None, unique=False):
    return AddIndex(table, columns, name=name, unique=unique)


def remove_index(table, columns, name=None, unique=False):
    return RemoveIndex(table, columns, name=name, unique=unique)


def execute(sql, reverse_sql=None):
    return Execute(sql, reverse_sql)
