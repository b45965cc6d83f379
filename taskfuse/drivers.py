"""
DuckDB database driver.

Column types are declared with PostgreSQL names (see taskfuse.dbtypes) and
translated to DuckDB types here. Reads of the catalog translate back to the
same canonical names, so the Loader can compare types across runs.

The driver keeps one connection and opens a cursor per operation, which
is how DuckDB supports use from several threads.
"""

import datetime
import decimal
import json
import re
import threading
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

import duckdb
import structlog

from taskfuse.inference import ColumnSpec, TableSchema
from taskfuse.loader import ColumnChange, LoadResult

log = structlog.get_logger()

METADATA_TABLE = "_taskfuse_loads"

# Canonical (PostgreSQL-style) name -> DuckDB type
DUCKDB_TYPES = {
    "text": "VARCHAR",
    "smallint": "SMALLINT",
    "integer": "INTEGER",
    "bigint": "BIGINT",
    "smallserial": "SMALLINT",
    "serial": "INTEGER",
    "bigserial": "BIGINT",
    "real": "REAL",
    "double precision": "DOUBLE",
    "numeric": "DECIMAL(38, 9)",
    "decimal": "DECIMAL(38, 9)",
    "money": "DECIMAL(19, 4)",
    "boolean": "BOOLEAN",
    "date": "DATE",
    "timestamp": "TIMESTAMP",
    "timestamp with time zone": "TIMESTAMPTZ",
    "time": "TIME",
    "interval": "INTERVAL",
    "uuid": "UUID",
    "json": "JSON",
    "jsonb": "JSON",
    "bytea": "BLOB",
}

# DuckDB catalog type -> canonical name
CANONICAL_TYPES = {
    "VARCHAR": "text",
    "TINYINT": "smallint",
    "SMALLINT": "smallint",
    "INTEGER": "integer",
    "BIGINT": "bigint",
    "HUGEINT": "numeric",
    "REAL": "real",
    "FLOAT": "real",
    "DOUBLE": "double precision",
    "BOOLEAN": "boolean",
    "DATE": "date",
    "TIMESTAMP": "timestamp",
    "TIMESTAMP WITH TIME ZONE": "timestamp with time zone",
    "TIMESTAMPTZ": "timestamp with time zone",
    "TIME": "time",
    "INTERVAL": "interval",
    "UUID": "uuid",
    "JSON": "jsonb",
    "BLOB": "bytea",
}

_SIZED = re.compile(r"^(char|varchar|character varying|character|numeric|decimal)\s*\((.*)\)$")

_INTEGERS = {"smallint", "integer", "bigint"}
_FLOATS = {"real", "double precision"}


def quote(identifier: str) -> str:
    """Quote an SQL identifier."""
    return '"' + identifier.replace('"', '""') + '"'


def duckdb_type(sql_type: str) -> str:
    """Translate a canonical type name to DuckDB. Unknown types are stored as text."""
    name = sql_type.lower().strip()
    sized = _SIZED.match(name)
    if sized:
        base, args = sized.groups()
        if base in ("numeric", "decimal"):
            return f"DECIMAL({args})"
        return "VARCHAR"
    return DUCKDB_TYPES.get(name, "VARCHAR")


def canonical_type(catalog_type: str) -> str:
    """Translate a DuckDB catalog type back to its canonical name."""
    name = catalog_type.upper().strip()
    if name.startswith(("DECIMAL", "NUMERIC")):
        return "numeric"
    if name.startswith("VARCHAR"):
        return "text"
    return CANONICAL_TYPES.get(name, name.lower())


def coerce(value: Any, sql_type: str) -> Any:
    """Convert a Python value so DuckDB stores it in a column of sql_type."""
    if value is None:
        return None

    if sql_type == "text":
        if isinstance(value, str):
            return value
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (dict, list, tuple)):
            return json.dumps(value, default=str)
        if isinstance(value, (datetime.date, datetime.datetime)):
            return value.isoformat()
        if isinstance(value, (bytes, bytearray, memoryview)):
            return bytes(value).hex()
        return str(value)

    if sql_type == "jsonb":
        return value if isinstance(value, str) else json.dumps(value, default=str)

    if sql_type in _INTEGERS and isinstance(value, int):
        return int(value)

    if sql_type in _FLOATS and isinstance(value, (int, float, decimal.Decimal)):
        return float(value)

    if sql_type == "numeric" and isinstance(value, float):
        return decimal.Decimal(repr(value))

    if sql_type == "timestamp with time zone" and isinstance(value, datetime.date):
        if not isinstance(value, datetime.datetime):
            value = datetime.datetime.combine(value, datetime.time.min)
        # Naive timestamps are taken as UTC
        if value.tzinfo is None:
            value = value.replace(tzinfo=datetime.timezone.utc)
        return value

    if sql_type == "bytea" and isinstance(value, (bytearray, memoryview)):
        return bytes(value)

    return value


class DuckDBDriver:
    """
    DuckDB implementation of the DatabaseDriver protocol.

    Tables with a generated identity get an "id BIGINT" column whose values
    the driver assigns on write (see _assign_ids). Keys are enforced by the
    write modes; tables carry no PRIMARY KEY constraint since DuckDB cannot
    ALTER indexed tables.
    """

    def __init__(self, db_path: str = ":memory:"):
        """
        Open the DuckDB database.

        Args:
            db_path: Path to the DuckDB database file, or ":memory:"
        """
        self.db_path = db_path
        self.conn = duckdb.connect(db_path)
        self._lock = threading.Lock()
        self._ensure_metadata_table()

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        with self._lock:
            return self.conn.cursor()

    @contextmanager
    def _transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Cursor inside BEGIN .. COMMIT, rolled back if the body raises."""
        cur = self._cursor()
        try:
            cur.begin()
            try:
                yield cur
            except Exception:
                cur.rollback()
                raise
            cur.commit()
        finally:
            cur.close()

    def _ensure_metadata_table(self) -> None:
        """Create the load metadata table if it doesn't exist."""
        self.conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {METADATA_TABLE} (
                load_id VARCHAR PRIMARY KEY,
                script VARCHAR,
                table_name VARCHAR NOT NULL,
                row_count BIGINT NOT NULL,
                write_mode VARCHAR NOT NULL,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ NOT NULL
            )
        """)

    def storage_type(self, sql_type: str) -> str:
        return canonical_type(duckdb_type(sql_type))

    def get_columns(self, table: str) -> list[ColumnSpec] | None:
        """
        Get the columns of an existing table.

        Returns:
            Columns with canonical types, or None if the table doesn't exist.
        """
        cur = self._cursor()
        try:
            rows = cur.execute(
                """
                SELECT column_name, data_type, is_nullable
                FROM information_schema.columns
                WHERE table_catalog = current_database()
                  AND table_schema = current_schema()
                  AND lower(table_name) = lower(?)
                ORDER BY ordinal_position
                """,
                [table],
            ).fetchall()
        finally:
            cur.close()

        if not rows:
            return None
        return [
            ColumnSpec(name=name, sql_type=canonical_type(data_type), nullable=(is_nullable == "YES"))
            for name, data_type, is_nullable in rows
        ]

    def create_table(self, table: str, schema: TableSchema) -> None:
        """Create a table. A generated identity is a plain BIGINT NOT NULL column."""
        definitions = []
        if schema.identity_generated:
            definitions.append(f"{quote(schema.identity.name)} BIGINT NOT NULL")

        for col in schema.columns:
            definition = f"{quote(col.name)} {duckdb_type(col.sql_type)}"
            if not col.nullable:
                definition += " NOT NULL"
            definitions.append(definition)

        statement = f"CREATE TABLE IF NOT EXISTS {quote(table)} ({', '.join(definitions)})"
        with self._transaction() as cur:
            cur.execute(statement)
        log.debug("duckdb_table_created", table=table, statement=statement)

    def _assign_ids(
        self,
        cur: duckdb.DuckDBPyConnection,
        table: str,
        schema: TableSchema,
        key_values: list[list[Any]],
    ) -> list[int]:
        """
        Generated ids for the rows about to be written.

        replace numbers rows 1..n by position, so reloading the same rows
        yields the same ids. Natural key upserts keep the id of a matching
        row and give new keys ids above the current maximum.
        """
        if schema.write_mode == "replace":
            return list(range(1, len(key_values) + 1))

        identity = quote(schema.identity.name)
        condition = " AND ".join(f"{quote(k)} IS NOT DISTINCT FROM ?" for k in schema.natural_key)
        next_id = cur.execute(f"SELECT coalesce(max({identity}), 0) FROM {quote(table)}").fetchone()[0]

        ids = []
        for params in key_values:
            found = cur.execute(
                f"SELECT min({identity}) FROM {quote(table)} WHERE {condition}", params
            ).fetchone()[0]
            if found is None:
                next_id += 1
                found = next_id
            ids.append(found)
        return ids

    def alter_table(self, table: str, changes: Sequence[ColumnChange]) -> None:
        """Apply additive schema changes in one transaction."""
        statements = []
        for change in changes:
            column = quote(change.column)
            if change.action == "add":
                statements.append(
                    f"ALTER TABLE {quote(table)} ADD COLUMN {column} {duckdb_type(change.sql_type)}"
                )
            elif change.action == "set_type":
                statements.append(
                    f"ALTER TABLE {quote(table)} ALTER COLUMN {column} TYPE {duckdb_type(change.sql_type)}"
                )
            elif change.action == "drop_not_null":
                statements.append(f"ALTER TABLE {quote(table)} ALTER COLUMN {column} DROP NOT NULL")
            else:
                raise ValueError(f"Unknown column change: {change.action}")

        with self._transaction() as cur:
            for statement in statements:
                cur.execute(statement)
        log.debug("duckdb_table_altered", table=table, statements=statements)

    def upsert_rows(
        self,
        table: str,
        schema: TableSchema,
        columns: Sequence[ColumnSpec],
        rows: Sequence[dict[str, Any]],
    ) -> int:
        """
        Write rows in a single transaction.

        replace:             delete every row, then insert
        upsert_identity:     delete rows with the supplied ids, then insert
        upsert_natural_key:  delete rows matching the natural key, then insert
        """
        mode = schema.write_mode
        if not rows and mode != "replace":
            return 0

        target = quote(table)
        names = [c.name for c in columns]
        values = [[coerce(row.get(c.name), c.sql_type) for c in columns] for row in rows]
        positions = [names.index(k) for k in schema.key]
        key_values = [[v[i] for i in positions] for v in values]

        with self._transaction() as cur:
            if schema.identity_generated:
                ids = self._assign_ids(cur, table, schema, key_values)
                names = [schema.identity.name, *names]
                values = [[row_id, *v] for row_id, v in zip(ids, values)]

            if mode == "replace":
                cur.execute(f"DELETE FROM {target}")
            else:
                condition = " AND ".join(f"{quote(k)} IS NOT DISTINCT FROM ?" for k in schema.key)
                cur.executemany(f"DELETE FROM {target} WHERE {condition}", key_values)

            if values:
                placeholders = ", ".join("?" for _ in names)
                cur.executemany(
                    f"INSERT INTO {target} ({', '.join(quote(n) for n in names)}) VALUES ({placeholders})",
                    values,
                )

        return len(values)

    def record_load(self, result: LoadResult) -> None:
        """Record load metadata to the tracking table."""
        cur = self._cursor()
        try:
            cur.execute(
                f"""
                INSERT INTO {METADATA_TABLE}
                    (load_id, script, table_name, row_count, write_mode, started_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    result.load_id,
                    result.script,
                    result.table,
                    result.row_count,
                    result.write_mode,
                    result.started_at,
                    result.completed_at,
                ],
            )
        finally:
            cur.close()

    def close(self) -> None:
        self.conn.close()
