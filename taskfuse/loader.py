"""
Table loading with schema reconciliation.

The Loader owns the policy (create, reconcile, dedupe, lock, record) and
delegates SQL to a DatabaseDriver. Any backend implementing the driver
protocol can be plugged in; DuckDBDriver in taskfuse.drivers is the
built-in one.

Reconciliation only ever grows a table:
- Missing columns are added (always nullable, existing rows get NULL)
- A column is widened when new data needs a wider type
- NOT NULL is dropped when nulls arrive
- Columns are never dropped or narrowed. A declared type that would need
  narrowing raises SchemaConflictError.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Protocol, Sequence
from uuid import uuid4

import structlog

from taskfuse.errors import LoadError, SchemaConflictError
from taskfuse.inference import ColumnSpec, TableSchema, widen
from taskfuse.results import ResultSet

log = structlog.get_logger()


@dataclass
class LoadResult:
    """
    Metadata captured for each table load.

    Stored in the _taskfuse_loads table for traceability.
    """
    load_id: str            # UUID identifying this specific load
    script: str | None      # Script identity that produced the rows
    table: str              # Target table name
    row_count: int          # Number of rows written
    write_mode: str         # replace, upsert_identity or upsert_natural_key
    started_at: datetime    # When the load began
    completed_at: datetime  # When the load completed


@dataclass(frozen=True)
class ColumnChange:
    """One ALTER TABLE step."""
    column: str
    action: str                 # "add", "set_type" or "drop_not_null"
    sql_type: str | None = None


class DatabaseDriver(Protocol):
    """
    Protocol defining the database backend.

    Each method is scoped to one table; create_table, alter_table and
    upsert_rows each run inside their own transaction.
    """

    def get_columns(self, table: str) -> list[ColumnSpec] | None:
        """
        Existing columns with canonical type names.

        Returns None if the table doesn't exist.
        """
        ...

    def storage_type(self, sql_type: str) -> str:
        """Canonical name of the type a column declared as sql_type ends up with."""
        ...

    def create_table(self, table: str, schema: TableSchema) -> None:
        ...

    def alter_table(self, table: str, changes: Sequence[ColumnChange]) -> None:
        ...

    def upsert_rows(
        self,
        table: str,
        schema: TableSchema,
        columns: Sequence[ColumnSpec],
        rows: Sequence[dict[str, Any]],
    ) -> int:
        """Write rows according to schema.write_mode in one transaction."""
        ...

    def record_load(self, result: LoadResult) -> None:
        ...

    def close(self) -> None:
        ...


def reconcile(
    table: str,
    schema: TableSchema,
    existing: Sequence[ColumnSpec],
    storage_type: Callable[[str], str],
) -> list[ColumnChange]:
    """
    Work out the ALTER steps that let existing hold rows shaped like schema.

    Existing columns missing from schema are never dropped; a NOT NULL
    constraint on them is relaxed instead.

    Raises:
        SchemaConflictError: A declared type is narrower than, or
            incompatible with, the existing column
    """
    current_by_name = {c.name.lower(): c for c in existing}
    changes = []

    for col in schema.columns:
        current = current_by_name.get(col.name.lower())
        if current is None:
            changes.append(ColumnChange(col.name, "add", col.sql_type))
            continue

        wanted = storage_type(col.sql_type)
        if wanted != current.sql_type:
            merged = widen(current.sql_type, wanted)
            if merged == current.sql_type:
                # Existing column already holds the incoming values
                if col.declared:
                    raise SchemaConflictError(table, col.name, current.sql_type, wanted)
            elif merged == wanted:
                changes.append(ColumnChange(col.name, "set_type", col.sql_type))
            else:
                if col.declared:
                    raise SchemaConflictError(table, col.name, current.sql_type, wanted)
                changes.append(ColumnChange(col.name, "set_type", merged))

        if col.nullable and not current.nullable:
            changes.append(ColumnChange(col.name, "drop_not_null"))

    # Columns the rows no longer carry are kept but must accept NULL
    incoming = {c.name.lower() for c in schema.columns}
    if schema.identity_generated:
        incoming.add(schema.identity.name.lower())
    for current in existing:
        if current.name.lower() not in incoming and not current.nullable:
            changes.append(ColumnChange(current.name, "drop_not_null"))

    return changes


def _hashable(value: Any) -> Any:
    try:
        hash(value)
    except TypeError:
        return repr(value)
    return value


def dedupe(records: Sequence[dict[str, Any]], key: Sequence[str]) -> list[dict[str, Any]]:
    """Keep the last record for each key value. No key keeps everything."""
    if not key:
        return list(records)
    by_key: dict[tuple, dict[str, Any]] = {}
    for record in records:
        by_key[tuple(_hashable(record[k]) for k in key)] = record
    return list(by_key.values())


class Loader:
    """Creates, reconciles and fills tables through a DatabaseDriver."""

    def __init__(self, driver: DatabaseDriver) -> None:
        self.driver = driver
        self._catalog_lock = threading.Lock()
        self._guard = threading.Lock()
        self._table_locks: dict[str, threading.Lock] = {}

    def _table_lock(self, table: str) -> threading.Lock:
        with self._guard:
            return self._table_locks.setdefault(table.lower(), threading.Lock())

    def load(
        self,
        table: str,
        schema: TableSchema,
        result_set: ResultSet,
        script: str | None = None,
    ) -> LoadResult:
        """
        Persist a result set.

        Loads into the same table are serialised; loads into different
        tables run concurrently. DDL runs under a single catalog lock.

        Raises:
            SchemaConflictError: Reconciliation would narrow a column
            LoadError: The driver failed
        """
        load_id = str(uuid4())
        started_at = datetime.now(timezone.utc)
        rows: list[dict[str, Any]] = list(result_set.records)

        with self._table_lock(table):
            try:
                rows = dedupe(rows, schema.key)
                existing = self.driver.get_columns(table)
                if existing is None:
                    with self._catalog_lock:
                        self.driver.create_table(table, schema)
                    log.info("table_created", table=table, columns=schema.column_names)
                else:
                    changes = reconcile(table, schema, existing, self.driver.storage_type)
                    if changes:
                        with self._catalog_lock:
                            self.driver.alter_table(table, changes)
                        log.info(
                            "table_reconciled",
                            table=table,
                            changes=[f"{c.action}:{c.column}" for c in changes],
                        )

                effective = self._effective_columns(table, schema)
                written = self.driver.upsert_rows(table, schema, effective, rows)

            except SchemaConflictError:
                raise
            except Exception as e:
                raise LoadError(table, len(rows), e) from e

        result = LoadResult(
            load_id=load_id,
            script=script,
            table=table,
            row_count=written,
            write_mode=schema.write_mode,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
        )

        try:
            self.driver.record_load(result)
        except Exception as e:
            # Don't fail the node for metadata issues, the rows are committed
            log.warning("load_metadata_failed", table=table, load_id=load_id, error=str(e))

        log.info("table_loaded", table=table, rows=written, mode=schema.write_mode, load_id=load_id)
        return result

    def _effective_columns(self, table: str, schema: TableSchema) -> list[ColumnSpec]:
        """Schema columns carrying the types the table actually has now."""
        current = {c.name.lower(): c for c in self.driver.get_columns(table) or []}
        effective = []
        for col in schema.columns:
            stored = current.get(col.name.lower())
            effective.append(col.with_type(stored.sql_type) if stored else col)
        return effective

    def close(self) -> None:
        self.driver.close()
