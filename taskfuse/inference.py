"""
Schema inference for script results.

For every field, a declared ColumnType always wins. Otherwise the field's
values are inspected row by row and their types are widened into one:

    int (32-bit)  -> integer        float    -> double precision
    int (larger)  -> bigint         Decimal  -> numeric
    bool          -> boolean        str      -> text
    date/datetime -> timestamp with time zone
    dict/list     -> jsonb          bytes    -> bytea
    UUID          -> uuid           None     -> nullable (text if nothing else)

Conflicting types never fail inference. Numeric types widen along
smallint < integer < bigint < real < double precision < numeric, dates
along date < timestamp < timestamp with time zone, and anything else
falls back to text.
"""

import datetime
import decimal
import uuid
from dataclasses import dataclass
from typing import Any, Mapping

import structlog

from taskfuse.dbtypes import ColumnType
from taskfuse.errors import InvalidResultShapeError, UnsupportedValueTypeError
from taskfuse.results import ResultSet

log = structlog.get_logger()

# PostgreSQL INTEGER range: -2,147,483,648 to +2,147,483,647
MIN_INTEGER = -2_147_483_648
MAX_INTEGER = 2_147_483_647

IDENTITY_COLUMN = "id"
GENERATED_IDENTITY_TYPE = "bigint"

TEXT = "text"

_FAMILIES: dict[str, tuple[str, int]] = {
    "smallint": ("number", 0),
    "integer": ("number", 1),
    "bigint": ("number", 2),
    "real": ("number", 3),
    "double precision": ("number", 4),
    "numeric": ("number", 5),
    "date": ("temporal", 0),
    "timestamp": ("temporal", 1),
    "timestamp with time zone": ("temporal", 2),
}


@dataclass(frozen=True)
class ColumnSpec:
    """One column of a target table."""
    name: str
    sql_type: str
    nullable: bool = True
    declared: bool = False  # Came from the script's COLUMNS rather than inference

    def with_type(self, sql_type: str) -> "ColumnSpec":
        return ColumnSpec(self.name, sql_type, self.nullable, self.declared)


@dataclass(frozen=True)
class TableSchema:
    """
    Target table layout for one result set.

    columns holds every data column in field order. When the script
    supplies its own id field it is both in columns and the identity;
    a generated identity is not part of columns.
    """
    columns: tuple[ColumnSpec, ...]
    identity: ColumnSpec
    identity_generated: bool = True
    natural_key: tuple[str, ...] = ()

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def column(self, name: str) -> ColumnSpec:
        for col in self.columns:
            if col.name == name:
                return col
        raise KeyError(name)

    @property
    def write_mode(self) -> str:
        if not self.identity_generated:
            return "upsert_identity"
        if self.natural_key:
            return "upsert_natural_key"
        return "replace"

    @property
    def key(self) -> tuple[str, ...]:
        if not self.identity_generated:
            return (self.identity.name,)
        return self.natural_key


def value_type(value: Any, field: str = "?") -> str | None:
    """
    Map one runtime value to a column type name.

    Returns None for None, since a null says nothing about the type.

    Raises:
        UnsupportedValueTypeError: For values with no column mapping
    """
    if value is None:
        return None
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        if MIN_INTEGER <= value <= MAX_INTEGER:
            return "integer"
        return "bigint"
    if isinstance(value, float):
        return "double precision"
    if isinstance(value, decimal.Decimal):
        return "numeric"
    if isinstance(value, str):
        return TEXT
    if isinstance(value, (datetime.datetime, datetime.date)):
        return "timestamp with time zone"
    if isinstance(value, (dict, list, tuple)):
        return "jsonb"
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "bytea"
    if isinstance(value, uuid.UUID):
        return "uuid"
    raise UnsupportedValueTypeError(field, type(value).__name__)


def widen(a: str, b: str) -> str:
    """Most general of two column types. text dominates everything."""
    if a == b:
        return a
    fa, fb = _FAMILIES.get(a), _FAMILIES.get(b)
    if fa and fb and fa[0] == fb[0]:
        return a if fa[1] >= fb[1] else b
    return TEXT


def infer_column(name: str, values: list[Any]) -> ColumnSpec:
    """Infer one column's type and nullability from its values."""
    inferred: str | None = None
    nullable = False
    for value in values:
        vt = value_type(value, name)
        if vt is None:
            nullable = True
            continue
        inferred = vt if inferred is None else widen(inferred, vt)

    if inferred is None:
        return ColumnSpec(name, TEXT, nullable=True)
    return ColumnSpec(name, inferred, nullable=nullable)


def infer_schema(
    result_set: ResultSet,
    declared_columns: Mapping[str, ColumnType] | None = None,
    natural_key: tuple[str, ...] | list[str] = (),
) -> TableSchema:
    """
    Derive the target table schema of a result set.

    Args:
        result_set: Validated script output
        declared_columns: Explicit column types from the script
        natural_key: Columns identifying a row for upserts

    Raises:
        UnsupportedValueTypeError: A value has no column mapping
        InvalidResultShapeError: A natural key column is missing from the records
    """
    declared = dict(declared_columns or {})
    names = list(result_set.fields)
    names.extend(name for name in declared if name not in names)

    columns = []
    for name in names:
        if name in declared:
            spec = declared[name]
            columns.append(ColumnSpec(name, spec.sql_type, spec.nullable, declared=True))
        else:
            columns.append(infer_column(name, result_set.column(name)))

    fields = set(result_set.fields)
    identity_generated = IDENTITY_COLUMN not in fields
    if identity_generated:
        identity = ColumnSpec(IDENTITY_COLUMN, GENERATED_IDENTITY_TYPE, nullable=False)
        if IDENTITY_COLUMN in names:
            # Declared but never supplied: the id is generated
            log.debug("declared_id_generated", column=IDENTITY_COLUMN)
            columns = [c for c in columns if c.name != IDENTITY_COLUMN]
    else:
        index = names.index(IDENTITY_COLUMN)
        # A supplied id is the primary key
        columns[index] = ColumnSpec(
            IDENTITY_COLUMN, columns[index].sql_type, nullable=False, declared=columns[index].declared
        )
        identity = columns[index]

    key = tuple(natural_key)
    missing = [k for k in key if k not in fields]
    if missing and len(result_set):
        raise InvalidResultShapeError(f"natural key columns not in result records: {missing}")
    if key and not identity_generated:
        log.warning("natural_key_ignored", natural_key=list(key), reason="script supplies its own id")
        key = ()

    return TableSchema(
        columns=tuple(columns),
        identity=identity,
        identity_generated=identity_generated,
        natural_key=key,
    )
