"""
Column type descriptors.

A ColumnType is an immutable value: the SQL type name plus nullability.
Scripts build them once with the helper functions below and export them
through a module-level COLUMNS mapping:

    from taskfuse import dbtypes

    COLUMNS = {
        "id": dbtypes.bigint(nullable=False),
        "email": dbtypes.varchar(255),
        "payload": dbtypes.jsonb(),
    }

Type strings are accepted anywhere a ColumnType is, e.g. "integer not null".
Type names follow PostgreSQL spelling; drivers translate them to their own
dialect.
"""

import re
from dataclasses import dataclass

_NOT_NULL = re.compile(r"\s+not\s+null$", re.IGNORECASE)
_NULL = re.compile(r"\s+null$", re.IGNORECASE)


@dataclass(frozen=True)
class ColumnType:
    """A fully specified SQL column type."""
    sql_type: str           # Lower-case type name, e.g. "double precision"
    nullable: bool = True   # False renders as NOT NULL

    def __str__(self) -> str:
        return self.sql_type if self.nullable else f"{self.sql_type} not null"


def column_type(sql_type: str, nullable: bool = True) -> ColumnType:
    """Build a ColumnType from a type name, normalising its spelling."""
    name = " ".join(sql_type.strip().lower().split())
    if not name:
        raise ValueError("Column type name cannot be empty")
    return ColumnType(sql_type=name, nullable=nullable)


def parse_column_type(spec: "str | ColumnType") -> ColumnType:
    """
    Parse a declared type such as "bigint not null" or "varchar(20)".

    ColumnType instances pass through unchanged.
    """
    if isinstance(spec, ColumnType):
        return spec
    if not isinstance(spec, str):
        raise TypeError(f"Expected a type string or ColumnType, got {type(spec).__name__}")

    text = spec.strip()
    if _NOT_NULL.search(text):
        return column_type(_NOT_NULL.sub("", text), nullable=False)
    if _NULL.search(text):
        return column_type(_NULL.sub("", text), nullable=True)
    return column_type(text)


def text(nullable: bool = True) -> ColumnType:
    return column_type("text", nullable)


def integer(nullable: bool = True) -> ColumnType:
    return column_type("integer", nullable)


def smallint(nullable: bool = True) -> ColumnType:
    return column_type("smallint", nullable)


def bigint(nullable: bool = True) -> ColumnType:
    return column_type("bigint", nullable)


def real(nullable: bool = True) -> ColumnType:
    return column_type("real", nullable)


def double_precision(nullable: bool = True) -> ColumnType:
    return column_type("double precision", nullable)


def numeric(nullable: bool = True) -> ColumnType:
    return column_type("numeric", nullable)


def boolean(nullable: bool = True) -> ColumnType:
    return column_type("boolean", nullable)


def date(nullable: bool = True) -> ColumnType:
    return column_type("date", nullable)


def timestamp(nullable: bool = True) -> ColumnType:
    return column_type("timestamp", nullable)


def timestamptz(nullable: bool = True) -> ColumnType:
    return column_type("timestamp with time zone", nullable)


def time(nullable: bool = True) -> ColumnType:
    return column_type("time", nullable)


def interval(nullable: bool = True) -> ColumnType:
    return column_type("interval", nullable)


def uuid(nullable: bool = True) -> ColumnType:
    return column_type("uuid", nullable)


def json(nullable: bool = True) -> ColumnType:
    return column_type("json", nullable)


def jsonb(nullable: bool = True) -> ColumnType:
    return column_type("jsonb", nullable)


def bytea(nullable: bool = True) -> ColumnType:
    return column_type("bytea", nullable)


def char(length: int, nullable: bool = True) -> ColumnType:
    return column_type(f"char({int(length)})", nullable)


def varchar(length: int, nullable: bool = True) -> ColumnType:
    return column_type(f"varchar({int(length)})", nullable)
