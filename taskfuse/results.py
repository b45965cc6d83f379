"""Tabular script output."""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Iterator

import polars as pl

from taskfuse.errors import InvalidResultShapeError


@dataclass(frozen=True)
class ResultSet:
    """
    Ordered, uniformly keyed records produced by one script.

    Every record carries exactly the same field names. Sparse values are
    represented as None rather than a missing key.
    """
    records: tuple[dict[str, Any], ...]
    fields: tuple[str, ...]

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(self.records)

    def column(self, name: str) -> list[Any]:
        """All values of one field, in record order."""
        return [record[name] for record in self.records]

    def to_polars(self) -> pl.DataFrame:
        """DataFrame view for scripts that transform upstream output."""
        if not self.records:
            return pl.DataFrame()
        return pl.DataFrame(list(self.records), infer_schema_length=None)

    @classmethod
    def empty(cls) -> "ResultSet":
        return cls(records=(), fields=())

    @classmethod
    def from_value(cls, value: Any, identity: str | None = None) -> "ResultSet":
        """
        Validate a script's return value.

        Accepts a list or tuple of mappings, or a polars DataFrame.

        Raises:
            InvalidResultShapeError: On any other shape, non-string keys, or
                records whose field names differ
        """
        if isinstance(value, pl.DataFrame):
            value = value.to_dicts()

        if not isinstance(value, (list, tuple)):
            raise InvalidResultShapeError(
                f"run() must return a list of records, got {type(value).__name__}",
                identity,
            )

        records = []
        fields: tuple[str, ...] | None = None
        for index, record in enumerate(value):
            if not isinstance(record, Mapping):
                raise InvalidResultShapeError(
                    f"record {index} is {type(record).__name__}, expected a mapping",
                    identity,
                )
            keys = tuple(record.keys())
            if not all(isinstance(k, str) for k in keys):
                raise InvalidResultShapeError(f"record {index} has non-string field names", identity)

            if fields is None:
                fields = keys
            elif set(keys) != set(fields):
                missing = sorted(set(fields) - set(keys))
                extra = sorted(set(keys) - set(fields))
                raise InvalidResultShapeError(
                    f"record {index} fields differ from record 0 "
                    f"(missing={missing}, extra={extra}); use None for absent values",
                    identity,
                )
            records.append({name: record[name] for name in fields})

        return cls(records=tuple(records), fields=fields or ())
