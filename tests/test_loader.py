import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from taskfuse import dbtypes
from taskfuse.errors import InvalidResultShapeError, LoadError, SchemaConflictError
from taskfuse.inference import ColumnSpec, infer_schema
from taskfuse.loader import ColumnChange, Loader, dedupe, reconcile
from taskfuse.results import ResultSet


def _load(loader, table, rows, columns=None, natural_key=()):
    rs = ResultSet.from_value(rows)
    return loader.load(table, infer_schema(rs, columns, natural_key), rs, script=f"{table}.py")


def _rows(driver, sql):
    return driver.conn.execute(sql).fetchall()


def _columns(driver, table):
    return {c.name: c for c in driver.get_columns(table)}


def test_creates_table_with_generated_identity(driver):
    loader = Loader(driver)

    result = _load(loader, "items", [{"name": "a", "qty": 1}, {"name": "b", "qty": 2}])

    assert result.row_count == 2
    assert result.write_mode == "replace"
    cols = _columns(driver, "items")
    assert list(cols) == ["id", "name", "qty"]
    assert cols["id"].sql_type == "bigint"
    assert cols["qty"].sql_type == "integer"
    assert not cols["name"].nullable
    assert _rows(driver, "SELECT name, qty FROM items ORDER BY id") == [("a", 1), ("b", 2)]


def test_replace_is_idempotent(driver):
    loader = Loader(driver)
    rows = [{"name": "a"}, {"name": "b"}]

    _load(loader, "items", rows)
    first = _rows(driver, "SELECT id, name FROM items ORDER BY id")
    _load(loader, "items", rows)

    assert first == [(1, "a"), (2, "b")]
    assert _rows(driver, "SELECT id, name FROM items ORDER BY id") == first


def test_empty_result_empties_replaced_table(driver):
    loader = Loader(driver)
    _load(loader, "items", [{"name": "a"}])

    result = _load(loader, "items", [])

    assert result.row_count == 0
    assert _rows(driver, "SELECT count(*) FROM items") == [(0,)]


def test_supplied_id_upserts(driver):
    loader = Loader(driver)

    _load(loader, "people", [{"id": 1, "name": "a"}, {"id": 2, "name": None}])
    _load(loader, "people", [{"id": 2, "name": "c"}])
    _load(loader, "people", [{"id": 2, "name": "c"}])

    assert _rows(driver, "SELECT id, name FROM people ORDER BY id") == [(1, "a"), (2, "c")]
    cols = _columns(driver, "people")
    assert cols["id"].sql_type == "integer"
    assert cols["name"].nullable


def test_natural_key_upserts(driver):
    loader = Loader(driver)

    _load(loader, "stock", [{"sku": "a", "qty": 1}, {"sku": "b", "qty": 2}], natural_key=["sku"])
    result = _load(loader, "stock", [{"sku": "a", "qty": 5}], natural_key=["sku"])

    assert result.write_mode == "upsert_natural_key"
    assert _rows(driver, "SELECT sku, qty FROM stock ORDER BY sku") == [("a", 5), ("b", 2)]


def test_duplicate_keys_keep_last_record(driver):
    loader = Loader(driver)

    result = _load(loader, "stock", [{"sku": "a", "qty": 1}, {"sku": "a", "qty": 2}], natural_key=["sku"])

    assert result.row_count == 1
    assert _rows(driver, "SELECT qty FROM stock") == [(2,)]


def test_new_column_is_added_as_nullable(driver):
    loader = Loader(driver)
    _load(loader, "t", [{"a": 1}])

    _load(loader, "t", [{"a": 2, "b": "x"}])

    cols = _columns(driver, "t")
    assert cols["b"].sql_type == "text"
    assert cols["b"].nullable


def test_column_is_widened(driver):
    loader = Loader(driver)
    _load(loader, "t", [{"n": 1}])

    _load(loader, "t", [{"n": 5_000_000_000}])

    assert _columns(driver, "t")["n"].sql_type == "bigint"
    assert _rows(driver, "SELECT n FROM t") == [(5_000_000_000,)]


def test_narrower_inferred_type_keeps_existing_column(driver):
    loader = Loader(driver)
    _load(loader, "t", [{"n": 5_000_000_000}])

    _load(loader, "t", [{"n": 1}])

    assert _columns(driver, "t")["n"].sql_type == "bigint"


def test_incompatible_inferred_type_widens_to_text(driver):
    loader = Loader(driver)
    _load(loader, "t", [{"v": 1}])

    _load(loader, "t", [{"v": "one"}])

    assert _columns(driver, "t")["v"].sql_type == "text"


def test_nulls_drop_not_null(driver):
    loader = Loader(driver)
    _load(loader, "t", [{"a": 1, "b": "x"}])
    assert not _columns(driver, "t")["b"].nullable

    _load(loader, "t", [{"a": 2, "b": None}])

    assert _columns(driver, "t")["b"].nullable


def test_declared_narrowing_conflicts(driver):
    loader = Loader(driver)
    _load(loader, "t", [{"n": 1}], columns={"n": dbtypes.bigint()})

    with pytest.raises(SchemaConflictError) as exc:
        _load(loader, "t", [{"n": 1}], columns={"n": dbtypes.integer()})

    assert exc.value.existing == "bigint"
    assert exc.value.requested == "integer"


def test_failed_write_rolls_back(driver):
    loader = Loader(driver)
    _load(loader, "t", [{"n": 1}], columns={"n": dbtypes.integer()})

    with pytest.raises(LoadError) as exc:
        _load(loader, "t", [{"n": "not a number"}], columns={"n": dbtypes.integer()})

    assert exc.value.table == "t"
    assert _rows(driver, "SELECT n FROM t") == [(1,)]


def test_loads_are_recorded(driver):
    loader = Loader(driver)
    _load(loader, "items", [{"name": "a"}])

    rows = _rows(driver, "SELECT script, table_name, row_count, write_mode FROM _taskfuse_loads")

    assert rows == [("items.py", "items", 1, "replace")]


class _FailingDriver:
    def __init__(self, fail_metadata=False):
        self.fail_metadata = fail_metadata

    def get_columns(self, table):
        return None

    def storage_type(self, sql_type):
        return sql_type

    def create_table(self, table, schema):
        pass

    def alter_table(self, table, changes):
        pass

    def upsert_rows(self, table, schema, columns, rows):
        if not self.fail_metadata:
            raise RuntimeError("disk full")
        return len(rows)

    def record_load(self, result):
        raise RuntimeError("metadata table locked")

    def close(self):
        pass


def test_driver_errors_become_load_errors():
    loader = Loader(_FailingDriver())

    with pytest.raises(LoadError, match="disk full") as exc:
        _load(loader, "t", [{"a": 1}, {"a": 2}])

    assert exc.value.row_count == 2


def test_metadata_failure_does_not_fail_load():
    loader = Loader(_FailingDriver(fail_metadata=True))

    result = _load(loader, "t", [{"a": 1}])

    assert result.row_count == 1


class _SlowDriver(_FailingDriver):
    def __init__(self):
        super().__init__(fail_metadata=True)
        self._lock = threading.Lock()
        self.active: dict[str, int] = {}
        self.peak: dict[str, int] = {}

    def upsert_rows(self, table, schema, columns, rows):
        with self._lock:
            self.active[table] = self.active.get(table, 0) + 1
            self.peak[table] = max(self.peak.get(table, 0), self.active[table])
        time.sleep(0.05)
        with self._lock:
            self.active[table] -= 1
        return len(rows)


def test_loads_into_one_table_are_serialised():
    driver = _SlowDriver()
    loader = Loader(driver)
    tables = ["same", "same", "same", "other_a", "other_b"]

    with ThreadPoolExecutor(max_workers=len(tables)) as pool:
        list(pool.map(lambda t: _load(loader, t, [{"a": 1}]), tables))

    assert driver.peak["same"] == 1


def test_reconcile_plans_changes():
    schema = infer_schema(ResultSet.from_value([{"a": 5_000_000_000, "b": None, "c": "x"}]))
    existing = [
        ColumnSpec("id", "bigint", nullable=False),
        ColumnSpec("a", "integer", nullable=False),
        ColumnSpec("b", "text", nullable=False),
    ]

    changes = reconcile("t", schema, existing, lambda t: t)

    assert changes == [
        ColumnChange("a", "set_type", "bigint"),
        ColumnChange("b", "drop_not_null"),
        ColumnChange("c", "add", "text"),
    ]


def test_reconcile_declared_incompatible_type_conflicts():
    schema = infer_schema(ResultSet.from_value([{"a": True}]), {"a": dbtypes.boolean()})

    with pytest.raises(SchemaConflictError):
        reconcile("t", schema, [ColumnSpec("a", "integer")], lambda t: t)


def test_dedupe_without_key_keeps_everything():
    rows = [{"a": 1}, {"a": 1}]

    assert dedupe(rows, ()) == rows
    assert dedupe(rows, ("a",)) == [{"a": 1}]


def test_natural_key_rerun_keeps_ids(driver):
    loader = Loader(driver)
    _load(loader, "stock", [{"sku": "a", "qty": 1}, {"sku": "b", "qty": 2}], natural_key=["sku"])

    _load(loader, "stock", [{"sku": "b", "qty": 7}, {"sku": "c", "qty": 3}], natural_key=["sku"])

    assert _rows(driver, "SELECT id, sku, qty FROM stock ORDER BY id") == [
        (1, "a", 1),
        (2, "b", 7),
        (3, "c", 3),
    ]


def test_empty_natural_key_result_leaves_table(driver):
    loader = Loader(driver)
    _load(loader, "stock", [{"sku": "a", "qty": 1}], natural_key=["sku"])

    result = _load(loader, "stock", [], natural_key=["sku"])

    assert result.row_count == 0
    assert _rows(driver, "SELECT sku, qty FROM stock") == [("a", 1)]


def test_column_missing_from_rerun_becomes_nullable(driver):
    loader = Loader(driver)
    _load(loader, "t", [{"a": 1, "b": "x"}])
    assert not _columns(driver, "t")["b"].nullable

    _load(loader, "t", [{"a": 2}])

    assert _columns(driver, "t")["b"].nullable
    assert _rows(driver, "SELECT a, b FROM t") == [(2, None)]


def test_declared_id_without_values_is_generated(driver):
    loader = Loader(driver)

    result = _load(loader, "t", [{"name": "a"}, {"name": "b"}], columns={"id": dbtypes.bigint()})

    assert result.write_mode == "replace"
    assert _rows(driver, "SELECT id, name FROM t ORDER BY id") == [(1, "a"), (2, "b")]


def test_natural_key_only_declared_is_rejected(driver):
    loader = Loader(driver)

    with pytest.raises(InvalidResultShapeError):
        _load(loader, "t", [{"name": "a"}], columns={"code": dbtypes.text()}, natural_key=["code"])

    assert driver.get_columns("t") is None


def test_missing_key_during_load_is_a_load_error(driver):
    loader = Loader(driver)
    rs = ResultSet.from_value([{"sku": "a"}])
    schema = infer_schema(ResultSet.from_value([{"sku": "a", "code": "x"}]), natural_key=["code"])

    with pytest.raises(LoadError) as exc:
        loader.load("t", schema, rs)

    assert exc.value.table == "t"


def test_reconcile_relaxes_columns_no_longer_written():
    schema = infer_schema(ResultSet.from_value([{"a": 1}]))
    existing = [
        ColumnSpec("id", "bigint", nullable=False),
        ColumnSpec("a", "integer", nullable=False),
        ColumnSpec("b", "text", nullable=False),
        ColumnSpec("c", "text", nullable=True),
    ]

    changes = reconcile("t", schema, existing, lambda t: t)

    assert changes == [ColumnChange("b", "drop_not_null")]
