import sys

import duckdb
import pytest

from taskfuse.config import Config
from taskfuse.errors import CycleDetectedError, UnknownDependencyError
from taskfuse.runner import prepare_project, run_project

pytestmark = pytest.mark.integration


def _warehouse(project):
    project.write("staging/raw_orders.py", """
        TABLE = "raw_orders"

        def run():
            return [
                {"order_id": 1, "customer": "ada", "amount": 10.5},
                {"order_id": 2, "customer": "bob", "amount": 4.0},
                {"order_id": 3, "customer": "ada", "amount": 1.5},
            ]
    """)
    project.write("marts/customer_totals.py", """
        DEPENDS_ON = ["staging/raw_orders.py"]
        NATURAL_KEY = ["customer"]

        def run(deps):
            totals = {}
            for order in deps["staging/raw_orders.py"]:
                totals[order["customer"]] = totals.get(order["customer"], 0) + order["amount"]
            return [{"customer": c, "total": t} for c, t in sorted(totals.items())]
    """)
    project.write("helpers.py", """
        def fmt(x):
            return str(x)
    """)


def _query(db_path, sql):
    with duckdb.connect(str(db_path), read_only=True) as conn:
        return conn.execute(sql).fetchall()


def test_prepare_project_plans_batches(project):
    _warehouse(project)

    prepared = prepare_project(project.root)

    assert sorted(prepared.nodes) == ["marts/customer_totals.py", "staging/raw_orders.py"]
    assert prepared.batches == [["staging/raw_orders.py"], ["marts/customer_totals.py"]]


def test_end_to_end_run(project, tmp_path):
    _warehouse(project)
    db = tmp_path / "warehouse.duckdb"

    report = run_project(project.root, Config(database=str(db)))

    assert report.success
    assert report.exit_code == 0
    assert report.total_rows == 5
    assert _query(db, "SELECT customer, total FROM customer_totals ORDER BY customer") == [
        ("ada", 12.0),
        ("bob", 4.0),
    ]
    assert _query(db, "SELECT count(*) FROM raw_orders") == [(3,)]


def test_rerun_is_idempotent(project, tmp_path):
    _warehouse(project)
    config = Config(database=str(tmp_path / "warehouse.duckdb"))
    tables = ["raw_orders", "customer_totals"]

    run_project(project.root, config)
    first = {t: _query(config.database, f"SELECT * FROM {t} ORDER BY id") for t in tables}
    run_project(project.root, config)
    second = {t: _query(config.database, f"SELECT * FROM {t} ORDER BY id") for t in tables}

    assert second == first
    assert [row[0] for row in second["raw_orders"]] == [1, 2, 3]
    assert len(second["customer_totals"]) == 2
    assert _query(config.database, "SELECT count(*) FROM _taskfuse_loads") == [(4,)]


def test_import_creates_dependency(project, tmp_path):
    project.write("e2e_source.py", """
        def run():
            return [{"n": 1}]
    """)
    project.write("e2e_consumer.py", """
        import e2e_source

        def run(deps):
            return [{"n": row["n"] + 1} for row in deps["e2e_source.py"]]
    """)
    db = tmp_path / "w.duckdb"

    report = run_project(project.root, Config(database=str(db)))

    assert report.batches == [["e2e_source.py"], ["e2e_consumer.py"]]
    assert report.success
    assert _query(db, "SELECT n FROM e2e_consumer") == [(2,)]
    assert str(project.root.resolve()) not in sys.path
    assert "e2e_source" not in sys.modules


def test_dry_run_executes_nothing(project, tmp_path):
    _warehouse(project)
    project.write("explode.py", """
        def run():
            raise SystemExit("must not run")
    """)
    db = tmp_path / "warehouse.duckdb"

    report = run_project(project.root, Config(database=str(db)), dry_run=True)

    assert report.dry_run
    assert report.outcomes == {}
    assert report.exit_code == 0
    assert not db.exists()
    assert "3 scripts planned in 2 batches" in report.summary()


def test_failure_skips_dependents_only(project, tmp_path):
    project.write("broken.py", """
        def run():
            raise RuntimeError("source unavailable")
    """)
    project.write("downstream.py", """
        DEPENDS_ON = ["broken.py"]

        def run(deps):
            return []
    """)
    project.write("independent.py", """
        def run():
            return [{"ok": True}]
    """)
    db = tmp_path / "warehouse.duckdb"

    report = run_project(project.root, Config(database=str(db)))

    assert report.failed == ["broken.py"]
    assert report.skipped == ["downstream.py"]
    assert report.succeeded == ["independent.py"]
    assert report.exit_code == 1
    assert report.outcomes["broken.py"].error_kind == "ScriptExecutionError"
    summary = report.summary()
    assert "FAILED  broken.py" in summary
    assert "SKIPPED downstream.py" in summary
    assert "blocked by broken.py" in summary
    assert _query(db, "SELECT ok FROM independent") == [(True,)]


def test_failure_kinds_are_distinguished(project, driver):
    project.write("shape.py", """
        def run():
            return "not records"
    """)
    project.write("values.py", """
        def run():
            return [{"v": object()}]
    """)

    report = run_project(project.root, Config(database=":memory:"), driver=driver)

    kinds = {row["script"]: row["error_type"] for row in report.failures}
    assert kinds == {"shape.py": "InvalidResultShapeError", "values.py": "UnsupportedValueTypeError"}


def test_supplied_driver_stays_open(project, driver):
    project.write("one.py", """
        def run():
            return [{"a": 1}]
    """)

    run_project(project.root, Config(database=":memory:"), driver=driver)

    assert driver.conn.execute("SELECT a FROM one").fetchall() == [(1,)]


def test_cycle_aborts_before_anything_runs(project, tmp_path):
    project.write("a.py", """
        DEPENDS_ON = ["b.py"]

        def run(deps):
            return []
    """)
    project.write("b.py", """
        DEPENDS_ON = ["a.py"]

        def run(deps):
            return []
    """)
    db = tmp_path / "warehouse.duckdb"

    with pytest.raises(CycleDetectedError):
        run_project(project.root, Config(database=str(db)))

    assert not db.exists()


def test_unknown_declared_dependency(project, tmp_path):
    project.write("a.py", """
        DEPENDS_ON = ["ghost.py"]

        def run(deps):
            return []
    """)

    with pytest.raises(UnknownDependencyError):
        run_project(project.root, Config(database=str(tmp_path / "w.duckdb")))


def test_ignore_patterns_apply(project, tmp_path):
    _warehouse(project)
    project.write("scratch/try.py", """
        def run():
            raise RuntimeError("draft")
    """)

    report = run_project(
        project.root,
        Config(database=str(tmp_path / "w.duckdb"), ignore=("scratch/*",)),
    )

    assert report.success
    assert "scratch/try.py" not in report.outcomes
