"""
Main orchestration for one taskfuse invocation.

This module ties everything together:
1. Discovers scripts in the project directory
2. Analyses them statically and builds the dependency graph
3. Plans execution batches (a dry run stops here)
4. Runs each batch in parallel: execute, infer schema, load
5. Aggregates per-script outcomes into a RunReport

Structural errors (cycles, unknown dependencies, unparsable scripts) are
raised before anything runs. Per-script errors are captured in the report.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import structlog

from taskfuse.analysis import ScriptNode, analyze_project
from taskfuse.config import Config
from taskfuse.discovery import discover
from taskfuse.drivers import DuckDBDriver
from taskfuse.executor import ScriptExecutor
from taskfuse.graph import DependencyGraph, build_graph
from taskfuse.inference import infer_schema
from taskfuse.loader import DatabaseDriver, LoadResult, Loader
from taskfuse.results import ResultSet
from taskfuse.scheduler import NodeOutcome, NodeStatus, Scheduler, plan

log = structlog.get_logger()


@dataclass
class NodeResult:
    """What a successful script leaves behind."""
    result_set: ResultSet
    load: LoadResult


@dataclass
class Project:
    """A planned project: its scripts, graph and batches."""
    root: Path
    nodes: dict[str, ScriptNode]
    graph: DependencyGraph
    batches: list[list[str]]


@dataclass
class RunReport:
    """Aggregate result of one invocation."""
    batches: list[list[str]]
    outcomes: dict[str, NodeOutcome] = field(default_factory=dict)
    dry_run: bool = False

    def _with_status(self, status: NodeStatus) -> list[str]:
        return [node for node, outcome in self.outcomes.items() if outcome.status is status]

    @property
    def succeeded(self) -> list[str]:
        return self._with_status(NodeStatus.SUCCEEDED)

    @property
    def failed(self) -> list[str]:
        return self._with_status(NodeStatus.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self._with_status(NodeStatus.SKIPPED)

    @property
    def success(self) -> bool:
        return not self.failed and not self.skipped

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    @property
    def total_rows(self) -> int:
        return sum(
            outcome.output.load.row_count
            for outcome in self.outcomes.values()
            if outcome.status is NodeStatus.SUCCEEDED and isinstance(outcome.output, NodeResult)
        )

    @property
    def failures(self) -> list[dict[str, Any]]:
        """Failed and skipped scripts, tagged with the error kind."""
        rows = []
        for node, outcome in self.outcomes.items():
            if outcome.status is NodeStatus.FAILED:
                rows.append({"script": node, "error_type": outcome.error_kind, "error": str(outcome.error)})
            elif outcome.status is NodeStatus.SKIPPED:
                rows.append({
                    "script": node,
                    "error_type": "Skipped",
                    "error": f"blocked by {', '.join(outcome.blocked_by)}",
                })
        return rows

    def summary(self) -> str:
        if self.dry_run:
            return f"Dry run: {sum(len(b) for b in self.batches)} scripts planned in {len(self.batches)} batches"

        status = "succeeded" if self.success else "failed"
        lines = [
            f"Run {status}: {len(self.succeeded)} succeeded, {len(self.failed)} failed, "
            f"{len(self.skipped)} skipped, {self.total_rows} rows loaded"
        ]
        for failure in self.failures:
            label = "SKIPPED" if failure["error_type"] == "Skipped" else "FAILED"
            lines.append(f"  {label:<8}{failure['script']}  {failure['error_type']}: {failure['error']}")
        return "\n".join(lines)


def prepare_project(directory: str | Path, ignore: tuple[str, ...] | list[str] = ()) -> Project:
    """
    Discover, analyse and plan a project without running anything.

    Raises:
        DiscoveryError, ScriptAnalysisError, UnknownDependencyError,
        CycleDetectedError
    """
    root = Path(directory)
    identities = discover(root, ignore)
    nodes = analyze_project(root, identities)

    graph = build_graph(
        nodes,
        references=lambda identity: nodes[identity].references,
        declared=lambda identity: nodes[identity].depends_on,
    )
    batches = plan(graph)

    log.info(
        "execution_plan",
        scripts=len(nodes),
        batches=[list(batch) for batch in batches],
    )
    return Project(root=root, nodes=nodes, graph=graph, batches=batches)


def run_project(
    directory: str | Path,
    config: Config,
    dry_run: bool = False,
    driver: DatabaseDriver | None = None,
) -> RunReport:
    """
    Run every script of a project directory.

    Args:
        directory: Project root holding the scripts
        config: Runtime configuration
        dry_run: Plan only; no script runs and the database is never opened
        driver: Database driver to use instead of opening config.database

    Returns:
        RunReport with one outcome per script
    """
    project = prepare_project(directory, config.ignore)

    if dry_run:
        return RunReport(batches=project.batches, dry_run=True)

    owns_driver = driver is None
    if driver is None:
        driver = DuckDBDriver(config.database)
    loader = Loader(driver)
    executor = ScriptExecutor(project.root)

    def execute(identity: str, dependency_outputs: Mapping[str, NodeResult]) -> NodeResult:
        node = project.nodes[identity]
        inputs = {dep: result.result_set for dep, result in dependency_outputs.items()}

        output = executor.execute(node, inputs)
        schema = infer_schema(output.result_set, output.columns, node.natural_key)
        load = loader.load(node.table, schema, output.result_set, script=identity)
        return NodeResult(result_set=output.result_set, load=load)

    try:
        outcomes = Scheduler(project.graph, workers=config.workers).run(project.batches, execute)
    finally:
        executor.close()
        if owns_driver:
            loader.close()

    report = RunReport(batches=project.batches, outcomes=outcomes)
    log.info(
        "run_complete",
        success=report.success,
        succeeded=len(report.succeeded),
        failed=len(report.failed),
        skipped=len(report.skipped),
        total_rows=report.total_rows,
    )
    return report
