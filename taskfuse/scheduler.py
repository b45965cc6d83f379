"""
Batch planning and execution.

plan() turns a dependency graph into ordered batches. Scheduler.run()
drives those batches: every node of a batch is submitted to a thread pool
together, the batch settles, then the next batch starts.

Resilience rules:
1. A failing node never aborts its siblings
2. A node whose dependency failed or was skipped is skipped, not attempted
3. Every exception is captured in the node's outcome, run() never raises
"""

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

import structlog

from taskfuse.errors import CycleDetectedError, UnknownDependencyError
from taskfuse.graph import DependencyGraph, find_cycle

log = structlog.get_logger()

ExecuteFn = Callable[[str, Mapping[str, Any]], Any]


class NodeStatus(Enum):
    """Final state of a node after a run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class NodeOutcome:
    """What happened to one node."""
    identity: str
    status: NodeStatus
    output: Any = None                                  # execute_fn return value
    error: BaseException | None = None                  # Set when FAILED
    blocked_by: tuple[str, ...] = field(default=())     # Set when SKIPPED
    duration_seconds: float = 0.0

    @property
    def error_kind(self) -> str | None:
        return type(self.error).__name__ if self.error is not None else None


def _edges_of(graph: DependencyGraph | Mapping[str, Iterable[str]]) -> dict[str, frozenset[str]]:
    if isinstance(graph, DependencyGraph):
        return dict(graph.edges)
    return {node: frozenset(deps) for node, deps in graph.items()}


def plan(graph: DependencyGraph | Mapping[str, Iterable[str]]) -> list[list[str]]:
    """
    Compute execution batches with a layered topological sort.

    Batch k holds every node whose dependencies all sit in batches before k.
    Nodes inside a batch are sorted so plans are reproducible.

    Raises:
        UnknownDependencyError: An edge points at a node not in the graph
        CycleDetectedError: The graph is not acyclic
    """
    edges = _edges_of(graph)

    for node in sorted(edges):
        for dep in sorted(edges[node]):
            if dep not in edges:
                raise UnknownDependencyError(node, dep)

    batches: list[list[str]] = []
    placed: set[str] = set()
    remaining = set(edges)

    while remaining:
        batch = sorted(node for node in remaining if edges[node] <= placed)
        if not batch:
            cycle = find_cycle({node: edges[node] for node in remaining})
            raise CycleDetectedError(cycle or sorted(remaining))
        batches.append(batch)
        placed.update(batch)
        remaining.difference_update(batch)

    return batches


def format_plan(batches: list[list[str]]) -> str:
    """Render batches as plain text, one line per batch."""
    if not batches:
        return "No scripts to run."
    lines = [f"Execution plan ({sum(len(b) for b in batches)} scripts, {len(batches)} batches):"]
    for index, batch in enumerate(batches, start=1):
        lines.append(f"  batch {index}: {', '.join(batch)}")
    return "\n".join(lines)


class Scheduler:
    """Runs planned batches against a dependency graph."""

    def __init__(self, graph: DependencyGraph, workers: int = 4) -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.graph = graph
        self.workers = workers

    def plan(self) -> list[list[str]]:
        return plan(self.graph)

    def run(self, batches: list[list[str]], execute: ExecuteFn) -> dict[str, NodeOutcome]:
        """
        Execute batches in order.

        Args:
            batches: Output of plan()
            execute: Called as execute(identity, dependency_outputs); its
                return value becomes the node's output and is handed to
                dependents

        Returns:
            Outcome per node identity, in plan order
        """
        outcomes: dict[str, NodeOutcome] = {}

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            for index, batch in enumerate(batches, start=1):
                runnable = []
                for node in batch:
                    blocked = tuple(
                        dep for dep in sorted(self.graph.dependencies(node))
                        if outcomes[dep].status is not NodeStatus.SUCCEEDED
                    )
                    if blocked:
                        outcomes[node] = NodeOutcome(node, NodeStatus.SKIPPED, blocked_by=blocked)
                        log.warning("node_skipped", script=node, blocked_by=list(blocked))
                    else:
                        runnable.append(node)

                log.info("batch_started", batch=index, scripts=runnable, skipped=len(batch) - len(runnable))

                future_to_node = {}
                for node in runnable:
                    inputs = MappingProxyType({
                        dep: outcomes[dep].output for dep in sorted(self.graph.dependencies(node))
                    })
                    future_to_node[pool.submit(self._run_node, node, inputs, execute)] = node

                for future in as_completed(future_to_node):
                    outcome = future.result()
                    outcomes[outcome.identity] = outcome

                log.info("batch_complete", batch=index)

        # Preserve plan order for reporting
        return {node: outcomes[node] for batch in batches for node in batch}

    def _run_node(self, node: str, inputs: Mapping[str, Any], execute: ExecuteFn) -> NodeOutcome:
        started = time.monotonic()
        try:
            output = execute(node, inputs)
        except Exception as e:
            duration = time.monotonic() - started
            log.error(
                "node_failed",
                script=node,
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 3),
            )
            return NodeOutcome(node, NodeStatus.FAILED, error=e, duration_seconds=duration)

        duration = time.monotonic() - started
        log.info("node_succeeded", script=node, duration_seconds=round(duration, 3))
        return NodeOutcome(node, NodeStatus.SUCCEEDED, output=output, duration_seconds=duration)
