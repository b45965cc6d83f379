"""
Dependency graph construction.

The graph maps each script identity to the identities it depends on.
Edges come from two places:

- Import statements: only references that resolve to another discovered
  script become edges. Imports of third-party or helper modules are ignored.
- DEPENDS_ON declarations: every entry must name a discovered script,
  otherwise the build fails with UnknownDependencyError.

A finished graph is guaranteed to be acyclic.
"""

from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Mapping

from taskfuse.errors import CycleDetectedError, UnknownDependencyError

References = Callable[[str], Iterable[str]]


@dataclass(frozen=True)
class DependencyGraph:
    """Immutable identity -> dependencies mapping."""
    edges: Mapping[str, frozenset[str]]

    @property
    def nodes(self) -> list[str]:
        return sorted(self.edges)

    def dependencies(self, node: str) -> frozenset[str]:
        return self.edges[node]

    def dependents(self, node: str) -> list[str]:
        return sorted(n for n, deps in self.edges.items() if node in deps)

    def __contains__(self, node: object) -> bool:
        return node in self.edges

    def __iter__(self) -> Iterator[str]:
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.edges)


def find_cycle(edges: Mapping[str, Iterable[str]]) -> list[str] | None:
    """
    Find one dependency cycle, if any.

    Depth-first search in sorted order so the reported cycle is stable
    between runs. Edges to nodes outside the mapping are ignored.

    Returns:
        The cycle's members in dependency order, or None.
    """
    visiting: list[str] = []
    on_path: set[str] = set()
    done: set[str] = set()

    def visit(node: str) -> list[str] | None:
        visiting.append(node)
        on_path.add(node)
        for dep in sorted(edges[node]):
            if dep not in edges or dep in done:
                continue
            if dep in on_path:
                return visiting[visiting.index(dep):]
            cycle = visit(dep)
            if cycle:
                return cycle
        visiting.pop()
        on_path.discard(node)
        done.add(node)
        return None

    for node in sorted(edges):
        if node not in done:
            cycle = visit(node)
            if cycle:
                return cycle
    return None


def build_graph(
    identities: Iterable[str],
    references: References,
    declared: References | None = None,
) -> DependencyGraph:
    """
    Build and validate the dependency graph.

    Args:
        identities: Every discovered script identity
        references: Statically referenced identities per script (unknown ones ignored)
        declared: Explicitly declared dependencies per script (unknown ones rejected)

    Raises:
        UnknownDependencyError: A declared dependency was not discovered
        CycleDetectedError: Scripts depend on each other in a loop
    """
    known = set(identities)
    edges: dict[str, frozenset[str]] = {}

    for identity in sorted(known):
        deps = {ref for ref in references(identity) if ref in known and ref != identity}
        if declared is not None:
            for dep in declared(identity):
                if dep not in known:
                    raise UnknownDependencyError(identity, dep)
                if dep == identity:
                    raise CycleDetectedError([identity])
                deps.add(dep)
        edges[identity] = frozenset(deps)

    cycle = find_cycle(edges)
    if cycle:
        raise CycleDetectedError(cycle)

    return DependencyGraph(edges)
