"""Exception hierarchy for taskfuse.

Two families matter to the runner:

- Structural errors (GraphError and its subclasses) describe a broken
  project layout. They abort the run before any script executes.
- Node errors (NodeError and its subclasses) belong to a single script.
  They are captured per node and reported in the run summary while
  sibling scripts keep running.
"""

from typing import Sequence


class TaskfuseError(Exception):
    """Base class for every error raised by taskfuse."""


class ConfigError(TaskfuseError):
    """Invalid environment or project configuration."""


class DiscoveryError(TaskfuseError):
    """The project directory cannot be scanned."""


class ScriptAnalysisError(TaskfuseError):
    """A script's source cannot be statically analysed."""

    def __init__(self, identity: str, message: str) -> None:
        self.identity = identity
        super().__init__(f"{identity}: {message}")


class GraphError(TaskfuseError):
    """Structural problem in the dependency graph."""


class CycleDetectedError(GraphError):
    """Scripts depend on each other in a loop."""

    def __init__(self, members: Sequence[str]) -> None:
        self.members = tuple(members)
        path = " -> ".join([*self.members, self.members[0]]) if self.members else ""
        super().__init__(f"Dependency cycle detected: {path}")


class UnknownDependencyError(GraphError):
    """A script declares a dependency that was not discovered."""

    def __init__(self, node: str, dependency: str) -> None:
        self.node = node
        self.dependency = dependency
        super().__init__(f"{node} depends on unknown script {dependency}")


class NodeError(TaskfuseError):
    """Failure isolated to one script."""

    identity: str | None = None


class ScriptExecutionError(NodeError):
    """The script body raised while loading or running."""

    def __init__(self, identity: str, cause: BaseException) -> None:
        self.identity = identity
        self.cause = cause
        super().__init__(f"{identity} failed: {type(cause).__name__}: {cause}")


class InvalidResultShapeError(NodeError):
    """The script returned something that is not a uniform list of records."""

    def __init__(self, message: str, identity: str | None = None) -> None:
        self.identity = identity
        prefix = f"{identity}: " if identity else ""
        super().__init__(f"{prefix}{message}")


class UnsupportedValueTypeError(NodeError):
    """A result value has no column type mapping."""

    def __init__(self, field: str, kind: str) -> None:
        self.field = field
        self.kind = kind
        super().__init__(
            f"Unsupported type for value provided in script result: "
            f"field '{field}' holds {kind}"
        )


class SchemaConflictError(NodeError):
    """Reconciling with the existing table would narrow a column."""

    def __init__(self, table: str, column: str, existing: str, requested: str) -> None:
        self.table = table
        self.column = column
        self.existing = existing
        self.requested = requested
        super().__init__(
            f"Cannot change {table}.{column} from {existing} to {requested}: "
            f"columns are only ever widened"
        )


class LoadError(NodeError):
    """The database rejected a write."""

    def __init__(self, table: str, row_count: int, cause: BaseException) -> None:
        self.table = table
        self.row_count = row_count
        self.cause = cause
        super().__init__(
            f"Failed to load {row_count} rows into {table}: {type(cause).__name__}: {cause}"
        )
