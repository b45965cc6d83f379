"""
Static analysis of script files.

Scripts are read with the ast module and never executed here. Everything
the planner needs (dependencies, target table, natural key) comes from
module-level literals and import statements, so a dry run can plan a
project without running any of its code.

A script is any module defining a top-level run() function:

    # marts/customer_orders.py
    import staging.orders                   # dependency through an import

    TABLE = "customer_orders"               # optional, defaults to the file stem
    DEPENDS_ON = ["staging/customers.py"]   # optional explicit dependencies
    NATURAL_KEY = ["customer_id"]           # optional upsert key
    COLUMNS = {"customer_id": "bigint not null"}

    def run(deps):
        orders = deps["staging/orders.py"]
        ...
        return [{"customer_id": 1, "total": 10.5}]
"""

import ast
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import Mapping

import structlog

from taskfuse.dbtypes import ColumnType, parse_column_type
from taskfuse.discovery import normalize_identity
from taskfuse.errors import ScriptAnalysisError

log = structlog.get_logger()

_NON_IDENTIFIER = re.compile(r"\W")


@dataclass(frozen=True)
class ScriptNode:
    """One discovered script, as seen before execution."""
    identity: str                                   # Root-relative POSIX path
    table: str                                      # Target table name
    references: frozenset[str] = frozenset()        # Candidate identities from imports
    depends_on: tuple[str, ...] = ()                # Explicit DEPENDS_ON identities
    natural_key: tuple[str, ...] = ()               # Upsert key columns
    columns: Mapping[str, ColumnType] = field(default_factory=dict, hash=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "columns", MappingProxyType(dict(self.columns)))


def table_name_for(name: str) -> str:
    """Make a safe table name from a declared name or file stem."""
    cleaned = _NON_IDENTIFIER.sub("_", name.strip())
    if not cleaned:
        raise ValueError(f"Cannot derive a table name from {name!r}")
    return cleaned


def _import_references(tree: ast.AST, identity: str) -> set[str]:
    """Collect every script identity an import statement could point at."""
    package = PurePosixPath(identity).parent
    candidates: set[PurePosixPath] = set()

    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                candidates.add(PurePosixPath(*alias.name.split(".")))

        elif isinstance(node, ast.ImportFrom):
            if node.level:
                base = package
                for _ in range(node.level - 1):
                    if base == PurePosixPath("."):
                        base = None
                        break
                    base = base.parent
                if base is None:
                    continue
            else:
                base = PurePosixPath(".")

            module_path = base
            if node.module:
                module_path = base.joinpath(*node.module.split("."))
                candidates.add(module_path)

            for alias in node.names:
                if alias.name != "*":
                    candidates.add(module_path / alias.name)

    references = set()
    for candidate in candidates:
        if candidate == PurePosixPath("."):
            continue
        ref = normalize_identity(candidate.as_posix())
        if ref != identity:
            references.add(ref)
    return references


def _literal_assignments(tree: ast.Module) -> dict[str, ast.expr]:
    """Map module-level NAME = value assignments to their value nodes."""
    assignments: dict[str, ast.expr] = {}
    for stmt in tree.body:
        if isinstance(stmt, ast.Assign):
            for target in stmt.targets:
                if isinstance(target, ast.Name):
                    assignments[target.id] = stmt.value
        elif isinstance(stmt, ast.AnnAssign) and stmt.value is not None:
            if isinstance(stmt.target, ast.Name):
                assignments[stmt.target.id] = stmt.value
    return assignments


def _literal(identity: str, name: str, node: ast.expr):
    try:
        return ast.literal_eval(node)
    except (ValueError, TypeError) as e:
        raise ScriptAnalysisError(identity, f"{name} must be a literal value") from e


def _string_list(identity: str, name: str, value) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return tuple(value)
    raise ScriptAnalysisError(identity, f"{name} must be a string or a list of strings")


def defines_run(tree: ast.Module) -> bool:
    """True if the module defines a top-level run() function."""
    return any(
        isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)) and stmt.name == "run"
        for stmt in tree.body
    )


def parse_script(identity: str, source: str) -> ScriptNode | None:
    """
    Build a ScriptNode from source code.

    Returns None for helper modules that do not define run().

    Raises:
        ScriptAnalysisError: On syntax errors or non-literal declarations
    """
    try:
        tree = ast.parse(source, filename=identity)
    except SyntaxError as e:
        raise ScriptAnalysisError(identity, f"syntax error at line {e.lineno}: {e.msg}") from e

    if not defines_run(tree):
        return None

    assignments = _literal_assignments(tree)

    table = table_name_for(PurePosixPath(identity).stem)
    if "TABLE" in assignments:
        declared = _literal(identity, "TABLE", assignments["TABLE"])
        if not isinstance(declared, str):
            raise ScriptAnalysisError(identity, "TABLE must be a string")
        table = table_name_for(declared)

    depends_on: tuple[str, ...] = ()
    if "DEPENDS_ON" in assignments:
        raw = _string_list(identity, "DEPENDS_ON", _literal(identity, "DEPENDS_ON", assignments["DEPENDS_ON"]))
        try:
            depends_on = tuple(normalize_identity(ref) for ref in raw)
        except ValueError as e:
            raise ScriptAnalysisError(identity, str(e)) from e

    natural_key: tuple[str, ...] = ()
    if "NATURAL_KEY" in assignments:
        natural_key = _string_list(
            identity, "NATURAL_KEY", _literal(identity, "NATURAL_KEY", assignments["NATURAL_KEY"])
        )

    # COLUMNS may be built with dbtypes helpers, which only the executor can evaluate
    columns: dict[str, ColumnType] = {}
    if "COLUMNS" in assignments:
        try:
            raw_columns = ast.literal_eval(assignments["COLUMNS"])
        except (ValueError, TypeError):
            raw_columns = None
        if isinstance(raw_columns, dict):
            try:
                columns = {str(k): parse_column_type(v) for k, v in raw_columns.items()}
            except (TypeError, ValueError) as e:
                raise ScriptAnalysisError(identity, f"invalid COLUMNS: {e}") from e

    return ScriptNode(
        identity=identity,
        table=table,
        references=frozenset(_import_references(tree, identity)),
        depends_on=depends_on,
        natural_key=natural_key,
        columns=columns,
    )


def analyze_script(root: str | Path, identity: str) -> ScriptNode | None:
    """Read and analyse one script file under root."""
    path = Path(root) / identity
    try:
        source = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ScriptAnalysisError(identity, f"cannot read file: {e}") from e

    node = parse_script(identity, source)
    if node is None:
        log.debug("helper_module_skipped", script=identity)
    return node


def analyze_project(root: str | Path, identities: list[str]) -> dict[str, ScriptNode]:
    """Analyse every discovered file, keeping only real scripts."""
    nodes = {}
    for identity in identities:
        node = analyze_script(root, identity)
        if node is not None:
            nodes[identity] = node
    return nodes
