"""
Script execution.

Each script runs in isolation: it is loaded from its file under a private
module name, handed the outputs of its dependencies, and its return value
is checked to be a ResultSet. Failures inside the script are wrapped in
ScriptExecutionError so the scheduler can report them per node.
"""

import asyncio
import importlib.util
import inspect
import re
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType, ModuleType
from typing import Any, Mapping

import structlog

from taskfuse.analysis import ScriptNode
from taskfuse.dbtypes import ColumnType, parse_column_type
from taskfuse.errors import InvalidResultShapeError, ScriptExecutionError
from taskfuse.results import ResultSet

log = structlog.get_logger()

_path_lock = threading.Lock()


@dataclass(frozen=True)
class ScriptOutput:
    """A script's validated result plus the column types it declares."""
    result_set: ResultSet
    columns: dict[str, ColumnType] = field(default_factory=dict, hash=False)


def _module_name(identity: str) -> str:
    return "taskfuse_script_" + re.sub(r"\W", "_", identity.removesuffix(".py"))


async def _await(awaitable):
    return await awaitable


class ScriptExecutor:
    """Loads and runs scripts found under a project root."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()
        self._added_path = False
        # Scripts may import each other by module path from the project root
        with _path_lock:
            if str(self.root) not in sys.path:
                sys.path.insert(0, str(self.root))
                self._added_path = True

    def _under_root(self, module: ModuleType) -> bool:
        locations = [getattr(module, "__file__", None), *getattr(module, "__path__", [])]
        for location in locations:
            if isinstance(location, str) and Path(location).resolve().is_relative_to(self.root):
                return True
        return False

    def close(self) -> None:
        """Undo the import path change and forget modules imported from the project."""
        with _path_lock:
            if self._added_path and str(self.root) in sys.path:
                sys.path.remove(str(self.root))
            self._added_path = False

            stale = [name for name, module in list(sys.modules.items()) if self._under_root(module)]
            for name in stale:
                del sys.modules[name]
        log.debug("script_modules_released", root=str(self.root), modules=len(stale))

    def load_module(self, node: ScriptNode) -> ModuleType:
        """Import a script file without registering it in sys.modules."""
        path = self.root / node.identity
        spec = importlib.util.spec_from_file_location(_module_name(node.identity), path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot load script from {path}")
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module

    def execute(self, node: ScriptNode, dependency_outputs: Mapping[str, ResultSet]) -> ScriptOutput:
        """
        Run one script.

        Args:
            node: The script to run
            dependency_outputs: ResultSet of every declared dependency, by identity

        Raises:
            ScriptExecutionError: The script failed to import or raised
            InvalidResultShapeError: The script returned malformed output
        """
        deps = MappingProxyType(dict(dependency_outputs))
        log.debug("script_started", script=node.identity, dependencies=sorted(deps))

        try:
            module = self.load_module(node)
            run = getattr(module, "run", None)
            if not callable(run):
                raise AttributeError("script does not define a callable run()")

            value = run(deps) if self._takes_argument(run) else run()
            if inspect.isawaitable(value):
                value = asyncio.run(_await(value))
        except Exception as e:
            raise ScriptExecutionError(node.identity, e) from e

        result_set = ResultSet.from_value(value, node.identity)
        columns = self._declared_columns(node, module)

        log.debug("script_finished", script=node.identity, rows=len(result_set), fields=list(result_set.fields))
        return ScriptOutput(result_set=result_set, columns=columns)

    @staticmethod
    def _takes_argument(run: Any) -> bool:
        try:
            params = inspect.signature(run).parameters.values()
        except (TypeError, ValueError):
            return True
        return any(
            p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD, p.VAR_POSITIONAL)
            for p in params
        )

    @staticmethod
    def _declared_columns(node: ScriptNode, module: ModuleType) -> dict[str, ColumnType]:
        """Runtime COLUMNS override the statically parsed ones."""
        declared = getattr(module, "COLUMNS", None)
        if declared is None:
            return dict(node.columns)
        if not isinstance(declared, Mapping):
            raise InvalidResultShapeError("COLUMNS must be a mapping of column name to type", node.identity)
        try:
            return {str(name): parse_column_type(spec) for name, spec in declared.items()}
        except (TypeError, ValueError) as e:
            raise InvalidResultShapeError(f"invalid COLUMNS: {e}", node.identity) from e
