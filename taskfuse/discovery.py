"""Find candidate script files under a project directory."""

import fnmatch
from pathlib import Path, PurePosixPath
from typing import Iterable

import structlog

from taskfuse.errors import DiscoveryError

log = structlog.get_logger()


def normalize_identity(ref: str) -> str:
    """
    Normalise a script reference to its identity.

    "./staging/orders", "staging\\orders.py" and "staging/orders.py" all
    become "staging/orders.py".
    """
    path = PurePosixPath(ref.strip().replace("\\", "/"))
    parts = [p for p in path.parts if p not in (".", "")]
    if not parts:
        raise ValueError(f"Empty script reference: {ref!r}")
    normalized = PurePosixPath(*parts)
    if normalized.suffix != ".py":
        normalized = normalized.with_name(normalized.name + ".py")
    return normalized.as_posix()


def is_ignored(identity: str, patterns: Iterable[str]) -> bool:
    """Check a relative path against ignore globs (full path or file name)."""
    name = PurePosixPath(identity).name
    for pattern in patterns:
        if fnmatch.fnmatch(identity, pattern) or fnmatch.fnmatch(name, pattern):
            return True
        # "**/x/**" style patterns should also match paths at the top level
        if pattern.startswith("**/") and fnmatch.fnmatch(identity, pattern[3:]):
            return True
    return False


def discover(root: str | Path, ignore_patterns: Iterable[str] = ()) -> list[str]:
    """
    List the Python files under root that may be scripts.

    Skips __init__.py, private or hidden files and directories (leading "_"
    or "."), and anything matching an ignore pattern.

    Returns:
        Sorted root-relative POSIX paths.
    """
    root_path = Path(root)
    if not root_path.is_dir():
        raise DiscoveryError(f"Script directory not found: {root}")

    patterns = list(ignore_patterns)
    found = []
    for path in root_path.rglob("*.py"):
        relative = path.relative_to(root_path)
        if any(part.startswith(("_", ".")) for part in relative.parts):
            continue
        identity = relative.as_posix()
        if is_ignored(identity, patterns):
            log.debug("script_ignored", script=identity)
            continue
        if path.is_file():
            found.append(identity)

    found.sort()
    log.debug("scripts_discovered", root=str(root_path), count=len(found))
    return found
