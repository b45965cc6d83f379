"""
Configuration management for taskfuse.

This module handles:
- Loading environment variables into a typed Config dataclass
- Overlaying an optional taskfuse.yaml found in the project directory

Precedence, lowest first: built-in defaults, environment, taskfuse.yaml,
command-line flags (applied by the CLI).
"""

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from taskfuse.errors import ConfigError

PROJECT_FILE = "taskfuse.yaml"
LOG_FORMATS = ("console", "json")


@dataclass(frozen=True)
class Config:
    """
    Runtime configuration.

    Supports one backend, DuckDB, addressed by a file path or ":memory:".
    """
    database: str                       # DuckDB database file
    workers: int = 4                    # Threads running scripts of one batch
    ignore: tuple[str, ...] = ()        # Glob patterns excluded from discovery
    log_format: str = "console"         # "console" or "json"

    def __post_init__(self) -> None:
        if self.workers < 1:
            raise ConfigError(f"workers must be at least 1, got {self.workers}")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"log_format must be one of {LOG_FORMATS}, got {self.log_format!r}")
        if not self.database:
            raise ConfigError("database path cannot be empty")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Config":
        """
        Load configuration from environment variables.

        Optional:
            TASKFUSE_DATABASE: DuckDB file (default: taskfuse.duckdb)
            TASKFUSE_WORKERS: Thread count per batch (default: 4)
            TASKFUSE_IGNORE: Comma-separated ignore globs
            TASKFUSE_LOG_FORMAT: "console" or "json" (default: console)
        """
        env = os.environ if env is None else env
        try:
            workers = int(env.get("TASKFUSE_WORKERS", "4"))
        except ValueError as e:
            raise ConfigError(f"TASKFUSE_WORKERS must be an integer: {e}") from e

        return cls(
            database=env.get("TASKFUSE_DATABASE", "taskfuse.duckdb"),
            workers=workers,
            ignore=_split_patterns(env.get("TASKFUSE_IGNORE", "")),
            log_format=env.get("TASKFUSE_LOG_FORMAT", "console"),
        )


def _split_patterns(raw: str) -> tuple[str, ...]:
    return tuple(p.strip() for p in raw.split(",") if p.strip())


def load_project_config(directory: str | Path, base: Config) -> Config:
    """
    Overlay settings from taskfuse.yaml in the project directory.

    Example:

        database: warehouse.duckdb
        workers: 8
        ignore:
          - "**/scratch/**"
          - "*_draft.py"

    Ignore patterns from the file are added to those already configured.
    A missing file returns base unchanged.
    """
    path = Path(directory) / PROJECT_FILE
    if not path.is_file():
        return base

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse {path}: {e}") from e

    # Skip empty files
    if not raw:
        return base
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping")

    unknown = set(raw) - {"database", "workers", "ignore", "log_format"}
    if unknown:
        raise ConfigError(f"Unknown keys in {path}: {sorted(unknown)}")

    overrides: dict[str, Any] = {}
    if "database" in raw:
        database = str(raw["database"])
        # Relative paths in the project file are relative to the project
        if database != ":memory:" and not Path(database).is_absolute():
            database = str(Path(directory) / database)
        overrides["database"] = database
    if "workers" in raw:
        if not isinstance(raw["workers"], int):
            raise ConfigError(f"workers in {path} must be an integer")
        overrides["workers"] = raw["workers"]
    if "log_format" in raw:
        overrides["log_format"] = str(raw["log_format"])
    if "ignore" in raw:
        patterns = raw["ignore"]
        if isinstance(patterns, str):
            patterns = [patterns]
        if not isinstance(patterns, list) or not all(isinstance(p, str) for p in patterns):
            raise ConfigError(f"ignore in {path} must be a list of glob patterns")
        overrides["ignore"] = base.ignore + tuple(patterns)

    return replace(base, **overrides)
