"""
taskfuse - A directory-driven ETL task runner for DuckDB.

Discovers Python scripts in a project directory, infers which scripts
depend on which others, runs them in dependency order and loads each
script's records into a table, creating or widening it as needed.

Usage:
    taskfuse ./scripts
    python -m taskfuse ./scripts --dry-run

Environment Variables:
    TASKFUSE_DATABASE: DuckDB database file (default: taskfuse.duckdb)
    TASKFUSE_WORKERS: Scripts run in parallel per batch (default: 4)
    TASKFUSE_IGNORE: Comma-separated glob patterns to skip
    TASKFUSE_LOG_FORMAT: "console" or "json" (default: console)
"""

__version__ = "0.1.0"
