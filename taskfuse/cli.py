"""
Command-line entry point.

Usage:
    taskfuse ./scripts
    taskfuse ./scripts --ignore "**/scratch/**" --verbose
    taskfuse ./scripts --dry-run

Exit codes: 0 when every script succeeded, 1 when any script failed or was
skipped (or the project could not be planned), 130 on interrupt.
"""

import argparse
import logging
import sys
from dataclasses import replace

import structlog

from taskfuse import __version__
from taskfuse.config import LOG_FORMATS, Config, load_project_config
from taskfuse.errors import TaskfuseError
from taskfuse.runner import run_project
from taskfuse.scheduler import format_plan

log = structlog.get_logger()


def configure_logging(verbose: bool = False, log_format: str = "console") -> None:
    """Route structlog output to stderr, as JSON or human-readable lines."""
    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG if verbose else logging.INFO),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="taskfuse",
        description="Run the Python scripts of a directory in dependency order and load their results into DuckDB.",
    )
    parser.add_argument("directory", help="The directory where your scripts are stored")
    parser.add_argument(
        "--ignore",
        action="append",
        default=[],
        metavar="GLOB",
        help="Glob pattern of files to skip (repeatable)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--dry-run", action="store_true", help="Print the execution plan without running anything")
    parser.add_argument("--database", help="DuckDB database file (default: $TASKFUSE_DATABASE or taskfuse.duckdb)")
    parser.add_argument("--workers", type=int, help="Scripts run in parallel within a batch")
    parser.add_argument("--log-format", choices=LOG_FORMATS, help="Log output format")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def resolve_config(args: argparse.Namespace) -> Config:
    """Environment, then taskfuse.yaml, then command-line flags."""
    config = load_project_config(args.directory, Config.from_env())
    overrides = {}
    if args.database:
        overrides["database"] = args.database
    if args.workers is not None:
        overrides["workers"] = args.workers
    if args.log_format:
        overrides["log_format"] = args.log_format
    if args.ignore:
        overrides["ignore"] = config.ignore + tuple(args.ignore)
    return replace(config, **overrides)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(verbose=args.verbose)

    try:
        config = resolve_config(args)
    except TaskfuseError as e:
        log.error("invalid_configuration", error=str(e))
        return 1

    configure_logging(verbose=args.verbose, log_format=config.log_format)
    log.info("taskfuse_starting", directory=args.directory, dry_run=args.dry_run, workers=config.workers)

    try:
        report = run_project(args.directory, config, dry_run=args.dry_run)
    except TaskfuseError as e:
        log.error("run_aborted", error=str(e), error_type=type(e).__name__)
        return 1
    except KeyboardInterrupt:
        log.warning("run_interrupted")
        return 130

    if args.dry_run or args.verbose:
        print(format_plan(report.batches))
    print(report.summary())
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
