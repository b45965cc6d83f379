"""Pytest configuration and fixtures."""

import textwrap
from pathlib import Path

import pytest
import structlog

from taskfuse.drivers import DuckDBDriver


class ProjectDir:
    """A throwaway script directory."""

    def __init__(self, root: Path):
        self.root = root

    def write(self, relative: str, source: str) -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(source), encoding="utf-8")
        return path


@pytest.fixture()
def project(tmp_path: Path) -> ProjectDir:
    root = tmp_path / "scripts"
    root.mkdir()
    return ProjectDir(root)


@pytest.fixture()
def driver():
    db = DuckDBDriver(":memory:")
    yield db
    db.close()


@pytest.fixture(autouse=True)
def _reset_logging():
    # The CLI reconfigures structlog globally
    yield
    structlog.reset_defaults()
