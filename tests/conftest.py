import io
import os

import pytest
from rich.console import Console


os.environ["DEVLOOP_DISABLE_LOGFIRE"] = "1"
os.environ["LOGFIRE_TOKEN"] = ""
os.environ["LOGFIRE_WRITE_TOKEN"] = ""
os.environ["LOGFIRE_IGNORE_NO_CONFIG"] = "1"

from devloop.config import LoopConfig  # noqa: E402
from devloop.reporter import LoopReporter  # noqa: E402
from devloop.workspace import ensure_directories, initialize_paths  # noqa: E402


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow running")
    config.addinivalue_line("markers", "posix: marks tests that need POSIX process groups")


@pytest.fixture
def temp_workspace(tmp_path):
    """Create temporary project directory for tests."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture
def paths(temp_workspace):
    workspace_paths = initialize_paths(temp_workspace)
    ensure_directories(workspace_paths)
    return workspace_paths


@pytest.fixture
def loop_config(temp_workspace):
    return LoopConfig(
        plan_model="anthropic/claude-sonnet-4",
        build_model="anthropic/claude-sonnet-4",
        project_dir=temp_workspace,
        backoff_base=0,
        task_pause_seconds=0,
        shutdown_grace_seconds=0.5,
    )


@pytest.fixture
def reporter(paths):
    console = Console(file=io.StringIO(), force_terminal=False, width=200)
    loop_reporter = LoopReporter(paths, verbose=True, console=console)
    yield loop_reporter
    loop_reporter.close()
