"""Shared test configuration and fixtures."""

import os
from pathlib import Path

import httpx
import pytest

from pragent.config import ConfigManager
from pragent.core import SessionStore
from pragent.models import Config, Session, SessionStatus, Task
from pragent.workflows.jobs import BackgroundJobRegistry, MemoryJobStore


@pytest.fixture
def anyio_backend():
    """Run async tests on asyncio only."""
    return "asyncio"


@pytest.fixture
def temp_home(tmp_path):
    """Create a temporary home directory for tests."""
    home = tmp_path / "home"
    home.mkdir()
    return home


@pytest.fixture
def isolated_config_manager(temp_home, monkeypatch):
    """Create an isolated ConfigManager that doesn't touch real config files."""
    monkeypatch.setattr(Path, "home", lambda: temp_home)
    monkeypatch.setattr("pragent.config.get_git_root", lambda cwd=None: None)
    monkeypatch.delenv("API_BASE_URL", raising=False)
    for key in list(os.environ):
        if key.startswith("PRAGENT_"):
            monkeypatch.delenv(key)

    manager = ConfigManager()
    manager._user_config_path = temp_home / ".pr-agent" / "config.yaml"
    manager._project_config_path = None
    manager._config = None

    return manager


@pytest.fixture(autouse=True)
def mock_global_config_manager(isolated_config_manager, monkeypatch):
    """Automatically replace the global config_manager for all tests."""
    import pragent.cli
    import pragent.config

    monkeypatch.setattr(pragent.config, "config_manager", isolated_config_manager)
    monkeypatch.setattr(pragent.cli, "config_manager", isolated_config_manager)

    return isolated_config_manager


@pytest.fixture
def project_dir(tmp_path, monkeypatch):
    """Working directory standing in for the git root of a project."""
    root = tmp_path / "project"
    root.mkdir()
    monkeypatch.setattr("pragent.cli.get_git_root", lambda cwd=None: root)
    monkeypatch.setattr("pragent.cli.get_origin_repo", lambda cwd=None: "acme/widgets")
    monkeypatch.setattr("pragent.cli.get_current_branch", lambda cwd=None: "main")
    return root


@pytest.fixture
def store(project_dir):
    """Session store rooted in the project directory."""
    return SessionStore(project_dir)


@pytest.fixture
def registry():
    """Job registry backed by memory."""
    return BackgroundJobRegistry(store=MemoryJobStore())


@pytest.fixture
def fast_config():
    """Configuration with small backoff delays."""
    return Config.model_validate({
        "api": {"base_url": "https://backend.test"},
        "rate_limits": {"base_delay": 0.01, "max_delay": 0.05},
    })


def make_tasks(*specs):
    """Build tasks from ``(id, dependencies)`` pairs."""
    return [
        Task(id=task_id, title=f"Task {task_id}", priority=index + 1, dependencies=list(deps))
        for index, (task_id, deps) in enumerate(specs)
    ]


@pytest.fixture
def shipping_session(store):
    """Factory saving a shipping session with the given tasks."""

    def create(tasks, repo="acme/widgets", status=SessionStatus.SHIPPING):
        session = Session(
            session_id="sess-1",
            status=status,
            repo=repo,
            branch="main",
            plan_name="bold-falcon",
            tasks=tasks,
        )
        store.save_session(session)
        return session

    return create


def sse_body(*lines):
    """Event stream body from raw lines."""
    return ("\n".join(lines) + "\n").encode()


@pytest.fixture
def mock_transport_factory():
    """Build an httpx.MockTransport from a ``(method, path) -> response`` handler."""

    def create(handler):
        requests = []

        def record(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return handler(request)

        transport = httpx.MockTransport(record)
        transport.requests = requests
        return transport

    return create


@pytest.fixture
def runner():
    """Create a Click CLI test runner."""
    from click.testing import CliRunner
    return CliRunner()
