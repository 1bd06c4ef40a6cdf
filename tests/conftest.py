"""
Pytest configuration for the podbox deployment orchestrator tests.

Provides in-memory fakes for the service supervisor, the database tool and
the HTTP probe, and a deployment laid out under ``tmp_path``:

    tmp_path/
        live/        back/app.py, pwa/index.html   (version 1)
        staging/     back/, pwa/, db.dump, VERSION (version 2, via stage_update)
        backups/     backup units
        state/       version.txt, deploy.lock, state.json
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

import pytest

from podbox_deploy.collaborators.database import DatabaseTool
from podbox_deploy.collaborators.probe import HttpProbe
from podbox_deploy.collaborators.services import ServiceController
from podbox_deploy.config import (
    ContentConfig,
    DeployConfig,
    HealthConfig,
    PathsConfig,
    PermissionsConfig,
)
from podbox_deploy.context import DeploymentContext
from podbox_deploy.errors import CollaboratorError
from podbox_deploy.logging import ROOT_LOGGER_NAME

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]

BACKEND_URL = "http://localhost:8000/"
PUBLIC_URL = "https://podbox.plus/"


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


# =============================================================================
# Fakes
# =============================================================================


class FakeServiceController(ServiceController):
    """Service supervisor that tracks running services in memory."""

    def __init__(self, running: tuple[str, ...] = ("podbox", "nginx")) -> None:
        self.running: set[str] = set(running)
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], CollaboratorError] = {}
        # Services that report inactive even while "running"
        self.inactive: set[str] = set()

    def fail(self, verb: str, name: str, message: str = "unit failed") -> None:
        self.failures[(verb, name)] = CollaboratorError(
            f"Failed to {verb} {name}: {message}",
            details={"service": name, "verb": verb},
        )

    async def _command(self, verb: str, name: str) -> None:
        self.calls.append((verb, name))
        error = self.failures.get((verb, name))
        if error is not None:
            raise error

    async def start(self, name: str) -> None:
        await self._command("start", name)
        self.running.add(name)

    async def stop(self, name: str) -> None:
        await self._command("stop", name)
        self.running.discard(name)

    async def restart(self, name: str) -> None:
        await self._command("restart", name)
        self.running.add(name)

    async def is_active(self, name: str) -> bool:
        self.calls.append(("is-active", name))
        return name in self.running and name not in self.inactive


class FakeDatabaseTool(DatabaseTool):
    """
    Database whose whole content is a single string.

    ``content`` is None while the database does not exist (after a drop).
    Dumps write the content to the artifact; restores read it back.
    """

    def __init__(self, content: str | None = "db v1") -> None:
        self.content = content
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, CollaboratorError] = {}

    def fail(self, operation: str, message: str = "exited with code 1") -> None:
        self.failures[operation] = CollaboratorError(
            f"{operation} {message}",
            details={"operation": operation},
        )

    def _call(self, operation: str, argument: str = "") -> None:
        self.calls.append((operation, argument))
        error = self.failures.get(operation)
        if error is not None:
            raise error

    def _require_database(self) -> None:
        if self.content is None:
            raise CollaboratorError('database "podbox" does not exist')

    async def dump(self, artifact: Path) -> None:
        self._call("dump", str(artifact))
        self._require_database()
        artifact.write_text(self.content or "")

    async def restore(self, artifact: Path) -> None:
        self._call("restore", str(artifact))
        self._require_database()
        self.content = artifact.read_text()

    async def drop_database(self, *, force: bool = True) -> None:
        self._call("drop", str(force))
        self.content = None

    async def create_database(self) -> None:
        self._call("create")
        self.content = ""


class FakeProbe(HttpProbe):
    """HTTP probe answering from a url -> status (or exception) table."""

    def __init__(self, statuses: dict[str, int | Exception] | None = None) -> None:
        self.statuses: dict[str, int | Exception] = statuses or {
            BACKEND_URL: 404,
            PUBLIC_URL: 200,
        }
        self.calls: list[str] = []

    async def get(self, url: str) -> int:
        self.calls.append(url)
        value = self.statuses[url]
        if isinstance(value, Exception):
            raise value
        return value


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _reset_package_logger() -> None:
    """Undo setup_logging so caplog sees podbox_deploy records."""
    yield
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture
def deploy_config(tmp_path: Path) -> DeployConfig:
    """Configuration pointing every location into tmp_path."""
    state_dir = tmp_path / "state"
    return DeployConfig(
        paths=PathsConfig(
            staging_dir=tmp_path / "staging",
            live_dir=tmp_path / "live",
            backup_root=tmp_path / "backups",
            version_file=state_dir / "version.txt",
            lock_file=state_dir / "deploy.lock",
            state_file=state_dir / "state.json",
        ),
        permissions=PermissionsConfig(owner=None, group=None),
        content=ContentConfig(mount_point=tmp_path / "sdcard"),
        health=HealthConfig(
            settle_delay_seconds=0,
            backend_url=BACKEND_URL,
            public_url=PUBLIC_URL,
        ),
    )


@pytest.fixture
def live_tree(deploy_config: DeployConfig) -> Path:
    """Create a version 1 live deployment."""
    live = deploy_config.paths.live_dir
    (live / "back").mkdir(parents=True)
    (live / "back" / "app.py").write_text("backend v1\n")
    (live / "pwa").mkdir()
    (live / "pwa" / "index.html").write_text("pwa v1\n")
    (live / ".env").write_text("SECRET=1\n")
    return live


@pytest.fixture
def stage_update(deploy_config: DeployConfig) -> Callable[..., Path]:
    """Return a function that stages a complete update for ``version``."""

    def _stage(version: str = "2", *, with_version_file: bool = True) -> Path:
        staging = deploy_config.paths.staging_dir
        (staging / "back").mkdir(parents=True, exist_ok=True)
        (staging / "back" / "app.py").write_text(f"backend v{version}\n")
        (staging / "pwa").mkdir(exist_ok=True)
        (staging / "pwa" / "index.html").write_text(f"pwa v{version}\n")
        (staging / "db.dump").write_text(f"db v{version}")
        if with_version_file:
            (staging / "VERSION").write_text(f"{version}\n")
        return staging

    return _stage


@pytest.fixture
def services() -> FakeServiceController:
    return FakeServiceController()


@pytest.fixture
def database() -> FakeDatabaseTool:
    return FakeDatabaseTool()


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def ctx(
    deploy_config: DeployConfig,
    services: FakeServiceController,
    database: FakeDatabaseTool,
    probe: FakeProbe,
) -> DeploymentContext:
    """Deployment context wired to the fakes."""
    return DeploymentContext(
        config=deploy_config,
        services=services,
        database=database,
        probe=probe,
    )
