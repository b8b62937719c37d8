"""Shared test fixtures for the shipyard backend test suite.

Tests use a throwaway SQLite database and data directory created per test
session. The app's migrator creates the tables on import, so no explicit
create_all is needed here. Rows are deleted before each test.

The supervisor, proxy and git fetch are replaced by in-process fakes so the
suite needs neither systemd, Caddy nor network access. Install and build
commands still run for real through the shell (``true``, ``false``, ``echo``).
"""

import os
import tempfile

# Point the app at throwaway storage before any shipyard imports.
_TMP_ROOT = tempfile.mkdtemp(prefix="shipyard-tests-")
os.environ["DATABASE_URL"] = os.environ.get(
    "TEST_DATABASE_URL",
    f"sqlite:///{os.path.join(_TMP_ROOT, 'shipyard_test.db')}",
)
os.environ["DATA_DIR"] = os.path.join(_TMP_ROOT, "data")
os.environ["AUTH_ENABLED"] = "false"
os.environ["ENVIRONMENT"] = "development"
os.environ["LOG_FORMAT"] = "text"
os.environ["SUPERVISOR_BACKEND"] = "noop"
os.environ["PROXY_BACKEND"] = "noop"

import time
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy import text

from shipyard.database import SessionLocal
from shipyard.main import create_app
from shipyard.exceptions import FetchError, RegistrationError
from shipyard.schemas.deployment import DeployRequest
from shipyard.services.lifecycle import LifecycleCoordinator
from shipyard.services.log_broker import LogBroker
from shipyard.services.pipeline import PipelineExecutor
from shipyard.services.proxy import NoopProxy
from shipyard.services.queue_manager import QueueManager
from shipyard.services.supervisor import (
    SERVICE_ACTIVE,
    SERVICE_INACTIVE,
    SERVICE_UNKNOWN,
    ProcessSupervisor,
)
from shipyard.services.workspace import WorkspaceProvisioner

# Child tables first.
_CLEAN_TABLES = ["app_env_vars", "app_domains", "apps", "deployment_jobs"]


@pytest.fixture(autouse=True)
def _clean_tables():
    """Delete all rows before each test for isolation."""
    db = SessionLocal()
    try:
        for table in _CLEAN_TABLES:
            db.execute(text(f"DELETE FROM {table}"))
        db.commit()
    finally:
        db.close()
    yield


@pytest.fixture()
def db():
    """Per-test database session."""
    session = SessionLocal()
    yield session
    session.close()


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeSupervisor(ProcessSupervisor):
    """Records every call; can be told to fail registration."""

    def __init__(self):
        self.services: Dict[str, dict] = {}
        self.calls: List[tuple] = []
        self.fail_register: Optional[str] = None
        self.output: Dict[str, List[str]] = {}

    def register_service(self, app_name, start_command, cwd, env, runtime="node"):
        self.calls.append(("register", app_name))
        if self.fail_register:
            raise RegistrationError("service", self.fail_register)
        self.services[app_name] = {
            "start_command": start_command,
            "cwd": Path(cwd),
            "env": dict(env),
            "runtime": runtime,
            "state": SERVICE_INACTIVE,
        }

    def start_service(self, app_name):
        self.calls.append(("start", app_name))
        if app_name not in self.services:
            raise RegistrationError("service", f"no service registered for {app_name}")
        self.services[app_name]["state"] = SERVICE_ACTIVE

    def stop_service(self, app_name):
        self.calls.append(("stop", app_name))
        if app_name not in self.services:
            return False
        self.services[app_name]["state"] = SERVICE_INACTIVE
        return True

    def remove_service(self, app_name):
        self.calls.append(("remove", app_name))
        return self.services.pop(app_name, None) is not None

    def service_status(self, app_name):
        service = self.services.get(app_name)
        return service["state"] if service else SERVICE_UNKNOWN

    def service_logs(self, app_name, lines=100):
        return self.output.get(app_name, [])[-lines:]


class FakeProxy(NoopProxy):
    """Route bookkeeping in the real table; config validation can be forced to fail."""

    def __init__(self, session_factory=SessionLocal):
        super().__init__(session_factory)
        self.valid = True

    def validate_config(self) -> bool:
        return self.valid


class FakeWorkspace(WorkspaceProvisioner):
    """Real staging/promote/extract, but 'clones' by writing files locally.

    ``repos`` maps a repository URL to the files its clone should contain;
    unknown URLs get a small default tree. URLs in ``unreachable`` fail the
    way git does.
    """

    def __init__(self, data_dir):
        super().__init__(data_dir)
        self.repos: Dict[str, Dict[str, str]] = {}
        self.unreachable = set()
        self.clones: List[tuple] = []

    async def clone_or_checkout(self, repo_url, branch, dest, on_output=None):
        self.clones.append((repo_url, branch))
        if on_output:
            on_output(f"Cloning into '{dest}'...\n")
        if repo_url in self.unreachable:
            message = f"fatal: repository '{repo_url}' not found\n"
            if on_output:
                on_output(message)
            raise FetchError(f"git clone of branch '{branch}' exited with code 128", output=message)
        files = self.repos.get(repo_url, {"package.json": "{}", "index.js": "console.log('hi')\n"})
        for name, content in files.items():
            path = Path(dest) / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def workspace(tmp_path) -> FakeWorkspace:
    ws = FakeWorkspace(tmp_path / "data")
    ws.ensure_dirs()
    return ws


@pytest.fixture()
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture()
def proxy() -> FakeProxy:
    return FakeProxy()


@pytest.fixture()
def broker() -> LogBroker:
    return LogBroker(buffer_size=100, retained_jobs=10)


@pytest.fixture()
def executor(workspace, supervisor, proxy, broker) -> PipelineExecutor:
    return PipelineExecutor(
        workspace=workspace,
        supervisor=supervisor,
        proxy=proxy,
        broker=broker,
        session_factory=SessionLocal,
        command_timeout=30,
    )


@pytest.fixture()
def queue(executor, broker) -> QueueManager:
    return QueueManager(executor, broker, SessionLocal, default_install_command="true")


@pytest_asyncio.fixture()
async def running_queue(queue):
    """QueueManager with its worker task running on the test's event loop."""
    await queue.start()
    yield queue
    await queue.stop()


@pytest.fixture()
def lifecycle(queue, supervisor, proxy, workspace) -> LifecycleCoordinator:
    return LifecycleCoordinator(queue, supervisor, proxy, workspace, SessionLocal)


@pytest.fixture()
def client(supervisor, proxy, workspace):
    """FastAPI TestClient with fake collaborators; the queue worker runs in its loop."""
    app = create_app(supervisor=supervisor, proxy=proxy, workspace=workspace)
    with TestClient(app) as c:
        yield c


def make_request(app_name: str = "demo", **overrides) -> DeployRequest:
    """Factory for git deploy requests that build instantly."""
    payload = {
        "app_name": app_name,
        "source_type": "git",
        "repository": f"https://example/{app_name}.git",
        "branch": "main",
        "install_command": "true",
        "start_command": "true",
    }
    payload.update(overrides)
    return DeployRequest(**payload)


def wait_for_job(client: TestClient, job_id: int, timeout: float = 20.0) -> dict:
    """Poll the status endpoint until the job is terminal."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = client.get(f"/api/deployments/{job_id}").json()
        if job["status"] in ("completed", "failed"):
            return job
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} did not finish within {timeout}s")
