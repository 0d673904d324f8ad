"""Shared test fixtures and configuration for pytest."""

import asyncio
import subprocess
import sys
from collections import deque
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from conductor import db
from conductor.adapters import ClaudeAdapter, SpawnOptions, SpawnSpec
from conductor.config import Settings
from conductor.context import AppContext
from conductor.db import Database
from conductor.models import WorkflowSession

FAKE_AGENT = Path(__file__).with_name("fake_agent.py")


class FakeAdapter(ClaudeAdapter):
    """Claude protocol, but the process is ``tests/fake_agent.py``.

    Each spawn takes the next queued behavior, falling back to ``default``.
    """

    def __init__(self, default: str = "complete") -> None:
        self.default = default
        self.behaviors: deque[str] = deque()
        self.specs: list[SpawnSpec] = []

    def queue(self, *behaviors: str) -> None:
        self.behaviors.extend(behaviors)

    def build_spawn_spec(self, opts: SpawnOptions, settings: Settings) -> SpawnSpec:
        spec = super().build_spawn_spec(opts, settings)
        behavior = self.behaviors.popleft() if self.behaviors else self.default
        fake = SpawnSpec(
            command=sys.executable,
            args=[str(FAKE_AGENT), "--behavior", behavior, *spec.args],
            initial_input=spec.initial_input,
            close_stdin_after_initial_input=spec.close_stdin_after_initial_input,
        )
        self.specs.append(fake)
        return fake


def make_git_repo(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    subprocess.run(["git", "init", "-q", "-b", "main"], cwd=path, check=True)
    subprocess.run(
        [
            "git",
            "-c",
            "user.email=tests@example.com",
            "-c",
            "user.name=Tests",
            "commit",
            "-q",
            "--allow-empty",
            "-m",
            "initial",
        ],
        cwd=path,
        check=True,
    )
    return path


async def wait_for(
    predicate: Callable[[], Awaitable[Any]], timeout: float = 30.0, interval: float = 0.05
) -> Any:
    """Poll an async predicate until it returns something truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = await predicate()
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


async def load_session(database: Database, session_id: str) -> WorkflowSession:
    async with database.session() as session:
        ws = await db.get_session_by_id(session, session_id)
    assert ws is not None
    return ws


async def wait_for_status(
    database: Database, session_id: str, *statuses: str, timeout: float = 30.0
) -> WorkflowSession:
    async def reached() -> WorkflowSession | None:
        ws = await load_session(database, session_id)
        return ws if ws.status in statuses else None

    return await wait_for(reached, timeout=timeout)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a temporary directory."""
    data_dir = tmp_path / "data"
    return Settings(
        data_dir=data_dir,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'conductor.db'}",
        bridge_poll_interval=0.1,
        kill_grace_seconds=0.5,
        terminate_grace_seconds=1.0,
        stdin_close_grace_seconds=1.0,
        redis_events_enabled=False,
    )


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    return make_git_repo(tmp_path / "repo")


@pytest_asyncio.fixture
async def database(settings: Settings) -> AsyncGenerator[Database]:
    database = Database.from_settings(settings)
    await database.init_schema()
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def workspace_id(database: Database, git_repo: Path) -> str:
    async with database.session() as session:
        repo = await db.create_repo(session, "app", str(git_repo))
        workspace = await db.create_workspace(session, "main", [repo.id])
    return workspace.id


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest_asyncio.fixture
async def app(settings: Settings, database: Database, fake_adapter: FakeAdapter) -> AsyncGenerator[AppContext]:
    """A started application context whose agents are fake CLIs."""
    ctx = AppContext(
        settings, database=database, adapters={"claude": fake_adapter, "codex": fake_adapter}
    )
    await ctx.start()
    yield ctx
    await ctx.stop()


async def create_workflow(database: Database, *phases: dict[str, Any], **kwargs: Any) -> str:
    async with database.session() as session:
        workflow = await db.create_workflow(session, "test-flow", list(phases), **kwargs)
    return workflow.id


@pytest_asyncio.fixture
async def session_id(database: Database, workspace_id: str) -> str:
    """A pending session row to hang approvals, decisions and agents on."""
    workflow_id = await create_workflow(database, {"name": "build"})
    async with database.session() as session:
        ws = await db.create_session(session, workspace_id=workspace_id, workflow_id=workflow_id)
    return ws.id
