import asyncio
import subprocess
from pathlib import Path

import pytest

from conductor import db
from conductor.errors import GitBindingConflict, GitStrategyError
from conductor.git_strategy import (
    BranchIsolation,
    GitMode,
    GitStrategy,
    GitStrategyResolver,
    WorktreeManager,
    resolve_git_strategy,
    safe_name,
)
from conftest import make_git_repo


def test_strategy_from_dict_defaults_and_validation() -> None:
    assert GitStrategy.from_dict(None) == GitStrategy()
    assert GitStrategy.from_dict({"mode": "main"}).exclusive
    assert not GitStrategy().exclusive

    branch = GitStrategy.from_dict({"mode": "branch", "branch": "feature/x", "isolation": "in_place", "create": True})
    assert branch.isolation == BranchIsolation.IN_PLACE
    assert branch.exclusive
    assert GitStrategy.from_dict(branch.to_dict()) == branch

    with pytest.raises(GitStrategyError):
        GitStrategy.from_dict({"mode": "sideways"})
    with pytest.raises(GitStrategyError):
        GitStrategy.from_dict({"mode": "branch"})
    with pytest.raises(GitStrategyError):
        GitStrategy.from_dict({"mode": "branch", "branch": "x", "isolation": "shared"})


def test_resolution_prefers_session_then_phase_then_workflow() -> None:
    session = {"mode": "main"}
    phase = {"mode": "branch", "branch": "feature/x"}
    workflow = {"mode": "worktree"}

    assert resolve_git_strategy(session, phase, workflow).mode == GitMode.MAIN
    assert resolve_git_strategy(None, phase, workflow).mode == GitMode.BRANCH
    assert resolve_git_strategy(None, None, workflow).mode == GitMode.WORKTREE
    assert resolve_git_strategy(None, {}, None) == GitStrategy()


def test_safe_name() -> None:
    assert safe_name("Build Phase (primary)") == "build-phase--primary"
    assert safe_name("***") == "task"


async def _repos(database, *paths: Path):
    async with database.session() as session:
        repos = [await db.create_repo(session, path.name, str(path)) for path in paths]
        workspace = await db.create_workspace(session, "ws", [r.id for r in repos])
    return workspace.id, repos


def _resolver(database, tmp_path: Path) -> GitStrategyResolver:
    return GitStrategyResolver(database, WorktreeManager(tmp_path / "worktrees"))


def _branches(repo: Path) -> list[str]:
    out = subprocess.run(
        ["git", "branch", "--format=%(refname:short)"], cwd=repo, check=True, capture_output=True, text=True
    )
    return out.stdout.split()


@pytest.mark.asyncio
async def test_worktree_binding_for_multiple_repos(database, tmp_path) -> None:
    api = make_git_repo(tmp_path / "api")
    web = make_git_repo(tmp_path / "web")
    workspace_id, repos = await _repos(database, api, web)
    resolver = _resolver(database, tmp_path)

    binding = await resolver.bind(
        agent_id="abcdef0123", workspace_id=workspace_id, repos=repos, strategy=GitStrategy(), task_label="build"
    )

    parent = tmp_path / "worktrees" / "build-abcdef01"
    assert binding.working_dir == str(parent)
    assert binding.worktree_path == str(parent)
    assert [r.working_dir for r in binding.repos] == [str(parent / "api"), str(parent / "web")]
    assert binding.branch == "conductor/build-abcdef01"
    assert "conductor/build-abcdef01" in _branches(api)
    assert (parent / "web").is_dir()

    removed = await resolver.cleanup(binding.manifest)
    assert removed == [str(parent / "api"), str(parent / "web")]
    assert not (parent / "api").exists()


@pytest.mark.asyncio
async def test_branch_preconditions(database, git_repo, tmp_path) -> None:
    workspace_id, repos = await _repos(database, git_repo)
    resolver = _resolver(database, tmp_path)

    with pytest.raises(GitStrategyError):
        await resolver.bind(
            agent_id="a1",
            workspace_id=workspace_id,
            repos=repos,
            strategy=GitStrategy.from_dict({"mode": "branch", "branch": "missing"}),
            task_label="t",
        )
    with pytest.raises(GitStrategyError):
        await resolver.bind(
            agent_id="a2",
            workspace_id=workspace_id,
            repos=repos,
            strategy=GitStrategy.from_dict({"mode": "branch", "branch": "main", "create": True}),
            task_label="t",
        )

    created = await resolver.bind(
        agent_id="a3",
        workspace_id=workspace_id,
        repos=repos,
        strategy=GitStrategy.from_dict({"mode": "branch", "branch": "feature/x", "create": True}),
        task_label="t",
    )
    assert created.branch == "feature/x"
    assert not created.exclusive

    # The branch is now checked out in a3's worktree, so a4 forks from it
    shared = await resolver.bind(
        agent_id="a4bcdefgh",
        workspace_id=workspace_id,
        repos=repos,
        strategy=GitStrategy.from_dict({"mode": "branch", "branch": "feature/x"}),
        task_label="t",
    )
    assert shared.branch == "feature/x-a4bcdefg"


@pytest.mark.asyncio
async def test_concurrent_exclusive_binds_conflict(database, git_repo, tmp_path) -> None:
    workspace_id, repos = await _repos(database, git_repo)
    resolver = _resolver(database, tmp_path)
    main = GitStrategy(mode=GitMode.MAIN)

    results = await asyncio.gather(
        *(
            resolver.bind(agent_id=agent_id, workspace_id=workspace_id, repos=repos, strategy=main, task_label="t")
            for agent_id in ("a1", "a2")
        ),
        return_exceptions=True,
    )

    bindings = [r for r in results if not isinstance(r, Exception)]
    conflicts = [r for r in results if isinstance(r, GitBindingConflict)]
    assert len(bindings) == 1
    assert len(conflicts) == 1
    assert bindings[0].working_dir == str(git_repo)
    assert resolver.holder(workspace_id) == bindings[0].agent_id

    resolver.release(bindings[0].agent_id)
    assert resolver.holder(workspace_id) is None
    again = await resolver.bind(agent_id="a3", workspace_id=workspace_id, repos=repos, strategy=main, task_label="t")
    assert again.exclusive
    assert workspace_id not in resolver._locks


@pytest.mark.asyncio
async def test_validate_repos_rejects_plain_directories(database, tmp_path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()
    _, repos = await _repos(database, plain)

    with pytest.raises(GitStrategyError):
        await _resolver(database, tmp_path).validate_repos(repos)


@pytest.mark.asyncio
async def test_created_branch_is_reused_within_its_session(database, git_repo, tmp_path) -> None:
    workspace_id, repos = await _repos(database, git_repo)
    resolver = _resolver(database, tmp_path)
    create = GitStrategy.from_dict({"mode": "branch", "branch": "feature/y", "create": True})

    first = await resolver.bind(
        agent_id="s1agent01",
        workspace_id=workspace_id,
        repos=repos,
        strategy=create,
        task_label="plan",
        session_id="s1",
    )
    second = await resolver.bind(
        agent_id="s1agent02",
        workspace_id=workspace_id,
        repos=repos,
        strategy=create,
        task_label="build",
        session_id="s1",
    )

    assert first.branch == "feature/y"
    assert second.branch == "feature/y-s1agent0"
    assert second.strategy.create is False

    with pytest.raises(GitStrategyError):
        await resolver.bind(
            agent_id="s2agent01",
            workspace_id=workspace_id,
            repos=repos,
            strategy=create,
            task_label="t",
            session_id="s2",
        )

    resolver.forget_session("s1")
    with pytest.raises(GitStrategyError):
        await resolver.bind(
            agent_id="s1agent03",
            workspace_id=workspace_id,
            repos=repos,
            strategy=create,
            task_label="t",
            session_id="s1",
        )


@pytest.mark.asyncio
async def test_in_place_created_branch_is_checked_out_again(database, git_repo, tmp_path) -> None:
    workspace_id, repos = await _repos(database, git_repo)
    resolver = _resolver(database, tmp_path)
    create = GitStrategy.from_dict({"mode": "branch", "branch": "feature/z", "isolation": "in_place", "create": True})

    first = await resolver.bind(
        agent_id="a1",
        workspace_id=workspace_id,
        repos=repos,
        strategy=create,
        task_label="t",
        session_id="s1",
    )
    resolver.release("a1")
    second = await resolver.bind(
        agent_id="a2",
        workspace_id=workspace_id,
        repos=repos,
        strategy=create,
        task_label="t",
        session_id="s1",
    )

    assert first.branch == second.branch == "feature/z"
    assert second.working_dir == str(git_repo)
    assert _branches(git_repo).count("feature/z") == 1
    resolver.release("a2")
    assert workspace_id not in resolver._locks
