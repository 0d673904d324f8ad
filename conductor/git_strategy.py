"""Git strategy resolution: which directory and branch each agent works in."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from enum import StrEnum
from pathlib import Path
from typing import Any

from . import db
from .errors import GitBindingConflict, GitCommandError, GitStrategyError
from .locks import KeyedLocks
from .models import Repo

logger = logging.getLogger(__name__)


class GitMode(StrEnum):
    WORKTREE = "worktree"
    MAIN = "main"
    BRANCH = "branch"


class BranchIsolation(StrEnum):
    WORKTREE = "worktree"
    IN_PLACE = "in_place"


@dataclass(frozen=True)
class GitStrategy:
    mode: GitMode = GitMode.WORKTREE
    branch: str | None = None
    isolation: BranchIsolation = BranchIsolation.WORKTREE
    create: bool = False

    @property
    def exclusive(self) -> bool:
        """Strategies that share the primary checkout hold the workspace lock."""
        if self.mode == GitMode.MAIN:
            return True
        return self.mode == GitMode.BRANCH and self.isolation == BranchIsolation.IN_PLACE

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> GitStrategy:
        if not data:
            return cls()
        try:
            mode = GitMode(data.get("mode", GitMode.WORKTREE))
        except ValueError as exc:
            raise GitStrategyError(f"Unknown git strategy mode: {data.get('mode')!r}") from exc
        if mode != GitMode.BRANCH:
            return cls(mode=mode)

        branch = data.get("branch")
        if not branch or not isinstance(branch, str):
            raise GitStrategyError("Branch strategy requires a branch name")
        try:
            isolation = BranchIsolation(data.get("isolation", BranchIsolation.WORKTREE))
        except ValueError as exc:
            raise GitStrategyError(f"Unknown branch isolation: {data.get('isolation')!r}") from exc
        return cls(mode=mode, branch=branch, isolation=isolation, create=bool(data.get("create", False)))

    def to_dict(self) -> dict[str, Any]:
        if self.mode != GitMode.BRANCH:
            return {"mode": self.mode.value}
        return {
            "mode": self.mode.value,
            "branch": self.branch,
            "isolation": self.isolation.value,
            "create": self.create,
        }


def resolve_git_strategy(*candidates: dict[str, Any] | None) -> GitStrategy:
    """Pick the first configured strategy, highest priority first."""
    for candidate in candidates:
        if candidate:
            return GitStrategy.from_dict(candidate)
    return GitStrategy()


@dataclass
class RepoBinding:
    repo_id: str
    repo_name: str
    repo_path: str
    working_dir: str
    worktree_path: str | None = None
    branch: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "repo_id": self.repo_id,
            "repo_name": self.repo_name,
            "repo_path": self.repo_path,
            "working_dir": self.working_dir,
            "worktree_path": self.worktree_path,
            "branch": self.branch,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RepoBinding:
        return cls(**{key: data.get(key) for key in cls.__dataclass_fields__})


@dataclass
class GitBinding:
    """The resolved working directories of one agent."""

    agent_id: str
    workspace_id: str
    strategy: GitStrategy
    working_dir: str
    repos: list[RepoBinding] = field(default_factory=list)

    @property
    def exclusive(self) -> bool:
        return self.strategy.exclusive

    @property
    def worktree_path(self) -> str | None:
        if self.strategy.exclusive or not self.repos:
            return None
        if len(self.repos) == 1:
            return self.repos[0].worktree_path
        return self.working_dir

    @property
    def branch(self) -> str | None:
        return self.repos[0].branch if self.repos else None

    @property
    def manifest(self) -> list[dict[str, Any]]:
        return [repo.to_dict() for repo in self.repos]


def safe_name(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "-", value).strip("-").lower() or "task"


# =============================================================================
# Worktree Manager
# =============================================================================


class WorktreeManager:
    """Thin async wrapper over the git CLI."""

    def __init__(self, base_dir: Path, branch_prefix: str = "conductor", git_cmd: str = "git") -> None:
        self.base_dir = Path(base_dir)
        self.branch_prefix = branch_prefix
        self.git_cmd = git_cmd

    async def _git(self, args: list[str], cwd: str | Path) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                self.git_cmd,
                *args,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise GitStrategyError(f"git binary not found: {self.git_cmd}") from exc
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise GitCommandError(args, process.returncode or 1, stderr.decode("utf-8", errors="replace"))
        return stdout.decode("utf-8", errors="replace")

    async def is_git_repo(self, path: str | Path) -> bool:
        if not Path(path).is_dir():
            return False
        try:
            await self._git(["rev-parse", "--git-dir"], path)
        except GitCommandError:
            return False
        return True

    async def branch_exists(self, repo_path: str | Path, branch: str) -> bool:
        try:
            await self._git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], repo_path)
        except GitCommandError:
            return False
        return True

    async def create_worktree(
        self,
        repo_path: str | Path,
        dest: Path,
        *,
        new_branch: str | None = None,
        start_point: str | None = None,
        existing_branch: str | None = None,
    ) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        args = ["worktree", "add"]
        if new_branch:
            args += ["-b", new_branch, str(dest)]
            if start_point:
                args.append(start_point)
        else:
            args.append(str(dest))
            if existing_branch:
                args.append(existing_branch)
        await self._git(args, repo_path)
        return dest

    async def remove_worktree(self, repo_path: str | Path, dest: str | Path) -> None:
        await self._git(["worktree", "remove", str(dest), "--force"], repo_path)

    async def checkout(self, repo_path: str | Path, branch: str, *, create: bool) -> None:
        args = ["checkout", "-b", branch] if create else ["checkout", branch]
        await self._git(args, repo_path)

    async def list_worktrees(self, repo_path: str | Path) -> list[dict[str, str]]:
        """Parse ``git worktree list --porcelain`` into ``{dir, branch}`` dicts."""
        stdout = await self._git(["worktree", "list", "--porcelain"], repo_path)
        worktrees: list[dict[str, str]] = []
        current: dict[str, str] = {}
        for line in [*stdout.splitlines(), ""]:
            if line.startswith("worktree "):
                current = {"dir": line[len("worktree "):]}
            elif line.startswith("branch "):
                current["branch"] = line[len("branch "):].removeprefix("refs/heads/")
            elif line == "" and current:
                current.setdefault("branch", "HEAD")
                worktrees.append(current)
                current = {}
        return worktrees


# =============================================================================
# Resolver
# =============================================================================


class GitStrategyResolver:
    """Turns a git strategy into per-repo working directories for an agent.

    Exclusive strategies (``main`` and in-place ``branch``) are serialized per
    workspace: the check against in-flight reservations and live agent rows
    and the reservation itself happen under one lock.
    """

    def __init__(self, database: db.Database, worktrees: WorktreeManager) -> None:
        self.database = database
        self.worktrees = worktrees
        self._locks = KeyedLocks()
        self._holders: dict[str, str] = {}  # workspace_id -> agent_id
        self._session_branches: dict[str, set[str]] = {}  # session_id -> branches it created

    async def validate_repos(self, repos: Sequence[Repo]) -> None:
        for repo in repos:
            if not await self.worktrees.is_git_repo(repo.local_path):
                raise GitStrategyError(f"Not a git repository: {repo.local_path} ({repo.name})")

    async def bind(
        self,
        *,
        agent_id: str,
        workspace_id: str,
        repos: Sequence[Repo],
        strategy: GitStrategy,
        task_label: str,
        session_id: str | None = None,
    ) -> GitBinding:
        """Resolve working directories for one agent.

        A ``create`` branch is created by the first agent of a session that
        binds it; later agents of the same session reuse it as an existing
        branch.
        """
        if not repos:
            raise GitStrategyError(f"Workspace {workspace_id} has no repositories")

        creates = False
        if strategy.mode == GitMode.BRANCH and strategy.branch:
            if strategy.create and await self._session_owns_branch(session_id, strategy.branch):
                strategy = replace(strategy, create=False)
            creates = strategy.create
            await self._check_branch_precondition(repos, strategy.branch, strategy.create)

        if not strategy.exclusive:
            binding = await self._bind_worktrees(agent_id, workspace_id, repos, strategy, task_label)
        else:
            async with self._locks.hold(workspace_id):
                await self._check_exclusive(workspace_id, agent_id)
                self._holders[workspace_id] = agent_id
            try:
                binding = await self._bind_in_place(agent_id, workspace_id, repos, strategy)
            except Exception:
                self.release(agent_id)
                raise

        if creates and session_id is not None:
            self._session_branches.setdefault(session_id, set()).add(strategy.branch)
        return binding

    def forget_session(self, session_id: str) -> None:
        self._session_branches.pop(session_id, None)

    def release(self, agent_id: str) -> None:
        """Drop any in-process reservation held by the agent."""
        for workspace_id, holder in list(self._holders.items()):
            if holder == agent_id:
                del self._holders[workspace_id]
                logger.debug("Released exclusive binding of %s in workspace %s", agent_id, workspace_id)

    def holder(self, workspace_id: str) -> str | None:
        return self._holders.get(workspace_id)

    async def cleanup(self, manifest: Sequence[dict[str, Any]] | None) -> list[str]:
        """Remove the worktrees listed in an agent's manifest."""
        removed: list[str] = []
        for entry in manifest or []:
            binding = RepoBinding.from_dict(entry)
            if not binding.worktree_path:
                continue
            try:
                await self.worktrees.remove_worktree(binding.repo_path, binding.worktree_path)
            except GitCommandError as exc:
                logger.warning("Could not remove worktree %s: %s", binding.worktree_path, exc)
                continue
            removed.append(binding.worktree_path)
        return removed

    async def _check_exclusive(self, workspace_id: str, agent_id: str) -> None:
        holder_id = self._holders.get(workspace_id)
        if holder_id and holder_id != agent_id:
            async with self.database.session() as session:
                holder = await db.get_agent(session, holder_id)
            # A reservation without a row is a spawn still in flight
            if holder is None or not holder.is_terminal:
                raise GitBindingConflict(workspace_id, holder_id)
            del self._holders[workspace_id]

        async with self.database.session() as session:
            live = await db.find_exclusive_holder(session, workspace_id, exclude_agent_id=agent_id)
        if live is not None:
            raise GitBindingConflict(workspace_id, live.id)

    async def _check_branch_precondition(self, repos: Sequence[Repo], branch: str, create: bool) -> None:
        for repo in repos:
            exists = await self.worktrees.branch_exists(repo.local_path, branch)
            if create and exists:
                raise GitStrategyError(f"Branch {branch!r} already exists in {repo.name}")
            if not create and not exists:
                raise GitStrategyError(f"Branch {branch!r} does not exist in {repo.name}")

    async def _session_owns_branch(self, session_id: str | None, branch: str) -> bool:
        if session_id is None:
            return False
        # Roles of one phase bind before any of their agent rows exist
        if branch in self._session_branches.get(session_id, ()):
            return True
        async with self.database.session() as session:
            agents = await db.list_session_agents(session, session_id)
        return any(
            agent.branch == branch
            or any(entry.get("branch") == branch for entry in agent.worktree_manifest or [])
            for agent in agents
        )

    async def _bind_in_place(
        self,
        agent_id: str,
        workspace_id: str,
        repos: Sequence[Repo],
        strategy: GitStrategy,
    ) -> GitBinding:
        bindings: list[RepoBinding] = []
        for repo in repos:
            branch = None
            if strategy.mode == GitMode.BRANCH and strategy.branch:
                await self.worktrees.checkout(repo.local_path, strategy.branch, create=strategy.create)
                branch = strategy.branch
            bindings.append(
                RepoBinding(
                    repo_id=repo.id,
                    repo_name=repo.name,
                    repo_path=repo.local_path,
                    working_dir=repo.local_path,
                    branch=branch,
                )
            )
        return GitBinding(
            agent_id=agent_id,
            workspace_id=workspace_id,
            strategy=strategy,
            working_dir=bindings[0].working_dir,
            repos=bindings,
        )

    async def _bind_worktrees(
        self,
        agent_id: str,
        workspace_id: str,
        repos: Sequence[Repo],
        strategy: GitStrategy,
        task_label: str,
    ) -> GitBinding:
        short = agent_id[:8]
        folder = f"{safe_name(task_label)}-{short}"
        parent = self.worktrees.base_dir / folder
        multi = len(repos) > 1
        bindings: list[RepoBinding] = []
        try:
            for repo in repos:
                dest = parent / safe_name(repo.name) if multi else parent
                branch = await self._materialize_worktree(repo, dest, strategy, folder)
                bindings.append(
                    RepoBinding(
                        repo_id=repo.id,
                        repo_name=repo.name,
                        repo_path=repo.local_path,
                        working_dir=str(dest),
                        worktree_path=str(dest),
                        branch=branch,
                    )
                )
        except Exception:
            await self.cleanup([b.to_dict() for b in bindings])
            if multi and parent.exists() and not any(parent.iterdir()):
                shutil.rmtree(parent, ignore_errors=True)
            raise

        return GitBinding(
            agent_id=agent_id,
            workspace_id=workspace_id,
            strategy=strategy,
            working_dir=str(parent) if multi else bindings[0].working_dir,
            repos=bindings,
        )

    async def _materialize_worktree(
        self, repo: Repo, dest: Path, strategy: GitStrategy, folder: str
    ) -> str:
        if strategy.mode != GitMode.BRANCH or not strategy.branch:
            branch = f"{self.worktrees.branch_prefix}/{folder}"
            await self.worktrees.create_worktree(repo.local_path, dest, new_branch=branch)
            return branch

        if strategy.create:
            await self.worktrees.create_worktree(repo.local_path, dest, new_branch=strategy.branch)
            return strategy.branch

        checked_out = {wt.get("branch") for wt in await self.worktrees.list_worktrees(repo.local_path)}
        if strategy.branch not in checked_out:
            await self.worktrees.create_worktree(repo.local_path, dest, existing_branch=strategy.branch)
            return strategy.branch

        # Named branch is busy in another worktree: fork a per-agent branch from it
        branch = f"{strategy.branch}-{folder.rsplit('-', 1)[-1]}"
        await self.worktrees.create_worktree(
            repo.local_path, dest, new_branch=branch, start_point=strategy.branch
        )
        return branch
