"""Main CLI entry point for conductor."""

import asyncio
import json
import logging
from collections.abc import Coroutine
from datetime import timedelta
from pathlib import Path
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from . import __version__, db
from .approvals import ApprovalRouter, ResolveRequest
from .config import settings
from .context import AppContext
from .engine import FINISHED_STATUSES, LaunchRequest
from .errors import ApprovalAlreadyResolvedError, ConductorError
from .events import EngineEvent, EventEmitter, EventType
from .models import CONTINUATION_APPROVAL_TYPES, ApprovalStatus, SessionStatus, utcnow

console = Console()

T = TypeVar("T")

PHASE_FIELDS = {
    "name",
    "prompt_template",
    "allowed_tools",
    "agents",
    "approval",
    "git_strategy",
    "permission_mode",
    "loop_to",
    "max_iterations",
    "loop_condition",
    "relay",
}

STATUS_STYLES = {
    "pending": "dim",
    "active": "cyan",
    "running": "cyan",
    "spawning": "dim",
    "waiting": "yellow",
    "waiting_approval": "yellow",
    "paused": "magenta",
    "completed": "green",
    "failed": "red",
    "approved": "green",
    "rejected": "red",
}


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _run(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc


def _database() -> db.Database:
    return db.Database.from_settings(settings)


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging")
def main(verbose: bool) -> None:
    """Session/workflow orchestration for coding agent CLIs.

    Runs multi-phase workflows of Claude Code / Codex agents against a
    workspace of git repositories, with human approval gates.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


@main.command(name="init-db")
def init_db() -> None:
    """Create every table in the configured database."""

    async def do_init() -> None:
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        database = _database()
        try:
            await database.init_schema()
        finally:
            await database.dispose()
        console.print(f"[green]Schema ready:[/green] {settings.database_url}")

    _run(do_init())


@main.command(name="repo-add")
@click.argument("name")
@click.argument("path", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--remote", "remote_url", default=None, help="Remote URL, for reference")
def repo_add(name: str, path: Path, remote_url: str | None) -> None:
    """Register a local git repository.

    NAME: Display name of the repository
    PATH: Local checkout path
    """

    async def do_add() -> None:
        database = _database()
        try:
            async with database.session() as session:
                repo = await db.create_repo(session, name, str(path.resolve()), remote_url)
        finally:
            await database.dispose()
        console.print(f"[green]Repo added:[/green] {repo.id} ({name})")

    _run(do_add())


@main.command(name="workspace-create")
@click.argument("name")
@click.argument("repo_ids", nargs=-1, required=True)
def workspace_create(name: str, repo_ids: tuple[str, ...]) -> None:
    """Create a workspace from repos; the first one is the primary repo."""

    async def do_create() -> None:
        database = _database()
        try:
            async with database.session() as session:
                workspace = await db.create_workspace(session, name, list(repo_ids))
        finally:
            await database.dispose()
        console.print(f"[green]Workspace created:[/green] {workspace.id} ({name})")

    _run(do_create())


def load_workflow_file(path: Path) -> dict[str, Any]:
    """Read and validate a workflow definition file."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"{path}: invalid JSON ({exc})") from exc
    if not isinstance(data, dict) or not data.get("name"):
        raise click.BadParameter(f"{path}: expected an object with a name")
    phases = data.get("phases")
    if not isinstance(phases, list) or not phases:
        raise click.BadParameter(f"{path}: a workflow needs at least one phase")
    for index, phase in enumerate(phases):
        if not isinstance(phase, dict) or not phase.get("name"):
            raise click.BadParameter(f"{path}: phase {index} needs a name")
        unknown = set(phase) - PHASE_FIELDS
        if unknown:
            raise click.BadParameter(f"{path}: phase {phase['name']} has unknown keys {sorted(unknown)}")
    return data


@main.command(name="workflow-load")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def workflow_load(file: Path) -> None:
    """Create a workflow from a JSON definition.

    FILE: JSON with name, optional description/git_strategy, and phases
    """
    data = load_workflow_file(file)

    async def do_load() -> None:
        database = _database()
        try:
            async with database.session() as session:
                workflow = await db.create_workflow(
                    session,
                    data["name"],
                    data["phases"],
                    description=data.get("description"),
                    git_strategy=data.get("git_strategy"),
                )
        finally:
            await database.dispose()
        console.print(
            f"[green]Workflow created:[/green] {workflow.id} "
            f"({data['name']}, {len(data['phases'])} phases)"
        )

    _run(do_load())


@main.command()
@click.option("--limit", default=20, help="Number of sessions to show")
@click.option("--status", "status_filter", default=None, help="Filter by status")
def sessions(limit: int, status_filter: str | None) -> None:
    """List recent sessions."""

    async def list_all() -> None:
        database = _database()
        try:
            async with database.session() as session:
                rows = await db.list_sessions(
                    session,
                    statuses=[status_filter] if status_filter else None,
                    limit=limit,
                )
        finally:
            await database.dispose()

        if not rows:
            console.print("[yellow]No sessions found[/yellow]")
            return

        table = Table(title="Sessions")
        table.add_column("ID", style="cyan")
        table.add_column("Description")
        table.add_column("Status")
        table.add_column("Phase")
        table.add_column("Created")
        for ws in rows:
            description = ws.description or "-"
            table.add_row(
                ws.id,
                description[:40] + "..." if len(description) > 40 else description,
                _styled(ws.status),
                str(ws.current_phase + 1) if ws.current_phase is not None else "-",
                ws.created_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)

    _run(list_all())


@main.command()
@click.argument("session_id")
def status(session_id: str) -> None:
    """Show a session with its agents and pending approvals."""

    async def show_status() -> None:
        database = _database()
        try:
            async with database.session() as session:
                ws = await db.get_session_by_id(session, session_id)
                if ws is None:
                    console.print(f"[red]Session not found: {session_id}[/red]")
                    return
                workflow = await db.get_workflow(session, ws.workflow_id)
                phases = await db.get_workflow_phases(session, ws.workflow_id)
                agents = await db.list_session_agents(session, session_id)
                pending = await db.list_pending_approvals(session, session_id=session_id)
        finally:
            await database.dispose()

        phase_name = "-"
        if ws.current_phase is not None and ws.current_phase < len(phases):
            phase_name = f"{ws.current_phase + 1}/{len(phases)} {phases[ws.current_phase].name}"
        console.print(
            Panel(
                f"[bold]{ws.description or '(no description)'}[/bold]\n\n"
                f"Workflow: {workflow.name if workflow else ws.workflow_id}\n"
                f"Status: {_styled(ws.status)}\n"
                f"Phase: {phase_name}\n"
                f"Loops: {json.dumps(ws.loop_state or {})}\n"
                f"Created: {ws.created_at.strftime('%Y-%m-%d %H:%M')}"
                + (f"\nError: [red]{ws.error_message}[/red]" if ws.error_message else ""),
                title=f"Session: {ws.id}",
            )
        )

        if agents:
            table = Table(title="Agents")
            table.add_column("ID", style="cyan")
            table.add_column("Phase")
            table.add_column("Role")
            table.add_column("Type")
            table.add_column("Status")
            table.add_column("Signal")
            table.add_column("Branch")
            for agent in agents:
                table.add_row(
                    agent.id[:8],
                    str((agent.phase_ordinal or 0) + 1),
                    agent.role,
                    agent.agent_type,
                    _styled(agent.status),
                    agent.completion_signal or "-",
                    agent.branch or "-",
                )
            console.print(table)

        if pending:
            _print_approvals(pending)

    _run(show_status())


def _print_approvals(approvals: list[Any]) -> None:
    table = Table(title="Pending Approvals")
    table.add_column("ID", style="cyan")
    table.add_column("Session")
    table.add_column("Type")
    table.add_column("Summary")
    table.add_column("Created")
    for approval in approvals:
        table.add_row(
            approval.id,
            approval.session_id[:8],
            approval.type,
            approval.summary,
            approval.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@main.command()
@click.option("--session", "session_id", default=None, help="Only this session")
@click.option("--all", "include_all", is_flag=True, help="Include agent input prompts")
def approvals(session_id: str | None, include_all: bool) -> None:
    """List pending approvals."""

    async def list_pending() -> None:
        database = _database()
        try:
            async with database.session() as session:
                pending = await db.list_pending_approvals(
                    session, formal_only=not include_all, session_id=session_id
                )
        finally:
            await database.dispose()
        if not pending:
            console.print("[yellow]No pending approvals[/yellow]")
            return
        _print_approvals(pending)

    _run(list_pending())


def _resolve(approval_id: str, status_value: str, response: str | None, user: str) -> None:
    async def do_resolve() -> None:
        database = _database()
        try:
            router = ApprovalRouter(database, EventEmitter())
            try:
                approval = await router.resolve(
                    ResolveRequest(id=approval_id, status=status_value, user_id=user, response=response)
                )
            except ApprovalAlreadyResolvedError as exc:
                console.print(f"[yellow]{exc}[/yellow]")
                return
        finally:
            await database.dispose()
        console.print(f"Approval {approval.id}: {_styled(approval.status)}")

    _run(do_resolve())


@main.command()
@click.argument("approval_id")
@click.option("--response", "-r", default=None, help="Message passed to the agent")
@click.option("--user", default="local", help="Resolver identity")
def approve(approval_id: str, response: str | None, user: str) -> None:
    """Approve a pending approval (a running engine picks it up)."""
    _resolve(approval_id, ApprovalStatus.APPROVED, response, user)


@main.command()
@click.argument("approval_id")
@click.option("--response", "-r", default=None, help="Reason passed to the agent")
@click.option("--user", default="local", help="Resolver identity")
def reject(approval_id: str, response: str | None, user: str) -> None:
    """Reject a pending approval (a running engine picks it up)."""
    _resolve(approval_id, ApprovalStatus.REJECTED, response, user)


# =============================================================================
# Foreground engine
# =============================================================================


def _print_event(event: EngineEvent) -> None:
    if event.type == EventType.AGENT_STATUS_CHANGED:
        agent = (event.agent_id or "")[:8]
        console.print(f"[dim]agent {agent}[/dim] {_styled(event.data.get('status', ''))}")
    elif event.type == EventType.SESSION_STATUS_CHANGED:
        console.print(f"[bold]session[/bold] {_styled(event.data.get('status', ''))}")
    elif event.type in (EventType.PHASE_ADVANCED, EventType.PHASE_LOOPED, EventType.APPROVAL_CREATED):
        console.print(f"[bold]{event.type.value}[/bold] {event.message}")


async def _ask_approval(ctx: AppContext, approval: Any) -> None:
    console.print(Panel(approval.summary, title=f"{approval.type} {approval.id[:8]}"))
    if approval.type in CONTINUATION_APPROVAL_TYPES:
        reply = await asyncio.to_thread(
            Prompt.ask, "Reply to the agent ('stop' ends it)", default="Continue."
        )
        status_value = ApprovalStatus.REJECTED if reply.strip().lower() == "stop" else ApprovalStatus.APPROVED
        response = None if status_value == ApprovalStatus.REJECTED else reply
    else:
        approved = await asyncio.to_thread(Confirm.ask, "Approve?", default=True)
        status_value = ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED
        response = await asyncio.to_thread(Prompt.ask, "Comment (optional)", default="") or None
    try:
        await ctx.approvals.resolve(
            ResolveRequest(id=approval.id, status=status_value, user_id="local", response=response)
        )
    except ApprovalAlreadyResolvedError as exc:
        console.print(f"[yellow]{exc}[/yellow]")


async def _serve(ctx: AppContext, session_id: str) -> str:
    """Answer approvals for a session until it finishes or pauses."""
    while True:
        await ctx.engine.wait_idle()
        async with ctx.database.session() as session:
            ws = await db.get_session_by_id(session, session_id)
        if ws is None or ws.status in FINISHED_STATUSES or ws.status == SessionStatus.PAUSED:
            return ws.status if ws else "missing"
        pending = await ctx.approvals.pending(formal_only=False, session_id=session_id)
        if pending:
            await _ask_approval(ctx, pending[0])
            continue
        await asyncio.sleep(1.0)


async def _foreground(action: Any) -> None:
    ctx = AppContext(settings)
    ctx.events.on_event(_print_event)
    try:
        report = await ctx.start()
        if report.changed:
            console.print(
                f"[yellow]Recovered: {len(report.failed_agents)} agent(s) failed, "
                f"{len(report.paused_sessions)} session(s) paused[/yellow]"
            )
        session_id = await action(ctx)
        final = await _serve(ctx, session_id)
        console.print(f"Session {session_id}: {_styled(final)}")
    finally:
        await ctx.stop()


@main.command()
@click.argument("workspace_id")
@click.argument("workflow_id")
@click.option("--description", "-d", default=None, help="What this session is for")
@click.option("--context", "context_text", default=None, help="Free-text context for every phase")
@click.option(
    "--context-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Read the context from a file",
)
@click.option("--git-mode", type=click.Choice(["worktree", "main", "branch"]), default=None)
@click.option("--branch", default=None, help="Branch name for --git-mode branch")
@click.option("--in-place", is_flag=True, help="Check the branch out in the primary checkout")
@click.option("--create-branch", is_flag=True, help="Create the branch")
def run(
    workspace_id: str,
    workflow_id: str,
    description: str | None,
    context_text: str | None,
    context_file: Path | None,
    git_mode: str | None,
    branch: str | None,
    in_place: bool,
    create_branch: bool,
) -> None:
    """Run a workflow in the foreground, answering approvals interactively."""
    if context_file is not None:
        context_text = context_file.read_text(encoding="utf-8")
    git_strategy: dict[str, Any] | None = None
    if git_mode:
        git_strategy = {"mode": git_mode}
        if git_mode == "branch":
            git_strategy.update(
                branch=branch,
                isolation="in_place" if in_place else "worktree",
                create=create_branch,
            )

    async def launch(ctx: AppContext) -> str:
        session_id = await ctx.engine.start_session(
            LaunchRequest(
                workspace_id=workspace_id,
                workflow_id=workflow_id,
                description=description,
                context=context_text,
                git_strategy=git_strategy,
            )
        )
        console.print(f"[green]Session started:[/green] {session_id}")
        return session_id

    _run(_foreground(launch))


@main.command()
@click.argument("session_id")
def resume(session_id: str) -> None:
    """Resume a paused session in the foreground."""

    async def do_resume(ctx: AppContext) -> str:
        await ctx.engine.resume_session(session_id)
        return session_id

    _run(_foreground(do_resume))


@main.command()
def recover() -> None:
    """Reconcile agents and sessions left behind by a dead engine process."""

    async def do_recover() -> None:
        ctx = AppContext(settings)
        try:
            report = await ctx.engine.recover()
        finally:
            await ctx.stop()
        if not report.changed:
            console.print("[green]Nothing to recover[/green]")
            return
        for agent_id in report.failed_agents:
            console.print(f"  agent {agent_id}: {_styled('failed')}")
        for session_id in report.paused_sessions:
            console.print(f"  session {session_id}: {_styled('paused')}")

    _run(do_recover())


@main.command()
@click.option("--days", default=30, show_default=True, help="Delete artifacts older than this")
@click.option("--worktrees", "worktree_session", default=None, help="Also remove a finished session's worktrees")
def prune(days: int, worktree_session: str | None) -> None:
    """Delete old unpinned artifacts of finished sessions."""

    async def do_prune() -> None:
        ctx = AppContext(settings)
        try:
            async with ctx.database.session() as session:
                doomed = await db.prune_artifacts(session, older_than=utcnow() - timedelta(days=days))
            for artifact in doomed:
                ctx.store.delete(artifact.file_path)
            console.print(f"Pruned {len(doomed)} artifact(s)")
            if worktree_session:
                removed = await ctx.engine.cleanup_worktrees(worktree_session)
                console.print(f"Removed {len(removed)} worktree(s)")
        finally:
            await ctx.stop()

    _run(do_prune())


@main.command()
@click.argument("artifact_id")
@click.option("--unpin", is_flag=True, help="Allow pruning again")
def pin(artifact_id: str, unpin: bool) -> None:
    """Keep an artifact out of pruning."""

    async def do_pin() -> None:
        database = _database()
        try:
            async with database.session() as session:
                artifact = await db.set_artifact_pinned(session, artifact_id, not unpin)
        finally:
            await database.dispose()
        if artifact is None:
            console.print(f"[red]Artifact not found: {artifact_id}[/red]")
            return
        console.print(f"Artifact {artifact.name}: {'unpinned' if unpin else 'pinned'}")

    _run(do_pin())


if __name__ == "__main__":
    main()
