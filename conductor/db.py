"""Async database connection and operations for the orchestration store."""

from collections.abc import AsyncGenerator, Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import String, cast, delete, or_, select, update
from sqlalchemy import event as sa_event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .config import Settings
from .errors import SchemaNotInitializedError, is_schema_missing_error, schema_not_initialized_message
from .models import (
    FORMAL_APPROVAL_TYPES,
    LIVE_AGENT_STATUSES,
    Agent,
    Approval,
    ApprovalStatus,
    Artifact,
    Base,
    Decision,
    DecisionStatus,
    ExecutionLog,
    Message,
    Repo,
    SessionStatus,
    Workflow,
    WorkflowPhase,
    WorkflowSession,
    Workspace,
    WorkspaceRepo,
    new_id,
    utcnow,
)


def _enable_sqlite_pragmas(dbapi_connection: Any, connection_record: Any) -> None:
    del connection_record
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


class Database:
    """Engine and session factory for one store.

    The engine process and every companion tool process open their own
    ``Database`` against the same URL.
    """

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        connect_args: dict[str, Any] = {}
        if url.startswith("sqlite"):
            connect_args["timeout"] = 30
        self.engine = create_async_engine(
            url, echo=echo, pool_pre_ping=True, connect_args=connect_args
        )
        if url.startswith("sqlite"):
            sa_event.listen(self.engine.sync_engine, "connect", _enable_sqlite_pragmas)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(settings.database_url, echo=settings.database_echo)

    async def init_schema(self) -> None:
        """Create all tables (for development/testing)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """Async context manager for database sessions."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as exc:
                await session.rollback()
                if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                    raise SchemaNotInitializedError(
                        schema_not_initialized_message(exc)
                    ) from exc
                raise

    async def dispose(self) -> None:
        await self.engine.dispose()


# =============================================================================
# Workspace Operations
# =============================================================================


async def create_repo(
    session: AsyncSession,
    name: str,
    local_path: str,
    remote_url: str | None = None,
) -> Repo:
    repo = Repo(name=name, local_path=local_path, remote_url=remote_url)
    session.add(repo)
    await session.flush()
    return repo


async def create_workspace(
    session: AsyncSession,
    name: str,
    repo_ids: Sequence[str],
    user_id: str = "local",
) -> Workspace:
    """Create a workspace whose repos keep the given order."""
    workspace = Workspace(name=name, user_id=user_id)
    session.add(workspace)
    await session.flush()
    for ordinal, repo_id in enumerate(repo_ids):
        session.add(WorkspaceRepo(workspace_id=workspace.id, repo_id=repo_id, ordinal=ordinal))
    await session.flush()
    return workspace


async def get_workspace(session: AsyncSession, workspace_id: str) -> Workspace | None:
    return await session.get(Workspace, workspace_id)


async def get_workspace_repos(session: AsyncSession, workspace_id: str) -> list[Repo]:
    """Repos of a workspace, primary (lowest ordinal) first."""
    result = await session.execute(
        select(Repo)
        .join(WorkspaceRepo, WorkspaceRepo.repo_id == Repo.id)
        .where(WorkspaceRepo.workspace_id == workspace_id)
        .order_by(WorkspaceRepo.ordinal)
    )
    return list(result.scalars().all())


# =============================================================================
# Workflow Operations
# =============================================================================


async def create_workflow(
    session: AsyncSession,
    name: str,
    phases: Iterable[dict[str, Any]],
    *,
    description: str | None = None,
    git_strategy: dict[str, Any] | None = None,
    user_id: str = "local",
) -> Workflow:
    """Create a workflow; phases are numbered in the order given."""
    workflow = Workflow(
        name=name, description=description, git_strategy=git_strategy, user_id=user_id
    )
    session.add(workflow)
    await session.flush()
    for ordinal, spec in enumerate(phases):
        fields = {k: v for k, v in spec.items() if v is not None and k != "ordinal"}
        session.add(WorkflowPhase(workflow_id=workflow.id, ordinal=ordinal, **fields))
    await session.flush()
    return workflow


async def get_workflow(session: AsyncSession, workflow_id: str) -> Workflow | None:
    return await session.get(Workflow, workflow_id)


async def get_workflow_phases(session: AsyncSession, workflow_id: str) -> list[WorkflowPhase]:
    result = await session.execute(
        select(WorkflowPhase)
        .where(WorkflowPhase.workflow_id == workflow_id)
        .order_by(WorkflowPhase.ordinal)
    )
    return list(result.scalars().all())


# =============================================================================
# Session Operations
# =============================================================================


async def create_session(
    session: AsyncSession,
    *,
    workspace_id: str,
    workflow_id: str,
    user_id: str = "local",
    description: str | None = None,
    context: str | None = None,
    git_strategy: dict[str, Any] | None = None,
) -> WorkflowSession:
    ws = WorkflowSession(
        workspace_id=workspace_id,
        workflow_id=workflow_id,
        user_id=user_id,
        description=description,
        context=context,
        git_strategy=git_strategy,
        status=SessionStatus.PENDING,
        loop_state={},
    )
    session.add(ws)
    await session.flush()
    return ws


async def get_session_by_id(session: AsyncSession, session_id: str) -> WorkflowSession | None:
    return await session.get(WorkflowSession, session_id)


async def list_sessions(
    session: AsyncSession,
    *,
    statuses: Iterable[str] | None = None,
    limit: int | None = None,
) -> list[WorkflowSession]:
    stmt = select(WorkflowSession).order_by(WorkflowSession.created_at.desc())
    if statuses is not None:
        stmt = stmt.where(WorkflowSession.status.in_(list(statuses)))
    if limit:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def update_session_status(
    session: AsyncSession,
    ws: WorkflowSession,
    new_status: str,
    error_message: str | None = None,
) -> WorkflowSession:
    """Update session status with logging."""
    old_status = ws.status
    ws.status = new_status
    ws.updated_at = utcnow()

    if error_message:
        ws.error_message = error_message

    if new_status in (SessionStatus.COMPLETED, SessionStatus.FAILED):
        ws.completed_at = utcnow()

    session.add(
        ExecutionLog(
            session_id=ws.id,
            phase=ws.current_phase,
            event="status_updated",
            message=f"Status changed from {old_status} to {new_status}",
            details={"old_status": old_status, "new_status": new_status},
        )
    )
    return ws


# =============================================================================
# Agent Operations
# =============================================================================


async def get_agent(session: AsyncSession, agent_id: str) -> Agent | None:
    return await session.get(Agent, agent_id)


async def list_session_agents(
    session: AsyncSession,
    session_id: str,
    *,
    phase_entry: int | None = None,
    min_phase_entry: int | None = None,
) -> list[Agent]:
    stmt = select(Agent).where(Agent.session_id == session_id)
    if phase_entry is not None:
        stmt = stmt.where(Agent.phase_entry == phase_entry)
    if min_phase_entry is not None:
        stmt = stmt.where(Agent.phase_entry >= min_phase_entry)
    result = await session.execute(stmt.order_by(Agent.created_at))
    return list(result.scalars().all())


async def list_live_agents(
    session: AsyncSession, session_id: str | None = None
) -> list[Agent]:
    """Agents that are not yet terminal, optionally scoped to one session."""
    stmt = select(Agent).where(Agent.status.in_(list(LIVE_AGENT_STATUSES)))
    if session_id is not None:
        stmt = stmt.where(Agent.session_id == session_id)
    result = await session.execute(stmt.order_by(Agent.created_at))
    return list(result.scalars().all())


async def find_exclusive_holder(
    session: AsyncSession,
    workspace_id: str,
    exclude_agent_id: str | None = None,
) -> Agent | None:
    """Return a live agent holding an exclusive binding in the workspace, if any."""
    stmt = (
        select(Agent)
        .join(WorkflowSession, WorkflowSession.id == Agent.session_id)
        .where(
            WorkflowSession.workspace_id == workspace_id,
            Agent.exclusive_binding.is_(True),
            Agent.status.in_(list(LIVE_AGENT_STATUSES)),
        )
    )
    if exclude_agent_id:
        stmt = stmt.where(Agent.id != exclude_agent_id)
    result = await session.execute(stmt.limit(1))
    return result.scalar_one_or_none()


async def finish_agent(
    session: AsyncSession,
    agent: Agent,
    status: str,
    *,
    exit_code: int | None = None,
) -> Agent:
    """Move an agent to a terminal status, stamping completed_at."""
    agent.status = status
    agent.completed_at = utcnow()
    if exit_code is not None:
        agent.exit_code = exit_code
    return agent


# =============================================================================
# Message Operations
# =============================================================================


async def add_message(
    session: AsyncSession,
    *,
    message_id: str | None = None,
    agent_id: str,
    sequence: int,
    type: str,
    content_preview: str | None,
    content_path: str | None = None,
    parent_tool_use_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Message:
    msg = Message(
        id=message_id or new_id(),
        agent_id=agent_id,
        sequence=sequence,
        type=type,
        content_preview=content_preview,
        content_path=content_path,
        parent_tool_use_id=parent_tool_use_id,
        metadata_=metadata,
    )
    session.add(msg)
    await session.flush()
    return msg


async def get_messages(session: AsyncSession, agent_id: str) -> list[Message]:
    result = await session.execute(
        select(Message).where(Message.agent_id == agent_id).order_by(Message.sequence)
    )
    return list(result.scalars().all())


# =============================================================================
# Approval Operations
# =============================================================================


async def create_approval(
    session: AsyncSession,
    *,
    session_id: str,
    type: str,
    summary: str,
    payload: dict[str, Any] | None = None,
    agent_id: str | None = None,
) -> Approval:
    approval = Approval(
        session_id=session_id,
        agent_id=agent_id,
        type=type,
        summary=summary,
        payload=payload,
        status=ApprovalStatus.PENDING,
    )
    session.add(approval)
    await session.flush()
    return approval


async def get_approval(session: AsyncSession, approval_id: str) -> Approval | None:
    return await session.get(Approval, approval_id)


async def list_pending_approvals(
    session: AsyncSession,
    *,
    formal_only: bool = False,
    session_id: str | None = None,
    agent_id: str | None = None,
    types: Iterable[str] | None = None,
) -> list[Approval]:
    stmt = select(Approval).where(Approval.status == ApprovalStatus.PENDING)
    if formal_only:
        stmt = stmt.where(Approval.type.in_(list(FORMAL_APPROVAL_TYPES)))
    if session_id is not None:
        stmt = stmt.where(Approval.session_id == session_id)
    if agent_id is not None:
        stmt = stmt.where(Approval.agent_id == agent_id)
    if types is not None:
        stmt = stmt.where(Approval.type.in_(list(types)))
    result = await session.execute(stmt.order_by(Approval.created_at))
    return list(result.scalars().all())


async def resolve_approval_if_pending(
    session: AsyncSession,
    approval_id: str,
    *,
    status: str,
    resolved_by: str,
    response: str | None = None,
) -> bool:
    """Atomically resolve a pending approval; False if it was not pending."""
    result = await session.execute(
        update(Approval)
        .where(Approval.id == approval_id, Approval.status == ApprovalStatus.PENDING)
        .values(
            status=status,
            resolved_by=resolved_by,
            response=response,
            resolved_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# =============================================================================
# Decision Operations
# =============================================================================


async def add_decision(
    session: AsyncSession,
    *,
    session_id: str,
    question: str,
    choice: str,
    rationale: str,
    agent_id: str | None = None,
    alternatives: list[str] | None = None,
    tags: list[str] | None = None,
    type: str = "decision",
    origin: str = "agent",
    supersedes: str | None = None,
) -> Decision:
    decision = Decision(
        session_id=session_id,
        agent_id=agent_id,
        question=question,
        choice=choice,
        rationale=rationale,
        alternatives=alternatives,
        tags=tags,
        type=type,
        origin=origin,
        status=DecisionStatus.ACTIVE,
        supersedes=supersedes,
    )
    session.add(decision)
    await session.flush()
    return decision


async def get_decision(session: AsyncSession, decision_id: str) -> Decision | None:
    return await session.get(Decision, decision_id)


async def search_active_decisions(
    session: AsyncSession,
    session_id: str,
    *,
    query: str | None = None,
    tags: Sequence[str] | None = None,
    files: Sequence[str] | None = None,
    limit: int = 15,
) -> list[Decision]:
    """Active decisions of a session, most recent first, filtered by substring."""
    stmt = select(Decision).where(
        Decision.session_id == session_id,
        Decision.status == DecisionStatus.ACTIVE,
    )
    if query:
        pattern = f"%{query}%"
        stmt = stmt.where(
            or_(
                Decision.question.ilike(pattern),
                Decision.choice.ilike(pattern),
                Decision.rationale.ilike(pattern),
            )
        )
    tags_text = cast(Decision.tags, String)
    for needle in [*(tags or []), *(files or [])]:
        stmt = stmt.where(tags_text.like(f"%{needle}%"))
    result = await session.execute(stmt.order_by(Decision.created_at.desc()).limit(limit))
    return list(result.scalars().all())


# =============================================================================
# Artifact Operations
# =============================================================================


async def get_artifact_by_name(
    session: AsyncSession, session_id: str, name: str
) -> Artifact | None:
    result = await session.execute(
        select(Artifact).where(Artifact.session_id == session_id, Artifact.name == name)
    )
    return result.scalar_one_or_none()


async def add_artifact(
    session: AsyncSession,
    *,
    session_id: str,
    name: str,
    file_path: str,
    status: str,
    agent_id: str | None = None,
    phase_id: str | None = None,
) -> Artifact:
    artifact = Artifact(
        session_id=session_id,
        name=name,
        file_path=file_path,
        status=status,
        agent_id=agent_id,
        phase_id=phase_id,
    )
    session.add(artifact)
    await session.flush()
    return artifact


async def list_session_artifacts(
    session: AsyncSession,
    session_id: str,
    *,
    agent_ids: Iterable[str] | None = None,
    limit: int | None = None,
) -> list[Artifact]:
    """Artifacts of a session, most recently written first."""
    stmt = select(Artifact).where(Artifact.session_id == session_id)
    if agent_ids is not None:
        stmt = stmt.where(Artifact.agent_id.in_(list(agent_ids)))
    stmt = stmt.order_by(Artifact.updated_at.desc())
    if limit:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def set_artifact_pinned(session: AsyncSession, artifact_id: str, pinned: bool) -> Artifact | None:
    artifact = await session.get(Artifact, artifact_id)
    if artifact is not None:
        artifact.pinned = pinned
    return artifact


async def prune_artifacts(
    session: AsyncSession,
    *,
    older_than: datetime,
    session_statuses: Iterable[str] = (SessionStatus.COMPLETED, SessionStatus.FAILED),
) -> list[Artifact]:
    """Delete unpinned artifacts of finished sessions last written before ``older_than``."""
    finished = select(WorkflowSession.id).where(WorkflowSession.status.in_(list(session_statuses)))
    result = await session.execute(
        select(Artifact).where(
            Artifact.pinned.is_(False),
            Artifact.updated_at < older_than,
            Artifact.session_id.in_(finished),
        )
    )
    doomed = list(result.scalars().all())
    if doomed:
        await session.execute(
            delete(Artifact).where(Artifact.id.in_([a.id for a in doomed]))
        )
    return doomed


# =============================================================================
# Execution Log
# =============================================================================


async def log_event(
    session: AsyncSession,
    event: str,
    *,
    session_id: str | None = None,
    agent_id: str | None = None,
    phase: int | None = None,
    message: str | None = None,
    details: dict[str, Any] | None = None,
) -> ExecutionLog:
    """Log an execution event."""
    log = ExecutionLog(
        session_id=session_id,
        agent_id=agent_id,
        phase=phase,
        event=event,
        message=message,
        details=details or {},
    )
    session.add(log)
    await session.flush()
    return log
