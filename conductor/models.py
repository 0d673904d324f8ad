"""SQLAlchemy models for the orchestration store."""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSON,
        list[str]: JSON,
    }


# =============================================================================
# STATUS VOCABULARIES
# =============================================================================


class SessionStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    WAITING_APPROVAL = "waiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentStatus(StrEnum):
    SPAWNING = "spawning"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_AGENT_STATUSES = frozenset({AgentStatus.COMPLETED, AgentStatus.FAILED})
LIVE_AGENT_STATUSES = frozenset({AgentStatus.SPAWNING, AgentStatus.RUNNING, AgentStatus.WAITING})


class CompletionSignal(StrEnum):
    COMPLETE = "complete"
    ITERATE = "iterate"


class GateMode(StrEnum):
    NONE = "none"
    BEFORE = "before"
    AFTER = "after"


class LoopCondition(StrEnum):
    AGENT_SIGNAL = "agent_signal"
    APPROVAL = "approval"


class RelayMode(StrEnum):
    OFF = "off"
    SUMMARY = "summary"
    PREVIOUS = "previous"
    ALL = "all"


class MessageType(StrEnum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    RESULT = "result"


class ApprovalType(StrEnum):
    PHASE_GATE = "phase_gate"
    DECISION = "decision"
    MERGE = "merge"
    ESCALATION = "escalation"
    NEEDS_INPUT = "needs_input"
    AGENT_IDLE = "agent_idle"


# Continuation approvals block a single agent; formal approvals block the workflow
CONTINUATION_APPROVAL_TYPES = frozenset({ApprovalType.NEEDS_INPUT, ApprovalType.AGENT_IDLE})
FORMAL_APPROVAL_TYPES = frozenset(set(ApprovalType) - CONTINUATION_APPROVAL_TYPES)


class ApprovalStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class DecisionStatus(StrEnum):
    ACTIVE = "active"
    INVALIDATED = "invalidated"


class ArtifactStatus(StrEnum):
    DRAFT = "draft"
    FINAL = "final"


# =============================================================================
# WORKSPACE TABLES
# =============================================================================


class Repo(Base):
    """A git repository known to the engine."""

    __tablename__ = "repos"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, nullable=False)
    local_path: Mapped[str] = mapped_column(Text, nullable=False)
    remote_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Workspace(Base):
    """An ordered set of repos sessions run against."""

    __tablename__ = "workspaces"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, nullable=False)
    user_id: Mapped[str] = mapped_column(String, nullable=False, default="local")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    repo_links: Mapped[list["WorkspaceRepo"]] = relationship(
        back_populates="workspace", cascade="all, delete-orphan", order_by="WorkspaceRepo.ordinal"
    )


class WorkspaceRepo(Base):
    __tablename__ = "workspace_repos"

    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), primary_key=True
    )
    repo_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("repos.id", ondelete="CASCADE"), primary_key=True
    )
    ordinal: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    workspace: Mapped[Workspace] = relationship(back_populates="repo_links")
    repo: Mapped[Repo] = relationship()


# =============================================================================
# WORKFLOW DEFINITIONS
# =============================================================================


class Workflow(Base):
    """A reusable ordered list of phases."""

    __tablename__ = "workflows"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, nullable=False, default="local")
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    git_strategy: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    phases: Mapped[list["WorkflowPhase"]] = relationship(
        back_populates="workflow", cascade="all, delete-orphan", order_by="WorkflowPhase.ordinal"
    )


class WorkflowPhase(Base):
    __tablename__ = "workflow_phases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    workflow_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False
    )
    ordinal: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    prompt_template: Mapped[str] = mapped_column(Text, nullable=False, default="")
    allowed_tools: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    agents: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)  # role -> agent type
    approval: Mapped[str] = mapped_column(String, default=GateMode.NONE)
    git_strategy: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    permission_mode: Mapped[str | None] = mapped_column(String, nullable=True)
    loop_to: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_iterations: Mapped[int | None] = mapped_column(Integer, nullable=True)
    loop_condition: Mapped[str] = mapped_column(String, default=LoopCondition.AGENT_SIGNAL)
    relay: Mapped[str] = mapped_column(String, default=RelayMode.OFF)

    __table_args__ = (UniqueConstraint("workflow_id", "ordinal"),)

    workflow: Mapped[Workflow] = relationship(back_populates="phases")

    @property
    def has_loop(self) -> bool:
        return self.loop_to is not None


# =============================================================================
# SESSION-SCOPED TABLES
# =============================================================================


class WorkflowSession(Base):
    """One execution of a workflow against a workspace."""

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, nullable=False, default="local")
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    workflow_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String, default=SessionStatus.PENDING)
    current_phase: Mapped[int | None] = mapped_column(Integer, nullable=True)
    phase_entry: Mapped[int] = mapped_column(Integer, default=0)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    context: Mapped[str | None] = mapped_column(Text, nullable=True)
    git_strategy: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    loop_state: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    pending_relay: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Agent(Base):
    """One CLI subprocess run on behalf of a session phase."""

    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    phase_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    phase_ordinal: Mapped[int | None] = mapped_column(Integer, nullable=True)
    phase_entry: Mapped[int | None] = mapped_column(Integer, nullable=True)
    role: Mapped[str] = mapped_column(String, default="primary")
    agent_type: Mapped[str] = mapped_column(String, default="claude")
    name: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, default=AgentStatus.SPAWNING)
    working_dir: Mapped[str | None] = mapped_column(Text, nullable=True)
    worktree_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    branch: Mapped[str | None] = mapped_column(String, nullable=True)
    worktree_manifest: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)
    git_mode: Mapped[str | None] = mapped_column(String, nullable=True)
    exclusive_binding: Mapped[bool] = mapped_column(Boolean, default=False)
    spawned_by: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("agents.id", ondelete="SET NULL"), nullable=True
    )
    cli_session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    pid: Mapped[int | None] = mapped_column(Integer, nullable=True)
    exit_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    phase_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    completion_signal: Mapped[str | None] = mapped_column(String, nullable=True)
    loop_iteration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_AGENT_STATUSES


class Message(Base):
    """Append-only transcript entry of an agent."""

    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    agent_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False)
    content_preview: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    parent_tool_use_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (UniqueConstraint("agent_id", "sequence"),)


class Artifact(Base):
    """A named document an agent wrote for the session."""

    __tablename__ = "artifacts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    phase_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    agent_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String, default=ArtifactStatus.DRAFT)
    pinned: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (UniqueConstraint("session_id", "name"),)


class Decision(Base):
    """A recorded decision or finding, optionally revised by a later one."""

    __tablename__ = "decisions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    agent_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    choice: Mapped[str] = mapped_column(Text, nullable=False)
    rationale: Mapped[str] = mapped_column(Text, nullable=False, default="")
    alternatives: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    tags: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    type: Mapped[str] = mapped_column(String, default="decision")  # 'decision', 'finding'
    status: Mapped[str] = mapped_column(String, default=DecisionStatus.ACTIVE)
    origin: Mapped[str] = mapped_column(String, default="agent")  # 'human', 'agent'
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    supersedes: Mapped[str | None] = mapped_column(String(36), nullable=True)
    superseded_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Approval(Base):
    """A pending or resolved human decision point."""

    __tablename__ = "approvals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    agent_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    type: Mapped[str] = mapped_column(String, nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String, default=ApprovalStatus.PENDING)
    resolved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    response: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ExecutionLog(Base):
    """Audit trail of engine events."""

    __tablename__ = "execution_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=True
    )
    agent_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    phase: Mapped[int | None] = mapped_column(Integer, nullable=True)
    event: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
