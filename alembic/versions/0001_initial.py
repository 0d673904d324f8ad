"""Initial schema - workspaces, workflows and session state.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19

"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _id(name: str = "id", *args, **kwargs) -> sa.Column:
    return sa.Column(name, sa.String(36), *args, **kwargs)


def _timestamp(name: str = "created_at", nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable, server_default=sa.func.now())


def upgrade() -> None:
    op.create_table(
        "repos",
        _id(primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("local_path", sa.Text(), nullable=False),
        sa.Column("remote_url", sa.Text(), nullable=True),
        _timestamp(),
    )

    op.create_table(
        "workspaces",
        _id(primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False, server_default="local"),
        _timestamp(),
    )

    op.create_table(
        "workspace_repos",
        _id("workspace_id", sa.ForeignKey("workspaces.id", ondelete="CASCADE"), primary_key=True),
        _id("repo_id", sa.ForeignKey("repos.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("ordinal", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "workflows",
        _id(primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False, server_default="local"),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("git_strategy", sa.JSON(), nullable=True),
        _timestamp(),
    )

    op.create_table(
        "workflow_phases",
        _id(primary_key=True),
        _id("workflow_id", sa.ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False),
        sa.Column("ordinal", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("prompt_template", sa.Text(), nullable=False, server_default=""),
        sa.Column("allowed_tools", sa.JSON(), nullable=True),
        sa.Column("agents", sa.JSON(), nullable=True),
        sa.Column("approval", sa.String(), server_default="none"),
        sa.Column("git_strategy", sa.JSON(), nullable=True),
        sa.Column("permission_mode", sa.String(), nullable=True),
        sa.Column("loop_to", sa.Integer(), nullable=True),
        sa.Column("max_iterations", sa.Integer(), nullable=True),
        sa.Column("loop_condition", sa.String(), server_default="agent_signal"),
        sa.Column("relay", sa.String(), server_default="off"),
        sa.UniqueConstraint("workflow_id", "ordinal"),
    )

    op.create_table(
        "sessions",
        _id(primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False, server_default="local"),
        _id("workspace_id", sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
        _id("workflow_id", sa.ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(), server_default="pending"),
        sa.Column("current_phase", sa.Integer(), nullable=True),
        sa.Column("phase_entry", sa.Integer(), server_default="0"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("context", sa.Text(), nullable=True),
        sa.Column("git_strategy", sa.JSON(), nullable=True),
        sa.Column("loop_state", sa.JSON(), nullable=True),
        sa.Column("pending_relay", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _timestamp(),
        _timestamp("updated_at"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_sessions_status", "sessions", ["status"])

    op.create_table(
        "agents",
        _id(primary_key=True),
        _id("session_id", sa.ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False),
        _id("phase_id", nullable=True),
        sa.Column("phase_ordinal", sa.Integer(), nullable=True),
        sa.Column("phase_entry", sa.Integer(), nullable=True),
        sa.Column("role", sa.String(), server_default="primary"),
        sa.Column("agent_type", sa.String(), server_default="claude"),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), server_default="spawning"),
        sa.Column("working_dir", sa.Text(), nullable=True),
        sa.Column("worktree_path", sa.Text(), nullable=True),
        sa.Column("branch", sa.String(), nullable=True),
        sa.Column("worktree_manifest", sa.JSON(), nullable=True),
        sa.Column("git_mode", sa.String(), nullable=True),
        sa.Column("exclusive_binding", sa.Boolean(), server_default=sa.false()),
        _id("spawned_by", sa.ForeignKey("agents.id", ondelete="SET NULL"), nullable=True),
        sa.Column("cli_session_id", sa.String(), nullable=True),
        sa.Column("pid", sa.Integer(), nullable=True),
        sa.Column("exit_code", sa.Integer(), nullable=True),
        sa.Column("phase_summary", sa.Text(), nullable=True),
        sa.Column("completion_signal", sa.String(), nullable=True),
        sa.Column("loop_iteration", sa.Integer(), nullable=True),
        _timestamp(),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_agents_session", "agents", ["session_id"])
    op.create_index("idx_agents_status", "agents", ["status"])

    op.create_table(
        "messages",
        _id(primary_key=True),
        _id("agent_id", sa.ForeignKey("agents.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("content_preview", sa.Text(), nullable=True),
        sa.Column("content_path", sa.Text(), nullable=True),
        sa.Column("parent_tool_use_id", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        _timestamp(),
        sa.UniqueConstraint("agent_id", "sequence"),
    )

    op.create_table(
        "artifacts",
        _id(primary_key=True),
        _id("session_id", sa.ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False),
        _id("phase_id", nullable=True),
        _id("agent_id", nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("file_path", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), server_default="draft"),
        sa.Column("pinned", sa.Boolean(), server_default=sa.false()),
        _timestamp(),
        _timestamp("updated_at"),
        sa.UniqueConstraint("session_id", "name"),
    )

    op.create_table(
        "decisions",
        _id(primary_key=True),
        _id("session_id", sa.ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False),
        _id("agent_id", nullable=True),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column("choice", sa.Text(), nullable=False),
        sa.Column("rationale", sa.Text(), nullable=False, server_default=""),
        sa.Column("alternatives", sa.JSON(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.Column("type", sa.String(), server_default="decision"),
        sa.Column("status", sa.String(), server_default="active"),
        sa.Column("origin", sa.String(), server_default="agent"),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        _id("supersedes", nullable=True),
        _id("superseded_by", nullable=True),
        _timestamp(),
    )
    op.create_index("idx_decisions_session", "decisions", ["session_id", "status"])

    op.create_table(
        "approvals",
        _id(primary_key=True),
        _id("session_id", sa.ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False),
        _id("agent_id", nullable=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(), server_default="pending"),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("response", sa.Text(), nullable=True),
        _timestamp(),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_approvals_status", "approvals", ["status"])

    op.create_table(
        "execution_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _id("session_id", sa.ForeignKey("sessions.id", ondelete="CASCADE"), nullable=True),
        _id("agent_id", nullable=True),
        sa.Column("phase", sa.Integer(), nullable=True),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        _timestamp(),
    )
    op.create_index("idx_execution_log_session", "execution_log", ["session_id"])


def downgrade() -> None:
    op.drop_table("execution_log")
    op.drop_table("approvals")
    op.drop_table("decisions")
    op.drop_table("artifacts")
    op.drop_table("messages")
    op.drop_table("agents")
    op.drop_table("sessions")
    op.drop_table("workflow_phases")
    op.drop_table("workflows")
    op.drop_table("workspace_repos")
    op.drop_table("workspaces")
    op.drop_table("repos")
