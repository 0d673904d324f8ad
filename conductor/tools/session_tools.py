"""The five operations an agent can call on its session."""

from __future__ import annotations

import re
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from .. import db
from ..content_store import artifact_key
from ..models import (
    TERMINAL_AGENT_STATUSES,
    Agent,
    AgentStatus,
    ApprovalType,
    ArtifactStatus,
    CompletionSignal,
    Decision,
    DecisionStatus,
    utcnow,
)
from .base import BaseTool, ToolContext, ToolRegistry, ToolResult

CONTEXT_DECISION_LIMIT = 15
CONTEXT_ARTIFACT_LIMIT = 10

PHASE_COMPLETE_STATUSES = ("complete", "blocked", "needs_input", "iterate")


def sanitize_artifact_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "_", name)


def _decision_dict(decision: Decision) -> dict[str, Any]:
    return {
        "id": decision.id,
        "type": decision.type,
        "question": decision.question,
        "choice": decision.choice,
        "rationale": decision.rationale,
        "alternatives": decision.alternatives or [],
        "tags": decision.tags or [],
        "origin": decision.origin,
        "confirmed": decision.confirmed_at is not None,
        "supersedes": decision.supersedes,
    }


async def _load_live_agent(session: AsyncSession, ctx: ToolContext) -> Agent:
    agent = await db.get_agent(session, ctx.agent_id)
    if agent is None or agent.session_id != ctx.session_id:
        raise LookupError(f"Agent {ctx.agent_id} is not part of session {ctx.session_id}")
    if agent.status in TERMINAL_AGENT_STATUSES:
        raise ValueError(f"Agent {ctx.agent_id} is already {agent.status}")
    return agent


async def _supersede(
    session: AsyncSession, ctx: ToolContext, old_id: str | None, new: Decision
) -> None:
    """Point ``new`` back at the decision it revises and retire the old one."""
    if not old_id:
        return
    old = await db.get_decision(session, old_id)
    if old is None or old.session_id != ctx.session_id:
        raise LookupError(f"Decision {old_id} not found in this session")
    if old.status != DecisionStatus.ACTIVE or old.superseded_by:
        raise ValueError(f"Decision {old_id} is no longer active")
    old.status = DecisionStatus.INVALIDATED
    old.superseded_by = new.id


class ContextTool(BaseTool):
    name = "context"
    description = "Active decisions and recent artifacts of this session"

    async def run(
        self,
        ctx: ToolContext,
        query: str | None = None,
        tags: list[str] | None = None,
        files: list[str] | None = None,
        limit: int | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        del kwargs
        async with ctx.database.session() as session:
            decisions = await db.search_active_decisions(
                session,
                ctx.session_id,
                query=query,
                tags=tags,
                files=files,
                limit=limit or CONTEXT_DECISION_LIMIT,
            )
            artifacts = await db.list_session_artifacts(
                session, ctx.session_id, limit=CONTEXT_ARTIFACT_LIMIT
            )
        return ToolResult(
            success=True,
            output={
                "decisions": [_decision_dict(d) for d in decisions],
                "artifacts": [
                    {"id": a.id, "name": a.name, "status": a.status, "file_path": a.file_path}
                    for a in artifacts
                ],
            },
        )


class RecordTool(BaseTool):
    name = "record"
    description = "Record a decision or finding without asking for approval"

    async def run(
        self,
        ctx: ToolContext,
        question: str = "",
        choice: str = "",
        rationale: str = "",
        type: str = "finding",
        alternatives: list[str] | None = None,
        tags: list[str] | None = None,
        supersedes: str | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        del kwargs
        if type not in ("decision", "finding"):
            raise ValueError(f"Unknown record type: {type!r}")
        if not question or not choice:
            raise ValueError("question and choice are required")

        async with ctx.database.session() as session:
            decision = await db.add_decision(
                session,
                session_id=ctx.session_id,
                agent_id=ctx.agent_id,
                question=question,
                choice=choice,
                rationale=rationale,
                alternatives=alternatives,
                tags=tags,
                type=type,
                origin="agent",
                supersedes=supersedes,
            )
            await _supersede(session, ctx, supersedes, decision)
        return ToolResult(
            success=True,
            output={
                "capsule_id": decision.id,
                "status": "stored",
                "message": f"Recorded {type}: {question}",
            },
        )


class DecideTool(BaseTool):
    name = "decide"
    description = "Propose a decision that a human must confirm"

    async def run(
        self,
        ctx: ToolContext,
        question: str = "",
        choice: str = "",
        rationale: str = "",
        alternatives: list[str] | None = None,
        tags: list[str] | None = None,
        supersedes: str | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        del kwargs
        if not question or not choice:
            raise ValueError("question and choice are required")

        async with ctx.database.session() as session:
            decision = await db.add_decision(
                session,
                session_id=ctx.session_id,
                agent_id=ctx.agent_id,
                question=question,
                choice=choice,
                rationale=rationale,
                alternatives=alternatives,
                tags=tags,
                type="decision",
                origin="agent",
                supersedes=supersedes,
            )
            await _supersede(session, ctx, supersedes, decision)
            approval = await db.create_approval(
                session,
                session_id=ctx.session_id,
                agent_id=ctx.agent_id,
                type=ApprovalType.DECISION,
                summary=f"Decision: {question} → {choice}",
                payload={
                    "decision_id": decision.id,
                    "question": question,
                    "choice": choice,
                    "rationale": rationale,
                    "alternatives": alternatives or [],
                },
            )
        return ToolResult(
            success=True,
            output={
                "decision_id": decision.id,
                "approval_id": approval.id,
                "status": "pending_approval",
            },
        )


class ArtifactTool(BaseTool):
    name = "artifact"
    description = "Write or overwrite a named markdown document for this session"

    async def run(
        self,
        ctx: ToolContext,
        name: str = "",
        content: str = "",
        status: str = ArtifactStatus.DRAFT,
        **kwargs: Any,
    ) -> ToolResult:
        del kwargs
        if not name:
            raise ValueError("name is required")
        if status not in (ArtifactStatus.DRAFT, ArtifactStatus.FINAL):
            raise ValueError(f"Unknown artifact status: {status!r}")

        key = artifact_key(ctx.session_id, sanitize_artifact_name(name))
        ctx.store.write_text(key, content)

        async with ctx.database.session() as session:
            artifact = await db.get_artifact_by_name(session, ctx.session_id, name)
            if artifact is None:
                artifact = await db.add_artifact(
                    session,
                    session_id=ctx.session_id,
                    name=name,
                    file_path=key,
                    status=status,
                    agent_id=ctx.agent_id,
                    phase_id=ctx.phase_id,
                )
            else:
                artifact.file_path = key
                artifact.status = status
                artifact.agent_id = ctx.agent_id
                artifact.phase_id = ctx.phase_id
                artifact.updated_at = utcnow()
        return ToolResult(
            success=True,
            output={"artifact_id": artifact.id, "file_path": key, "status": status},
        )


class PhaseCompleteTool(BaseTool):
    name = "phase_complete"
    description = "Report that this agent finished, is blocked, needs input, or wants another iteration"

    async def run(
        self,
        ctx: ToolContext,
        summary: str = "",
        status: str = "complete",
        **kwargs: Any,
    ) -> ToolResult:
        del kwargs
        if status not in PHASE_COMPLETE_STATUSES:
            raise ValueError(f"Unknown phase_complete status: {status!r}")
        if not summary:
            raise ValueError("summary is required")

        approval_id = None
        async with ctx.database.session() as session:
            agent = await _load_live_agent(session, ctx)
            agent.phase_summary = summary
            if status in (CompletionSignal.COMPLETE, CompletionSignal.ITERATE):
                agent.completion_signal = status
            else:
                agent.status = AgentStatus.WAITING
            if status == "needs_input":
                approval = await db.create_approval(
                    session,
                    session_id=ctx.session_id,
                    agent_id=ctx.agent_id,
                    type=ApprovalType.NEEDS_INPUT,
                    summary=summary,
                    payload={"phase_id": ctx.phase_id},
                )
                approval_id = approval.id

        output: dict[str, Any] = {
            "status": "completed" if status in ("complete", "iterate") else "waiting",
            "signal": status,
        }
        if approval_id:
            output["approval_id"] = approval_id
        return ToolResult(success=True, output=output)


def build_registry() -> ToolRegistry:
    registry = ToolRegistry()
    for tool in (ContextTool(), RecordTool(), DecideTool(), ArtifactTool(), PhaseCompleteTool()):
        registry.register(tool)
    return registry


default_registry = build_registry()
