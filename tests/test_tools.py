import pytest
import pytest_asyncio

from conductor import db
from conductor.content_store import ContentStore
from conductor.models import Agent, AgentStatus, ApprovalType, DecisionStatus
from conductor.tools.base import ToolContext
from conductor.tools.session_tools import (
    ArtifactTool,
    ContextTool,
    DecideTool,
    PhaseCompleteTool,
    RecordTool,
    default_registry,
    sanitize_artifact_name,
)


@pytest_asyncio.fixture
async def ctx(database, session_id, tmp_path) -> ToolContext:
    async with database.session() as session:
        agent = Agent(session_id=session_id, name="build (primary)", status=AgentStatus.RUNNING)
        session.add(agent)
        await session.flush()
    return ToolContext(
        database=database,
        store=ContentStore(tmp_path / "store"),
        agent_id=agent.id,
        session_id=session_id,
        phase_id="phase-1",
    )


def test_registry_exposes_the_five_operations() -> None:
    assert sorted(default_registry.list_tools()) == ["artifact", "context", "decide", "phase_complete", "record"]


def test_sanitize_artifact_name() -> None:
    assert sanitize_artifact_name("design notes/v2.md") == "design_notes_v2_md"
    assert sanitize_artifact_name("plan-1_final") == "plan-1_final"


@pytest.mark.asyncio
async def test_record_and_context_filter_by_tags(ctx) -> None:
    record = RecordTool()
    await record(ctx, question="Cache layer?", choice="Redis", type="decision", tags=["cache", "src/cache.py"])
    await record(ctx, question="Logging?", choice="structlog", tags=["logging"])

    result = await ContextTool()(ctx, tags=["cache"])

    decisions = result.output["decisions"]
    assert [d["choice"] for d in decisions] == ["Redis"]
    assert decisions[0]["origin"] == "agent"
    assert decisions[0]["confirmed"] is False

    by_file = await ContextTool()(ctx, files=["src/cache.py"])
    assert len(by_file.output["decisions"]) == 1
    by_query = await ContextTool()(ctx, query="structlog")
    assert [d["question"] for d in by_query.output["decisions"]] == ["Logging?"]


@pytest.mark.asyncio
async def test_record_rejects_unknown_type_and_missing_fields(ctx) -> None:
    bad_type = await RecordTool()(ctx, question="q", choice="c", type="opinion")
    missing = await RecordTool()(ctx, question="q")

    assert not bad_type.success
    assert "Unknown record type" in bad_type.error
    assert not missing.success
    assert missing.to_dict() == {"error": "question and choice are required"}


@pytest.mark.asyncio
async def test_superseding_retires_the_old_decision(ctx) -> None:
    first = await RecordTool()(ctx, question="Queue?", choice="SQS", type="decision")
    old_id = first.output["capsule_id"]

    second = await RecordTool()(ctx, question="Queue?", choice="Kafka", type="decision", supersedes=old_id)
    assert second.success

    async with ctx.database.session() as session:
        old = await db.get_decision(session, old_id)
    assert old.status == DecisionStatus.INVALIDATED
    assert old.superseded_by == second.output["capsule_id"]

    again = await RecordTool()(ctx, question="Queue?", choice="NATS", supersedes=old_id)
    assert not again.success
    assert "no longer active" in again.error

    context = await ContextTool()(ctx)
    assert [d["choice"] for d in context.output["decisions"]] == ["Kafka"]


@pytest.mark.asyncio
async def test_decide_creates_a_decision_approval(ctx) -> None:
    result = await DecideTool()(ctx, question="Database?", choice="Postgres", rationale="Need JSONB")

    assert result.output["status"] == "pending_approval"
    async with ctx.database.session() as session:
        approval = await db.get_approval(session, result.output["approval_id"])
    assert approval.type == ApprovalType.DECISION
    assert approval.summary == "Decision: Database? → Postgres"
    assert approval.payload["decision_id"] == result.output["decision_id"]
    assert approval.agent_id == ctx.agent_id


@pytest.mark.asyncio
async def test_artifact_overwrites_by_name(ctx) -> None:
    tool = ArtifactTool()
    first = await tool(ctx, name="design notes", content="draft one")
    second = await tool(ctx, name="design notes", content="final text", status="final")

    assert first.output["artifact_id"] == second.output["artifact_id"]
    assert second.output["file_path"] == f"sessions/{ctx.session_id}/artifacts/design_notes.md"
    assert ctx.store.read_text(second.output["file_path"]) == "final text"
    async with ctx.database.session() as session:
        artifact = await db.get_artifact_by_name(session, ctx.session_id, "design notes")
    assert artifact.status == "final"
    assert artifact.phase_id == "phase-1"

    bad = await tool(ctx, name="x", content="y", status="published")
    assert not bad.success


@pytest.mark.asyncio
async def test_phase_complete_signals(ctx) -> None:
    result = await PhaseCompleteTool()(ctx, summary="All done", status="complete")

    assert result.output == {"status": "completed", "signal": "complete"}
    async with ctx.database.session() as session:
        agent = await db.get_agent(session, ctx.agent_id)
    assert agent.completion_signal == "complete"
    assert agent.phase_summary == "All done"
    assert agent.status == AgentStatus.RUNNING


@pytest.mark.asyncio
async def test_phase_complete_needs_input_parks_agent(ctx) -> None:
    result = await PhaseCompleteTool()(ctx, summary="Which region?", status="needs_input")

    assert result.output["status"] == "waiting"
    async with ctx.database.session() as session:
        agent = await db.get_agent(session, ctx.agent_id)
        approval = await db.get_approval(session, result.output["approval_id"])
    assert agent.status == AgentStatus.WAITING
    assert agent.completion_signal is None
    assert approval.type == ApprovalType.NEEDS_INPUT
    assert approval.summary == "Which region?"


@pytest.mark.asyncio
async def test_phase_complete_refuses_finished_agents_and_bad_status(ctx) -> None:
    bad = await PhaseCompleteTool()(ctx, summary="x", status="done")
    assert not bad.success

    async with ctx.database.session() as session:
        agent = await db.get_agent(session, ctx.agent_id)
        await db.finish_agent(session, agent, AgentStatus.COMPLETED)

    late = await PhaseCompleteTool()(ctx, summary="again", status="complete")
    assert not late.success
    assert "already completed" in late.error


@pytest.mark.asyncio
async def test_mcp_server_is_named_after_the_tool_namespace(ctx) -> None:
    from conductor.tools.server import create_mcp_server

    assert create_mcp_server(ctx).name == "conductor"
