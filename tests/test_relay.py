import pytest

from conductor import db
from conductor.content_store import ContentStore, artifact_key
from conductor.git_strategy import RepoBinding
from conductor.models import Agent, AgentStatus, RelayMode
from conductor.prompts import LoopInfo, build_phase_prompt, build_system_preamble
from conductor.relay import RelayArtifact, RelayPayload, RelaySummary, compose_relay
from conftest import create_workflow


async def _seed_pass(database, store, ws_id, entry_base, label) -> None:
    """One plan (ordinal 0) + build (ordinal 1) pass with a summary and an artifact each."""
    async with database.session() as session:
        for offset, phase_name in enumerate(("plan", "build")):
            agent = Agent(
                session_id=ws_id,
                name=f"{phase_name} (primary)",
                status=AgentStatus.COMPLETED,
                phase_ordinal=offset,
                phase_entry=entry_base + offset,
                phase_summary=f"{phase_name} {label}",
                loop_iteration=1 if label == "v1" else 2,
            )
            session.add(agent)
            await session.flush()
            name = f"{phase_name}-{label}"
            key = artifact_key(ws_id, name)
            store.write_text(key, f"{phase_name} artifact {label}")
            await db.add_artifact(
                session, session_id=ws_id, name=name, file_path=key, status="final", agent_id=agent.id
            )


async def _loop_session(database, workspace_id, tmp_path):
    workflow_id = await create_workflow(database, {"name": "plan"}, {"name": "build", "loop_to": 0})
    store = ContentStore(tmp_path / "store")
    async with database.session() as session:
        ws = await db.create_session(session, workspace_id=workspace_id, workflow_id=workflow_id)
        phases = await db.get_workflow_phases(session, workflow_id)
    return ws, phases[1], store


async def _compose(database, store, ws, phase, mode, max_chars=20000):
    phase.relay = mode
    async with database.session() as session:
        fresh = await db.get_session_by_id(session, ws.id)
        return await compose_relay(
            session, store, fresh, phase, iteration=1, loop_started_entry=1, max_chars=max_chars
        )


async def _set_entry(database, ws_id, entry) -> None:
    async with database.session() as session:
        ws = await db.get_session_by_id(session, ws_id)
        ws.phase_entry = entry


@pytest.mark.asyncio
async def test_relay_modes_pick_the_right_window(database, workspace_id, tmp_path) -> None:
    ws, build, store = await _loop_session(database, workspace_id, tmp_path)
    await _seed_pass(database, store, ws.id, 1, "v1")
    await _seed_pass(database, store, ws.id, 3, "v2")
    await _set_entry(database, ws.id, 4)

    assert await _compose(database, store, ws, build, RelayMode.OFF) is None

    summary = await _compose(database, store, ws, build, RelayMode.SUMMARY)
    assert [s.summary for s in summary.summaries] == ["build v2"]
    assert summary.artifacts == []

    previous = await _compose(database, store, ws, build, RelayMode.PREVIOUS)
    assert previous.summaries == []
    assert {a.name for a in previous.artifacts} == {"plan-v2", "build-v2"}

    everything = await _compose(database, store, ws, build, RelayMode.ALL)
    assert {s.summary for s in everything.summaries} == {"plan v1", "build v1", "plan v2", "build v2"}
    assert len(everything.artifacts) == 4


@pytest.mark.asyncio
async def test_relay_truncates_and_tolerates_missing_files(database, workspace_id, tmp_path) -> None:
    ws, build, store = await _loop_session(database, workspace_id, tmp_path)
    await _seed_pass(database, store, ws.id, 1, "v1")
    await _set_entry(database, ws.id, 2)
    store.delete(artifact_key(ws.id, "plan-v1"))

    payload = await _compose(database, store, ws, build, RelayMode.PREVIOUS, max_chars=5)

    contents = {a.name: a.content for a in payload.artifacts}
    assert contents["plan-v1"] is None
    assert contents["build-v1"] == "build\n\n[... truncated 12 characters]"


def test_payload_round_trips_through_session_storage() -> None:
    payload = RelayPayload(
        mode=RelayMode.ALL,
        source_phase=1,
        iteration=2,
        summaries=[RelaySummary(agent_id="a1", role="primary", summary="Tightened the API", loop_iteration=2)],
        artifacts=[RelayArtifact(name="notes", status="draft", file_path="sessions/s/artifacts/notes.md")],
    )

    restored = RelayPayload.from_dict(payload.to_dict())

    assert restored == payload
    markdown = restored.to_markdown()
    assert markdown.startswith("## Relay From Previous Iteration")
    assert "Iteration 2 of phase 2" in markdown
    assert "- (primary, iteration 2) Tightened the API" in markdown
    assert "### Artifact: notes (draft)" in markdown
    assert "(stored at sessions/s/artifacts/notes.md)" in markdown


def test_empty_payload_says_so() -> None:
    payload = RelayPayload(mode=RelayMode.SUMMARY, source_phase=0, iteration=1)
    assert payload.is_empty
    assert payload.to_markdown().endswith("(nothing was recorded)")


def _repo(name: str) -> RepoBinding:
    return RepoBinding(repo_id=name, repo_name=name, repo_path=f"/src/{name}", working_dir=f"/wt/{name}")


def test_system_preamble_sections() -> None:
    loop = LoopInfo(
        loop_to=0,
        target_phase_name="plan",
        is_self_loop=False,
        max_iterations=3,
        condition="approval",
        loops_done=1,
    )
    relay = RelayPayload(mode=RelayMode.SUMMARY, source_phase=1, iteration=1)

    text = build_system_preamble(
        session_id="s1",
        phase_id="p2",
        phase_name="build",
        phase_ordinal=1,
        repos=[_repo("api"), _repo("web")],
        role="reviewer",
        loop=loop,
        relay=relay,
    )

    assert text.startswith("You are a phase agent in a conductor session.")
    assert "- Phase: 2. build (p2)" in text
    assert "- Role: reviewer" in text
    assert "  1. api (/wt/api)\n  2. web (/wt/web)" in text
    assert "- Target: Phase 1: plan\n" in text
    assert "- Loops so far: 1 of 3" in text
    assert "- Next advance: human approval" in text
    assert text.index("## Session Tools") < text.index("## Loop Configuration") < text.index("## Relay")


def test_system_preamble_single_repo_without_loop() -> None:
    text = build_system_preamble(
        session_id="s1", phase_id="p1", phase_name="plan", phase_ordinal=0, repos=[_repo("api")]
    )
    assert "- Repository: api (/wt/api)" in text
    assert "## Loop Configuration" not in text
    assert "## Relay" not in text


def test_phase_prompt_orders_task_context_instructions() -> None:
    prompt = build_phase_prompt("Write tests", context="Legacy code", description="Harden the parser")
    assert prompt == (
        "## Task\n\nHarden the parser\n\n## Context\n\nLegacy code\n\n## Phase Instructions\n\nWrite tests"
    )
    assert build_phase_prompt("Just this") == "## Phase Instructions\n\nJust this"
