from datetime import timedelta

import pytest

from conductor import db
from conductor.adapters import ToolServerDefinition
from conductor.config import Settings
from conductor.content_store import ContentStore, artifact_key, message_body_key
from conductor.errors import (
    GitBindingConflict,
    NotFoundError,
    is_schema_missing_error,
    missing_table_name,
    schema_not_initialized_message,
)
from conductor.events import EngineEvent, EventEmitter, EventType
from conductor.models import SessionStatus, utcnow


def test_settings_read_prefixed_environment(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("CONDUCTOR_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("CONDUCTOR_GATE_REJECTION_POLICY", "retry")
    monkeypatch.setenv("CONDUCTOR_BRIDGE_POLL_INTERVAL", "0.5")

    settings = Settings()

    assert settings.gate_rejection_policy == "retry"
    assert settings.bridge_poll_interval == 0.5
    assert settings.worktrees_dir == tmp_path / "worktrees"
    assert settings.tool_config_dir == tmp_path / "tmp"


@pytest.mark.asyncio
async def test_emitter_isolates_failing_handlers() -> None:
    emitter = EventEmitter()
    seen: list[str] = []

    def broken(event: EngineEvent) -> None:
        raise RuntimeError("boom")

    async def record(event: EngineEvent) -> None:
        seen.append(event.type.value)

    emitter.on_event(broken)
    emitter.on_event(record)
    emitter.on(EventType.APPROVAL_CREATED, lambda e: seen.append("approval only"))

    await emitter.emit(EngineEvent(type=EventType.PHASE_ADVANCED, session_id="s1"))
    await emitter.emit(EngineEvent(type=EventType.APPROVAL_CREATED, session_id="s1"))

    assert seen == ["phase.advanced", "approval.created", "approval only"]


def test_event_to_dict() -> None:
    event = EngineEvent(type=EventType.AGENT_SIGNALED, session_id="s1", agent_id="a1", data={"x": 1})
    data = event.to_dict()
    assert data["type"] == "agent.signaled"
    assert data["agent_id"] == "a1"
    assert data["data"] == {"x": 1}


def test_content_store_stays_inside_its_root(tmp_path) -> None:
    store = ContentStore(tmp_path / "store")
    key = artifact_key("s1", "plan")

    store.write_text(key, "# Plan")
    store.write_json(message_body_key("a1", "m1"), {"text": "héllo"})

    assert store.read_text(key) == "# Plan"
    assert '"héllo"' in store.read_text("sessions/a1/messages/m1.json")
    assert store.delete(key)
    assert not store.delete(key)
    assert store.read_text(key) is None
    with pytest.raises(ValueError):
        store.resolve("../outside.md")


def test_schema_missing_detection() -> None:
    try:
        try:
            raise RuntimeError("no such table: sessions")
        except RuntimeError as inner:
            raise ValueError("statement failed") from inner
    except ValueError as exc:
        wrapped = exc

    assert missing_table_name(wrapped) == "sessions"
    assert is_schema_missing_error(wrapped)
    assert is_schema_missing_error(RuntimeError('relation "agents" does not exist'))
    assert not is_schema_missing_error(RuntimeError("disk I/O error"))
    assert schema_not_initialized_message(wrapped).startswith(
        "Database schema is not initialized (missing table `sessions`)."
    )


def test_error_messages_name_the_subject() -> None:
    assert "abc" in str(NotFoundError("session", "abc"))
    conflict = GitBindingConflict("ws-1", "agent-9")
    assert conflict.holder_agent_id == "agent-9"


def test_tool_server_definition_renders_mcp_config() -> None:
    server = ToolServerDefinition(command="python", args=["-m", "conductor.tools.server"], env={"A": "1"})
    assert server.to_mcp_config() == {
        "mcpServers": {"conductor": {"command": "python", "args": ["-m", "conductor.tools.server"], "env": {"A": "1"}}}
    }


@pytest.mark.asyncio
async def test_prune_skips_pinned_artifacts_and_live_sessions(database, session_id) -> None:
    async with database.session() as session:
        old = await db.add_artifact(session, session_id=session_id, name="old", file_path="a/old.md", status="draft")
        kept = await db.add_artifact(session, session_id=session_id, name="kept", file_path="a/kept.md", status="final")
        await db.set_artifact_pinned(session, kept.id, True)

    later = utcnow() + timedelta(days=1)
    async with database.session() as session:
        assert await db.prune_artifacts(session, older_than=later) == []
        ws = await db.get_session_by_id(session, session_id)
        ws.status = SessionStatus.COMPLETED

    async with database.session() as session:
        doomed = await db.prune_artifacts(session, older_than=later)
    assert [a.id for a in doomed] == [old.id]

    async with database.session() as session:
        remaining = await db.list_session_artifacts(session, session_id)
        assert await db.set_artifact_pinned(session, "missing", True) is None
    assert [a.name for a in remaining] == ["kept"]
