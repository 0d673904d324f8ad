import asyncio

import pytest

from conductor.approvals import SYSTEM_RESOLVER, ApprovalRouter, RecentIds, ResolveRequest
from conductor.errors import ApprovalAlreadyResolvedError, NotFoundError
from conductor.events import EngineEvent, EventEmitter, EventType
from conductor.models import ApprovalStatus, ApprovalType


def _router(database) -> tuple[ApprovalRouter, list[EngineEvent]]:
    seen: list[EngineEvent] = []
    events = EventEmitter()
    events.on_event(seen.append)
    return ApprovalRouter(database, events), seen


@pytest.mark.asyncio
async def test_resolve_records_outcome_and_emits(database, session_id) -> None:
    router, seen = _router(database)
    approval = await router.create(
        session_id=session_id, type=ApprovalType.MERGE, summary="Merge feature branch?"
    )

    resolved = await router.resolve(
        ResolveRequest(id=approval.id, status=ApprovalStatus.APPROVED, user_id="alice", response="ship it")
    )

    assert resolved.status == ApprovalStatus.APPROVED
    assert resolved.resolved_by == "alice"
    assert resolved.response == "ship it"
    assert resolved.resolved_at is not None
    assert [e.type for e in seen] == [EventType.APPROVAL_CREATED, EventType.APPROVAL_RESOLVED]
    assert seen[1].data["status"] == ApprovalStatus.APPROVED
    assert approval.id in router.created_here
    assert approval.id in router.resolved_here


@pytest.mark.asyncio
async def test_second_resolution_is_refused(database, session_id) -> None:
    router, _ = _router(database)
    approval = await router.create(session_id=session_id, type=ApprovalType.MERGE, summary="Merge?")
    await router.resolve(ResolveRequest(id=approval.id, status=ApprovalStatus.REJECTED, user_id="alice"))

    with pytest.raises(ApprovalAlreadyResolvedError):
        await router.resolve(ResolveRequest(id=approval.id, status=ApprovalStatus.APPROVED, user_id="bob"))

    stored = await router.get(approval.id)
    assert stored.status == ApprovalStatus.REJECTED
    assert stored.resolved_by == "alice"


@pytest.mark.asyncio
async def test_concurrent_resolvers_have_one_winner(database, session_id) -> None:
    router, _ = _router(database)
    approval = await router.create(session_id=session_id, type=ApprovalType.MERGE, summary="Merge?")

    results = await asyncio.gather(
        *(
            router.resolve(ResolveRequest(id=approval.id, status=ApprovalStatus.APPROVED, user_id=user))
            for user in ("alice", "bob", "carol")
        ),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    assert len(winners) == 1
    assert sum(isinstance(r, ApprovalAlreadyResolvedError) for r in results) == 2


@pytest.mark.asyncio
async def test_resolve_validates_input(database, session_id) -> None:
    router, _ = _router(database)
    approval = await router.create(session_id=session_id, type=ApprovalType.MERGE, summary="Merge?")

    with pytest.raises(ValueError):
        await router.resolve(ResolveRequest(id=approval.id, status="maybe", user_id="alice"))
    with pytest.raises(NotFoundError):
        await router.resolve(ResolveRequest(id="missing", status=ApprovalStatus.APPROVED, user_id="alice"))


@pytest.mark.asyncio
async def test_pending_excludes_continuations_unless_asked(database, session_id) -> None:
    router, _ = _router(database)
    await router.create(session_id=session_id, type=ApprovalType.PHASE_GATE, summary="Start?")
    await router.create(session_id=session_id, type=ApprovalType.AGENT_IDLE, summary="Idle")

    formal = await router.pending(session_id=session_id)
    everything = await router.pending(formal_only=False, session_id=session_id)

    assert [a.type for a in formal] == [ApprovalType.PHASE_GATE]
    assert {a.type for a in everything} == {ApprovalType.PHASE_GATE, ApprovalType.AGENT_IDLE}
    assert await router.pending_count(session_id=session_id) == 1


@pytest.mark.asyncio
async def test_resolve_continuations_leaves_formal_approvals(database, session_id) -> None:
    router, _ = _router(database)
    agent_id = "agent-1"
    gate = await router.create(session_id=session_id, agent_id=agent_id, type=ApprovalType.DECISION, summary="Pick")
    question = await router.create(
        session_id=session_id, agent_id=agent_id, type=ApprovalType.NEEDS_INPUT, summary="Which?"
    )

    resolved = await router.resolve_continuations(agent_id, response="Use Postgres")

    assert [a.id for a in resolved] == [question.id]
    assert resolved[0].resolved_by == SYSTEM_RESOLVER
    assert resolved[0].response == "Use Postgres"
    assert (await router.get(gate.id)).status == ApprovalStatus.PENDING


def test_recent_ids_expire() -> None:
    kept = RecentIds(ttl=300.0)
    kept.add("a")
    kept.add("b")
    assert "a" in kept and "b" in kept

    expiring = RecentIds(ttl=0.0)
    expiring.add("a")
    expiring.add("b")
    assert "a" not in expiring
    assert "b" in expiring
    assert len(expiring) == 1


@pytest.mark.asyncio
async def test_router_forgets_old_ids(database, session_id) -> None:
    router = ApprovalRouter(database, EventEmitter(), remember_seconds=0.0)
    first = await router.create(session_id=session_id, type=ApprovalType.MERGE, summary="Merge?")
    second = await router.create(session_id=session_id, type=ApprovalType.MERGE, summary="Merge again?")

    assert first.id not in router.created_here
    assert second.id in router.created_here
    assert len(router.created_here) == 1
