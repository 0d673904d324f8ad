"""Turns store writes made by companion tool processes into engine events."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import func, select

from . import db
from .approvals import ApprovalRouter
from .events import EngineEvent, EventEmitter, EventType
from .models import LIVE_AGENT_STATUSES, Agent, Approval, ApprovalStatus, Artifact

logger = logging.getLogger(__name__)

# Artifact rows can commit slightly after later-stamped ones
ARTIFACT_LOOKBACK = timedelta(seconds=5)


class ToolCallBridge:
    """Polls the shared store for side effects the engine did not make itself.

    One bridge runs per engine process. Every event it emits is also
    derivable from the store, so a missed poll only delays a reaction.
    """

    def __init__(
        self,
        database: db.Database,
        events: EventEmitter,
        approvals: ApprovalRouter,
        poll_interval: float = 2.0,
    ) -> None:
        self.database = database
        self.events = events
        self.approvals = approvals
        self.poll_interval = poll_interval
        self._pending_ids: set[str] = set()
        # Artifacts seen inside the lookback window behind the watermark
        self._artifact_stamps: dict[str, Any] = {}
        self._artifact_watermark: Any = None
        self._agent_fingerprints: dict[str, tuple[Any, ...]] = {}
        self._task: asyncio.Task[None] | None = None
        self._primed = False

    async def start(self) -> None:
        if self._task is not None:
            return
        await self.prime()
        self._task = asyncio.create_task(self._run())
        logger.info("Tool-call bridge started (every %.1fs)", self.poll_interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def prime(self) -> None:
        """Snapshot current state so only later changes produce events."""
        async with self.database.session() as session:
            pending = await db.list_pending_approvals(session)
            latest = await session.scalar(select(func.max(Artifact.updated_at)))
            artifacts = await self._artifacts_since(session, latest)
            agents = await self._watched_agents(session)
        self._pending_ids = {a.id for a in pending}
        self._artifact_watermark = latest
        self._artifact_stamps = {a.id: a.updated_at for a in artifacts}
        self._agent_fingerprints = {a.id: self._fingerprint(a) for a in agents}
        self._primed = True

    async def _run(self) -> None:
        while True:
            try:
                await self.poll()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Tool-call bridge poll failed")
            await asyncio.sleep(self.poll_interval)

    async def poll(self) -> list[EngineEvent]:
        """Run one observation pass and emit the resulting events."""
        if not self._primed:
            await self.prime()
            return []

        async with self.database.session() as session:
            pending = await db.list_pending_approvals(session)
            vanished_ids = self._pending_ids - {a.id for a in pending}
            vanished: list[Approval] = []
            if vanished_ids:
                rows = await session.execute(select(Approval).where(Approval.id.in_(vanished_ids)))
                vanished = list(rows.scalars().all())
            artifacts = await self._artifacts_since(session, self._artifact_watermark)
            agents = await self._watched_agents(session)

        emitted: list[EngineEvent] = []

        for approval in pending:
            if approval.id in self._pending_ids:
                continue
            self._pending_ids.add(approval.id)
            if approval.id in self.approvals.created_here:
                continue
            emitted.append(
                EngineEvent(
                    type=EventType.APPROVAL_CREATED,
                    session_id=approval.session_id,
                    agent_id=approval.agent_id,
                    message=approval.summary,
                    data={
                        "approval_id": approval.id,
                        "approval_type": approval.type,
                        "payload": approval.payload or {},
                    },
                )
            )

        resolved_elsewhere: list[Approval] = []
        for approval in vanished:
            self._pending_ids.discard(approval.id)
            if approval.id in self.approvals.resolved_here or approval.status == ApprovalStatus.PENDING:
                continue
            resolved_elsewhere.append(approval)

        for artifact in artifacts:
            if self._artifact_stamps.get(artifact.id) == artifact.updated_at:
                continue
            self._artifact_stamps[artifact.id] = artifact.updated_at
            emitted.append(
                EngineEvent(
                    type=EventType.ARTIFACT_WRITTEN,
                    session_id=artifact.session_id,
                    agent_id=artifact.agent_id,
                    message=f"Artifact {artifact.name} ({artifact.status})",
                    data={"artifact_id": artifact.id, "name": artifact.name, "file_path": artifact.file_path},
                )
            )
        if artifacts:
            self._artifact_watermark = max(a.updated_at for a in artifacts)
            floor = self._artifact_watermark - ARTIFACT_LOOKBACK
            self._artifact_stamps = {
                a_id: stamp for a_id, stamp in self._artifact_stamps.items() if stamp >= floor
            }

        live_ids = {agent.id for agent in agents}
        for agent_id in set(self._agent_fingerprints) - live_ids:
            del self._agent_fingerprints[agent_id]
        for agent in agents:
            fingerprint = self._fingerprint(agent)
            if self._agent_fingerprints.get(agent.id) == fingerprint:
                continue
            self._agent_fingerprints[agent.id] = fingerprint
            if not agent.completion_signal and not agent.phase_summary:
                continue
            emitted.append(
                EngineEvent(
                    type=EventType.AGENT_SIGNALED,
                    session_id=agent.session_id,
                    agent_id=agent.id,
                    phase=agent.phase_ordinal,
                    message=agent.phase_summary or "",
                    data={"status": agent.status, "completion_signal": agent.completion_signal},
                )
            )

        for event in emitted:
            await self.events.emit(event)
        for approval in resolved_elsewhere:
            await self.approvals.announce_resolved(approval)
        return emitted

    @staticmethod
    def _fingerprint(agent: Agent) -> tuple[Any, ...]:
        return (agent.status, agent.completion_signal, agent.phase_summary)

    @staticmethod
    async def _artifacts_since(session: Any, watermark: Any) -> list[Artifact]:
        stmt = select(Artifact)
        if watermark is not None:
            stmt = stmt.where(Artifact.updated_at >= watermark - ARTIFACT_LOOKBACK)
        result = await session.execute(stmt.order_by(Artifact.updated_at))
        return list(result.scalars().all())

    @staticmethod
    async def _watched_agents(session: Any) -> list[Agent]:
        result = await session.execute(
            select(Agent).where(Agent.status.in_(list(LIVE_AGENT_STATUSES)))
        )
        return list(result.scalars().all())
