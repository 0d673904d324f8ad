"""Durable queue of decisions that need a human."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

from . import db
from .errors import ApprovalAlreadyResolvedError, NotFoundError
from .events import EngineEvent, EventEmitter, EventType
from .models import CONTINUATION_APPROVAL_TYPES, Approval, ApprovalStatus

logger = logging.getLogger(__name__)

SYSTEM_RESOLVER = "system"
RECENT_IDS_SECONDS = 300.0


@dataclass
class ResolveRequest:
    id: str
    status: str
    user_id: str
    response: str | None = None


class RecentIds:
    """Ids remembered for ``ttl`` seconds after they were added."""

    def __init__(self, ttl: float) -> None:
        self.ttl = ttl
        self._added: dict[str, float] = {}

    def add(self, item_id: str) -> None:
        now = time.monotonic()
        cutoff = now - self.ttl
        while self._added:
            oldest, added_at = next(iter(self._added.items()))
            if added_at > cutoff:
                break
            del self._added[oldest]
        self._added[item_id] = now

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._added

    def __len__(self) -> int:
        return len(self._added)


class ApprovalRouter:
    """Creates and resolves approvals.

    Resolution is a conditional update on ``status = 'pending'`` so that
    exactly one of any number of concurrent resolvers wins.
    """

    def __init__(
        self,
        database: db.Database,
        events: EventEmitter,
        *,
        remember_seconds: float = RECENT_IDS_SECONDS,
    ) -> None:
        self.database = database
        self.events = events
        # Ids this process recently created or resolved; the bridge skips them
        self.created_here = RecentIds(remember_seconds)
        self.resolved_here = RecentIds(remember_seconds)

    async def create(
        self,
        *,
        session_id: str,
        type: str,
        summary: str,
        payload: dict[str, Any] | None = None,
        agent_id: str | None = None,
    ) -> Approval:
        async with self.database.session() as session:
            approval = await db.create_approval(
                session,
                session_id=session_id,
                type=type,
                summary=summary,
                payload=payload,
                agent_id=agent_id,
            )
        self.created_here.add(approval.id)
        logger.info("Approval %s (%s) created for session %s", approval.id, type, session_id)
        await self.events.emit(
            EngineEvent(
                type=EventType.APPROVAL_CREATED,
                session_id=session_id,
                agent_id=agent_id,
                message=summary,
                data={"approval_id": approval.id, "approval_type": type, "payload": payload or {}},
            )
        )
        return approval

    async def get(self, approval_id: str) -> Approval:
        async with self.database.session() as session:
            approval = await db.get_approval(session, approval_id)
        if approval is None:
            raise NotFoundError("Approval", approval_id)
        return approval

    async def resolve(self, request: ResolveRequest) -> Approval:
        if request.status not in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED):
            raise ValueError(f"Invalid resolution status: {request.status!r}")

        async with self.database.session() as session:
            won = await db.resolve_approval_if_pending(
                session,
                request.id,
                status=request.status,
                resolved_by=request.user_id,
                response=request.response,
            )
            approval = await db.get_approval(session, request.id)
            if approval is not None:
                await session.refresh(approval)
        if approval is None:
            raise NotFoundError("Approval", request.id)
        if not won:
            raise ApprovalAlreadyResolvedError(approval.id, approval.status)

        self.resolved_here.add(approval.id)
        logger.info("Approval %s %s by %s", approval.id, approval.status, request.user_id)
        await self.announce_resolved(approval)
        return approval

    async def announce_resolved(self, approval: Approval) -> None:
        await self.events.emit(
            EngineEvent(
                type=EventType.APPROVAL_RESOLVED,
                session_id=approval.session_id,
                agent_id=approval.agent_id,
                message=f"{approval.type} {approval.status}",
                data={
                    "approval_id": approval.id,
                    "approval_type": approval.type,
                    "status": approval.status,
                    "response": approval.response,
                    "resolved_by": approval.resolved_by,
                },
            )
        )

    async def pending(
        self, *, formal_only: bool = True, session_id: str | None = None
    ) -> list[Approval]:
        """Pending approvals; continuation prompts are excluded unless asked for."""
        async with self.database.session() as session:
            return await db.list_pending_approvals(
                session, formal_only=formal_only, session_id=session_id
            )

    async def pending_count(self, *, session_id: str | None = None) -> int:
        return len(await self.pending(formal_only=True, session_id=session_id))

    async def pending_for_agent(self, agent_id: str) -> list[Approval]:
        async with self.database.session() as session:
            return await db.list_pending_approvals(session, agent_id=agent_id)

    async def resolve_continuations(
        self,
        agent_id: str,
        *,
        status: str = ApprovalStatus.APPROVED,
        response: str | None = None,
        resolved_by: str = SYSTEM_RESOLVER,
    ) -> list[Approval]:
        """Resolve every pending needs_input/agent_idle approval of an agent."""
        async with self.database.session() as session:
            stale = await db.list_pending_approvals(
                session, agent_id=agent_id, types=CONTINUATION_APPROVAL_TYPES
            )
        resolved: list[Approval] = []
        for approval in stale:
            try:
                resolved.append(
                    await self.resolve(
                        ResolveRequest(
                            id=approval.id, status=status, user_id=resolved_by, response=response
                        )
                    )
                )
            except ApprovalAlreadyResolvedError:
                continue
        return resolved
