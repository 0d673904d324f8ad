"""Application context: builds and wires every engine component once."""

from __future__ import annotations

import logging
from typing import Optional

from .adapters import AgentAdapter
from .agent_manager import AgentManager
from .approvals import ApprovalRouter
from .bridge import ToolCallBridge
from .config import Settings
from .content_store import ContentStore
from .db import Database
from .engine import RecoveryReport, WorkflowEngine
from .events import EngineEvent, EventEmitter, EventType, make_persist_handler, make_publish_handler
from .git_strategy import GitStrategyResolver, WorktreeManager
from .models import CONTINUATION_APPROVAL_TYPES, ApprovalType
from .redis_client import close_pools

logger = logging.getLogger(__name__)


class AppContext:
    """Explicit owner of the engine's services for one process."""

    def __init__(
        self,
        settings: Settings,
        *,
        database: Optional[Database] = None,
        adapters: Optional[dict[str, AgentAdapter]] = None,
    ) -> None:
        self.settings = settings
        self.database = database or Database.from_settings(settings)
        self.store = ContentStore(settings.data_dir)
        self.events = EventEmitter()
        self.events.on_event(make_persist_handler(self.database))
        if settings.redis_events_enabled:
            self.events.on_event(make_publish_handler(settings.redis_url))

        self.worktrees = WorktreeManager(settings.worktrees_dir, branch_prefix=settings.branch_prefix)
        self.resolver = GitStrategyResolver(self.database, self.worktrees)
        self.approvals = ApprovalRouter(self.database, self.events)
        self.agents = AgentManager(
            settings,
            self.database,
            self.store,
            self.events,
            self.resolver,
            self.approvals,
            adapters=adapters,
        )
        self.bridge = ToolCallBridge(
            self.database, self.events, self.approvals, poll_interval=settings.bridge_poll_interval
        )
        self.engine = WorkflowEngine(
            settings,
            self.database,
            self.agents,
            self.approvals,
            self.resolver,
            self.events,
            self.store,
        )

        self.events.on(EventType.AGENT_TURN_ENDED, self._on_turn_ended)
        self.events.on(EventType.AGENT_ESCALATION, self._on_escalation)

    async def _on_turn_ended(self, event: EngineEvent) -> None:
        """An idle agent gets one agent_idle prompt unless it already asked for input."""
        if not event.session_id or not event.agent_id:
            return
        pending = await self.approvals.pending_for_agent(event.agent_id)
        if any(a.type in CONTINUATION_APPROVAL_TYPES for a in pending):
            return
        await self.approvals.create(
            session_id=event.session_id,
            agent_id=event.agent_id,
            type=ApprovalType.AGENT_IDLE,
            summary="Agent finished its turn and is waiting for input",
            payload={"phase": event.phase},
        )

    async def _on_escalation(self, event: EngineEvent) -> None:
        if not event.session_id:
            return
        await self.approvals.create(
            session_id=event.session_id,
            agent_id=event.agent_id,
            type=ApprovalType.ESCALATION,
            summary=event.message or "Agent requested permission",
            payload=event.data.get("payload") or {},
        )

    async def start(self) -> RecoveryReport:
        """Reconcile the store with this fresh process, then start observing it."""
        report = await self.engine.recover()
        await self.bridge.start()
        return report

    async def stop(self) -> None:
        await self.bridge.stop()
        await self.agents.shutdown()
        await self.engine.wait_idle()
        await close_pools()
        await self.database.dispose()
        logger.info("Application context stopped")
