"""
Standardized event system for the orchestration engine.
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    SESSION_STATUS_CHANGED = "session.status_changed"
    PHASE_ADVANCED = "phase.advanced"
    PHASE_LOOPED = "phase.looped"

    AGENT_STATUS_CHANGED = "agent.status_changed"
    AGENT_TOKEN = "agent.token"
    AGENT_MESSAGE = "agent.message"
    AGENT_TURN_ENDED = "agent.turn_ended"
    AGENT_COMPLETED = "agent.completed"
    AGENT_ESCALATION = "agent.escalation"
    AGENT_SIGNALED = "agent.signaled"

    APPROVAL_CREATED = "approval.created"
    APPROVAL_RESOLVED = "approval.resolved"

    ARTIFACT_WRITTEN = "artifact.written"


# Streamed to subscribers but never written to the execution log
EPHEMERAL_EVENTS = frozenset({EventType.AGENT_TOKEN})


@dataclass
class EngineEvent:
    """Standardized event emitted by the engine components."""

    id: UUID = field(default_factory=uuid4)
    type: EventType = EventType.SESSION_STATUS_CHANGED
    session_id: Optional[str] = None
    agent_id: Optional[str] = None
    phase: Optional[int] = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "session_id": self.session_id,
            "agent_id": self.agent_id,
            "phase": self.phase,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[EngineEvent], Awaitable[None] | None]


class EventEmitter:
    """Emits events to registered handlers.

    Handlers registered with ``on_event`` see every event; ``on`` filters by
    type. A failing handler is logged and does not stop the others.
    """

    def __init__(self) -> None:
        self._handlers: list[tuple[frozenset[EventType] | None, EventHandler]] = []

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append((None, handler))

    def on(self, event_types: EventType | tuple[EventType, ...], handler: EventHandler) -> None:
        if isinstance(event_types, EventType):
            event_types = (event_types,)
        self._handlers.append((frozenset(event_types), handler))

    async def emit(self, event: EngineEvent) -> None:
        for types, handler in list(self._handlers):
            if types is not None and event.type not in types:
                continue
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler error for %s", event.type.value)


def make_persist_handler(database: Any) -> EventHandler:
    """Handler that writes non-ephemeral session events to the execution log."""

    async def persist_event_handler(event: EngineEvent) -> None:
        if event.type in EPHEMERAL_EVENTS or not event.session_id:
            return

        from .db import get_session_by_id, log_event

        async with database.session() as session:
            if await get_session_by_id(session, event.session_id) is None:
                return
            await log_event(
                session,
                event.type.value,
                session_id=event.session_id,
                agent_id=event.agent_id,
                phase=event.phase,
                message=event.message,
                details=event.data,
            )

    return persist_event_handler


def make_publish_handler(redis_url: str) -> EventHandler:
    """Handler that publishes session events to Redis Pub/Sub."""

    async def publish_event_handler(event: EngineEvent) -> None:
        if not event.session_id:
            return

        from .redis_client import get_redis_client

        try:
            redis = get_redis_client(redis_url)
            channel = f"channel:session:{event.session_id}"
            await redis.publish(channel, json.dumps(event.to_dict()))
        except Exception as exc:
            logger.warning("Redis publish failed: %s", exc)

    return publish_event_handler
