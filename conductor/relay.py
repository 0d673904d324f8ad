"""
Relay of prior work into the next iteration of a loop.

When a phase loops, the agents of the re-entered phase receive a payload
built from what the previous pass produced. What goes into it depends on
the looping phase's relay mode.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .content_store import ContentStore
from .models import Agent, RelayMode, WorkflowPhase, WorkflowSession

logger = logging.getLogger(__name__)


@dataclass
class RelayArtifact:
    name: str
    status: str
    file_path: str
    content: Optional[str] = None


@dataclass
class RelaySummary:
    agent_id: str
    role: str
    summary: str
    loop_iteration: Optional[int] = None


@dataclass
class RelayPayload:
    """Work handed from one loop pass to the next."""

    mode: RelayMode
    source_phase: int
    iteration: int
    summaries: list[RelaySummary] = field(default_factory=list)
    artifacts: list[RelayArtifact] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "source_phase": self.source_phase,
            "iteration": self.iteration,
            "summaries": [vars(s) for s in self.summaries],
            "artifacts": [vars(a) for a in self.artifacts],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RelayPayload:
        return cls(
            mode=RelayMode(data.get("mode", RelayMode.SUMMARY)),
            source_phase=int(data.get("source_phase", 0)),
            iteration=int(data.get("iteration", 0)),
            summaries=[RelaySummary(**s) for s in data.get("summaries", [])],
            artifacts=[RelayArtifact(**a) for a in data.get("artifacts", [])],
        )

    @property
    def is_empty(self) -> bool:
        return not self.summaries and not self.artifacts

    def to_markdown(self) -> str:
        lines = [
            "## Relay From Previous Iteration",
            "",
            f"Iteration {self.iteration} of phase {self.source_phase + 1} produced the following.",
        ]
        if self.summaries:
            lines += ["", "### Summaries"]
            for item in self.summaries:
                label = item.role
                if item.loop_iteration is not None:
                    label = f"{label}, iteration {item.loop_iteration}"
                lines.append(f"- ({label}) {item.summary}")
        for artifact in self.artifacts:
            lines += ["", f"### Artifact: {artifact.name} ({artifact.status})", ""]
            lines.append(artifact.content if artifact.content is not None else f"(stored at {artifact.file_path})")
        if self.is_empty:
            lines += ["", "(nothing was recorded)"]
        return "\n".join(lines)


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n\n[... truncated {len(text) - limit} characters]"


def _summaries(agents: Sequence[Agent]) -> list[RelaySummary]:
    return [
        RelaySummary(
            agent_id=agent.id,
            role=agent.role,
            summary=agent.phase_summary,
            loop_iteration=agent.loop_iteration,
        )
        for agent in agents
        if agent.phase_summary
    ]


async def _artifacts(
    session: AsyncSession,
    store: ContentStore,
    session_id: str,
    agents: Sequence[Agent],
    max_chars: int,
) -> list[RelayArtifact]:
    if not agents:
        return []
    rows = await db.list_session_artifacts(session, session_id, agent_ids=[a.id for a in agents])
    relayed: list[RelayArtifact] = []
    for row in reversed(rows):
        try:
            text = store.read_text(row.file_path)
        except (OSError, ValueError) as exc:
            logger.warning("Relay could not read artifact %s: %s", row.name, exc)
            text = None
        content = _truncate(text, max_chars) if text is not None else None
        relayed.append(
            RelayArtifact(name=row.name, status=row.status, file_path=row.file_path, content=content)
        )
    return relayed


async def compose_relay(
    session: AsyncSession,
    store: ContentStore,
    ws: WorkflowSession,
    phase: WorkflowPhase,
    *,
    iteration: int,
    loop_started_entry: int,
    max_chars: int = 20000,
) -> RelayPayload | None:
    """Build the payload for the pass about to start, or None when relay is off.

    ``loop_started_entry`` is the phase entry at which the loop was first
    entered; ``ws.phase_entry`` identifies the pass that just ended.
    """
    mode = RelayMode(phase.relay or RelayMode.OFF)
    if mode == RelayMode.OFF:
        return None

    payload = RelayPayload(mode=mode, source_phase=phase.ordinal, iteration=iteration)
    if mode == RelayMode.SUMMARY:
        looping = await db.list_session_agents(session, ws.id, phase_entry=ws.phase_entry)
        payload.summaries = _summaries(looping)
        return payload

    if mode == RelayMode.PREVIOUS:
        window = await db.list_session_agents(session, ws.id, min_phase_entry=loop_started_entry)
        loop_to = phase.loop_to if phase.loop_to is not None else phase.ordinal
        starts = [a.phase_entry for a in window if a.phase_ordinal == loop_to and a.phase_entry is not None]
        iteration_start = max(starts) if starts else ws.phase_entry
        previous = [a for a in window if a.phase_entry is not None and a.phase_entry >= iteration_start]
        payload.artifacts = await _artifacts(session, store, ws.id, previous, max_chars)
        return payload

    everything = await db.list_session_agents(session, ws.id, min_phase_entry=loop_started_entry)
    payload.summaries = _summaries(everything)
    payload.artifacts = await _artifacts(session, store, ws.id, everything, max_chars)
    return payload
