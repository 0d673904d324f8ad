"""Prompt assembly for phase agents."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Optional

from .adapters.base import TOOL_SERVER_NAME
from .git_strategy import RepoBinding
from .models import LoopCondition
from .relay import RelayPayload


@dataclass
class LoopInfo:
    loop_to: int
    target_phase_name: str
    is_self_loop: bool
    max_iterations: int
    condition: str
    loops_done: int


TOOLS_SECTION = f"""## Session Tools

You have access to the following `{TOOL_SERVER_NAME}` tools. Use them rather than
replicating their behavior with the file system.

### context
Surface the decisions and artifacts recorded so far. Call this early. You can
filter by tags, files, or a free-text query.

### record
Record a decision or finding as soon as you make it. Record when a real choice
existed, a constraint was discovered, the choice is cross-cutting, or the obvious
approach was not taken. Do not record what is idiomatic, the only option, already
recorded, or obvious from the code. Use type "decision" when alternatives exist
and "finding" for observations. Always tag relevant file paths and concepts.

### decide
Propose a decision that needs human confirmation: hard to reverse, architectural,
or setting a pattern for later phases. You may keep working, but do not depend on
the outcome until you are told it was approved.

### artifact
Write a phase deliverable (investigation summary, implementation guide, log).
Artifacts are tracked in the session and feed into later phases.

### phase_complete
Signal that you are done with this phase. You MUST call this when your work is done.
- "complete": all deliverables are produced.
- "blocked": you cannot proceed; explain what blocks you in the summary.
- "needs_input": you need human guidance to continue.
- "iterate": request another refinement pass. Only effective when this phase loops.

Always write your artifact BEFORE calling phase_complete."""

RULES_SECTION = """## General Rules
- Work within the repositories listed above. Do not modify files outside them.
- Record decisions as you go, not in a batch at the end.
- Keep your artifact focused on this phase's deliverables.
- If you learn something that affects other phases, record it as a tagged finding."""


def _repo_section(repos: Sequence[RepoBinding]) -> str:
    if len(repos) == 1:
        return f"- Repository: {repos[0].repo_name} ({repos[0].working_dir})"
    lines = [f"  {i}. {r.repo_name} ({r.working_dir})" for i, r in enumerate(repos, start=1)]
    return "- Repositories:\n" + "\n".join(lines)


def _loop_section(loop: LoopInfo) -> str:
    target = f"Phase {loop.loop_to + 1}: {loop.target_phase_name}"
    if loop.is_self_loop:
        target += " (self-loop)"
    trigger = "agent decides" if loop.condition == LoopCondition.AGENT_SIGNAL else "human approval"
    return f"""## Loop Configuration

This phase is configured to loop. When your work is done:
- Call phase_complete with status "iterate" to trigger the next iteration.
- Call phase_complete with status "complete" only when no further iterations are needed.

- Target: {target}
- Loops so far: {loop.loops_done} of {loop.max_iterations}
- Next advance: {trigger}

Your summary and artifacts will be relayed to the next iteration's agent."""


def build_system_preamble(
    *,
    session_id: str,
    phase_id: str,
    phase_name: str,
    phase_ordinal: int,
    repos: Sequence[RepoBinding],
    role: str = "primary",
    loop: Optional[LoopInfo] = None,
    relay: Optional[RelayPayload] = None,
) -> str:
    """System prompt shared by every agent of a phase entry."""
    sections = [
        "You are a phase agent in a conductor session.",
        "\n".join(
            [
                "## Session",
                f"- Session ID: {session_id}",
                f"- Phase: {phase_ordinal + 1}. {phase_name} ({phase_id})",
                f"- Role: {role}",
                _repo_section(repos),
            ]
        ),
        TOOLS_SECTION,
        RULES_SECTION,
    ]
    if loop is not None:
        sections.append(_loop_section(loop))
    if relay is not None:
        sections.append(relay.to_markdown())
    return "\n\n".join(sections)


def build_phase_prompt(template: str, context: Optional[str] = None, description: Optional[str] = None) -> str:
    """User prompt: session context first, then the phase instructions."""
    parts: list[str] = []
    if description:
        parts.append(f"## Task\n\n{description}")
    if context:
        parts.append(f"## Context\n\n{context}")
    parts.append(f"## Phase Instructions\n\n{template}")
    return "\n\n".join(parts)
