"""
Workflow engine: drives each session through its workflow's phases.

Every state-changing operation on a session runs under that session's lock.
Reactions to agent and approval events are scheduled as tasks rather than
run inline, so an operation holding a lock never waits on itself.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Optional

from . import db
from .agent_manager import AgentManager, SpawnRequest
from .approvals import SYSTEM_RESOLVER, ApprovalRouter, ResolveRequest
from .config import Settings
from .content_store import ContentStore
from .errors import (
    AgentNotAcceptingInputError,
    ApprovalAlreadyResolvedError,
    GitBindingConflict,
    GitStrategyError,
    InvalidWorkflowError,
    InvariantViolation,
    NotFoundError,
    SpawnFailure,
)
from .events import EngineEvent, EventEmitter, EventType
from .git_strategy import GitBinding, GitStrategy, GitStrategyResolver, resolve_git_strategy
from .locks import KeyedLocks
from .models import (
    CONTINUATION_APPROVAL_TYPES,
    TERMINAL_AGENT_STATUSES,
    Agent,
    AgentStatus,
    Approval,
    ApprovalStatus,
    ApprovalType,
    CompletionSignal,
    DecisionStatus,
    GateMode,
    LoopCondition,
    SessionStatus,
    WorkflowPhase,
    WorkflowSession,
    new_id,
    utcnow,
)
from .prompts import LoopInfo, build_phase_prompt, build_system_preamble
from .relay import RelayPayload, compose_relay

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 3
RETRY_PREFIX = "[Retry] "
STARTED_STATUSES = frozenset({SessionStatus.ACTIVE, SessionStatus.WAITING_APPROVAL})
FINISHED_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED})


class GateRejectionPolicy(StrEnum):
    FAIL = "fail"
    RETRY = "retry"
    PAUSE = "pause"


class GateDirection(StrEnum):
    BEFORE = "before"
    AFTER = "after"
    LOOP = "loop"


@dataclass
class LaunchRequest:
    workspace_id: str
    workflow_id: str
    user_id: str = "local"
    description: Optional[str] = None
    context: Optional[str] = None
    git_strategy: Optional[dict[str, Any]] = None


@dataclass
class RecoveryReport:
    failed_agents: list[str] = field(default_factory=list)
    paused_sessions: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.failed_agents or self.paused_sessions)


def validate_phases(phases: Sequence[WorkflowPhase]) -> None:
    """Reject workflow definitions the engine cannot execute."""
    if not phases:
        raise InvalidWorkflowError("Workflow has no phases")
    for phase in phases:
        if phase.approval not in set(GateMode):
            raise InvalidWorkflowError(f"Phase {phase.name}: unknown approval mode {phase.approval!r}")
        if phase.loop_to is None:
            continue
        if not 0 <= phase.loop_to <= phase.ordinal:
            raise InvalidWorkflowError(
                f"Phase {phase.name}: loop_to {phase.loop_to} must point at this or an earlier phase"
            )
        if phase.max_iterations is not None and phase.max_iterations < 1:
            raise InvalidWorkflowError(f"Phase {phase.name}: max_iterations must be at least 1")
        if phase.loop_condition not in set(LoopCondition):
            raise InvalidWorkflowError(
                f"Phase {phase.name}: unknown loop condition {phase.loop_condition!r}"
            )


class WorkflowEngine:
    """Owns the session state machine."""

    def __init__(
        self,
        settings: Settings,
        database: db.Database,
        agents: AgentManager,
        approvals: ApprovalRouter,
        resolver: GitStrategyResolver,
        events: EventEmitter,
        store: ContentStore,
    ) -> None:
        self.settings = settings
        self.database = database
        self.agents = agents
        self.approvals = approvals
        self.resolver = resolver
        self.events = events
        self.store = store
        self.rejection_policy = GateRejectionPolicy(settings.gate_rejection_policy)
        self._locks = KeyedLocks()
        self._reactions: set[asyncio.Task[Any]] = set()
        self._recovered = False

        events.on(EventType.AGENT_STATUS_CHANGED, self._on_agent_status_changed)
        events.on(EventType.AGENT_SIGNALED, self._on_agent_signaled)
        events.on(EventType.APPROVAL_RESOLVED, self._on_approval_resolved)

    # =========================================================================
    # Plumbing
    # =========================================================================

    def _lock(self, session_id: str) -> AbstractAsyncContextManager[None]:
        return self._locks.hold(session_id)

    def _require_recovered(self) -> None:
        if not self._recovered:
            raise InvariantViolation("Startup recovery has not run")

    def _schedule(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._reactions.add(task)
        task.add_done_callback(self._reaction_done)

    def _reaction_done(self, task: asyncio.Task[Any]) -> None:
        self._reactions.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Engine reaction failed: %s", exc, exc_info=exc)

    async def wait_idle(self) -> None:
        """Wait until every scheduled reaction (and the ones they schedule) has run."""
        while self._reactions:
            await asyncio.gather(*list(self._reactions), return_exceptions=True)

    async def _load(self, session_id: str) -> WorkflowSession:
        async with self.database.session() as session:
            ws = await db.get_session_by_id(session, session_id)
        if ws is None:
            raise NotFoundError("Session", session_id)
        return ws

    async def _phase_at(self, workflow_id: str, ordinal: int) -> tuple[WorkflowPhase, list[WorkflowPhase]]:
        async with self.database.session() as session:
            phases = await db.get_workflow_phases(session, workflow_id)
        if not 0 <= ordinal < len(phases):
            raise InvariantViolation(f"Phase ordinal {ordinal} is outside workflow {workflow_id}")
        return phases[ordinal], phases

    async def _set_status(
        self,
        session_id: str,
        status: SessionStatus,
        *,
        error_message: Optional[str] = None,
        **fields: Any,
    ) -> WorkflowSession:
        async with self.database.session() as session:
            ws = await db.get_session_by_id(session, session_id)
            if ws is None:
                raise NotFoundError("Session", session_id)
            for key, value in fields.items():
                setattr(ws, key, value)
            old_status = ws.status
            if old_status != status:
                await db.update_session_status(session, ws, status, error_message)

        if status in FINISHED_STATUSES:
            self.resolver.forget_session(session_id)
        if old_status != status:
            logger.info("Session %s: %s -> %s", session_id, old_status, status)
            await self.events.emit(
                EngineEvent(
                    type=EventType.SESSION_STATUS_CHANGED,
                    session_id=session_id,
                    phase=ws.current_phase,
                    message=f"Session {status}",
                    data={"old_status": old_status, "status": str(status), "error": error_message},
                )
            )
        return ws

    async def _pending_gates(self, session_id: str) -> list[Approval]:
        async with self.database.session() as session:
            return await db.list_pending_approvals(
                session, session_id=session_id, types=[ApprovalType.PHASE_GATE]
            )

    async def _entry_agents(self, ws: WorkflowSession) -> list[Agent]:
        async with self.database.session() as session:
            return await db.list_session_agents(session, ws.id, phase_entry=ws.phase_entry)

    async def _kill_live_agents(self, session_id: str) -> None:
        async with self.database.session() as session:
            live = await db.list_live_agents(session, session_id)
        for agent in live:
            try:
                await self.agents.kill_agent(agent.id)
            except NotFoundError:
                continue

    async def _fail(self, session_id: str, reason: str) -> None:
        logger.error("Session %s failed: %s", session_id, reason)
        await self._set_status(session_id, SessionStatus.FAILED, error_message=reason)
        await self._kill_live_agents(session_id)

    async def _guarded(
        self, session_id: str, step: Callable[..., Awaitable[Any]], *args: Any
    ) -> None:
        """Run a transition triggered by a reaction, absorbing expected runtime failures."""
        try:
            await step(session_id, *args)
        except GitBindingConflict as exc:
            logger.warning("Session %s paused: %s", session_id, exc)
            await self._set_status(session_id, SessionStatus.PAUSED, error_message=str(exc))
        except (SpawnFailure, GitStrategyError) as exc:
            await self._fail(session_id, str(exc))

    # =========================================================================
    # Event reactions
    # =========================================================================

    async def _on_agent_status_changed(self, event: EngineEvent) -> None:
        if event.session_id and event.data.get("status") in TERMINAL_AGENT_STATUSES:
            self._schedule(self.check_phase_advancement(event.session_id))

    async def _on_agent_signaled(self, event: EngineEvent) -> None:
        if event.agent_id and event.data.get("completion_signal"):
            self._schedule(self.agents.complete_signaled(event.agent_id))
        elif event.session_id:
            self._schedule(self.check_phase_advancement(event.session_id))

    async def _on_approval_resolved(self, event: EngineEvent) -> None:
        approval_id = event.data.get("approval_id")
        if approval_id:
            self._schedule(self.handle_approval_resolved(approval_id))

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    async def start_session(self, request: LaunchRequest) -> str:
        """Create a session and enter its first phase; returns the session id."""
        self._require_recovered()
        async with self.database.session() as session:
            workflow = await db.get_workflow(session, request.workflow_id)
            if workflow is None:
                raise NotFoundError("Workflow", request.workflow_id)
            workspace = await db.get_workspace(session, request.workspace_id)
            if workspace is None:
                raise NotFoundError("Workspace", request.workspace_id)
            phases = await db.get_workflow_phases(session, workflow.id)
            repos = await db.get_workspace_repos(session, workspace.id)

        validate_phases(phases)
        if not repos:
            raise GitStrategyError(f"Workspace {workspace.name} has no repositories")
        await self.resolver.validate_repos(repos)
        GitStrategy.from_dict(request.git_strategy)

        async with self.database.session() as session:
            ws = await db.create_session(
                session,
                workspace_id=workspace.id,
                workflow_id=workflow.id,
                user_id=request.user_id,
                description=request.description,
                context=request.context,
                git_strategy=request.git_strategy,
            )
            session_id = ws.id
        logger.info("Session %s created for workflow %s", session_id, workflow.name)

        async with self._lock(session_id):
            try:
                await self._enter_phase(session_id, 0)
            except GitBindingConflict:
                await self._discard(session_id)
                raise
            except (SpawnFailure, GitStrategyError) as exc:
                await self._fail(session_id, str(exc))
                raise
        return session_id

    async def _discard(self, session_id: str) -> None:
        async with self.database.session() as session:
            ws = await db.get_session_by_id(session, session_id)
            if ws is not None:
                await session.delete(ws)
        logger.info("Session %s discarded before any agent ran", session_id)

    async def _enter_phase(self, session_id: str, ordinal: int) -> None:
        ws = await self._load(session_id)
        phase, _ = await self._phase_at(ws.workflow_id, ordinal)
        gated = phase.approval == GateMode.BEFORE
        await self._set_status(
            session_id,
            SessionStatus.WAITING_APPROVAL if gated else SessionStatus.ACTIVE,
            current_phase=ordinal,
            phase_entry=(ws.phase_entry or 0) + 1,
        )
        if gated:
            await self._create_gate(session_id, phase, GateDirection.BEFORE)
            return
        await self._launch_phase(session_id)

    async def _create_gate(
        self,
        session_id: str,
        phase: WorkflowPhase,
        direction: GateDirection,
        *,
        summary: Optional[str] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> Approval:
        ws = await self._load(session_id)
        if summary is None:
            if direction == GateDirection.BEFORE:
                summary = f'Approve starting phase "{phase.name}"?'
            elif direction == GateDirection.AFTER:
                summary = f'Review output of phase "{phase.name}" before advancing'
            else:
                summary = f'Loop back from phase "{phase.name}" for another iteration?'
        payload = {
            "phase_id": phase.id,
            "phase_name": phase.name,
            "phase_ordinal": phase.ordinal,
            "phase_entry": ws.phase_entry,
            "direction": direction.value,
            **(extra or {}),
        }
        return await self.approvals.create(
            session_id=session_id, type=ApprovalType.PHASE_GATE, summary=summary, payload=payload
        )

    async def _launch_phase(self, session_id: str) -> list[str]:
        """Bind and spawn one agent per role of the current phase."""
        if await self._pending_gates(session_id):
            logger.info("Session %s has a pending phase gate; not launching", session_id)
            return []

        async with self.database.session() as session:
            ws = await db.get_session_by_id(session, session_id)
            if ws is None:
                raise NotFoundError("Session", session_id)
            workflow = await db.get_workflow(session, ws.workflow_id)
            phases = await db.get_workflow_phases(session, ws.workflow_id)
            repos = await db.get_workspace_repos(session, ws.workspace_id)
            relay_data = ws.pending_relay
            ws.pending_relay = None

        if ws.current_phase is None or not 0 <= ws.current_phase < len(phases):
            raise InvariantViolation(f"Session {session_id} has no valid current phase")
        phase = phases[ws.current_phase]
        roles: dict[str, str] = phase.agents or {"primary": self.settings.default_agent_type}
        strategy = resolve_git_strategy(
            ws.git_strategy, phase.git_strategy, workflow.git_strategy if workflow else None
        )
        relay = RelayPayload.from_dict(relay_data) if relay_data else None
        loop = self._loop_info(ws, phase, phases)

        # Every binding is taken before any agent row exists
        bound: list[tuple[str, str, str, GitBinding]] = []
        try:
            for role, agent_type in roles.items():
                agent_id = new_id()
                binding = await self.resolver.bind(
                    agent_id=agent_id,
                    workspace_id=ws.workspace_id,
                    repos=repos,
                    strategy=strategy,
                    task_label=f"{phase.name}-{role}",
                    session_id=session_id,
                )
                bound.append((agent_id, role, agent_type, binding))
        except (GitBindingConflict, GitStrategyError):
            await self._release(bound)
            raise

        if relay is not None:
            loop_iteration: Optional[int] = relay.iteration
        elif loop is not None:
            loop_iteration = loop.loops_done
        else:
            loop_iteration = None

        prompt = build_phase_prompt(phase.prompt_template, ws.context, ws.description)
        spawned: list[str] = []
        for index, (agent_id, role, agent_type, binding) in enumerate(bound):
            request = SpawnRequest(
                agent_id=agent_id,
                session_id=session_id,
                name=f"{phase.name} ({role})",
                prompt=prompt,
                binding=binding,
                agent_type=agent_type,
                role=role,
                phase_id=phase.id,
                phase_ordinal=phase.ordinal,
                phase_entry=ws.phase_entry,
                system_prompt=build_system_preamble(
                    session_id=session_id,
                    phase_id=phase.id,
                    phase_name=phase.name,
                    phase_ordinal=phase.ordinal,
                    repos=binding.repos,
                    role=role,
                    loop=loop,
                    relay=relay,
                ),
                allowed_tools=phase.allowed_tools,
                permission_mode=phase.permission_mode or self.settings.default_permission_mode,
                loop_iteration=loop_iteration,
            )
            try:
                spawned.append(await self.agents.spawn(request))
            except SpawnFailure:
                await self._release(bound[index:])
                raise
        logger.info(
            "Session %s phase %s (%s) launched %d agent(s)",
            session_id,
            phase.ordinal,
            phase.name,
            len(spawned),
        )
        return spawned

    async def _release(self, bound: Sequence[tuple[str, str, str, GitBinding]]) -> None:
        for agent_id, _, _, binding in bound:
            self.resolver.release(agent_id)
            await self.resolver.cleanup(binding.manifest)

    def _loop_info(
        self, ws: WorkflowSession, phase: WorkflowPhase, phases: Sequence[WorkflowPhase]
    ) -> Optional[LoopInfo]:
        if not phase.has_loop:
            return None
        state = (ws.loop_state or {}).get(str(phase.ordinal), {})
        loop_to = phase.loop_to if phase.loop_to is not None else phase.ordinal
        return LoopInfo(
            loop_to=loop_to,
            target_phase_name=phases[loop_to].name,
            is_self_loop=loop_to == phase.ordinal,
            max_iterations=phase.max_iterations or DEFAULT_MAX_ITERATIONS,
            condition=phase.loop_condition,
            loops_done=int(state.get("iterations", 0)),
        )

    # =========================================================================
    # Phase advancement
    # =========================================================================

    async def check_phase_advancement(self, session_id: str) -> None:
        """Re-derive from the store whether the current phase is done, and act on it."""
        async with self._lock(session_id):
            await self._guarded(session_id, self._evaluate_phase)

    async def _evaluate_phase(self, session_id: str) -> None:
        ws = await self._load(session_id)
        if ws.status != SessionStatus.ACTIVE or ws.current_phase is None:
            return
        agents = await self._entry_agents(ws)
        if not agents or any(not agent.is_terminal for agent in agents):
            return

        phase, _ = await self._phase_at(ws.workflow_id, ws.current_phase)
        failed = [agent for agent in agents if agent.status == AgentStatus.FAILED]
        if failed:
            await self._fail(session_id, f"Agent {failed[0].name} failed in phase {phase.name}")
            return
        if phase.has_loop and any(a.completion_signal == CompletionSignal.ITERATE for a in agents):
            await self._handle_iterate(session_id, phase)
            return
        await self._complete_phase(session_id, phase)

    async def _complete_phase(self, session_id: str, phase: WorkflowPhase) -> None:
        if phase.approval == GateMode.AFTER:
            await self._set_status(session_id, SessionStatus.WAITING_APPROVAL)
            await self._create_gate(session_id, phase, GateDirection.AFTER)
            return
        await self._advance(session_id)

    async def _handle_iterate(self, session_id: str, phase: WorkflowPhase) -> None:
        ws = await self._load(session_id)
        state = (ws.loop_state or {}).get(str(phase.ordinal), {})
        iterations = int(state.get("iterations", 0))
        max_iterations = phase.max_iterations or DEFAULT_MAX_ITERATIONS
        if iterations + 1 > max_iterations:
            logger.warning(
                "Session %s phase %s reached its iteration limit (%d); completing instead",
                session_id,
                phase.name,
                max_iterations,
            )
            async with self.database.session() as session:
                await db.log_event(
                    session,
                    "loop_limit_reached",
                    session_id=session_id,
                    phase=phase.ordinal,
                    message=f"Iteration limit {max_iterations} reached; treated as complete",
                )
            await self._complete_phase(session_id, phase)
            return

        if phase.loop_condition == LoopCondition.APPROVAL:
            await self._set_status(session_id, SessionStatus.WAITING_APPROVAL)
            await self._create_gate(
                session_id,
                phase,
                GateDirection.LOOP,
                summary=(
                    f'Loop back from phase "{phase.name}" '
                    f"(loop {iterations + 1} of {max_iterations})?"
                ),
                extra={"loop_to": phase.loop_to, "iteration": iterations + 1},
            )
            return
        await self._perform_loop(session_id, phase)

    async def _perform_loop(self, session_id: str, phase: WorkflowPhase) -> None:
        key = str(phase.ordinal)
        loop_to = phase.loop_to if phase.loop_to is not None else phase.ordinal
        async with self.database.session() as session:
            ws = await db.get_session_by_id(session, session_id)
            if ws is None:
                raise NotFoundError("Session", session_id)
            state = dict((ws.loop_state or {}).get(key, {}))
            if "loop_started_entry" not in state:
                state["loop_started_entry"] = await self._loop_started_entry(session, ws, loop_to)
            state["iterations"] = int(state.get("iterations", 0)) + 1
            relay = await compose_relay(
                session,
                self.store,
                ws,
                phase,
                iteration=state["iterations"],
                loop_started_entry=state["loop_started_entry"],
                max_chars=self.settings.relay_max_chars,
            )
            ws.loop_state = {**(ws.loop_state or {}), key: state}
            ws.pending_relay = relay.to_dict() if relay is not None else None

        logger.info(
            "Session %s looping from phase %s to %s (iteration %d)",
            session_id,
            phase.ordinal,
            loop_to,
            state["iterations"],
        )
        await self.events.emit(
            EngineEvent(
                type=EventType.PHASE_LOOPED,
                session_id=session_id,
                phase=phase.ordinal,
                message=f"Looping to phase {loop_to}",
                data={"from": phase.ordinal, "to": loop_to, "iteration": state["iterations"]},
            )
        )
        await self._enter_phase(session_id, loop_to)

    @staticmethod
    async def _loop_started_entry(session: Any, ws: WorkflowSession, loop_to: int) -> int:
        agents = await db.list_session_agents(session, ws.id)
        entries = [a.phase_entry for a in agents if a.phase_ordinal == loop_to and a.phase_entry is not None]
        return max(entries) if entries else ws.phase_entry

    async def advance_phase(self, session_id: str) -> None:
        """Move to the next phase, or complete the session after the last one."""
        self._require_recovered()
        async with self._lock(session_id):
            await self._advance(session_id)

    async def _advance(self, session_id: str) -> None:
        ws = await self._load(session_id)
        if ws.current_phase is None or ws.status not in STARTED_STATUSES:
            raise InvariantViolation(f"Cannot advance session {session_id} in status {ws.status}")
        async with self.database.session() as session:
            phases = await db.get_workflow_phases(session, ws.workflow_id)

        next_ordinal = ws.current_phase + 1
        if next_ordinal >= len(phases):
            await self._set_status(session_id, SessionStatus.COMPLETED)
            logger.info("Session %s completed all %d phase(s)", session_id, len(phases))
            return

        await self.events.emit(
            EngineEvent(
                type=EventType.PHASE_ADVANCED,
                session_id=session_id,
                phase=next_ordinal,
                message=f"Advanced to phase {phases[next_ordinal].name}",
                data={"from": ws.current_phase, "to": next_ordinal},
            )
        )
        await self._enter_phase(session_id, next_ordinal)

    # =========================================================================
    # Approval outcomes
    # =========================================================================

    async def handle_approval_resolved(self, approval_id: str) -> None:
        approval = await self.approvals.get(approval_id)
        if approval.status == ApprovalStatus.PENDING:
            return
        if approval.type == ApprovalType.PHASE_GATE:
            async with self._lock(approval.session_id):
                await self._guarded(approval.session_id, self._on_gate_resolved, approval)
        elif approval.type == ApprovalType.DECISION:
            await self._on_decision_resolved(approval)
        elif approval.type == ApprovalType.ESCALATION:
            await self._on_escalation_resolved(approval)
        elif approval.type in CONTINUATION_APPROVAL_TYPES:
            await self._on_continuation_resolved(approval)
        else:
            logger.info("Approval %s (%s) %s", approval.id, approval.type, approval.status)

    async def _on_gate_resolved(self, session_id: str, approval: Approval) -> None:
        payload = approval.payload or {}
        ws = await self._load(session_id)
        if (
            ws.status != SessionStatus.WAITING_APPROVAL
            or payload.get("phase_ordinal") != ws.current_phase
            or payload.get("phase_entry", ws.phase_entry) != ws.phase_entry
        ):
            logger.info("Ignoring stale phase gate %s for session %s", approval.id, session_id)
            return

        phase, _ = await self._phase_at(ws.workflow_id, ws.current_phase)
        direction = GateDirection(payload.get("direction", GateDirection.AFTER))

        if approval.status == ApprovalStatus.APPROVED:
            if direction == GateDirection.BEFORE:
                await self._set_status(session_id, SessionStatus.ACTIVE)
                await self._launch_phase(session_id)
            elif direction == GateDirection.LOOP:
                await self._set_status(session_id, SessionStatus.ACTIVE)
                await self._perform_loop(session_id, phase)
            else:
                await self._advance(session_id)
            return

        if direction == GateDirection.LOOP:
            await self._set_status(session_id, SessionStatus.ACTIVE)
            await self._complete_phase(session_id, phase)
            return

        if self.rejection_policy == GateRejectionPolicy.RETRY:
            summary = approval.summary.removeprefix(RETRY_PREFIX)
            extra = {k: v for k, v in payload.items() if k in ("loop_to", "iteration")}
            await self._create_gate(
                session_id, phase, direction, summary=RETRY_PREFIX + summary, extra=extra
            )
        elif self.rejection_policy == GateRejectionPolicy.PAUSE:
            await self._set_status(
                session_id, SessionStatus.PAUSED, error_message=f"Phase gate rejected: {approval.summary}"
            )
        else:
            await self._fail(session_id, f"Phase gate rejected: {approval.summary}")

    async def _notify_agent(self, agent_id: Optional[str], text: str) -> bool:
        if not agent_id:
            return False
        try:
            await self.agents.send_input(agent_id, text)
        except (AgentNotAcceptingInputError, NotFoundError) as exc:
            logger.info("Could not notify agent %s: %s", agent_id, exc)
            return False
        return True

    async def _on_decision_resolved(self, approval: Approval) -> None:
        payload = approval.payload or {}
        approved = approval.status == ApprovalStatus.APPROVED
        decision_id = payload.get("decision_id")
        if decision_id:
            async with self.database.session() as session:
                decision = await db.get_decision(session, decision_id)
                if decision is not None:
                    if approved:
                        decision.confirmed_at = utcnow()
                    else:
                        decision.status = DecisionStatus.INVALIDATED

        verdict = "approved" if approved else "rejected"
        text = f"Decision {verdict}: {payload.get('question', '')} → {payload.get('choice', '')}"
        if approval.response:
            text += f"\nFeedback: {approval.response}"
        await self._notify_agent(approval.agent_id, text)

    async def _on_escalation_resolved(self, approval: Approval) -> None:
        text = f"System approval update: your escalation request was {approval.status}."
        if approval.response:
            text += f"\nGuidance: {approval.response}"
        elif approval.status == ApprovalStatus.APPROVED:
            text += " You may proceed."
        else:
            text += " Do not retry the blocked action; find another approach or explain what you need."
        await self._notify_agent(approval.agent_id, text)

    async def _on_continuation_resolved(self, approval: Approval) -> None:
        if approval.resolved_by == SYSTEM_RESOLVER or not approval.agent_id:
            return
        async with self.database.session() as session:
            agent = await db.get_agent(session, approval.agent_id)
        if agent is None or agent.is_terminal:
            return
        if approval.status == ApprovalStatus.REJECTED:
            logger.info("Continuation %s rejected; stopping agent %s", approval.id, agent.id)
            await self.agents.kill_agent(agent.id)
            return
        if agent.status == AgentStatus.WAITING:
            await self._notify_agent(agent.id, approval.response or "Continue.")

    # =========================================================================
    # User operations
    # =========================================================================

    async def send_input(self, agent_id: str, text: str) -> None:
        """Relay user text to an agent and reopen its session if it was only waiting on it."""
        self._require_recovered()
        await self.agents.send_input(agent_id, text)
        async with self.database.session() as session:
            agent = await db.get_agent(session, agent_id)
        if agent is None:
            return
        async with self._lock(agent.session_id):
            ws = await self._load(agent.session_id)
            if ws.status == SessionStatus.WAITING_APPROVAL and not await self._pending_gates(ws.id):
                await self._set_status(ws.id, SessionStatus.ACTIVE)

    async def pause_session(self, session_id: str) -> None:
        self._require_recovered()
        async with self._lock(session_id):
            ws = await self._load(session_id)
            if ws.status not in STARTED_STATUSES:
                raise InvariantViolation(f"Cannot pause session {session_id} in status {ws.status}")
            await self._set_status(session_id, SessionStatus.PAUSED)
            await self._kill_live_agents(session_id)

    async def resume_session(self, session_id: str) -> None:
        """Pick a paused session up where the store says it stopped."""
        self._require_recovered()
        async with self._lock(session_id):
            ws = await self._load(session_id)
            if ws.status != SessionStatus.PAUSED:
                raise InvariantViolation(f"Cannot resume session {session_id} in status {ws.status}")
            if ws.current_phase is None:
                await self._guarded(session_id, self._enter_phase, 0)
                return
            if await self._pending_gates(session_id):
                await self._set_status(session_id, SessionStatus.WAITING_APPROVAL)
                return

            phase, _ = await self._phase_at(ws.workflow_id, ws.current_phase)
            agents = await self._entry_agents(ws)
            if not agents:
                if phase.approval == GateMode.BEFORE:
                    await self._set_status(session_id, SessionStatus.WAITING_APPROVAL)
                    await self._create_gate(session_id, phase, GateDirection.BEFORE)
                    return
                await self._set_status(session_id, SessionStatus.ACTIVE)
                await self._guarded(session_id, self._launch_phase)
                return
            if all(a.status == AgentStatus.COMPLETED for a in agents):
                await self._set_status(session_id, SessionStatus.ACTIVE)
                await self._guarded(session_id, self._evaluate_phase)
                return

            # Interrupted entry: run the phase again
            await self._kill_live_agents(session_id)
            await self._guarded(session_id, self._enter_phase, ws.current_phase)

    async def abandon_session(self, session_id: str) -> None:
        self._require_recovered()
        async with self._lock(session_id):
            ws = await self._load(session_id)
            if ws.status in FINISHED_STATUSES:
                raise InvariantViolation(f"Session {session_id} is already {ws.status}")
            await self._set_status(session_id, SessionStatus.FAILED, error_message="Abandoned")
            await self._kill_live_agents(session_id)
            for approval in await self.approvals.pending(formal_only=False, session_id=session_id):
                try:
                    await self.approvals.resolve(
                        ResolveRequest(
                            id=approval.id,
                            status=ApprovalStatus.REJECTED,
                            user_id=SYSTEM_RESOLVER,
                            response="Session abandoned",
                        )
                    )
                except ApprovalAlreadyResolvedError:
                    continue

    async def cleanup_worktrees(self, session_id: str) -> list[str]:
        """Remove the worktrees of a finished session's agents."""
        ws = await self._load(session_id)
        if ws.status not in FINISHED_STATUSES:
            raise InvariantViolation(f"Session {session_id} is still {ws.status}")
        async with self.database.session() as session:
            agents = await db.list_session_agents(session, session_id)
        removed: list[str] = []
        for agent in agents:
            removed.extend(await self.resolver.cleanup(agent.worktree_manifest))
        return removed

    # =========================================================================
    # Startup recovery
    # =========================================================================

    async def recover(self) -> RecoveryReport:
        """Fail agents with no process in this engine and park their sessions.

        Safe to call again at any time: agents this process owns are skipped
        and already reconciled rows no longer match.
        """
        report = RecoveryReport()
        first_run = not self._recovered
        touched: set[str] = set()
        async with self.database.session() as session:
            for agent in await db.list_live_agents(session):
                if self.agents.has_handle(agent.id):
                    continue
                await db.finish_agent(session, agent, AgentStatus.FAILED)
                await db.log_event(
                    session,
                    "agent_recovered",
                    session_id=agent.session_id,
                    agent_id=agent.id,
                    phase=agent.phase_ordinal,
                    message=f"Agent was {agent.status} with no live process; marked failed",
                )
                report.failed_agents.append(agent.id)
                touched.add(agent.session_id)

        for agent_id in report.failed_agents:
            logger.warning("Recovery: agent %s had no live process; marked failed", agent_id)
            self.resolver.release(agent_id)
            await self.approvals.resolve_continuations(
                agent_id, status=ApprovalStatus.APPROVED, response="Auto-resolved: agent exited"
            )

        async with self.database.session() as session:
            candidates = await db.list_sessions(session, statuses=STARTED_STATUSES)
            orphaned = [
                ws.id
                for ws in candidates
                if (first_run or ws.id in touched) and not await db.list_live_agents(session, ws.id)
            ]

        for session_id in orphaned:
            async with self._lock(session_id):
                ws = await self._load(session_id)
                if ws.status not in STARTED_STATUSES:
                    continue
                logger.warning("Recovery: session %s (%s) has no live agents; pausing", session_id, ws.status)
                await self._set_status(
                    session_id, SessionStatus.PAUSED, error_message="Recovered after restart"
                )
                report.paused_sessions.append(session_id)

        self._recovered = True
        if report.changed:
            logger.warning(
                "Recovery failed %d agent(s) and paused %d session(s)",
                len(report.failed_agents),
                len(report.paused_sessions),
            )
        return report
