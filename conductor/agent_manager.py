"""Agent subprocess lifecycle: spawn, stream, input, termination."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import signal
import sys
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from . import db
from .adapters import AgentAdapter, SpawnOptions, SpawnSpec, ToolServerDefinition, default_adapters
from .approvals import SYSTEM_RESOLVER, ApprovalRouter
from .config import Settings
from .content_store import ContentStore, message_body_key
from .errors import AgentNotAcceptingInputError, NotFoundError, SpawnFailure
from .events import EngineEvent, EventEmitter, EventType
from .git_strategy import GitBinding, GitStrategyResolver
from .locks import KeyedLocks
from .models import (
    Agent,
    AgentStatus,
    ApprovalStatus,
    CompletionSignal,
    MessageType,
    new_id,
)
from .tools.base import ENV_AGENT_ID, ENV_PHASE_ID, ENV_SESSION_ID

logger = logging.getLogger(__name__)

STREAM_LIMIT = 16 * 1024 * 1024
STDERR_TAIL_LINES = 50


@dataclass
class SpawnRequest:
    """Everything needed to launch one agent for a session phase."""

    agent_id: str
    session_id: str
    name: str
    prompt: str
    binding: GitBinding
    agent_type: str = "claude"
    role: str = "primary"
    phase_id: str | None = None
    phase_ordinal: int | None = None
    phase_entry: int | None = None
    system_prompt: str | None = None
    allowed_tools: list[str] | None = None
    permission_mode: str | None = None
    loop_iteration: int | None = None
    spawned_by: str | None = None


@dataclass
class AgentProcess:
    agent_id: str
    session_id: str
    phase_ordinal: int | None
    adapter: AgentAdapter
    options: SpawnOptions
    process: asyncio.subprocess.Process | None = None
    sequence: int = 0
    seen_output: bool = False
    stderr_tail: deque[str] = field(default_factory=lambda: deque(maxlen=STDERR_TAIL_LINES))
    escalation_keys: set[str] = field(default_factory=set)
    killed: bool = False
    tasks: list[asyncio.Task[Any]] = field(default_factory=list)

    def next_sequence(self) -> int:
        value = self.sequence
        self.sequence += 1
        return value

    @property
    def alive(self) -> bool:
        return self.process is not None and self.process.returncode is None


def _message_text(content: Any) -> str:
    """Flatten a structured message into display text for previews."""
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        blocks = content.get("content")
        if isinstance(blocks, str):
            return blocks
        if isinstance(blocks, list):
            parts: list[str] = []
            for block in blocks:
                if not isinstance(block, dict):
                    continue
                if isinstance(block.get("text"), str):
                    parts.append(block["text"])
                elif block.get("type") == "tool_use":
                    parts.append(f"[tool_use: {block.get('name', 'tool')}]")
                elif block.get("type") == "tool_result":
                    parts.append("[tool_result]")
                elif isinstance(block.get("thinking"), str):
                    parts.append(block["thinking"])
            if parts:
                return "\n".join(parts)
    return json.dumps(content, default=str)


def result_preview(metadata: dict[str, Any]) -> str:
    cost = metadata.get("total_cost_usd")
    if isinstance(cost, (int, float)):
        return f"Cost: ${cost:.4f}"
    usage = metadata.get("usage")
    if isinstance(usage, dict):
        total = sum(v for k, v in usage.items() if k.endswith("tokens") and isinstance(v, int))
        if total:
            return f"Usage: {total} tokens"
    return "Run complete"


class AgentManager:
    """Owns every agent subprocess of this engine process."""

    def __init__(
        self,
        settings: Settings,
        database: db.Database,
        store: ContentStore,
        events: EventEmitter,
        resolver: GitStrategyResolver,
        approvals: ApprovalRouter,
        adapters: dict[str, AgentAdapter] | None = None,
    ) -> None:
        self.settings = settings
        self.database = database
        self.store = store
        self.events = events
        self.resolver = resolver
        self.approvals = approvals
        self.adapters = adapters if adapters is not None else default_adapters()
        self._active: dict[str, AgentProcess] = {}
        self._finalize_locks = KeyedLocks()
        self._background: set[asyncio.Task[Any]] = set()

    # =========================================================================
    # Spawning
    # =========================================================================

    def tool_server_for(self, agent_id: str, session_id: str, phase_id: str | None) -> ToolServerDefinition:
        env = {
            "CONDUCTOR_DATABASE_URL": self.settings.database_url,
            "CONDUCTOR_DATA_DIR": str(self.settings.data_dir),
            ENV_AGENT_ID: agent_id,
            ENV_SESSION_ID: session_id,
            ENV_PHASE_ID: phase_id or "",
        }
        for key in ("PATH", "HOME", "USER"):
            if os.environ.get(key):
                env[key] = os.environ[key]
        return ToolServerDefinition(
            command=sys.executable, args=["-m", "conductor.tools.server"], env=env
        )

    async def spawn(self, request: SpawnRequest) -> str:
        """Insert the agent row and launch its CLI; raises SpawnFailure."""
        adapter = self.adapters.get(request.agent_type)
        binding = request.binding

        async with self.database.session() as session:
            session.add(
                Agent(
                    id=request.agent_id,
                    session_id=request.session_id,
                    phase_id=request.phase_id,
                    phase_ordinal=request.phase_ordinal,
                    phase_entry=request.phase_entry,
                    role=request.role,
                    agent_type=request.agent_type,
                    name=request.name,
                    status=AgentStatus.SPAWNING,
                    working_dir=binding.working_dir,
                    worktree_path=binding.worktree_path,
                    branch=binding.branch,
                    worktree_manifest=binding.manifest,
                    git_mode=binding.strategy.mode.value,
                    exclusive_binding=binding.exclusive,
                    spawned_by=request.spawned_by,
                    loop_iteration=request.loop_iteration,
                )
            )
        await self._emit_status(request.agent_id, request.session_id, AgentStatus.SPAWNING, request.phase_ordinal)

        if adapter is None:
            await self._fail_spawn(request.agent_id, f"Unknown agent type: {request.agent_type}")

        tool_server = self.tool_server_for(request.agent_id, request.session_id, request.phase_id)
        config_path = self.settings.tool_config_dir / f"{request.agent_id}.json"
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(json.dumps(tool_server.to_mcp_config(), indent=2), encoding="utf-8")

        options = SpawnOptions(
            prompt=request.prompt,
            working_dir=binding.working_dir,
            system_prompt=request.system_prompt,
            tool_server=tool_server,
            tool_config_path=str(config_path),
            allowed_tools=request.allowed_tools,
            permission_mode=request.permission_mode,
        )
        handle = AgentProcess(
            agent_id=request.agent_id,
            session_id=request.session_id,
            phase_ordinal=request.phase_ordinal,
            adapter=adapter,
            options=options,
        )
        spec = adapter.build_spawn_spec(options, self.settings)
        await self._launch(handle, spec)
        return request.agent_id

    async def _launch(self, handle: AgentProcess, spec: SpawnSpec) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=handle.options.working_dir,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            await self._fail_spawn(handle.agent_id, f"Could not launch {spec.command}: {exc}", spec.command)
            return

        handle.process = process
        self._active[handle.agent_id] = handle
        logger.info("Agent %s launched (pid %s): %s", handle.agent_id, process.pid, spec.command)

        async with self.database.session() as session:
            agent = await db.get_agent(session, handle.agent_id)
            if agent is not None:
                agent.pid = process.pid

        if spec.initial_input and process.stdin is not None:
            process.stdin.write(spec.initial_input.encode("utf-8"))
            with contextlib.suppress(ConnectionResetError, BrokenPipeError):
                await process.stdin.drain()
            if spec.close_stdin_after_initial_input:
                process.stdin.close()

        reader = asyncio.create_task(self._read_stdout(handle, process))
        handle.tasks = [
            reader,
            asyncio.create_task(self._drain_stderr(handle, process)),
            asyncio.create_task(self._wait_exit(handle, process, reader)),
        ]

    async def _fail_spawn(self, agent_id: str, reason: str, command: str | None = None) -> None:
        logger.error("Spawn failed for agent %s: %s", agent_id, reason)
        await self._finalize(agent_id, AgentStatus.FAILED, reason=reason)
        raise SpawnFailure(reason, agent_id=agent_id, command=command)

    # =========================================================================
    # Output streaming
    # =========================================================================

    async def _read_stdout(self, handle: AgentProcess, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            if not handle.seen_output:
                handle.seen_output = True
                await self._mark_running(handle)
            event = handle.adapter.parse_line(line)
            if event is None:
                logger.debug("Agent %s non-JSON output: %s", handle.agent_id, line[:200])
                continue
            try:
                await self._handle_event(handle, event)
            except Exception:
                logger.exception("Agent %s: failed to handle stream event", handle.agent_id)

    async def _drain_stderr(self, handle: AgentProcess, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        async for raw_line in process.stderr:
            line = raw_line.decode("utf-8", errors="replace").rstrip()
            if line:
                handle.stderr_tail.append(line)
                logger.debug("Agent %s stderr: %s", handle.agent_id, line)

    async def _mark_running(self, handle: AgentProcess) -> None:
        async with self.database.session() as session:
            agent = await db.get_agent(session, handle.agent_id)
            if agent is None or agent.status != AgentStatus.SPAWNING:
                return
            agent.status = AgentStatus.RUNNING
        await self._emit_status(handle.agent_id, handle.session_id, AgentStatus.RUNNING, handle.phase_ordinal)

    async def _handle_event(self, handle: AgentProcess, event: dict[str, Any]) -> None:
        adapter = handle.adapter

        token = adapter.extract_token_delta(event)
        if token is not None:
            await self.events.emit(
                EngineEvent(
                    type=EventType.AGENT_TOKEN,
                    session_id=handle.session_id,
                    agent_id=handle.agent_id,
                    data={"text": token},
                )
            )
            return

        cli_session_id = adapter.extract_init_session_id(event)
        if cli_session_id:
            async with self.database.session() as session:
                agent = await db.get_agent(session, handle.agent_id)
                if agent is not None:
                    agent.cli_session_id = cli_session_id

        escalation = adapter.extract_escalation(event)
        if escalation and escalation.request_key not in handle.escalation_keys:
            handle.escalation_keys.add(escalation.request_key)
            await self._persist_message(
                handle, MessageType.SYSTEM, escalation.summary, metadata={"escalation": escalation.payload}
            )
            await self.events.emit(
                EngineEvent(
                    type=EventType.AGENT_ESCALATION,
                    session_id=handle.session_id,
                    agent_id=handle.agent_id,
                    message=escalation.summary,
                    data={"payload": escalation.payload},
                )
            )

        for parsed in adapter.extract_messages(event):
            await self._persist_message(
                handle, parsed.type, parsed.content, parent_tool_use_id=parsed.parent_tool_use_id
            )

        result = adapter.extract_result(event)
        if result is not None:
            await self._persist_message(handle, MessageType.RESULT, result_preview(result), metadata=result)
            await self._handle_result(handle)

    async def _persist_message(
        self,
        handle: AgentProcess,
        msg_type: str,
        content: Any,
        *,
        parent_tool_use_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        message_id = new_id()
        text = _message_text(content)
        limit = self.settings.message_preview_length
        content_path = None
        if len(text) > limit:
            content_path = message_body_key(handle.agent_id, message_id)
            self.store.write_json(content_path, content)
        async with self.database.session() as session:
            await db.add_message(
                session,
                message_id=message_id,
                agent_id=handle.agent_id,
                sequence=handle.next_sequence(),
                type=msg_type,
                content_preview=text[:limit],
                content_path=content_path,
                parent_tool_use_id=parent_tool_use_id,
                metadata=metadata,
            )
        await self.events.emit(
            EngineEvent(
                type=EventType.AGENT_MESSAGE,
                session_id=handle.session_id,
                agent_id=handle.agent_id,
                data={"message_id": message_id, "message_type": str(msg_type)},
            )
        )
        return message_id

    async def _handle_result(self, handle: AgentProcess) -> None:
        async with self.database.session() as session:
            agent = await db.get_agent(session, handle.agent_id)
        if agent is None:
            return
        if agent.completion_signal and not agent.is_terminal:
            await self.complete_signaled(agent.id)
            return
        if agent.is_terminal:
            self._schedule(self._terminate(handle))
            return
        if agent.status == AgentStatus.RUNNING and handle.adapter.waits_for_input_after_result:
            await self._set_waiting(handle)

    async def _set_waiting(self, handle: AgentProcess) -> None:
        async with self.database.session() as session:
            agent = await db.get_agent(session, handle.agent_id)
            if agent is None or agent.is_terminal:
                return
            changed = agent.status != AgentStatus.WAITING
            agent.status = AgentStatus.WAITING
        if changed:
            await self._emit_status(handle.agent_id, handle.session_id, AgentStatus.WAITING, handle.phase_ordinal)
        await self.events.emit(
            EngineEvent(
                type=EventType.AGENT_TURN_ENDED,
                session_id=handle.session_id,
                agent_id=handle.agent_id,
                phase=handle.phase_ordinal,
                message="Agent is waiting for input",
            )
        )

    # =========================================================================
    # Exit and termination
    # =========================================================================

    async def _wait_exit(
        self,
        handle: AgentProcess,
        process: asyncio.subprocess.Process,
        reader: asyncio.Task[None],
    ) -> None:
        code = await process.wait()
        with contextlib.suppress(Exception):
            await reader
        logger.info("Agent %s exited with code %s", handle.agent_id, code)
        if code != 0 and handle.stderr_tail:
            logger.warning("Agent %s stderr tail:\n%s", handle.agent_id, "\n".join(handle.stderr_tail))
        if handle.killed:
            return

        async with self.database.session() as session:
            agent = await db.get_agent(session, handle.agent_id)
        owns_slot = self._active.get(handle.agent_id) is handle and handle.process is process

        # Turn-based CLIs exit between turns; input resumes them
        if (
            agent is not None
            and not agent.is_terminal
            and not agent.completion_signal
            and code == 0
            and handle.adapter.exits_after_turn
        ):
            await self._set_waiting(handle)
            return

        if owns_slot:
            del self._active[handle.agent_id]
        if agent is None or agent.is_terminal:
            return
        if agent.completion_signal or code == 0:
            await self._finalize(agent.id, AgentStatus.COMPLETED, exit_code=code)
        else:
            await self._finalize(agent.id, AgentStatus.FAILED, exit_code=code)

    async def _signal_group(self, process: asyncio.subprocess.Process, sig: int) -> None:
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, sig)

    async def _wait_for(self, process: asyncio.subprocess.Process, timeout: float) -> bool:
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    async def _terminate(self, handle: AgentProcess) -> None:
        """Close stdin, then SIGTERM, then SIGKILL, with grace periods."""
        process = handle.process
        if process is None or process.returncode is not None:
            return
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        if await self._wait_for(process, self.settings.stdin_close_grace_seconds):
            return
        await self._signal_group(process, signal.SIGTERM)
        if await self._wait_for(process, self.settings.terminate_grace_seconds):
            return
        await self._signal_group(process, signal.SIGKILL)
        await process.wait()

    async def _kill(self, handle: AgentProcess) -> None:
        process = handle.process
        if process is None or process.returncode is not None:
            return
        await self._signal_group(process, signal.SIGTERM)
        if not await self._wait_for(process, self.settings.kill_grace_seconds):
            await self._signal_group(process, signal.SIGKILL)
            await process.wait()

    def _schedule(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _finalize(
        self,
        agent_id: str,
        status: str,
        *,
        exit_code: int | None = None,
        reason: str | None = None,
    ) -> bool:
        """Move a live agent to a terminal status exactly once."""
        async with self._finalize_locks.hold(agent_id):
            async with self.database.session() as session:
                agent = await db.get_agent(session, agent_id)
                if agent is None or agent.is_terminal:
                    return False
                await db.finish_agent(session, agent, status, exit_code=exit_code)
                session_id = agent.session_id
                phase_ordinal = agent.phase_ordinal
            self.resolver.release(agent_id)

        await self.approvals.resolve_continuations(
            agent_id, status=ApprovalStatus.APPROVED, response="Auto-resolved: agent exited"
        )
        await self._emit_status(agent_id, session_id, status, phase_ordinal, reason=reason)
        if status == AgentStatus.COMPLETED:
            await self.events.emit(
                EngineEvent(
                    type=EventType.AGENT_COMPLETED,
                    session_id=session_id,
                    agent_id=agent_id,
                    phase=phase_ordinal,
                    message="Agent completed",
                )
            )
        return True

    # =========================================================================
    # Public operations
    # =========================================================================

    def has_handle(self, agent_id: str) -> bool:
        """True while this process owns the agent, including parked turn-based agents."""
        return agent_id in self._active

    async def complete_signaled(self, agent_id: str) -> bool:
        """Finalize an agent whose tool process reported completion."""
        async with self.database.session() as session:
            agent = await db.get_agent(session, agent_id)
        if agent is None or agent.is_terminal or not agent.completion_signal:
            return False
        finalized = await self._finalize(agent_id, AgentStatus.COMPLETED)
        handle = self._active.get(agent_id)
        if handle is not None and handle.alive:
            self._schedule(self._terminate(handle))
        return finalized

    async def send_input(self, agent_id: str, text: str) -> None:
        """Deliver text to a waiting (or interactive running) agent."""
        async with self.database.session() as session:
            agent = await db.get_agent(session, agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        if agent.is_terminal:
            raise AgentNotAcceptingInputError(f"Agent {agent_id} is {agent.status}")

        handle = self._active.get(agent_id)
        if handle is None:
            raise AgentNotAcceptingInputError(f"Agent {agent_id} has no process in this engine")

        process = handle.process
        if handle.alive and handle.adapter.supports_interactive_input and process and process.stdin:
            process.stdin.write(handle.adapter.format_user_input(text).encode("utf-8"))
            try:
                await process.stdin.drain()
            except (ConnectionResetError, BrokenPipeError) as exc:
                raise AgentNotAcceptingInputError(f"Agent {agent_id} closed its input") from exc
        elif handle.adapter.exits_after_turn and not handle.alive and agent.status == AgentStatus.WAITING:
            handle.options.prompt = text
            handle.options.resume_session_id = agent.cli_session_id
            await self._launch(handle, handle.adapter.build_spawn_spec(handle.options, self.settings))
        else:
            raise AgentNotAcceptingInputError(f"Agent {agent_id} is not accepting input")

        await self._persist_message(handle, MessageType.USER, text)
        async with self.database.session() as session:
            row = await db.get_agent(session, agent_id)
            changed = row is not None and row.status == AgentStatus.WAITING
            if changed:
                row.status = AgentStatus.RUNNING
        if changed:
            await self._emit_status(agent_id, agent.session_id, AgentStatus.RUNNING, agent.phase_ordinal)
        await self.approvals.resolve_continuations(
            agent_id, status=ApprovalStatus.APPROVED, response=text, resolved_by=SYSTEM_RESOLVER
        )

    async def kill_agent(self, agent_id: str) -> None:
        """Terminate an agent; its binding is released before this returns.

        Only a ``complete`` signal survives a kill: the agent ends completed
        when it had signaled completion and failed otherwise, whatever its
        process reports on exit.
        """
        async with self.database.session() as session:
            agent = await db.get_agent(session, agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)

        handle = self._active.pop(agent_id, None)
        if handle is not None:
            handle.killed = True
            await self._kill(handle)
            async with self.database.session() as session:
                agent = await db.get_agent(session, agent_id) or agent
        status = (
            AgentStatus.COMPLETED
            if agent.completion_signal == CompletionSignal.COMPLETE
            else AgentStatus.FAILED
        )
        await self._finalize(agent_id, status, reason="killed")
        self.resolver.release(agent_id)

    async def shutdown(self) -> None:
        for agent_id in list(self._active):
            try:
                await self.kill_agent(agent_id)
            except Exception:
                logger.exception("Failed to kill agent %s during shutdown", agent_id)
        for task in list(self._background):
            task.cancel()

    async def _emit_status(
        self,
        agent_id: str,
        session_id: str,
        status: str,
        phase: int | None,
        *,
        reason: str | None = None,
    ) -> None:
        data: dict[str, Any] = {"status": str(status)}
        if reason:
            data["reason"] = reason
        await self.events.emit(
            EngineEvent(
                type=EventType.AGENT_STATUS_CHANGED,
                session_id=session_id,
                agent_id=agent_id,
                phase=phase,
                message=f"Agent {agent_id} {status}",
                data=data,
            )
        )
