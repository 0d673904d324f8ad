from __future__ import annotations

import json
from typing import Any

from ..config import Settings
from ..models import MessageType
from .base import (
    QUALIFIED_TOOL_NAMES,
    TOOL_SERVER_NAME,
    AgentAdapter,
    ParsedMessage,
    SpawnOptions,
    SpawnSpec,
    as_record,
    pick_string,
)


class CodexAdapter(AgentAdapter):
    """``codex exec --json``: the process exits after every turn.

    Follow-up input relaunches the CLI with ``exec resume <thread>``.
    """

    type = "codex"
    supports_interactive_input = False
    waits_for_input_after_result = False
    exits_after_turn = True

    def build_spawn_spec(self, opts: SpawnOptions, settings: Settings) -> SpawnSpec:
        args = ["-C", opts.working_dir]
        if opts.resume_session_id:
            args += ["exec", "resume", opts.resume_session_id, "--json", "--skip-git-repo-check"]
        else:
            args += ["exec", "--json", "--skip-git-repo-check"]

        if settings.codex_model:
            args += ["--model", settings.codex_model]

        if opts.permission_mode == "bypassPermissions":
            args.append("--dangerously-bypass-approvals-and-sandbox")
        else:
            args.append("--full-auto")

        server = opts.tool_server
        if server:
            prefix = f"mcp_servers.{server.name}"
            args += ["-c", f"{prefix}.command={json.dumps(server.command)}"]
            args += ["-c", f"{prefix}.args={json.dumps(server.args)}"]
            for key, value in server.env.items():
                args += ["-c", f"{prefix}.env.{key}={json.dumps(value)}"]

            if opts.allowed_tools:
                qualified = f"mcp__{TOOL_SERVER_NAME}__"
                enabled = [
                    tool.removeprefix(qualified)
                    for tool in dict.fromkeys([*opts.allowed_tools, *QUALIFIED_TOOL_NAMES])
                    if tool.startswith(qualified)
                ]
                args += ["-c", f"{prefix}.enabled_tools={json.dumps(enabled)}"]

        initial_input = f"{opts.system_prompt}\n\n{opts.prompt}" if opts.system_prompt else opts.prompt
        return SpawnSpec(
            command=settings.codex_cmd,
            args=args,
            initial_input=initial_input,
            close_stdin_after_initial_input=True,
        )

    def format_user_input(self, text: str) -> str:
        return f"{text}\n"

    def extract_token_delta(self, event: dict[str, Any]) -> str | None:
        kind = pick_string(event, ["type"]) or ""
        if kind.endswith("_delta") and isinstance(event.get("delta"), str):
            return event["delta"]
        if kind == "item.updated":
            item = as_record(event.get("item"))
            if not item:
                return None
            if isinstance(item.get("delta"), str):
                return item["delta"]
            delta = as_record(item.get("delta"))
            if delta and isinstance(delta.get("text"), str):
                return delta["text"]
        return None

    def extract_init_session_id(self, event: dict[str, Any]) -> str | None:
        if event.get("type") in ("thread.started", "session.started"):
            return pick_string(event, ["thread_id", "session_id"])
        return None

    def extract_messages(self, event: dict[str, Any]) -> list[ParsedMessage]:
        if event.get("type") != "item.completed":
            return []
        item = as_record(event.get("item"))
        if not item:
            return []
        item_type = pick_string(item, ["type"]) or ""

        if item_type == "agent_message":
            text = self._agent_message_text(item)
            if not text:
                return []
            message = {"role": "assistant", "content": [{"type": "text", "text": text}]}
            return [ParsedMessage(MessageType.ASSISTANT, message, None, event)]

        if item_type in ("mcp_tool_call", "tool_call", "function_call"):
            name = pick_string(item, ["name", "tool_name", "tool"]) or "tool"
            message = {
                "role": "assistant",
                "content": [{"type": "tool_use", "name": name, "input": self._tool_input(item)}],
            }
            return [ParsedMessage(MessageType.TOOL_USE, message, None, event)]

        if item_type == "reasoning":
            thinking = pick_string(item, ["text", "summary", "content"])
            if not thinking:
                return []
            message = {"role": "assistant", "content": [{"type": "thinking", "thinking": thinking}]}
            return [ParsedMessage(MessageType.ASSISTANT, message, None, event)]

        return []

    def extract_result(self, event: dict[str, Any]) -> dict[str, Any] | None:
        if event.get("type") not in ("turn.completed", "exec.completed"):
            return None
        return {
            "usage": event.get("usage"),
            "thread_id": pick_string(event, ["thread_id"]),
            "turn_id": pick_string(event, ["turn_id"]),
        }

    @staticmethod
    def _agent_message_text(item: dict[str, Any]) -> str | None:
        direct = pick_string(item, ["text"])
        if direct:
            return direct
        content = item.get("content")
        if not isinstance(content, list):
            return None
        parts: list[str] = []
        for block in content:
            if isinstance(block, dict):
                text = block.get("text") if isinstance(block.get("text"), str) else block.get("value")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts) or None

    @staticmethod
    def _tool_input(item: dict[str, Any]) -> dict[str, Any]:
        for key in ("input", "arguments"):
            record = as_record(item.get(key))
            if record:
                return record
        raw = item.get("arguments")
        if isinstance(raw, str):
            try:
                return as_record(json.loads(raw)) or {}
            except json.JSONDecodeError:
                return {}
        return {}
