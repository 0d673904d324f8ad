from __future__ import annotations

import json
from typing import Any

from ..config import Settings
from ..models import MessageType
from .base import QUALIFIED_TOOL_NAMES, AgentAdapter, ParsedMessage, SpawnOptions, SpawnSpec, as_record


def _block_types(message: Any) -> set[str]:
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return set()
    return {block.get("type") for block in content if isinstance(block, dict)}


class ClaudeAdapter(AgentAdapter):
    """Interactive stream-json CLI: one process serves many turns over stdin."""

    type = "claude"
    supports_interactive_input = True
    waits_for_input_after_result = True
    exits_after_turn = False

    def build_spawn_spec(self, opts: SpawnOptions, settings: Settings) -> SpawnSpec:
        args = [
            "--print",
            "--input-format",
            "stream-json",
            "--output-format",
            "stream-json",
            "--verbose",
            "--include-partial-messages",
        ]
        if opts.system_prompt:
            args += ["--system-prompt", opts.system_prompt]
        if settings.claude_model:
            args += ["--model", settings.claude_model]

        permission_mode = opts.permission_mode or settings.default_permission_mode
        args += ["--permission-mode", permission_mode]
        if permission_mode == "bypassPermissions":
            args.append("--dangerously-skip-permissions")

        if opts.tool_config_path:
            args += ["--mcp-config", opts.tool_config_path]
            merged = [*(opts.allowed_tools or []), *QUALIFIED_TOOL_NAMES]
            args += ["--allowedTools", ",".join(dict.fromkeys(merged))]
        elif opts.allowed_tools:
            args += ["--allowedTools", ",".join(opts.allowed_tools)]

        if opts.resume_session_id:
            args += ["--resume", opts.resume_session_id]

        return SpawnSpec(
            command=settings.claude_cmd,
            args=args,
            initial_input=self.format_user_input(opts.prompt),
            close_stdin_after_initial_input=False,
        )

    def format_user_input(self, text: str) -> str:
        message = {"role": "user", "content": [{"type": "text", "text": text}]}
        return json.dumps({"type": "user", "message": message}) + "\n"

    def extract_token_delta(self, event: dict[str, Any]) -> str | None:
        for candidate in (event, as_record(event.get("event"))):
            if not candidate:
                continue
            kind = candidate.get("type")
            delta = as_record(candidate.get("delta"))
            if kind == "content_block_delta" and delta and delta.get("type") == "text_delta":
                text = delta.get("text")
                if text:
                    return text
            if kind == "message_delta" and isinstance(candidate.get("text"), str):
                return candidate["text"]
        return None

    def extract_init_session_id(self, event: dict[str, Any]) -> str | None:
        if event.get("type") == "system" and event.get("subtype") == "init":
            session_id = event.get("session_id")
            if isinstance(session_id, str):
                return session_id
        return None

    def extract_messages(self, event: dict[str, Any]) -> list[ParsedMessage]:
        kind = event.get("type")
        message = event.get("message")
        parent = event.get("parent_tool_use_id") or None
        if kind == "assistant":
            blocks = _block_types(message)
            msg_type = MessageType.TOOL_USE if blocks == {"tool_use"} else MessageType.ASSISTANT
            return [ParsedMessage(msg_type, message, parent, event)]
        if kind == "user" and "tool_result" in _block_types(message):
            return [ParsedMessage(MessageType.TOOL_RESULT, message, parent, event)]
        if kind == "system":
            return [ParsedMessage(MessageType.SYSTEM, {k: v for k, v in event.items() if k != "type"}, None, event)]
        return []

    def extract_result(self, event: dict[str, Any]) -> dict[str, Any] | None:
        if event.get("type") != "result":
            return None
        return {
            "total_cost_usd": event.get("total_cost_usd"),
            "usage": event.get("usage"),
            "session_id": event.get("session_id"),
            "is_error": event.get("is_error", False),
        }
