"""Contract between the agent manager and an agent CLI."""

from __future__ import annotations

import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from ..config import Settings

TOOL_SERVER_NAME = "conductor"
TOOL_NAMES = ("context", "record", "decide", "artifact", "phase_complete")
QUALIFIED_TOOL_NAMES = tuple(f"mcp__{TOOL_SERVER_NAME}__{name}" for name in TOOL_NAMES)


@dataclass
class ToolServerDefinition:
    """How an agent CLI should launch its companion tool process."""

    command: str
    args: list[str]
    env: dict[str, str]
    name: str = TOOL_SERVER_NAME

    def to_mcp_config(self) -> dict[str, Any]:
        return {
            "mcpServers": {
                self.name: {"command": self.command, "args": self.args, "env": self.env}
            }
        }


@dataclass
class SpawnOptions:
    prompt: str
    working_dir: str
    system_prompt: str | None = None
    tool_server: ToolServerDefinition | None = None
    tool_config_path: str | None = None
    allowed_tools: list[str] | None = None
    permission_mode: str | None = None
    resume_session_id: str | None = None


@dataclass
class SpawnSpec:
    command: str
    args: list[str]
    initial_input: str | None = None
    close_stdin_after_initial_input: bool = False

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]


@dataclass
class ParsedMessage:
    """A complete structured message lifted out of the CLI stream."""

    type: str
    content: Any
    parent_tool_use_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class EscalationRequest:
    request_key: str
    summary: str
    payload: dict[str, Any]


def as_record(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def pick_string(record: dict[str, Any] | None, keys: list[str]) -> str | None:
    if not record:
        return None
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


class AgentAdapter(ABC):
    """Base class for agent CLI adapters."""

    type: str
    supports_interactive_input: bool = False
    waits_for_input_after_result: bool = False
    exits_after_turn: bool = False

    @abstractmethod
    def build_spawn_spec(self, opts: SpawnOptions, settings: Settings) -> SpawnSpec:
        pass

    @abstractmethod
    def format_user_input(self, text: str) -> str:
        pass

    @abstractmethod
    def extract_token_delta(self, event: dict[str, Any]) -> str | None:
        pass

    @abstractmethod
    def extract_init_session_id(self, event: dict[str, Any]) -> str | None:
        pass

    @abstractmethod
    def extract_messages(self, event: dict[str, Any]) -> list[ParsedMessage]:
        pass

    @abstractmethod
    def extract_result(self, event: dict[str, Any]) -> dict[str, Any] | None:
        pass

    def parse_line(self, line: str) -> dict[str, Any] | None:
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            return None
        return as_record(event)

    def extract_escalation(self, event: dict[str, Any]) -> EscalationRequest | None:
        """Detect a permission/approval request in a stream event."""
        nested = as_record(event.get("event"))
        item = as_record(event.get("item"))
        type_text = " ".join(
            filter(
                None,
                [
                    pick_string(event, ["type"]),
                    pick_string(nested, ["type"]),
                    pick_string(nested, ["subtype"]),
                    pick_string(item, ["type"]),
                    pick_string(item, ["status", "state"]),
                    pick_string(event, ["status", "state"]),
                ],
            )
        ).lower()
        command_blocked = "command" in type_text and "blocked" in type_text
        if not (
            command_blocked
            or "permission" in type_text
            or "approval" in type_text
            or "escalat" in type_text
        ):
            return None

        keys = ["request_id", "requestId", "id"]
        request_id = pick_string(event, keys) or pick_string(nested, keys) or pick_string(item, keys)
        tool_keys = ["tool_name", "toolName", "tool"]
        tool_name = (
            pick_string(event, tool_keys)
            or pick_string(nested, tool_keys)
            or pick_string(item, [*tool_keys, "name"])
        )
        item_input = as_record(item.get("input")) or as_record(item.get("arguments")) if item else None
        command = (
            pick_string(event, ["command"])
            or pick_string(nested, ["command"])
            or pick_string(as_record(nested.get("input")) if nested else None, ["command"])
            or pick_string(item, ["command"])
            or pick_string(item_input, ["command"])
        )

        summary = "Agent requested elevated permissions"
        if tool_name:
            summary = f"Permission requested for tool: {tool_name}"
        elif command:
            summary = f"Permission requested for command: {command}"

        request_key = request_id or hashlib.sha256(
            json.dumps(event, sort_keys=True, default=str).encode()
        ).hexdigest()
        return EscalationRequest(
            request_key=request_key,
            summary=summary,
            payload={
                "request_id": request_id,
                "tool_name": tool_name,
                "command": command,
                "raw_event": event,
            },
        )
