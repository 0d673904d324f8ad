"""Agent CLI adapters."""

from enum import StrEnum

from .base import (
    QUALIFIED_TOOL_NAMES,
    TOOL_NAMES,
    TOOL_SERVER_NAME,
    AgentAdapter,
    EscalationRequest,
    ParsedMessage,
    SpawnOptions,
    SpawnSpec,
    ToolServerDefinition,
)
from .claude import ClaudeAdapter
from .codex import CodexAdapter


class AgentType(StrEnum):
    CLAUDE = "claude"
    CODEX = "codex"


def default_adapters() -> dict[str, AgentAdapter]:
    """Adapter instance per supported agent type."""
    return {
        AgentType.CLAUDE.value: ClaudeAdapter(),
        AgentType.CODEX.value: CodexAdapter(),
    }


__all__ = [
    "QUALIFIED_TOOL_NAMES",
    "TOOL_NAMES",
    "TOOL_SERVER_NAME",
    "AgentAdapter",
    "AgentType",
    "ClaudeAdapter",
    "CodexAdapter",
    "EscalationRequest",
    "ParsedMessage",
    "SpawnOptions",
    "SpawnSpec",
    "ToolServerDefinition",
    "default_adapters",
]
