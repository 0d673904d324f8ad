"""
Tool abstraction for the operations agents call through their companion process.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..content_store import ContentStore
from ..db import Database

ENV_AGENT_ID = "CONDUCTOR_AGENT_ID"
ENV_SESSION_ID = "CONDUCTOR_SESSION_ID"
ENV_PHASE_ID = "CONDUCTOR_PHASE_ID"


@dataclass
class ToolResult:
    """Result from a tool invocation."""

    success: bool
    output: Any
    error: str | None = None
    metadata: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        if self.metadata is None:
            self.metadata = {}

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return self.output if isinstance(self.output, dict) else {"result": self.output}
        return {"error": self.error}


@dataclass
class ToolContext:
    """Identity and store handles of the agent the tool process serves."""

    database: Database
    store: ContentStore
    agent_id: str
    session_id: str
    phase_id: str | None = None

    @classmethod
    def from_env(cls, database_url: str, data_dir: Path) -> ToolContext:
        agent_id = os.environ.get(ENV_AGENT_ID)
        session_id = os.environ.get(ENV_SESSION_ID)
        if not agent_id or not session_id:
            raise RuntimeError(f"{ENV_AGENT_ID} and {ENV_SESSION_ID} must be set")
        return cls(
            database=Database(database_url),
            store=ContentStore(data_dir),
            agent_id=agent_id,
            session_id=session_id,
            phase_id=os.environ.get(ENV_PHASE_ID) or None,
        )


class BaseTool(ABC):
    """Base class for all tools."""

    name: str
    description: str

    @abstractmethod
    async def run(self, ctx: ToolContext, **kwargs: Any) -> ToolResult:
        pass

    async def __call__(self, ctx: ToolContext, **kwargs: Any) -> ToolResult:
        try:
            return await self.run(ctx, **kwargs)
        except (ValueError, LookupError) as exc:
            return ToolResult(success=False, output=None, error=str(exc))


class ToolRegistry:
    """Registry of available tools."""

    def __init__(self) -> None:
        self._tools: dict[str, BaseTool] = {}

    def register(self, tool: BaseTool) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> BaseTool | None:
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        return list(self._tools.keys())
