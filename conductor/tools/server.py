"""
Companion tool server.

Each agent CLI launches one of these over stdio. The process learns which
agent it serves from ``CONDUCTOR_AGENT_ID`` / ``CONDUCTOR_SESSION_ID`` /
``CONDUCTOR_PHASE_ID`` and writes straight into the shared store; the
engine's bridge picks the changes up from there.

Usage:
    python -m conductor.tools.server
"""

from __future__ import annotations

import json
import sys
from typing import Any

from fastmcp import FastMCP

from ..adapters.base import TOOL_SERVER_NAME
from ..config import Settings
from .base import ToolContext, ToolRegistry
from .session_tools import default_registry


def _dump(payload: dict[str, Any]) -> str:
    return json.dumps(payload, indent=2, default=str)


def create_mcp_server(ctx: ToolContext, registry: ToolRegistry = default_registry) -> FastMCP:
    """Create a FastMCP server exposing the session tools for one agent."""
    mcp = FastMCP(TOOL_SERVER_NAME)

    async def call(name: str, **kwargs: Any) -> str:
        tool = registry.get(name)
        if tool is None:
            return _dump({"error": f"Unknown tool: {name}"})
        result = await tool(ctx, **kwargs)
        return _dump(result.to_dict())

    @mcp.tool
    async def context(
        query: str | None = None,
        tags: list[str] | None = None,
        files: list[str] | None = None,
        limit: int = 15,
    ) -> str:
        """
        Read the session's shared memory before starting work.

        Returns active decisions (optionally filtered by a search query, by
        tags, or by file paths recorded as tags) and the most recent
        artifacts written in this session.
        """
        return await call("context", query=query, tags=tags, files=files, limit=limit)

    @mcp.tool
    async def record(
        question: str,
        choice: str,
        rationale: str,
        type: str = "finding",
        alternatives: list[str] | None = None,
        tags: list[str] | None = None,
        supersedes: str | None = None,
    ) -> str:
        """
        Record a decision or finding that does not need human sign-off.

        Args:
            type: 'decision' (has alternatives) or 'finding' (observation)
            tags: file paths, concepts, domains
            supersedes: id of an earlier active decision this one revises
        """
        return await call(
            "record",
            question=question,
            choice=choice,
            rationale=rationale,
            type=type,
            alternatives=alternatives,
            tags=tags,
            supersedes=supersedes,
        )

    @mcp.tool
    async def decide(
        question: str,
        choice: str,
        rationale: str,
        alternatives: list[str] | None = None,
        tags: list[str] | None = None,
        supersedes: str | None = None,
    ) -> str:
        """
        Propose a decision a human must confirm. Returns status 'pending_approval';
        you will be told the outcome.
        """
        return await call(
            "decide",
            question=question,
            choice=choice,
            rationale=rationale,
            alternatives=alternatives,
            tags=tags,
            supersedes=supersedes,
        )

    @mcp.tool
    async def artifact(name: str, content: str, status: str = "draft") -> str:
        """
        Write a named markdown document for this session (overwrites by name).

        Args:
            status: 'draft' or 'final'
        """
        return await call("artifact", name=name, content=content, status=status)

    @mcp.tool
    async def phase_complete(summary: str, status: str = "complete") -> str:
        """
        Signal the end of your work in this phase.

        Args:
            summary: what was done, or what is blocking you
            status: 'complete', 'iterate' (request another loop pass),
                'blocked', or 'needs_input' (asks a human)
        """
        return await call("phase_complete", summary=summary, status=status)

    return mcp


def main() -> None:
    settings = Settings()
    try:
        ctx = ToolContext.from_env(settings.database_url, settings.data_dir)
    except RuntimeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    create_mcp_server(ctx).run(transport="stdio")


if __name__ == "__main__":
    main()
