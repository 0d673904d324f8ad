"""Stand-in agent CLI for engine tests.

Speaks the stream-json protocol of the interactive Claude CLI and performs
companion tool calls directly against the shared store, the way the real
tool server would.

Usage:
    python tests/fake_agent.py --behavior complete [claude CLI args...]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
import time
from pathlib import Path
from typing import Any

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from conductor.content_store import ContentStore  # noqa: E402
from conductor.db import Database  # noqa: E402
from conductor.tools.base import ToolContext  # noqa: E402
from conductor.tools.session_tools import default_registry  # noqa: E402

BEHAVIORS = ("complete", "artifact", "iterate", "idle", "needs_input", "exit0", "crash")


def emit(event: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(event) + "\n")
    sys.stdout.flush()


def load_tool_env(config_path: str | None) -> dict[str, str]:
    if not config_path:
        return {}
    config = json.loads(Path(config_path).read_text(encoding="utf-8"))
    return config["mcpServers"]["conductor"]["env"]


async def call_tool(env: dict[str, str], name: str, /, **kwargs: Any) -> dict[str, Any]:
    database = Database(env["CONDUCTOR_DATABASE_URL"])
    try:
        ctx = ToolContext(
            database=database,
            store=ContentStore(Path(env["CONDUCTOR_DATA_DIR"])),
            agent_id=env["CONDUCTOR_AGENT_ID"],
            session_id=env["CONDUCTOR_SESSION_ID"],
            phase_id=env.get("CONDUCTOR_PHASE_ID") or None,
        )
        tool = default_registry.get(name)
        assert tool is not None, name
        result = await tool(ctx, **kwargs)
    finally:
        await database.dispose()
    return result.to_dict()


def say(text: str) -> None:
    emit(
        {
            "type": "assistant",
            "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
        }
    )


def run_turn(behavior: str, turn: int, env: dict[str, str], cli_session: str) -> None:
    say(f"Working on turn {turn}")
    # Give the engine a moment to record the running status first
    time.sleep(0.2)

    if behavior in ("idle", "needs_input") and turn > 1:
        behavior = "complete"

    if behavior == "artifact":
        asyncio.run(
            call_tool(env, "artifact", name="design notes", content="# Notes\n\nUse a queue.", status="final")
        )
        asyncio.run(call_tool(env, "phase_complete", summary="Wrote the design notes", status="complete"))
    elif behavior == "complete":
        asyncio.run(call_tool(env, "phase_complete", summary=f"Finished on turn {turn}", status="complete"))
    elif behavior == "iterate":
        asyncio.run(call_tool(env, "phase_complete", summary=f"Pass finished on turn {turn}", status="iterate"))
    elif behavior == "needs_input":
        asyncio.run(call_tool(env, "phase_complete", summary="Which database should I use?", status="needs_input"))

    emit(
        {
            "type": "result",
            "subtype": "success",
            "is_error": False,
            "session_id": cli_session,
            "total_cost_usd": 0.0,
            "usage": {"input_tokens": 10, "output_tokens": 5},
        }
    )


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--behavior", choices=BEHAVIORS, default="complete")
    parser.add_argument("--mcp-config")
    args, _ = parser.parse_known_args()

    env = load_tool_env(args.mcp_config)
    cli_session = f"fake-{os.getpid()}"
    emit({"type": "system", "subtype": "init", "session_id": cli_session, "cwd": os.getcwd()})

    if args.behavior == "crash":
        sys.stderr.write("fake agent crashed\n")
        return 3

    turn = 0
    for line in sys.stdin:
        if not line.strip():
            continue
        turn += 1
        run_turn(args.behavior, turn, env, cli_session)
        if args.behavior == "exit0":
            return 0
    return 0


if __name__ == "__main__":
    sys.exit(main())
