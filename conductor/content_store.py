"""Local file storage for message bodies and session artifacts."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any


class ContentStore:
    """Reads and writes files below a root directory.

    Keys are relative POSIX paths such as
    ``sessions/<agent_id>/messages/<message_id>.json``. A key that would
    resolve outside the root is rejected.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).resolve()

    def resolve(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if path != self.root and self.root not in path.parents:
            raise ValueError(f"Path escapes content store: {key}")
        return path

    def write_text(self, key: str, content: str) -> Path:
        path = self.resolve(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    def write_json(self, key: str, payload: Any) -> Path:
        return self.write_text(key, json.dumps(payload, ensure_ascii=False, indent=2))

    def read_text(self, key: str) -> str | None:
        path = self.resolve(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def delete(self, key: str) -> bool:
        path = self.resolve(key)
        if path.exists():
            path.unlink()
            return True
        return False


def message_body_key(agent_id: str, message_id: str) -> str:
    return f"sessions/{agent_id}/messages/{message_id}.json"


def artifact_key(session_id: str, safe_name: str) -> str:
    return f"sessions/{session_id}/artifacts/{safe_name}.md"
