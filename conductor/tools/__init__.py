"""Operations agents call on their session through the companion tool process."""

from .base import BaseTool, ToolContext, ToolRegistry, ToolResult
from .session_tools import (
    ArtifactTool,
    ContextTool,
    DecideTool,
    PhaseCompleteTool,
    RecordTool,
    build_registry,
    default_registry,
    sanitize_artifact_name,
)

__all__ = [
    "ArtifactTool",
    "BaseTool",
    "ContextTool",
    "DecideTool",
    "PhaseCompleteTool",
    "RecordTool",
    "ToolContext",
    "ToolRegistry",
    "ToolResult",
    "build_registry",
    "default_registry",
    "sanitize_artifact_name",
]
