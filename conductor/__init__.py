"""
Conductor

Session/workflow orchestration for coding-agent CLIs: runs multi-phase
workflows of Claude Code and Codex agents against a workspace of git
repositories, with human approval gates and store-backed state.
"""

__version__ = "0.1.0"

from conductor.config import Settings
from conductor.engine import GateRejectionPolicy, LaunchRequest, WorkflowEngine
from conductor.errors import (
    ApprovalAlreadyResolvedError,
    ConductorError,
    GitBindingConflict,
    InvariantViolation,
    SpawnFailure,
)
from conductor.git_strategy import GitMode, GitStrategy

__all__ = [
    # Version
    "__version__",
    # Config
    "Settings",
    # Engine
    "WorkflowEngine",
    "LaunchRequest",
    "GateRejectionPolicy",
    # Git
    "GitMode",
    "GitStrategy",
    # Errors
    "ConductorError",
    "SpawnFailure",
    "GitBindingConflict",
    "ApprovalAlreadyResolvedError",
    "InvariantViolation",
]
