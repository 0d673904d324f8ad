"""Error types and helpers for the orchestration engine."""

from __future__ import annotations

import re

import click


class SchemaNotInitializedError(click.ClickException):
    """Raised when the database schema/migrations have not been applied."""


class ConductorError(Exception):
    """Base class for engine errors surfaced to callers."""


class NotFoundError(ConductorError):
    """A referenced row does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class InvariantViolation(ConductorError):
    """A programming error: the requested transition is impossible from the current state."""


class InvalidWorkflowError(ConductorError):
    """A workflow definition cannot be run as written."""


class SpawnFailure(ConductorError):
    """The agent subprocess could not be launched."""

    def __init__(self, message: str, *, agent_id: str | None = None, command: str | None = None) -> None:
        super().__init__(message)
        self.agent_id = agent_id
        self.command = command


class GitStrategyError(ConductorError):
    """The requested git strategy cannot be applied to the repository."""


class GitCommandError(GitStrategyError):
    """A git subprocess exited with a non-zero status."""

    def __init__(self, args: list[str], returncode: int, stderr: str) -> None:
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {stderr.strip()}")
        self.git_args = args
        self.returncode = returncode
        self.stderr = stderr


class GitBindingConflict(ConductorError):
    """An exclusive working-directory binding is already held in the workspace."""

    def __init__(self, workspace_id: str, holder_agent_id: str | None) -> None:
        holder = f" by agent {holder_agent_id}" if holder_agent_id else ""
        super().__init__(f"Workspace {workspace_id} has an exclusive git binding held{holder}")
        self.workspace_id = workspace_id
        self.holder_agent_id = holder_agent_id


class ApprovalAlreadyResolvedError(ConductorError):
    """A second resolution was attempted on a resolved approval."""

    def __init__(self, approval_id: str, status: str) -> None:
        super().__init__(f"Approval {approval_id} is already {status}")
        self.approval_id = approval_id
        self.status = status


class AgentNotAcceptingInputError(ConductorError):
    """Input was sent to an agent that cannot receive it."""


_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        message = str(e)
        match = _PG_MISSING_RELATION_RE.search(message) or _SQLITE_MISSING_TABLE_RE.search(message)
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table / missing-schema error."""
    if missing_table_name(exc):
        return True

    # Fallback for drivers that don't format errors consistently.
    for e in _unwrap_exception_chain(exc):
        message = str(e).lower()
        if "undefinedtableerror" in message:
            return True
        if "does not exist" in message and "relation" in message:
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""

    lines: list[str] = [
        f"Database schema is not initialized{table_hint}.",
        "Run: `conductor init-db`",
        "Or apply migrations with: `alembic upgrade head`",
    ]
    return "\n".join(lines)
