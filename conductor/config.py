"""Configuration settings for the orchestration engine."""

from pathlib import Path

from pydantic_settings import BaseSettings

# Root for everything the engine writes (database, worktrees, content store)
_DEFAULT_HOME = Path.home() / ".conductor"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storage
    data_dir: Path = _DEFAULT_HOME
    database_url: str = f"sqlite+aiosqlite:///{_DEFAULT_HOME / 'conductor.db'}"
    database_echo: bool = False

    # Agent CLI commands
    claude_cmd: str = "claude"
    codex_cmd: str = "codex"
    claude_model: str | None = None
    codex_model: str | None = None
    default_agent_type: str = "claude"
    default_permission_mode: str = "default"

    # Messages
    message_preview_length: int = 500

    # Workflow behaviour
    gate_rejection_policy: str = "fail"  # fail | retry | pause
    relay_max_chars: int = 20000
    branch_prefix: str = "conductor"

    # Process control (seconds)
    bridge_poll_interval: float = 2.0
    kill_grace_seconds: float = 1.0
    terminate_grace_seconds: float = 3.0
    stdin_close_grace_seconds: float = 2.0

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    redis_events_enabled: bool = False

    @property
    def worktrees_dir(self) -> Path:
        return self.data_dir / "worktrees"

    @property
    def tool_config_dir(self) -> Path:
        """Directory holding per-agent companion tool server configs."""
        return self.data_dir / "tmp"

    class Config:
        env_prefix = "CONDUCTOR_"
        env_file = ".env"


# Global settings instance (CLI entry points only)
settings = Settings()
