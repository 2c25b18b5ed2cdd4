"""Environment-bound configuration objects.

Settings are loaded from environment variables and the local .env file through
Pydantic BaseSettings. Each group accepts several alias names so the same
variables used by other Memini front ends keep working.

Example:
    from memini.config.settings import get_settings

    settings = get_settings()  # Cached singleton
    model = settings.openai.model
    max_tool_loops = settings.governance.max_tool_loops
    recipes_dir = settings.paths.agents_dir
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


load_dotenv()


class OpenAISettings(BaseSettings):
    """Language-model credentials and model identifiers.

    - OPENAI_API_KEY / MEMINI_OPENAI_API_KEY: API key (optional at startup,
      required before the first chat turn)
    - MEMINI_OPENAI_MODEL: chat model id (default: gpt-4o-mini)
    - MEMINI_OPENAI_EMBED_MODEL: embedding model id used for memory recall
    - OPENAI_BASE_URL: override for OpenAI-compatible gateways
    """

    api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("OPENAI_API_KEY", "MEMINI_OPENAI_API_KEY"),
    )
    model: str = Field(
        default="gpt-4o-mini",
        validation_alias=AliasChoices("MEMINI_OPENAI_MODEL", "OPENAI_MODEL"),
    )
    embed_model: str = Field(
        default="text-embedding-3-small",
        validation_alias=AliasChoices("MEMINI_OPENAI_EMBED_MODEL", "OPENAI_EMBED_MODEL"),
    )
    base_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("OPENAI_BASE_URL", "MEMINI_OPENAI_BASE_URL"),
    )
    temperature: float = Field(default=0.2, ge=0.0, le=2.0, alias="MEMINI_OPENAI_TEMPERATURE")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


class MemorySettings(BaseSettings):
    """Shared memory store connection.

    When STATE_INSTANCE_URL is unset the in-process store is used and nothing
    survives a restart.
    """

    instance_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("STATE_INSTANCE_URL", "MEMINI_STATE_URL"),
    )
    auth_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("STATE_AUTH_TOKEN", "MEMINI_STATE_TOKEN"),
    )
    run_id: str = Field(default="memini", alias="MEMINI_RUN_ID")
    memory_limit: int = Field(default=6, ge=0, le=50, alias="MEMINI_MEMORY_LIMIT")
    request_timeout: float = Field(default=15.0, gt=0, alias="MEMINI_STATE_TIMEOUT")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


class GovernanceSettings(BaseSettings):
    """Runtime limits for turns, sessions and background work.

    - max_tool_loops: tool-call rounds per turn or run (1-50, default: 6)
    - max_thread_messages: conversation window kept per persona (default: 40)
    - max_logs: activity lines retained for display (default: 1000)
    - poll_interval_ms: foreground drain/render tick (default: 100)
    - oauth_timeout_secs: OAuth callback wait (default: 120)
    """

    max_tool_loops: int = Field(default=6, ge=1, le=50, alias="MEMINI_MAX_TOOL_LOOPS")
    max_thread_messages: int = Field(default=40, ge=2, le=400, alias="MEMINI_MAX_THREAD_MESSAGES")
    max_logs: int = Field(default=1000, ge=10, alias="MEMINI_MAX_LOGS")
    poll_interval_ms: int = Field(default=100, ge=10, le=5000, alias="MEMINI_POLL_INTERVAL_MS")
    oauth_timeout_secs: float = Field(default=120.0, gt=0, alias="MEMINI_OAUTH_TIMEOUT_SECS")
    agent_interval_secs: int = Field(default=300, ge=1, alias="MEMINI_AGENT_INTERVAL_SECS")
    max_daemon_results: int = Field(default=200, ge=1, alias="MEMINI_MAX_DAEMON_RESULTS")
    mcp_startup_timeout: float = Field(default=30.0, gt=0, alias="MEMINI_MCP_STARTUP_TIMEOUT")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


class PathSettings(BaseSettings):
    """Filesystem locations.

    Everything defaults to a directory under MEMINI_HOME (~/Memini).
    """

    home: Path = Field(default_factory=lambda: Path.home() / "Memini", alias="MEMINI_HOME")
    mcp_config: Optional[Path] = Field(default=None, alias="MEMINI_MCP_CONFIG")
    prompts_dir: Optional[Path] = Field(default=None, alias="MEMINI_PROMPTS_DIR")
    credentials_path: Optional[Path] = Field(default=None, alias="MEMINI_CREDENTIALS_PATH")
    workspace_root: Optional[Path] = Field(default=None, alias="MEMINI_WORKSPACE_ROOT")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("mcp_config", "prompts_dir", "credentials_path", "workspace_root", mode="before")
    @classmethod
    def _expand_user(cls, value):
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return Path(value).expanduser()

    @field_validator("home", mode="before")
    @classmethod
    def _expand_home(cls, value):
        if value is None or (isinstance(value, str) and not value.strip()):
            return Path.home() / "Memini"
        return Path(value).expanduser()

    @property
    def agents_dir(self) -> Path:
        return self.home / "agents"

    @property
    def prompt_override_dirs(self) -> list[Path]:
        dirs = []
        if self.prompts_dir:
            dirs.append(self.prompts_dir)
        dirs.append(self.home / "prompts")
        return dirs

    @property
    def mcp_config_path(self) -> Path:
        return self.mcp_config or self.home / "mcp_servers.yaml"

    @property
    def credentials_file(self) -> Path:
        return self.credentials_path or self.home / "local_mcp_store.json"

    @property
    def workspace_path(self) -> Path:
        """Root for the workspace_* tools; defaults to the current directory."""
        return self.workspace_root or Path.cwd()


class Settings(BaseSettings):
    """Root application settings.

    Nested groups:
    - openai: model routing and API credentials (OpenAISettings)
    - memory: shared memory store (MemorySettings)
    - governance: loop, thread, log and timeout limits (GovernanceSettings)
    - paths: MEMINI_HOME and derived locations (PathSettings)

    Use get_settings() to obtain a cached singleton instance.
    """

    environment: str = Field(default="dev", alias="APP_ENV")
    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    governance: GovernanceSettings = Field(default_factory=GovernanceSettings)
    paths: PathSettings = Field(default_factory=PathSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_assignment=True,
        case_sensitive=False,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton Settings instance."""
    return Settings()
