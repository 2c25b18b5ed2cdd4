"""MCP server configuration (mcp_servers.yaml).

Example:
    servers:
      github:
        name: GitHub
        url: https://api.githubcopilot.com/mcp/
        transport: http
        auth:
          type: oauth_browser
          redirect_uri: http://127.0.0.1:8976/callback
      notes:
        transport: stdio
        command: python
        args: ["notes_server.py"]
    settings:
      startup_timeout: 30
"""

import logging
from pathlib import Path
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from memini.utils.error_handler import ConfigurationError

LOGGER = logging.getLogger(__name__)


class McpAuth(BaseModel):
    """Credentials for a tool server.

    type is one of:
    - none: no Authorization header
    - bearer: static token from bearer_token or bearer_env
    - oauth_browser: browser-based OAuth 2.1 with PKCE (/mcp auth)
    """

    type: Literal["none", "bearer", "oauth_browser"] = "none"
    bearer_token: Optional[str] = None
    bearer_env: Optional[str] = None
    client_id: Optional[str] = None
    client_id_env: Optional[str] = None
    client_secret: Optional[str] = None
    client_secret_env: Optional[str] = None
    redirect_uri: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    authorization_url: Optional[str] = None
    token_url: Optional[str] = None
    registration_url: Optional[str] = None

    @field_validator("scopes", mode="before")
    @classmethod
    def _split_scopes(cls, value):
        if isinstance(value, str):
            return [scope for scope in value.replace(",", " ").split() if scope]
        return value or []


class McpServer(BaseModel):
    id: str
    name: Optional[str] = None
    transport: Literal["http", "sse", "stdio"] = "http"
    url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    enabled: bool = True
    auth: McpAuth = Field(default_factory=McpAuth)

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def uses_oauth(self) -> bool:
        return self.auth.type == "oauth_browser"

    def check(self) -> None:
        """Raise ConfigurationError when required transport fields are missing."""
        if "__" in self.id:
            raise ConfigurationError(f"MCP server id '{self.id}' must not contain '__'")
        if self.transport == "stdio" and not self.command:
            raise ConfigurationError(f"MCP server '{self.id}' uses stdio but has no command")
        if self.transport in ("http", "sse") and not self.url:
            raise ConfigurationError(f"MCP server '{self.id}' uses {self.transport} but has no url")


class McpSettings(BaseModel):
    startup_timeout: float = 30.0


class McpConfig(BaseModel):
    servers: Dict[str, McpServer] = Field(default_factory=dict)
    settings: McpSettings = Field(default_factory=McpSettings)

    def enabled_servers(self) -> List[McpServer]:
        return [server for server in self.servers.values() if server.enabled]

    def get(self, server_id: str) -> Optional[McpServer]:
        return self.servers.get(server_id)


def parse_mcp_config(raw: Optional[dict]) -> McpConfig:
    if not raw:
        return McpConfig()
    servers = {}
    for server_id, server_cfg in (raw.get("servers") or {}).items():
        server_cfg = dict(server_cfg or {})
        server_cfg.setdefault("id", server_id)
        servers[server_id] = server_cfg
    try:
        config = McpConfig(servers=servers, settings=raw.get("settings") or {})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid MCP config: {e}") from e
    for server in config.servers.values():
        server.check()
    return config


def load_mcp_config(config_path: Path) -> McpConfig:
    """
    Load MCP configuration from YAML file.

    Args:
        config_path: Path to mcp_servers.yaml

    Returns:
        Validated McpConfig

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigurationError: If config file is invalid
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"MCP config not found: {config_path}")

    with open(config_path, encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    config = parse_mcp_config(raw)
    LOGGER.info(f"Loaded {len(config.servers)} MCP server config(s) from {config_path}")
    return config
