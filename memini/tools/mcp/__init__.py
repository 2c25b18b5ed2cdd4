"""MCP (Model Context Protocol) integration for Memini."""

from .config import McpAuth, McpConfig, McpServer, load_mcp_config, parse_mcp_config
from .connection import MCPConnection, create_connection
from .manager import MCPServerManager

__all__ = [
    "McpAuth",
    "McpConfig",
    "McpServer",
    "MCPConnection",
    "MCPServerManager",
    "create_connection",
    "load_mcp_config",
    "parse_mcp_config",
]
