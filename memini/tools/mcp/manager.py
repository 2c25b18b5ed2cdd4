"""MCP connection pool: explicit connect/disconnect plus a per-server tool cache."""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from memini.utils.error_handler import ConfigurationError, ConnectivityError
from .config import McpConfig, McpServer
from .connection import MCPConnection, create_connection

LOGGER = logging.getLogger(__name__)


class MCPServerManager:
    """
    Manages the set of open tool-server connections.

    Features:
    - Connections are opened on /mcp connect and kept until disconnect
    - Tool listings are cached per server and refreshed on demand
    - All connections are closed on shutdown
    """

    def __init__(self, config: Optional[McpConfig] = None, startup_timeout: Optional[float] = None):
        """
        Args:
            config: Parsed mcp_servers.yaml
            startup_timeout: Overrides settings.startup_timeout from the config
        """
        self.config = config or McpConfig()
        self.startup_timeout = startup_timeout or self.config.settings.startup_timeout
        self._connections: Dict[str, MCPConnection] = {}  # server_id -> connection
        self._tools: Dict[str, List[Any]] = {}            # server_id -> cached tools

        for server in self.config.enabled_servers():
            LOGGER.debug(f"  Registered MCP server config: {server.id}")

    def get_server_config(self, server_id: str) -> McpServer:
        server = self.config.get(server_id)
        if server is None or not server.enabled:
            raise ConfigurationError(
                f"MCP server not configured: {server_id}",
                f"Unknown MCP server '{server_id}'. Use /mcp list to see configured servers.",
            )
        return server

    async def connect(self, server_id: str, bearer_token: Optional[str] = None) -> MCPConnection:
        """
        Open a connection (or return the existing one).

        Raises:
            ConfigurationError: If server not configured
            ConnectivityError: If the server fails to start or times out
        """
        if server_id in self._connections:
            return self._connections[server_id]

        server = self.get_server_config(server_id)
        LOGGER.info(f"🚀 Connecting to MCP server: {server_id} ({server.transport})")
        connection = create_connection(server, bearer_token)

        try:
            # Transport cancel scopes must open and close in the caller's task.
            async with asyncio.timeout(self.startup_timeout):
                await connection.start()
            tools = await connection.list_tools()
        except asyncio.TimeoutError:
            await connection.close()
            raise ConnectivityError(f"MCP server startup timeout: {server_id}")
        except Exception as e:
            await connection.close()
            raise ConnectivityError(f"Failed to connect to MCP server '{server_id}': {e}") from e

        self._connections[server_id] = connection
        self._tools[server_id] = list(tools)
        LOGGER.info(f"  ✓ MCP server connected: {server_id} ({len(tools)} tools)")
        return connection

    async def disconnect(self, server_id: str) -> bool:
        connection = self._connections.pop(server_id, None)
        self._tools.pop(server_id, None)
        if connection is None:
            return False
        try:
            await connection.close()
        except Exception as e:
            LOGGER.error(f"  ✗ Failed to close {server_id}: {e}")
        return True

    async def refresh_tools(self, server_id: str) -> List[Any]:
        connection = self.get_connection(server_id)
        tools = await connection.list_tools()
        self._tools[server_id] = list(tools)
        return self._tools[server_id]

    def get_connection(self, server_id: str) -> MCPConnection:
        connection = self._connections.get(server_id)
        if connection is None:
            raise ConnectivityError(
                f"MCP server not connected: {server_id}",
                f"MCP server '{server_id}' is not connected. Run /mcp connect {server_id}.",
            )
        return connection

    def cached_tools(self, server_id: str) -> List[Any]:
        return list(self._tools.get(server_id, []))

    async def call_tool(self, server_id: str, tool_name: str, arguments: Dict[str, Any]) -> str:
        return await self.get_connection(server_id).call_tool(tool_name, arguments)

    def reload(self, config: McpConfig) -> List[str]:
        """Swap in a new config; returns connected ids that are no longer configured."""
        self.config = config
        self.startup_timeout = config.settings.startup_timeout
        return [
            server_id for server_id in self._connections
            if config.get(server_id) is None or not config.get(server_id).enabled
        ]

    async def shutdown(self):
        """
        Close all connections and cleanup resources.

        This should be called when the application exits.
        """
        if not self._connections:
            return

        LOGGER.info(f"Shutting down {len(self._connections)} MCP connection(s)...")

        for server_id, connection in list(self._connections.items()):
            try:
                await connection.close()
                LOGGER.info(f"  ✓ Closed: {server_id}")
            except Exception as e:
                LOGGER.error(f"  ✗ Failed to close {server_id}: {e}")

        self._connections.clear()
        self._tools.clear()

    def is_connected(self, server_id: str) -> bool:
        return server_id in self._connections

    def list_configured_servers(self) -> list:
        return [server.id for server in self.config.enabled_servers()]

    def list_connected_servers(self) -> list:
        return list(self._connections.keys())
