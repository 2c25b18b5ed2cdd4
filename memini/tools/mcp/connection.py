"""MCP server connection implementations (streamable HTTP, SSE and stdio)."""

import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from memini.utils.error_handler import ConnectivityError, ProtocolError
from .config import McpServer

LOGGER = logging.getLogger(__name__)


def _resolve_env(env: Dict[str, str]) -> Dict[str, str]:
    # Values like ${GITHUB_TOKEN} are read from the process environment.
    resolved = {}
    for key, value in env.items():
        if value.startswith("${") and value.endswith("}"):
            resolved[key] = os.environ.get(value[2:-1], "")
        else:
            resolved[key] = value
    return resolved


class MCPConnection(ABC):
    """Abstract base class for MCP server connections."""

    def __init__(self, server: McpServer, bearer_token: Optional[str] = None):
        self.server = server
        self.server_id = server.id
        self.bearer_token = bearer_token
        self._client: Optional[ClientSession] = None
        self._transport_context = None  # Keep reference to context manager
        self._initialized = False

    @abstractmethod
    def _open_transport(self):
        """Return the transport context manager yielding (read, write, ...)."""
        pass

    def _headers(self) -> Dict[str, str]:
        headers = dict(self.server.headers)
        if self.bearer_token:
            headers["Authorization"] = f"Bearer {self.bearer_token}"
        return headers

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def start(self):
        """Open the transport and run the MCP initialize handshake."""
        transport_context = self._open_transport()
        streams = await transport_context.__aenter__()
        self._transport_context = transport_context
        read_stream, write_stream = streams[0], streams[1]

        try:
            self._client = ClientSession(read_stream, write_stream)
            await self._client.__aenter__()
            await self._client.initialize()
        except BaseException:
            await self.close()
            raise
        self._initialized = True

        LOGGER.debug(f"  ✓ {self.server.transport} connection established for server: {self.server_id}")

    async def call_tool(self, tool_name: str, arguments: Dict[str, Any]) -> str:
        """Call a tool and return its text content.

        Raises:
            ProtocolError: the server flagged the result as an error
        """
        if not self._initialized:
            raise ConnectivityError(f"Server not connected: {self.server_id}")

        LOGGER.debug(f"  Calling tool: {tool_name} on server {self.server_id}")
        result = await self._client.call_tool(tool_name, arguments)

        text_parts = []
        for item in result.content or []:
            if hasattr(item, "text"):
                text_parts.append(item.text)
        text = "\n".join(text_parts)

        if not text and getattr(result, "structuredContent", None):
            text = json.dumps(result.structuredContent, ensure_ascii=False)

        if result.isError:
            raise ProtocolError(f"{self.server_id}/{tool_name} failed: {text or 'tool error'}")
        return text

    async def list_tools(self) -> List[Any]:
        if not self._initialized:
            raise ConnectivityError(f"Server not connected: {self.server_id}")

        result = await self._client.list_tools()
        return result.tools

    async def get_tool_info(self, tool_name: str):
        """Get detailed information about a specific tool."""
        tools = await self.list_tools()
        for tool in tools:
            if tool.name == tool_name:
                return tool
        raise ProtocolError(f"Tool not found on server '{self.server_id}': {tool_name}")

    async def close(self):
        """Close the session and the transport."""
        if self._client:
            try:
                await self._client.__aexit__(None, None, None)
            except Exception as e:
                LOGGER.warning(f"  Error closing client session for {self.server_id}: {e}")
            self._client = None

        if self._transport_context:
            try:
                await self._transport_context.__aexit__(None, None, None)
            except Exception as e:
                LOGGER.warning(f"  Error closing transport for {self.server_id}: {e}")
            self._transport_context = None

        self._initialized = False
        LOGGER.debug(f"  ✓ Closed connection for server: {self.server_id}")


class StdioMCPConnection(MCPConnection):
    """MCP connection to a local server process over stdin/stdout."""

    def _open_transport(self):
        full_env = os.environ.copy()
        full_env.update(_resolve_env(self.server.env))
        if self.bearer_token:
            full_env.setdefault("MCP_BEARER_TOKEN", self.bearer_token)

        LOGGER.debug(f"  Starting stdio server: {self.server.command} {' '.join(self.server.args)}")
        server_params = StdioServerParameters(
            command=self.server.command,
            args=self.server.args,
            env=full_env,
        )
        return stdio_client(server_params)


class SSEMCPConnection(MCPConnection):
    """MCP connection using SSE (Server-Sent Events) over HTTP."""

    def _open_transport(self):
        return sse_client(self.server.url, headers=self._headers())


class StreamableHTTPMCPConnection(MCPConnection):
    """MCP connection using the streamable HTTP transport."""

    def _open_transport(self):
        return streamablehttp_client(self.server.url, headers=self._headers())


def create_connection(server: McpServer, bearer_token: Optional[str] = None) -> MCPConnection:
    """Factory function to create appropriate connection type."""
    if server.transport == "stdio":
        return StdioMCPConnection(server, bearer_token)
    elif server.transport == "sse":
        return SSEMCPConnection(server, bearer_token)
    elif server.transport == "http":
        return StreamableHTTPMCPConnection(server, bearer_token)
    else:
        raise ValueError(f"Unknown connection mode: {server.transport}")
