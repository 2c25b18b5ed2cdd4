"""Test doubles shared across the suite: a scripted LLM, fake tool servers and an auth server."""

import asyncio
import json
import socket
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
from urllib.parse import parse_qs

import httpx
from langchain_core.messages import AIMessage, BaseMessage

from memini.models.llm import LLMClient
from memini.utils.error_handler import ConnectivityError


def ai(text: str = "", calls: Optional[List[tuple]] = None) -> AIMessage:
    """Build an assistant message; calls are (name, args) or (name, args, id) tuples."""
    tool_calls = []
    for index, call in enumerate(calls or []):
        name, args = call[0], call[1]
        call_id = call[2] if len(call) > 2 else f"call_{name}_{index}"
        tool_calls.append({"name": name, "args": args, "id": call_id})
    return AIMessage(content=text, tool_calls=tool_calls)


Scripted = Union[AIMessage, Exception, Callable[[List[BaseMessage]], AIMessage]]


class ScriptedLLM(LLMClient):
    """Returns scripted replies in order; records what it was called with."""

    def __init__(self, replies: Sequence[Scripted] = (), embedding: Optional[List[float]] = None):
        self.replies: List[Scripted] = list(replies)
        self.calls: List[Dict[str, Any]] = []
        self.embedding = embedding if embedding is not None else [0.1, 0.2]
        self.embed_calls: List[str] = []

    def push(self, *replies: Scripted) -> None:
        self.replies.extend(replies)

    async def respond(self, messages, tools=()):
        self.calls.append({"messages": list(messages), "tools": list(tools)})
        if not self.replies:
            return AIMessage(content="")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(list(messages))
        return reply

    async def embed(self, text):
        self.embed_calls.append(text)
        return list(self.embedding)


class FakeToolServers:
    """Duck-typed MCPServerManager: connected servers backed by plain functions."""

    def __init__(self, servers: Optional[Dict[str, Dict[str, Callable[[Dict[str, Any]], str]]]] = None):
        self.servers = servers or {}
        self.invocations: List[tuple] = []

    def list_connected_servers(self) -> List[str]:
        return list(self.servers)

    def list_configured_servers(self) -> List[str]:
        return list(self.servers)

    def is_connected(self, server_id: str) -> bool:
        return server_id in self.servers

    def cached_tools(self, server_id: str) -> List[Any]:
        return [
            SimpleNamespace(name=name, description=f"{name} tool", inputSchema={"type": "object", "properties": {}})
            for name in self.servers.get(server_id, {})
        ]

    async def call_tool(self, server_id: str, tool_name: str, arguments: Dict[str, Any]) -> str:
        self.invocations.append((server_id, tool_name, arguments))
        if server_id not in self.servers:
            raise ConnectivityError(f"MCP server not connected: {server_id}")
        return self.servers[server_id][tool_name](arguments)


async def wait_for_events(queue: asyncio.Queue, count: int, timeout: float = 2.0) -> List[Any]:
    """Collect exactly `count` events from an update channel."""
    events = []
    for _ in range(count):
        events.append(await asyncio.wait_for(queue.get(), timeout=timeout))
    return events


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class AuthServer:
    """MockTransport handler for a protected resource and its authorization server."""

    def __init__(self):
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url == "https://mcp.example.com/.well-known/oauth-protected-resource":
            return httpx.Response(200, json={"authorization_servers": ["https://auth.example.com"]})
        if url == "https://auth.example.com/.well-known/oauth-authorization-server":
            return httpx.Response(200, json={
                "authorization_endpoint": "https://auth.example.com/authorize",
                "token_endpoint": "https://auth.example.com/token",
                "registration_endpoint": "https://auth.example.com/register",
                "scopes_supported": ["repo"],
            })
        if url == "https://auth.example.com/register":
            body = json.loads(request.content)
            assert body["token_endpoint_auth_method"] == "none"
            return httpx.Response(201, json={"client_id": "dyn-123"})
        if url == "https://auth.example.com/token":
            form = parse_qs(request.content.decode())
            assert form["grant_type"] == ["authorization_code"]
            assert form["code_verifier"][0]
            return httpx.Response(200, json={
                "access_token": f"token-for-{form['code'][0]}",
                "refresh_token": "refresh-1",
                "expires_in": 3600,
            })
        return httpx.Response(404)
