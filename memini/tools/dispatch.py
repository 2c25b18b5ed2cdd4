"""Tool naming, schemas and dispatch targets.

Remote tools are exposed to the model as mcp__<server_id>__<tool>. The two
built-ins, spawn_agent and collect_results, are only offered to the main chat
turn; worker sessions and daemons see remote tools plus the local workspace_*
tools.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from memini.utils.error_handler import ProtocolError
from .workspace import WORKSPACE_TOOL_NAMES

LOGGER = logging.getLogger(__name__)

MCP_PREFIX = "mcp__"
SPAWN_AGENT_TOOL = "spawn_agent"
COLLECT_RESULTS_TOOL = "collect_results"


def namespaced_tool_name(server_id: str, tool_name: str) -> str:
    return f"{MCP_PREFIX}{server_id}__{tool_name}"


def split_namespaced_tool(name: str) -> Optional[tuple[str, str]]:
    """Return (server_id, tool_name) for a namespaced name, else None."""
    if not name.startswith(MCP_PREFIX):
        return None
    server_id, sep, tool_name = name[len(MCP_PREFIX):].partition("__")
    if not sep or not server_id or not tool_name:
        return None
    return server_id, tool_name


@dataclass(frozen=True)
class BuiltinSpawn:
    pass


@dataclass(frozen=True)
class BuiltinCollect:
    pass


@dataclass(frozen=True)
class Remote:
    server_id: str
    tool_name: str


@dataclass(frozen=True)
class Workspace:
    tool_name: str


@dataclass(frozen=True)
class UnknownTool:
    name: str


ToolTarget = Union[BuiltinSpawn, BuiltinCollect, Remote, Workspace, UnknownTool]


def resolve_tool_target(name: str, allow_builtins: bool = True, allow_workspace: bool = False) -> ToolTarget:
    """Resolve a model-issued tool name once, before execution."""
    if allow_builtins and name == SPAWN_AGENT_TOOL:
        return BuiltinSpawn()
    if allow_builtins and name == COLLECT_RESULTS_TOOL:
        return BuiltinCollect()
    if allow_workspace and name in WORKSPACE_TOOL_NAMES:
        return Workspace(name)
    parts = split_namespaced_tool(name)
    if parts:
        return Remote(*parts)
    return UnknownTool(name)


def _function_schema(name: str, description: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {"name": name, "description": description, "parameters": parameters},
    }


SPAWN_AGENT_SCHEMA = _function_schema(
    SPAWN_AGENT_TOOL,
    "Spawn a background worker agent with its own conversation. Returns immediately "
    "with the new window id; the worker reports back asynchronously.",
    {
        "type": "object",
        "properties": {
            "label": {"type": "string", "description": "Short display label for the agent window"},
            "prompt": {"type": "string", "description": "Complete task description for the worker"},
            "mcp_server": {
                "type": "string",
                "description": "Optional connected tool server the worker is limited to",
            },
            "coordination_key": {
                "type": "string",
                "description": "Optional key grouping related workers for collect_results",
            },
        },
        "required": ["prompt"],
    },
)

COLLECT_RESULTS_SCHEMA = _function_schema(
    COLLECT_RESULTS_TOOL,
    "Return the results finished so far for a coordination key. Never waits; "
    "an empty list means no worker has finished yet.",
    {
        "type": "object",
        "properties": {
            "coordination_key": {"type": "string", "description": "Key passed to spawn_agent"},
        },
        "required": ["coordination_key"],
    },
)


def builtin_tool_schemas() -> List[Dict[str, Any]]:
    return [SPAWN_AGENT_SCHEMA, COLLECT_RESULTS_SCHEMA]


@dataclass(frozen=True)
class RemoteTool:
    server_id: str
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=dict)

    @property
    def namespaced_name(self) -> str:
        return namespaced_tool_name(self.server_id, self.name)

    def openai_schema(self) -> Dict[str, Any]:
        parameters = dict(self.input_schema or {})
        parameters.setdefault("type", "object")
        parameters.setdefault("properties", {})
        description = self.description or f"MCP tool '{self.name}' from server '{self.server_id}'"
        return _function_schema(self.namespaced_name, description, parameters)


ToolCaller = Callable[[str, str, Dict[str, Any]], Awaitable[str]]


class RemoteToolset:
    """Snapshot of remote tools taken when a turn, session or daemon run starts.

    Calls go through the caller captured at snapshot time; a server that
    disconnects afterwards surfaces as a ConnectivityError from that caller.
    """

    def __init__(self, tools: Iterable[RemoteTool] = (), caller: Optional[ToolCaller] = None):
        self._tools: Dict[str, RemoteTool] = {tool.namespaced_name: tool for tool in tools}
        self._caller = caller

    @classmethod
    def from_manager(cls, manager, server_ids: Optional[Iterable[str]] = None) -> "RemoteToolset":
        wanted = list(server_ids) if server_ids is not None else manager.list_connected_servers()
        tools = []
        for server_id in wanted:
            if not manager.is_connected(server_id):
                continue
            for tool in manager.cached_tools(server_id):
                tools.append(RemoteTool(
                    server_id=server_id,
                    name=tool.name,
                    description=getattr(tool, "description", "") or "",
                    input_schema=getattr(tool, "inputSchema", None) or {},
                ))
        return cls(tools, caller=manager.call_tool)

    def filtered(self, selectors: Iterable[str]) -> "RemoteToolset":
        """Keep tools whose server id or namespaced name is listed; empty keeps all."""
        selectors = {s.strip() for s in selectors if s and s.strip()}
        if not selectors:
            return self
        kept = [
            tool for tool in self._tools.values()
            if tool.server_id in selectors or tool.namespaced_name in selectors or tool.name in selectors
        ]
        return RemoteToolset(kept, caller=self._caller)

    @property
    def server_ids(self) -> List[str]:
        return sorted({tool.server_id for tool in self._tools.values()})

    def schemas(self) -> List[Dict[str, Any]]:
        return [tool.openai_schema() for tool in self._tools.values()]

    def has(self, server_id: str, tool_name: str) -> bool:
        return namespaced_tool_name(server_id, tool_name) in self._tools

    async def call(self, server_id: str, tool_name: str, arguments: Dict[str, Any]) -> str:
        if not self.has(server_id, tool_name) or self._caller is None:
            raise ProtocolError(f"Tool not available: {namespaced_tool_name(server_id, tool_name)}")
        return await self._caller(server_id, tool_name, arguments)

    def __len__(self) -> int:
        return len(self._tools)
