"""Chat turn engine: one user message in, tool calls and a reply out."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from memini.agents.personas import PersonaRegistry
from memini.agents.windows import AgentWindowManager
from memini.memory.store import MemoryRecord, MemoryStore
from memini.models.llm import LLMClient
from memini.prompts import main_chat_system_prompt
from memini.tools.dispatch import (
    BuiltinCollect,
    BuiltinSpawn,
    Remote,
    RemoteToolset,
    builtin_tool_schemas,
    resolve_tool_target,
)
from memini.tools.mcp.manager import MCPServerManager
from memini.utils.error_handler import MeminiError, ProtocolError, StateError
from memini.utils.logging_utils import ActivityLog
from memini.utils.message_utils import truncate
from .thread import ConversationThread
from .tool_loop import run_tool_loop

LOGGER = logging.getLogger(__name__)


@dataclass
class TurnResult:
    text: str
    rounds: int = 0
    tool_calls: int = 0
    exhausted: bool = False
    memories: int = 0
    spawned: List[int] = field(default_factory=list)


class ChatTurnEngine:
    """
    Runs a main-chat turn for the active persona.

    Flow:
    1. Recall memories (failure degrades to none)
    2. Build persona prompt + memory context + thread + user message
    3. Offer every connected server's tools plus spawn_agent/collect_results
    4. Run the shared tool loop
    5. Update the thread, persist it, commit a trace (failures only warn)

    Only a model failure aborts the turn; it propagates as ModelInvocationError.
    """

    def __init__(
        self,
        llm: LLMClient,
        memory: MemoryStore,
        mcp_manager: MCPServerManager,
        windows: AgentWindowManager,
        personas: PersonaRegistry,
        activity: ActivityLog,
        thread: Optional[ConversationThread] = None,
        memory_limit: int = 6,
        max_tool_loops: int = 6,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.llm = llm
        self.memory = memory
        self.mcp_manager = mcp_manager
        self.windows = windows
        self.personas = personas
        self.activity = activity
        self.thread = thread if thread is not None else ConversationThread()
        self.memory_limit = memory_limit
        self.max_tool_loops = max_tool_loops
        self.clock = clock

    async def run_turn(self, message: str, require_tools: bool = False) -> TurnResult:
        message = message.strip()
        persona = self.personas.active
        toolset = RemoteToolset.from_manager(self.mcp_manager)
        if require_tools and len(toolset) == 0:
            raise StateError(
                "No tool server connected",
                "No MCP server connected. Use /mcp connect <id> first.",
            )

        memories, embedding = await self._recall(message)
        messages = self._build_messages(message, persona.prompt, memories, require_tools)
        tools = toolset.schemas() + builtin_tool_schemas()

        spawned: List[int] = []

        async def execute(call: Dict[str, Any]) -> str:
            return await self._execute(call, toolset, spawned)

        result = await run_tool_loop(self.llm, messages, tools, execute, self.max_tool_loops)

        if result.exhausted:
            self.activity.warn("Tool loop limit reached.")
        if not result.text:
            self.activity.warn("No response received.")

        self.thread.append_turn(message, result.text)
        await self._persist(message, result.text, embedding, persona.agent_id)

        return TurnResult(
            text=result.text,
            rounds=result.rounds,
            tool_calls=result.tool_calls,
            exhausted=result.exhausted,
            memories=len(memories),
            spawned=spawned,
        )

    # ========== Steps ==========

    async def _recall(self, message: str) -> tuple[List[MemoryRecord], List[float]]:
        embedding: List[float] = []
        try:
            await self.memory.focus(message)
        except MeminiError as e:
            self.activity.warn(f"Memory focus failed: {e.user_message}")

        if self.memory_limit <= 0:
            return [], embedding
        try:
            embedding = await self.llm.embed(message)
            memories = await self.memory.reminisce(embedding, self.memory_limit, message)
        except MeminiError as e:
            self.activity.warn(f"Memory recall failed: {e.user_message}")
            return [], embedding
        return memories[: self.memory_limit], embedding

    def _build_messages(
        self,
        message: str,
        persona_prompt: str,
        memories: Sequence[MemoryRecord],
        require_tools: bool,
    ) -> List[BaseMessage]:
        now = self.clock().strftime("%Y-%m-%d %H:%M")
        messages: List[BaseMessage] = [
            SystemMessage(content=main_chat_system_prompt(persona_prompt, now, require_tools))
        ]
        if memories:
            context = "\n".join(record.render() for record in memories)
            messages.append(SystemMessage(content=f"Relevant memories:\n{context}"))
        messages.extend(self.thread.messages)
        messages.append(HumanMessage(content=message))
        return messages

    async def _execute(self, call: Dict[str, Any], toolset: RemoteToolset, spawned: List[int]) -> str:
        target = resolve_tool_target(call["name"])
        args = call.get("args") or {}
        if isinstance(target, BuiltinSpawn):
            return self._spawn(args, spawned)
        if isinstance(target, BuiltinCollect):
            return self._collect(args)
        if isinstance(target, Remote):
            output = await toolset.call(target.server_id, target.tool_name, args)
            self.activity.info(f"{call['name']} -> {truncate(output, 160)}")
            return output
        raise ProtocolError(f"Unknown tool: {call['name']}")

    def _spawn(self, args: Dict[str, Any], spawned: List[int]) -> str:
        prompt = str(args.get("prompt") or "").strip()
        if not prompt:
            raise ProtocolError("prompt is required")

        server_id = str(args.get("mcp_server") or "").strip()
        if server_id:
            if not self.mcp_manager.is_connected(server_id):
                raise ProtocolError(f"MCP server '{server_id}' is not connected")
            toolset = RemoteToolset.from_manager(self.mcp_manager, [server_id])
        else:
            toolset = RemoteToolset.from_manager(self.mcp_manager)

        persona = self.personas.active
        window = self.windows.spawn(
            prompt=prompt,
            label=args.get("label"),
            persona_name=persona.name,
            persona_prompt=persona.prompt,
            toolset=toolset,
            coordination_key=args.get("coordination_key"),
        )
        spawned.append(window.id)
        self.activity.info(f"Spawned {window.summary()}")
        payload = {"status": "spawned", "window_id": window.id, "label": window.label}
        if window.coordination_key:
            payload["coordination_key"] = window.coordination_key
        return json.dumps(payload, ensure_ascii=False)

    def _collect(self, args: Dict[str, Any]) -> str:
        key = str(args.get("coordination_key") or "").strip()
        if not key:
            raise ProtocolError("coordination_key is required")
        records = self.windows.coordination.collect(key)
        return json.dumps(
            {
                "coordination_key": key,
                "results": [record.to_dict() for record in records],
                "pending": self.windows.pending_for_key(key),
            },
            ensure_ascii=False,
        )

    async def _persist(self, message: str, text: str, embedding: List[float], agent_id: str) -> None:
        try:
            await self.memory.save_thread(agent_id, self.thread.messages)
        except MeminiError as e:
            self.activity.warn(f"Could not save conversation thread: {e.user_message}")
        try:
            await self.memory.commit_trace(message, text, "chat", embedding, agent_id)
        except MeminiError as e:
            self.activity.warn(f"Could not commit memory trace: {e.user_message}")
