"""Worker agent session: one spawned window's conversation, run as an asyncio task.

State machine:

    THINKING --(final answer)--------------------> DONE
    THINKING --(answer ends with [NEEDS_INPUT])--> WAITING_FOR_INPUT
    WAITING_FOR_INPUT --(reply delivered)--------> THINKING

The session owns a private thread and reports only through events on the
update channel. Replies arrive through its inbox queue.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from memini.chat.tool_loop import run_tool_loop
from memini.models.llm import LLMClient
from memini.prompts import split_needs_input, worker_system_prompt
from memini.runtime.events import WindowCompleted, WindowOutput, WindowStatusChanged
from memini.tools.dispatch import Remote, RemoteToolset, Workspace, resolve_tool_target
from memini.tools.workspace import WorkspaceTools
from memini.utils.error_handler import MeminiError, ProtocolError, StateError

LOGGER = logging.getLogger(__name__)


class WindowStatus(str, Enum):
    THINKING = "thinking"
    WAITING_FOR_INPUT = "waiting"
    DONE = "done"


class AgentSession:
    """Runs a worker's tool loop until it answers, pausing for replies as needed."""

    def __init__(
        self,
        window_id: int,
        prompt: str,
        persona_prompt: str,
        toolset: RemoteToolset,
        llm: LLMClient,
        updates: asyncio.Queue,
        max_tool_loops: int = 6,
        clock: Callable[[], datetime] = datetime.now,
        workspace: Optional[WorkspaceTools] = None,
    ):
        self.window_id = window_id
        self.prompt = prompt
        self.persona_prompt = persona_prompt
        self.toolset = toolset
        self.llm = llm
        self.updates = updates
        self.max_tool_loops = max_tool_loops
        self.clock = clock
        self.workspace = workspace if workspace is not None else WorkspaceTools(names=())
        self.state = WindowStatus.THINKING
        self._inbox: asyncio.Queue[str] = asyncio.Queue()
        self._messages: List[BaseMessage] = []

    @property
    def messages(self) -> List[BaseMessage]:
        return list(self._messages)

    def deliver(self, reply: str) -> None:
        """Hand a user reply to a session waiting for input."""
        if self.state != WindowStatus.WAITING_FOR_INPUT:
            raise StateError(f"Agent #{self.window_id} is not waiting for input.")
        self.state = WindowStatus.THINKING
        self._inbox.put_nowait(reply)

    async def _execute(self, call: Dict[str, Any]) -> str:
        target = resolve_tool_target(call["name"], allow_builtins=False, allow_workspace=True)
        if isinstance(target, Remote):
            return await self.toolset.call(target.server_id, target.tool_name, call["args"])
        if isinstance(target, Workspace):
            return await self.workspace.call(target.tool_name, call["args"])
        raise ProtocolError(f"Unknown tool: {call['name']}")

    async def run(self) -> None:
        now = self.clock().strftime("%Y-%m-%d %H:%M")
        has_tools = len(self.toolset) + len(self.workspace) > 0
        self._messages = [
            SystemMessage(content=worker_system_prompt(self.persona_prompt, now, has_tools)),
            HumanMessage(content=self.prompt),
        ]
        schemas = self.toolset.schemas() + self.workspace.schemas()

        try:
            while True:
                result = await run_tool_loop(
                    self.llm, self._messages, schemas, self._execute, self.max_tool_loops
                )
                self._messages.extend(result.messages)
                body, question = split_needs_input(result.text)

                if body:
                    await self.updates.put(WindowOutput(self.window_id, body))
                if result.exhausted:
                    await self.updates.put(WindowOutput(self.window_id, "Tool loop limit reached."))

                if question:
                    self.state = WindowStatus.WAITING_FOR_INPUT
                    await self.updates.put(WindowStatusChanged(
                        self.window_id, WindowStatus.WAITING_FOR_INPUT.value, question
                    ))
                    reply = await self._inbox.get()
                    self._messages.append(HumanMessage(content=reply))
                    continue

                self.state = WindowStatus.DONE
                await self.updates.put(WindowCompleted(self.window_id, body or "No response received."))
                return
        except asyncio.CancelledError:
            self.state = WindowStatus.DONE
            raise
        except MeminiError as e:
            LOGGER.warning(f"Agent #{self.window_id} failed: {e}")
            self.state = WindowStatus.DONE
            await self.updates.put(WindowCompleted(self.window_id, "", error=e.user_message))
        except Exception as e:
            LOGGER.exception(f"Agent #{self.window_id} crashed", exc_info=e)
            self.state = WindowStatus.DONE
            await self.updates.put(WindowCompleted(self.window_id, "", error=str(e)))
