"""Agent window manager: spawned worker sessions and their visible state."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from memini.models.llm import LLMClient
from memini.runtime.events import UpdateEvent, WindowCompleted, WindowOutput, WindowStatusChanged
from memini.tools.dispatch import RemoteToolset
from memini.tools.workspace import WorkspaceTools
from memini.utils.error_handler import ProtocolError, StateError
from .coordination import CoordinationRecord, CoordinationStore
from .session import AgentSession, WindowStatus

LOGGER = logging.getLogger(__name__)


@dataclass
class AgentWindow:
    id: int
    label: str
    prompt: str
    persona_name: str
    tool_servers: List[str] = field(default_factory=list)
    coordination_key: Optional[str] = None
    status: WindowStatus = WindowStatus.THINKING
    output_lines: List[str] = field(default_factory=list)
    pending_question: Optional[str] = None
    result: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def is_done(self) -> bool:
        return self.status == WindowStatus.DONE

    def summary(self) -> str:
        extra = f" key={self.coordination_key}" if self.coordination_key else ""
        return f"#{self.id} {self.label} [{self.status.value}]{extra}"


class AgentWindowManager:
    """
    Owns every spawned window.

    - Ids increase monotonically and are never reused, even after removal
    - Windows are only mutated here, from command handlers or when the
      foreground applies drained events
    - Finished windows stay listed until removed
    """

    def __init__(
        self,
        llm: LLMClient,
        updates: asyncio.Queue,
        coordination: CoordinationStore,
        max_tool_loops: int = 6,
        workspace: Optional[WorkspaceTools] = None,
    ):
        self.llm = llm
        self.updates = updates
        self.coordination = coordination
        self.max_tool_loops = max_tool_loops
        self.workspace = workspace
        self._next_id = 1
        self._windows: Dict[int, AgentWindow] = {}
        self._sessions: Dict[int, AgentSession] = {}
        self._tasks: Dict[int, asyncio.Task] = {}

    # ========== Lifecycle ==========

    def spawn(
        self,
        prompt: str,
        label: Optional[str] = None,
        persona_name: str = "memini",
        persona_prompt: str = "",
        toolset: Optional[RemoteToolset] = None,
        coordination_key: Optional[str] = None,
    ) -> AgentWindow:
        """Create a THINKING window and start its session task. Returns immediately."""
        prompt = (prompt or "").strip()
        if not prompt:
            raise ProtocolError("prompt is required")
        toolset = toolset if toolset is not None else RemoteToolset()

        window_id = self._next_id
        self._next_id += 1
        window = AgentWindow(
            id=window_id,
            label=(label or "").strip() or f"Agent #{window_id}",
            prompt=prompt,
            persona_name=persona_name,
            tool_servers=toolset.server_ids,
            coordination_key=(coordination_key or "").strip() or None,
        )
        session = AgentSession(
            window_id=window_id,
            prompt=prompt,
            persona_prompt=persona_prompt,
            toolset=toolset,
            llm=self.llm,
            updates=self.updates,
            max_tool_loops=self.max_tool_loops,
            workspace=self.workspace,
        )
        self._windows[window_id] = window
        self._sessions[window_id] = session
        self._tasks[window_id] = asyncio.create_task(session.run(), name=f"agent-window-{window_id}")
        LOGGER.info(f"Spawned agent #{window_id} '{window.label}' tools={window.tool_servers}")
        return window

    def remove(self, window_id: int) -> AgentWindow:
        window = self.get(window_id)
        task = self._tasks.pop(window_id, None)
        if task and not task.done():
            task.cancel()
        self._sessions.pop(window_id, None)
        del self._windows[window_id]
        return window

    async def shutdown(self) -> None:
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ========== Events ==========

    def apply_event(self, event: UpdateEvent) -> Optional[AgentWindow]:
        """Apply a session event; events for removed windows are dropped."""
        window = self._windows.get(getattr(event, "window_id", None))
        if window is None:
            return None

        if isinstance(event, WindowOutput):
            window.output_lines.append(event.text)
        elif isinstance(event, WindowStatusChanged):
            window.status = WindowStatus(event.status)
            window.pending_question = event.question if window.status == WindowStatus.WAITING_FOR_INPUT else None
        elif isinstance(event, WindowCompleted):
            window.status = WindowStatus.DONE
            window.pending_question = None
            window.result = event.result
            window.error = event.error
            if event.error:
                window.output_lines.append(f"Error: {event.error}")
            if window.coordination_key:
                result = event.result if not event.error else f"[error] {event.error}"
                self.coordination.append(
                    window.coordination_key,
                    CoordinationRecord(window_id=window.id, label=window.label, result=result),
                )
        else:
            return None
        return window

    # ========== Replies ==========

    def resolve_target(self, target: str) -> AgentWindow:
        target = target.strip()
        if target.lower() == "next":
            waiting = self.waiting()
            if not waiting:
                raise StateError("No agents are waiting for input.")
            return waiting[0]
        try:
            window_id = int(target.lstrip("#"))
        except ValueError:
            raise StateError(f"Invalid agent id: {target}")
        return self.get(window_id)

    def reply(self, target: str, message: str) -> AgentWindow:
        """Route a user reply to a waiting window ('next' = lowest waiting id)."""
        window = self.resolve_target(target)
        if window.status != WindowStatus.WAITING_FOR_INPUT:
            raise StateError(f"Agent #{window.id} is not waiting for input.")
        message = message.strip()
        if not message:
            raise StateError("Reply message is empty.")
        self._sessions[window.id].deliver(message)
        window.pending_question = None
        window.status = WindowStatus.THINKING
        window.output_lines.append(f"> {message}")
        return window

    # ========== Queries ==========

    def get(self, window_id: int) -> AgentWindow:
        window = self._windows.get(window_id)
        if window is None:
            raise StateError(f"No agent window #{window_id}.")
        return window

    def windows(self) -> List[AgentWindow]:
        return list(self._windows.values())

    def waiting(self) -> List[AgentWindow]:
        return sorted(
            (w for w in self._windows.values() if w.status == WindowStatus.WAITING_FOR_INPUT),
            key=lambda w: w.id,
        )

    def pending_for_key(self, key: str) -> List[int]:
        return [w.id for w in self._windows.values() if w.coordination_key == key and not w.is_done]

    def __len__(self) -> int:
        return len(self._windows)
