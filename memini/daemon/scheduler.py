"""Background task scheduler.

Each running task is an asyncio task looping over: wait for the interval or a
wake signal, then run once. Runs report through DaemonRunResult events on the
update channel; a failing run never stops the loop and is not retried early.

Triggered tasks keep their interval: a trigger adds an extra wake, it does not
replace the periodic run.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from memini.runtime.events import DaemonRunResult
from memini.utils.error_handler import ConfigurationError, MeminiError, StateError
from .tasks import DaemonTaskDef

LOGGER = logging.getLogger(__name__)

DaemonRunner = Callable[[DaemonTaskDef], Awaitable[str]]


@dataclass
class DaemonHandle:
    definition: DaemonTaskDef
    task: asyncio.Task
    wake: asyncio.Event

    @property
    def running(self) -> bool:
        return not self.task.done()


class BackgroundScheduler:
    def __init__(
        self,
        runner: DaemonRunner,
        updates: asyncio.Queue,
        builtins: Iterable[DaemonTaskDef] = (),
    ):
        self._runner = runner
        self.updates = updates
        self._builtins: Dict[str, DaemonTaskDef] = {d.key: d for d in builtins}
        self._handles: Dict[str, DaemonHandle] = {}
        self._oneshots: Set[asyncio.Task] = set()

    # ========== Queries ==========

    def builtin(self, name: str) -> Optional[DaemonTaskDef]:
        return self._builtins.get(name.lower())

    def builtins(self) -> List[DaemonTaskDef]:
        return list(self._builtins.values())

    def is_builtin(self, name: str) -> bool:
        return name.lower() in self._builtins

    def is_running(self, name: str) -> bool:
        handle = self._handles.get(name.lower())
        return handle is not None and handle.running

    def handle(self, name: str) -> Optional[DaemonHandle]:
        return self._handles.get(name.lower())

    def running(self) -> List[DaemonTaskDef]:
        return [h.definition for h in self._handles.values() if h.running]

    # ========== Lifecycle ==========

    def start(self, definition: DaemonTaskDef) -> DaemonHandle:
        """
        Start a task loop.

        Raises:
            ConfigurationError: name collides (case-insensitively) with a
                running task, or a non-builtin definition uses a builtin name
        """
        key = definition.key
        if self.is_running(key):
            raise ConfigurationError(f"Daemon '{definition.name}' is already running.")
        if not definition.builtin and key in self._builtins:
            raise ConfigurationError(
                f"Daemon '{definition.name}' conflicts with a built-in task.",
                f"'{definition.name}' is a built-in daemon name; rename the recipe.",
            )

        wake = asyncio.Event()
        task = asyncio.create_task(self._loop(definition, wake), name=f"daemon-{key}")
        handle = DaemonHandle(definition=definition, task=task, wake=wake)
        self._handles[key] = handle
        LOGGER.info(
            f"Daemon started: {definition.name} every {definition.interval_secs}s"
            + (f" trigger={definition.trigger_summary()}" if definition.has_trigger() else "")
        )
        return handle

    def stop(self, name: str) -> bool:
        """Cancel a running task. Returns False if it was not running."""
        handle = self._handles.pop(name.lower(), None)
        if handle is None:
            return False
        was_running = handle.running
        handle.task.cancel()
        LOGGER.info(f"Daemon stopped: {handle.definition.name}")
        return was_running

    def remove(self, name: str) -> bool:
        """Stop a recipe task before its definition is deleted.

        Raises:
            StateError: built-ins cannot be deleted, only stopped
        """
        if self.is_builtin(name):
            raise StateError(
                f"Built-in daemon '{name}' cannot be deleted.",
                f"Built-ins cannot be deleted. Use /daemon stop {name} instead.",
            )
        return self.stop(name)

    def run_now(self, name: str, definition: Optional[DaemonTaskDef] = None) -> str:
        """Wake a running task, or run the given definition once without registering it.

        Returns "woken" or "oneshot".
        """
        handle = self._handles.get(name.lower())
        if handle is not None and handle.running:
            handle.wake.set()
            return "woken"
        definition = definition or self.builtin(name)
        if definition is None:
            raise StateError(f"Unknown daemon: {name}")
        task = asyncio.create_task(self._run_once(definition), name=f"daemon-oneshot-{definition.key}")
        self._oneshots.add(task)
        task.add_done_callback(self._oneshots.discard)
        return "oneshot"

    def publish_event(self, event_type: str, variable_name: Optional[str] = None) -> List[str]:
        """Wake every running task whose trigger matches; returns their names."""
        woken = []
        for handle in self._handles.values():
            if handle.running and handle.definition.matches_trigger(event_type, variable_name):
                handle.wake.set()
                woken.append(handle.definition.name)
        if woken:
            LOGGER.info(f"Event {event_type}({variable_name}) woke: {', '.join(woken)}")
        return woken

    async def shutdown(self) -> None:
        tasks = [h.task for h in self._handles.values()] + list(self._oneshots)
        self._handles.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ========== Loop ==========

    async def _loop(self, definition: DaemonTaskDef, wake: asyncio.Event) -> None:
        while True:
            if definition.paused:
                await wake.wait()
            else:
                try:
                    await asyncio.wait_for(wake.wait(), timeout=definition.interval_secs)
                except asyncio.TimeoutError:
                    pass
            wake.clear()
            await self._run_once(definition)

    async def _run_once(self, definition: DaemonTaskDef) -> None:
        LOGGER.info(f"Daemon run: {definition.name}")
        try:
            output = await self._runner(definition)
        except asyncio.CancelledError:
            raise
        except MeminiError as e:
            LOGGER.warning(f"Daemon {definition.name} failed: {e}")
            await self.updates.put(DaemonRunResult(definition.name, False, e.user_message))
            return
        except Exception as e:
            LOGGER.exception(f"Daemon {definition.name} crashed", exc_info=e)
            await self.updates.put(DaemonRunResult(definition.name, False, str(e)))
            return
        await self.updates.put(DaemonRunResult(definition.name, True, output or "No response received."))
