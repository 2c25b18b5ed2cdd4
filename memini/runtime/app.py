"""Runtime assembly and the application state object.

MeminiApp owns every piece of shared state (windows, coordination records,
daemon results, credentials, the conversation thread). Background units only
put events on `updates`; drain_updates() applies them on the foreground.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

from langchain_core.messages import HumanMessage, SystemMessage

from memini.agents.coordination import CoordinationStore
from memini.agents.personas import ACTIVE_AGENT_VAR, CUSTOM_AGENTS_VAR, Persona, PersonaRegistry
from memini.agents.session import WindowStatus
from memini.agents.windows import AgentWindow, AgentWindowManager
from memini.auth.credentials import CredentialManager, LocalCredentialCache
from memini.auth.oauth import OAuthFlowController, PendingOAuth
from memini.chat.engine import ChatTurnEngine, TurnResult
from memini.chat.thread import ConversationThread
from memini.chat.tool_loop import run_tool_loop
from memini.config.settings import Settings, get_settings
from memini.daemon import recipes as recipe_files
from memini.daemon.recipes import AgentRecipe
from memini.daemon.scheduler import BackgroundScheduler
from memini.daemon.tasks import VARIABLE_UPDATE_EVENT, DaemonTaskDef, builtin_tasks
from memini.memory.store import SHARED_WORKSPACE_VAR, MemoryRecord, MemoryStore, create_memory_store
from memini.models.llm import LLMClient, OpenAIChatClient
from memini.prompts import daemon_system_prompt
from memini.tools.dispatch import Remote, RemoteToolset, Workspace, resolve_tool_target, split_namespaced_tool
from memini.tools.mcp.config import McpConfig, load_mcp_config
from memini.tools.mcp.manager import MCPServerManager
from memini.tools.workspace import WorkspaceTools
from memini.utils.error_handler import (
    ConfigurationError,
    MeminiError,
    OAuthTimeoutError,
    ProtocolError,
    StateError,
)
from memini.utils.logging_utils import ActivityLog, mask_key
from memini.utils.message_utils import truncate
from .events import (
    DaemonRunResult,
    OAuthFinished,
    UpdateEvent,
    WindowCompleted,
    WindowOutput,
    WindowStatusChanged,
)

LOGGER = logging.getLogger(__name__)

OPENAI_KEY_VAR = "openai_api_key"
ACTIVE_MCP_VAR = "active_mcp"


@dataclass(frozen=True)
class DaemonResultEntry:
    finished_at: datetime
    name: str
    ok: bool
    message: str


class MeminiApp:
    """Foreground application state and the operations the CLI invokes."""

    def __init__(
        self,
        settings: Settings,
        llm: LLMClient,
        memory: MemoryStore,
        mcp: MCPServerManager,
        credentials: CredentialManager,
        oauth: OAuthFlowController,
        activity: Optional[ActivityLog] = None,
    ):
        self.settings = settings
        self.llm = llm
        self.memory = memory
        self.mcp = mcp
        self.credentials = credentials
        self.oauth = oauth
        self.activity = activity or ActivityLog(settings.governance.max_logs)
        self.updates: asyncio.Queue[UpdateEvent] = asyncio.Queue()

        governance = settings.governance
        self.personas = PersonaRegistry()
        self.thread = ConversationThread(governance.max_thread_messages)
        self.coordination = CoordinationStore()
        self.workspace_tools = WorkspaceTools(settings.paths.workspace_path)
        self.windows = AgentWindowManager(
            llm=llm,
            updates=self.updates,
            coordination=self.coordination,
            max_tool_loops=governance.max_tool_loops,
            workspace=self.workspace_tools,
        )
        self.scheduler = BackgroundScheduler(self.run_daemon, self.updates, builtin_tasks())
        self.engine = ChatTurnEngine(
            llm=llm,
            memory=memory,
            mcp_manager=mcp,
            windows=self.windows,
            personas=self.personas,
            activity=self.activity,
            thread=self.thread,
            memory_limit=settings.memory.memory_limit,
            max_tool_loops=governance.max_tool_loops,
        )
        self.recipes: Dict[str, AgentRecipe] = {}
        self.recipe_errors: List[str] = []
        self.daemon_results: Deque[DaemonResultEntry] = deque(maxlen=governance.max_daemon_results)
        self._oauth_task: Optional[asyncio.Task] = None

    @property
    def agents_dir(self) -> Path:
        return self.settings.paths.agents_dir

    # ========== Startup / shutdown ==========

    async def bootstrap(self) -> None:
        """Restore persisted state. Every step is best effort."""
        await self._restore_openai_key()
        await self._restore_workspace()
        await self._restore_personas()
        await self._restore_thread()
        self.reload_recipes()
        started = self.autostart_recipes()
        if started:
            self.activity.info(f"Autostarted daemons: {', '.join(started)}")
        await self._restore_active_mcp()

    async def _remote_get(self, name: str) -> Optional[Any]:
        try:
            return await self.memory.get_variable(name)
        except MeminiError as e:
            self.activity.warn(f"Memory store unavailable ({name}): {e.user_message}")
            return None

    async def _restore_openai_key(self) -> None:
        if self.llm.ready or not isinstance(self.llm, OpenAIChatClient):
            return
        value = await self._remote_get(OPENAI_KEY_VAR)
        if isinstance(value, str) and value:
            self.llm.set_api_key(value)
            self.activity.info(f"Loaded OpenAI key from memory store ({mask_key(value)})")

    async def _restore_workspace(self) -> None:
        value = await self._remote_get(SHARED_WORKSPACE_VAR)
        if isinstance(value, str) and value:
            self.memory.join_workspace(value)
            self.activity.info(f"Shared workspace: {value}")

    async def _restore_personas(self) -> None:
        raw = await self._remote_get(CUSTOM_AGENTS_VAR)
        active = await self._remote_get(ACTIVE_AGENT_VAR)
        self.personas.load_custom(raw, active if isinstance(active, str) else None)

    async def _restore_thread(self) -> None:
        try:
            messages = await self.memory.load_thread(self.personas.active.agent_id)
        except MeminiError as e:
            self.activity.warn(f"Could not load conversation thread: {e.user_message}")
            return
        if messages:
            self.thread.replace(messages)
            self.activity.info(f"Restored {self.thread.turns} conversation turn(s).")

    async def _restore_active_mcp(self) -> None:
        server_id = await self._remote_get(ACTIVE_MCP_VAR)
        if not isinstance(server_id, str) or not server_id or self.mcp.config.get(server_id) is None:
            return
        try:
            await self.connect_server(server_id, remember=False)
        except MeminiError as e:
            self.activity.warn(f"Could not reconnect {server_id}: {e.user_message}")

    async def shutdown(self) -> None:
        if self._oauth_task and not self._oauth_task.done():
            self._oauth_task.cancel()
            await asyncio.gather(self._oauth_task, return_exceptions=True)
        await self.windows.shutdown()
        await self.scheduler.shutdown()
        await self.mcp.shutdown()
        await self.oauth.close()
        await self.memory.close()

    # ========== Update channel ==========

    async def drain_updates(self) -> int:
        """Apply every queued event. Returns how many were applied."""
        applied = 0
        while True:
            try:
                event = self.updates.get_nowait()
            except asyncio.QueueEmpty:
                return applied
            await self.apply_update(event)
            applied += 1

    async def apply_update(self, event: UpdateEvent) -> None:
        if isinstance(event, (WindowOutput, WindowStatusChanged, WindowCompleted)):
            window = self.windows.apply_event(event)
            if window is not None:
                self._log_window_event(window, event)
        elif isinstance(event, DaemonRunResult):
            self.daemon_results.append(
                DaemonResultEntry(event.finished_at, event.task_name, event.ok, event.message)
            )
            if event.ok:
                self.activity.info(f"[daemon {event.task_name}] {truncate(event.message, 400)}")
            else:
                self.activity.warn(f"[daemon {event.task_name}] run failed: {event.message}")
        elif isinstance(event, OAuthFinished):
            await self._finish_oauth(event)

    def _log_window_event(self, window: AgentWindow, event: UpdateEvent) -> None:
        prefix = f"[#{window.id} {window.label}]"
        if isinstance(event, WindowOutput):
            self.activity.info(f"{prefix} {truncate(event.text, 400)}")
        elif isinstance(event, WindowStatusChanged) and window.status == WindowStatus.WAITING_FOR_INPUT:
            self.activity.warn(
                f"{prefix} needs input: {window.pending_question} (reply with /reply {window.id} <message>)"
            )
        elif isinstance(event, WindowCompleted):
            if event.error:
                self.activity.error(f"{prefix} failed: {event.error}")
            else:
                self.activity.info(f"{prefix} done.")

    # ========== Chat ==========

    async def chat(self, message: str, require_tools: bool = False) -> TurnResult:
        if not self.llm.ready:
            raise ConfigurationError(
                "OpenAI API key missing",
                "OpenAI API key missing. Use /key <key> or set OPENAI_API_KEY.",
            )
        self.activity.user(message)
        result = await self.engine.run_turn(message, require_tools=require_tools)
        if result.text:
            self.activity.assistant(result.text)
        return result

    async def recall(self, query: str) -> List[MemoryRecord]:
        embedding = await self.llm.embed(query)
        return await self.memory.reminisce(embedding, self.settings.memory.memory_limit, query)

    # ========== Agent windows ==========

    def spawn_window(
        self,
        prompt: str,
        label: Optional[str] = None,
        server_id: Optional[str] = None,
        coordination_key: Optional[str] = None,
    ) -> AgentWindow:
        if server_id and not self.mcp.is_connected(server_id):
            raise StateError(f"MCP server '{server_id}' is not connected.")
        toolset = RemoteToolset.from_manager(self.mcp, [server_id] if server_id else None)
        persona = self.personas.active
        return self.windows.spawn(
            prompt=prompt,
            label=label,
            persona_name=persona.name,
            persona_prompt=persona.prompt,
            toolset=toolset,
            coordination_key=coordination_key,
        )

    def reply(self, target: str, message: str) -> AgentWindow:
        window = self.windows.reply(target, message)
        self.activity.info(f"Replied to #{window.id} {window.label}.")
        return window

    # ========== Daemons ==========

    async def run_daemon(self, definition: DaemonTaskDef) -> str:
        """Scheduler runner: one pass of a task through the shared tool loop."""
        toolset = RemoteToolset.from_manager(self.mcp).filtered(definition.tools)
        local_tools = self.workspace_tools.filtered(definition.tools)
        now = datetime.now().strftime("%Y-%m-%d %H:%M")
        has_tools = len(toolset) + len(local_tools) > 0
        messages = [
            SystemMessage(content=daemon_system_prompt(definition.persona, now, has_tools)),
            HumanMessage(content=definition.prompt),
        ]

        async def execute(call: Dict[str, Any]) -> str:
            target = resolve_tool_target(call["name"], allow_builtins=False, allow_workspace=True)
            if isinstance(target, Remote):
                return await toolset.call(target.server_id, target.tool_name, call["args"])
            if isinstance(target, Workspace):
                return await local_tools.call(target.tool_name, call["args"])
            raise ProtocolError(f"Unknown tool: {call['name']}")

        result = await run_tool_loop(
            self.llm, messages, toolset.schemas() + local_tools.schemas(), execute,
            self.settings.governance.max_tool_loops,
        )
        try:
            await self.memory.commit_trace(
                definition.prompt, result.text, f"daemon:{definition.name}", [], definition.name
            )
        except MeminiError as e:
            LOGGER.warning(f"Daemon {definition.name} trace not committed: {e}")
        return result.text

    def reload_recipes(self) -> List[AgentRecipe]:
        recipes, errors = recipe_files.load_recipes(
            self.agents_dir, self.settings.governance.agent_interval_secs
        )
        self.recipes = {recipe.name.lower(): recipe for recipe in recipes}
        self.recipe_errors = errors
        for error in errors:
            self.activity.warn(f"Recipe skipped: {error}")
        return recipes

    def autostart_recipes(self) -> List[str]:
        started = []
        for recipe in self.recipes.values():
            if not recipe.auto_start:
                continue
            if self.scheduler.is_builtin(recipe.name):
                self.activity.warn(f"Recipe '{recipe.name}' conflicts with a built-in daemon; not started.")
                continue
            if self.scheduler.is_running(recipe.name):
                continue
            self.scheduler.start(recipe.to_task_def())
            started.append(recipe.name)
        return started

    def daemon_definition(self, name: str) -> DaemonTaskDef:
        builtin = self.scheduler.builtin(name)
        if builtin is not None:
            return builtin
        recipe = self.recipes.get(name.lower())
        if recipe is not None:
            return recipe.to_task_def()
        raise StateError(f"Unknown daemon: {name}", f"Unknown daemon '{name}'. Use /daemon list.")

    def start_daemon(self, name: str) -> DaemonTaskDef:
        definition = self.daemon_definition(name)
        self.scheduler.start(definition)
        return definition

    def stop_daemon(self, name: str) -> bool:
        return self.scheduler.stop(name)

    def run_daemon_now(self, name: str) -> str:
        if self.scheduler.is_running(name):
            return self.scheduler.run_now(name)
        return self.scheduler.run_now(name, self.daemon_definition(name))

    def remove_daemon(self, name: str) -> Optional[Path]:
        """Stop a recipe daemon and delete its file.

        A task still running without a recipe (its file was deleted and the
        recipes reloaded) is only stopped; None is returned in that case.

        Raises:
            StateError: built-in or unknown daemon
        """
        if self.scheduler.is_builtin(name):
            raise StateError(
                f"Built-in daemon '{name}' cannot be deleted.",
                f"Built-ins cannot be deleted. Use /daemon stop {name} instead.",
            )
        recipe = self.recipes.get(name.lower())
        if recipe is None and not self.scheduler.is_running(name):
            raise StateError(f"Unknown daemon: {name}", f"Unknown daemon '{name}'. Use /daemon list.")

        path = recipe.path if recipe is not None else None
        self.scheduler.remove(name)
        self.recipes.pop(name.lower(), None)
        if path is not None and path.exists():
            path.unlink()
            LOGGER.info(f"Removed recipe {path}")
        return path

    def create_daemon(self, name: str, interval_secs: int, instructions: str) -> AgentRecipe:
        recipe = recipe_files.create_recipe(self.agents_dir, name, interval_secs, instructions)
        if self.scheduler.is_builtin(recipe.name):
            recipe_files.remove_recipe(self.agents_dir, recipe.name)
            raise ConfigurationError(f"'{recipe.name}' is a built-in daemon name.")
        self.recipes[recipe.name.lower()] = recipe
        self.scheduler.start(recipe.to_task_def())
        return recipe

    def scaffold_daemon(self, template_id: str, name: Optional[str] = None) -> AgentRecipe:
        recipe = recipe_files.scaffold_recipe(self.agents_dir, template_id, name)
        self.recipes[recipe.name.lower()] = recipe
        return recipe

    def recent_daemon_results(self, name: Optional[str] = None, limit: int = 10) -> List[DaemonResultEntry]:
        entries = [e for e in self.daemon_results if name is None or e.name.lower() == name.lower()]
        return entries[-limit:]

    # ========== Variables ==========

    async def set_variable(self, name: str, value: Any) -> List[str]:
        """Write a memory variable and publish a VariableUpdate trigger event."""
        await self.memory.set_variable(name, value, source="user")
        return self.scheduler.publish_event(VARIABLE_UPDATE_EVENT, name)

    # ========== MCP ==========

    async def connect_server(self, server_id: str, remember: bool = True) -> int:
        server = self.mcp.get_server_config(server_id)
        token = None
        if server.auth.type != "none":
            token, source = await self.credentials.resolve_token(server)
            if token:
                LOGGER.info(f"Using bearer token for {server_id} from {source}")
            elif server.uses_oauth:
                self.activity.warn(f"No bearer token found. Run /mcp auth {server_id} for OAuth.")
        await self.mcp.connect(server_id, bearer_token=token)
        if remember:
            try:
                await self.memory.set_variable(ACTIVE_MCP_VAR, server_id)
            except MeminiError as e:
                self.activity.warn(f"Could not remember active server: {e.user_message}")
        return len(self.mcp.cached_tools(server_id))

    async def disconnect_server(self, server_id: str) -> bool:
        return await self.mcp.disconnect(server_id)

    async def call_tool(self, name: str, raw_args: str) -> str:
        """Call a tool given as server/tool, server.tool or mcp__server__tool with JSON args."""
        server_id, tool_name = self._split_tool_ref(name)
        try:
            args = json.loads(raw_args) if raw_args.strip() else {}
        except ValueError as e:
            raise ProtocolError(f"Arguments must be a JSON object: {e}")
        if not isinstance(args, dict):
            raise ProtocolError("Arguments must be a JSON object")
        return await self.mcp.call_tool(server_id, tool_name, args)

    def _split_tool_ref(self, name: str) -> tuple[str, str]:
        parts = split_namespaced_tool(name)
        if parts:
            return parts
        for separator in ("/", "."):
            if separator in name:
                server_id, _, tool_name = name.partition(separator)
                return server_id, tool_name
        connected = self.mcp.list_connected_servers()
        if len(connected) == 1:
            return connected[0], name
        raise ProtocolError(f"Ambiguous tool '{name}'; use <server>/<tool>.")

    def reload_mcp_config(self) -> McpConfig:
        path = self.settings.paths.mcp_config_path
        config = load_mcp_config(path) if path.exists() else McpConfig()
        stale = self.mcp.reload(config)
        for server_id in stale:
            self.activity.warn(f"{server_id} is no longer configured; disconnect it with /mcp disconnect {server_id}.")
        return config

    async def start_oauth(self, server_id: str) -> PendingOAuth:
        """Prepare the flow, open the browser and wait for the callback in the background."""
        server = self.mcp.get_server_config(server_id)
        if not server.uses_oauth:
            raise ConfigurationError(
                f"{server_id} is not an oauth_browser server",
                f"'{server_id}' does not use browser OAuth. Use /mcp token {server_id} <token>.",
            )
        if self._oauth_task and not self._oauth_task.done():
            self._oauth_task.cancel()
            await asyncio.gather(self._oauth_task, return_exceptions=True)

        client_id, source = await self.credentials.resolve_client_id(server)
        if client_id:
            LOGGER.info(f"OAuth client id for {server_id} from {source}")
        pending = await self.oauth.prepare(server, client_id, self.credentials.resolve_client_secret(server))
        opened = self.oauth.open_browser()
        self.activity.info(
            f"{'Opened browser' if opened else 'Open this URL'} to authorize {server_id}: {pending.authorization_url}"
        )
        self._oauth_task = asyncio.create_task(self._await_oauth(server_id), name=f"oauth-{server_id}")
        return pending

    async def _await_oauth(self, server_id: str) -> None:
        try:
            token = await self.oauth.await_and_exchange()
        except OAuthTimeoutError as e:
            await self.updates.put(OAuthFinished(server_id, False, e.user_message, timed_out=True))
            return
        except MeminiError as e:
            await self.updates.put(OAuthFinished(server_id, False, e.user_message))
            return
        await self.updates.put(OAuthFinished(server_id, True, "Authorization complete.", token=token))

    async def _finish_oauth(self, event: OAuthFinished) -> None:
        if not event.ok:
            if event.timed_out:
                self.activity.warn(event.message)
            else:
                self.activity.error(f"OAuth for {event.server_id} failed: {event.message}")
            return
        for warning in await self.credentials.store_token(event.server_id, event.token):
            self.activity.warn(warning)
        self.activity.info(f"Stored OAuth token for {event.server_id}. Run /mcp connect {event.server_id}.")

    async def complete_oauth_manual(self, server_id: str, raw_input: str) -> None:
        if self._oauth_task and not self._oauth_task.done():
            self._oauth_task.cancel()
            await asyncio.gather(self._oauth_task, return_exceptions=True)
        token = await self.oauth.complete_manual(server_id, raw_input)
        await self._finish_oauth(OAuthFinished(server_id, True, "Authorization complete.", token=token))

    async def set_server_token(self, server_id: str, token: str) -> None:
        self.mcp.get_server_config(server_id)
        if not token.strip():
            raise ProtocolError("Token is empty.")
        for warning in await self.credentials.store_manual_token(server_id, token):
            self.activity.warn(warning)
        self.activity.info(f"Stored token for {server_id} ({mask_key(token.strip())}).")

    async def clear_server_token(self, server_id: str) -> None:
        for warning in await self.credentials.clear_token(server_id):
            self.activity.warn(warning)
        self.activity.info(f"Cleared token for {server_id}.")

    # ========== Personas ==========

    async def use_persona(self, name: str) -> Persona:
        persona = self.personas.use(name)
        self.thread.clear()
        try:
            await self.memory.clear_thread(persona.agent_id)
            await self.memory.set_variable(ACTIVE_AGENT_VAR, persona.name)
        except MeminiError as e:
            self.activity.warn(f"Could not persist persona switch: {e.user_message}")
        return persona

    async def create_persona(self, name: str, description: str) -> Persona:
        persona = self.personas.create(name, description)
        await self._save_personas()
        return persona

    async def delete_persona(self, name: str) -> Persona:
        was_active = self.personas.active.name == name.strip().lower()
        persona = self.personas.delete(name)
        if was_active:
            self.thread.clear()
        await self._save_personas()
        return persona

    async def _save_personas(self) -> None:
        try:
            await self.memory.set_variable(CUSTOM_AGENTS_VAR, self.personas.dump_custom())
            await self.memory.set_variable(ACTIVE_AGENT_VAR, self.personas.active.name)
        except MeminiError as e:
            self.activity.warn(f"Could not persist personas: {e.user_message}")

    # ========== Shared workspace ==========

    async def join_workspace(self, name: str) -> int:
        name = name.strip()
        if not name:
            raise ProtocolError("Workspace name is required.")
        try:
            await self.memory.set_variable(SHARED_WORKSPACE_VAR, name)
        except MeminiError as e:
            self.activity.warn(f"Could not persist workspace choice: {e.user_message}")
        self.thread.clear()
        self.memory.join_workspace(name)
        try:
            messages = await self.memory.load_thread(self.personas.active.agent_id)
        except MeminiError:
            messages = []
        if messages:
            self.thread.replace(messages)
        return self.thread.turns

    async def leave_workspace(self) -> Optional[str]:
        previous = self.memory.leave_workspace()
        if previous is None:
            return None
        self.thread.clear()
        try:
            await self.memory.delete_variable(SHARED_WORKSPACE_VAR)
        except MeminiError as e:
            self.activity.warn(f"Could not persist workspace choice: {e.user_message}")
        return previous

    # ========== OpenAI key ==========

    async def set_openai_key(self, key: str) -> None:
        key = key.strip()
        if not key:
            raise ProtocolError("Key is empty.")
        if not isinstance(self.llm, OpenAIChatClient):
            raise StateError("The active model client does not take an API key.")
        self.llm.set_api_key(key)
        try:
            await self.memory.set_variable(OPENAI_KEY_VAR, key, source="user")
        except MeminiError as e:
            self.activity.warn(f"Key set for this session only: {e.user_message}")
        self.activity.info(f"OpenAI key set ({mask_key(key)}).")

    async def clear_openai_key(self) -> None:
        if isinstance(self.llm, OpenAIChatClient):
            self.llm.set_api_key(None)
        try:
            await self.memory.delete_variable(OPENAI_KEY_VAR)
        except MeminiError as e:
            self.activity.warn(f"Could not delete stored key: {e.user_message}")
        self.activity.info("OpenAI key cleared.")

    async def import_openai_env(self) -> None:
        key = os.environ.get("OPENAI_API_KEY", "").strip()
        if not key:
            raise ConfigurationError("OPENAI_API_KEY is not set in the environment.")
        await self.set_openai_key(key)


def build_application(
    settings: Optional[Settings] = None,
    llm: Optional[LLMClient] = None,
    memory: Optional[MemoryStore] = None,
    mcp_config: Optional[McpConfig] = None,
    oauth: Optional[OAuthFlowController] = None,
    activity: Optional[ActivityLog] = None,
) -> MeminiApp:
    """Assemble a MeminiApp from settings, with injectable collaborators."""
    settings = settings or get_settings()

    if mcp_config is None:
        path = settings.paths.mcp_config_path
        if path.exists():
            mcp_config = load_mcp_config(path)
        else:
            LOGGER.info(f"No MCP config at {path}; starting without tool servers")
            mcp_config = McpConfig()

    llm = llm or OpenAIChatClient(settings.openai)
    memory = memory or create_memory_store(settings.memory)
    mcp = MCPServerManager(mcp_config, startup_timeout=settings.governance.mcp_startup_timeout)
    cache = LocalCredentialCache(settings.paths.credentials_file).load()
    credentials = CredentialManager(cache, memory)
    oauth = oauth or OAuthFlowController(timeout_secs=settings.governance.oauth_timeout_secs)

    return MeminiApp(
        settings=settings,
        llm=llm,
        memory=memory,
        mcp=mcp,
        credentials=credentials,
        oauth=oauth,
        activity=activity,
    )
