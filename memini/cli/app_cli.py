"""Interactive terminal front end for MeminiApp."""

from __future__ import annotations

import asyncio
import logging
import shlex
from typing import Dict, List, Optional, Tuple

from memini.daemon.recipes import RECIPE_TEMPLATES
from memini.runtime.app import MeminiApp
from memini.utils.error_handler import ProtocolError, StateError, with_error_boundary
from memini.utils.logging_utils import LogLevel, mask_key
from memini.utils.message_utils import truncate
from .base_cli import BaseCLI, CommandHandler, read_line

LOGGER = logging.getLogger(__name__)


def _split_first(arg: Optional[str], lower: bool = True) -> Tuple[str, str]:
    """'sub rest of line' -> ('sub', 'rest of line')."""
    if not arg:
        return "", ""
    parts = arg.split(maxsplit=1)
    head = parts[0].lower() if lower else parts[0]
    return head, (parts[1].strip() if len(parts) > 1 else "")


def _is_window_ref(rest: str) -> bool:
    """True for an empty rest or a single word like `3`, `#3` or `abc`."""
    return len(rest.split()) <= 1


def _parse_spawn_args(raw: str) -> Tuple[str, Optional[str], Optional[str], Optional[str]]:
    """Parse `[--label L] [--mcp ID] [--key K] prompt...` into (prompt, label, server, key)."""
    try:
        tokens = shlex.split(raw)
    except ValueError:
        tokens = raw.split()
    options: Dict[str, Optional[str]] = {"--label": None, "--mcp": None, "--key": None}
    rest: List[str] = []
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if token in options and i + 1 < len(tokens) and not rest:
            options[token] = tokens[i + 1]
            i += 2
            continue
        rest.append(token)
        i += 1
    return " ".join(rest).strip(), options["--label"], options["--mcp"], options["--key"]


class MeminiCLI(BaseCLI):
    """Command surface over MeminiApp.

    A ticker task drains the update channel every poll interval and prints
    new activity lines; command handlers drain once more before returning so
    their output appears immediately.
    """

    COMMANDS: Dict[str, str] = {
        "/spawn [--mcp id] [--key k] <prompt>": "Start a background agent window",
        "/spawn list|show <id>|remove <id>": "List, inspect or remove agent windows",
        "/reply <id|next> <message>": "Answer an agent waiting for input",
        "/reply list": "Show pending agent questions",
        "/daemon [list|dir|reload|templates]": "Background tasks and recipes",
        "/daemon run|start|stop|remove <name>": "Control a background task",
        "/daemon scaffold <template> [name]": "Write a recipe from a template",
        "/daemon create <name> <secs> <text>": "Create and start a recipe",
        "/daemon results [name]": "Recent background results",
        "/mcp [list|status|reload]": "Tool servers",
        "/mcp connect|disconnect <id>": "Manage a tool server connection",
        "/mcp tools [id] [--refresh]": "List cached tools, or re-fetch them from the server",
        "/mcp call <server/tool> [json]": "Call a tool directly",
        "/mcp ask <message>": "Chat turn that requires tools",
        "/mcp auth <id>": "Browser OAuth for a server",
        "/mcp auth-code <id> <url-or-code>": "Finish OAuth by pasting the redirect",
        "/mcp token <id> <token> | token-clear <id>": "Set or clear a bearer token",
        "/agent [list|use|create|delete|info]": "Personas",
        "/share [join <name>|leave|status]": "Shared memory workspace",
        "/memory <query>": "Search long-term memory",
        "/var set <name> <value>": "Set a memory variable (fires triggers)",
        "/openai [set <key>|clear|import-env]": "Manage the OpenAI key",
        "/key <key>": "Set the OpenAI key",
        "/clear": "Clear the conversation thread",
    }

    def __init__(self, app: MeminiApp):
        self.app = app
        self._printed_seq = 0
        self._ticker: Optional[asyncio.Task] = None
        super().__init__()

    def _build_command_handlers(self) -> Dict[str, CommandHandler]:
        handlers = super()._build_command_handlers()
        handlers.update({
            "/spawn": self._handle_spawn,
            "/reply": self._handle_reply,
            "/daemon": self._handle_daemon,
            "/mcp": self._handle_mcp,
            "/agent": self._handle_agent,
            "/share": self._handle_share,
            "/memory": self._handle_memory,
            "/var": self._handle_var,
            "/openai": self._handle_openai,
            "/key": self._handle_key,
            "/clear": self._handle_clear,
        })
        return handlers

    @property
    def commands(self) -> Dict[str, str]:
        return {**self.COMMANDS, **self.BASE_COMMANDS}

    # ========== Output ==========

    def report(self, level: str, message: str) -> None:
        self.app.activity.push(level, message)

    async def flush(self) -> None:
        """Apply queued updates and print activity lines not yet shown."""
        await self.app.drain_updates()
        for line in self.app.activity.since(self._printed_seq):
            if line.level != LogLevel.USER:
                print(line.render())
            self._printed_seq = line.seq

    async def _tick(self) -> None:
        interval = self.app.settings.governance.poll_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                await self.flush()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                LOGGER.exception("Update drain failed", exc_info=e)

    # ========== Lifecycle ==========

    async def on_startup(self):
        await self.app.bootstrap()
        self._ticker = asyncio.create_task(self._tick(), name="memini-ticker")

    async def on_shutdown(self):
        if self._ticker:
            self._ticker.cancel()
            await asyncio.gather(self._ticker, return_exceptions=True)
        await self.app.shutdown()
        await super().on_shutdown()

    def print_welcome(self):
        persona = self.app.personas.active
        print("memini ready.")
        print(f"  persona: {persona.name}   memory: {self.app.memory.label}")
        configured = self.app.mcp.list_configured_servers()
        if configured:
            print(f"  tool servers: {', '.join(configured)}")
        if not self.app.llm.ready:
            print("  OpenAI key missing: use /key <key> or /openai import-env")
        print("Type /help for commands.\n")

    async def get_input(self) -> str:
        prompt = "You> "
        waiting = self.app.windows.waiting()
        if waiting:
            prompt = f"[{len(waiting)} waiting] You> "
        return await read_line(prompt)

    async def handle_command(self, cmd: str) -> bool:
        try:
            return await super().handle_command(cmd)
        finally:
            await self.flush()

    @with_error_boundary("chat")
    async def handle_user_message(self, message: str):
        await self.app.chat(message)
        await self.flush()
        return True

    # ========== /spawn and /reply ==========

    @with_error_boundary("/spawn")
    async def _handle_spawn(self, arg: Optional[str]) -> bool:
        sub, rest = _split_first(arg)
        # `/spawn list the open PRs` is a prompt, not a subcommand
        if sub == "" or (sub == "list" and not rest):
            windows = self.app.windows.windows()
            if not windows:
                print("No agent windows.")
            for window in windows:
                print(f"  {window.summary()}  {truncate(window.prompt, 60)}")
            return True
        if sub == "show" and _is_window_ref(rest):
            window = self.app.windows.get(self._parse_id(rest))
            print(f"{window.summary()}\n  prompt: {window.prompt}")
            for line in window.output_lines:
                print(f"  {line}")
            if window.pending_question:
                print(f"  ? {window.pending_question}")
            return True
        if sub == "remove" and _is_window_ref(rest):
            window = self.app.windows.remove(self._parse_id(rest))
            self.report("INFO", f"Removed agent #{window.id} {window.label}.")
            return True

        prompt, label, server_id, key = _parse_spawn_args(arg or "")
        window = self.app.spawn_window(prompt, label=label, server_id=server_id, coordination_key=key)
        self.report("INFO", f"Spawned {window.summary()}")
        return True

    @with_error_boundary("/reply")
    async def _handle_reply(self, arg: Optional[str]) -> bool:
        sub, rest = _split_first(arg)
        if sub in ("", "list"):
            waiting = self.app.windows.waiting()
            if not waiting:
                print("No agents are waiting for input.")
            for window in waiting:
                print(f"  #{window.id} {window.label}: {window.pending_question}")
            return True
        if not rest:
            raise ProtocolError("Usage: /reply <id|next> <message>")
        self.app.reply(sub, rest)
        return True

    def _parse_id(self, raw: str) -> int:
        try:
            return int(raw.strip().lstrip("#"))
        except ValueError:
            raise StateError(f"Invalid agent id: {raw}", "Invalid agent id")

    # ========== /daemon ==========

    @with_error_boundary("/daemon")
    async def _handle_daemon(self, arg: Optional[str]) -> bool:
        sub, rest = _split_first(arg)
        app = self.app
        if sub in ("", "list"):
            self._print_daemons()
        elif sub == "dir":
            print(f"Recipe directory: {app.agents_dir}")
        elif sub == "reload":
            recipes = app.reload_recipes()
            started = app.autostart_recipes()
            self.report("INFO", f"Loaded {len(recipes)} recipe(s); started: {', '.join(started) or 'none'}")
        elif sub == "templates":
            for template in RECIPE_TEMPLATES.values():
                print(f"  {template.id:<14} every {template.interval_secs}s  {template.description}")
        elif sub == "scaffold":
            template_id, name = _split_first(rest)
            if not template_id:
                raise ProtocolError("Usage: /daemon scaffold <template> [name]")
            recipe = app.scaffold_daemon(template_id, name or None)
            self.report("INFO", f"Wrote {recipe.path}. Start it with /daemon start {recipe.name}")
        elif sub == "create":
            self._create_daemon(rest)
        elif sub == "run":
            outcome = app.run_daemon_now(self._require_name(rest))
            self.report("INFO", f"Daemon {rest}: {'woken' if outcome == 'woken' else 'running once'}")
        elif sub == "start":
            definition = app.start_daemon(self._require_name(rest))
            self.report("INFO", f"Started {definition.name} (every {definition.interval_secs}s)")
        elif sub == "stop":
            if app.stop_daemon(self._require_name(rest)):
                self.report("INFO", f"Stopped {rest}.")
            else:
                self.report("WARN", f"Daemon {rest} is not running.")
        elif sub == "remove":
            path = app.remove_daemon(self._require_name(rest))
            if path is None:
                self.report("INFO", f"Stopped runtime-only daemon {rest}.")
            else:
                self.report("INFO", f"Removed {path}")
        elif sub == "results":
            entries = app.recent_daemon_results(rest or None)
            if not entries:
                print("No background results yet.")
            for entry in entries:
                mark = "ok" if entry.ok else "failed"
                print(f"  {entry.finished_at:%H:%M:%S} {entry.name} [{mark}] {truncate(entry.message, 200)}")
        else:
            raise ProtocolError(f"Unknown /daemon subcommand: {sub}")
        return True

    def _require_name(self, rest: str) -> str:
        if not rest:
            raise ProtocolError("A daemon name is required.")
        return rest.split()[0]

    def _create_daemon(self, rest: str) -> None:
        parts = rest.split(maxsplit=2)
        if len(parts) < 3:
            raise ProtocolError("Usage: /daemon create <name> <interval_secs> <instructions>")
        try:
            interval = int(parts[1])
        except ValueError:
            raise ProtocolError("Interval must be a whole number of seconds.")
        recipe = self.app.create_daemon(parts[0], interval, parts[2])
        self.report("INFO", f"Created and started {recipe.name} ({recipe.path})")

    def _print_daemons(self) -> None:
        scheduler = self.app.scheduler
        print("Built-in:")
        for definition in scheduler.builtins():
            state = "running" if scheduler.is_running(definition.name) else "stopped"
            print(f"  {definition.name:<16} {state:<8} every {definition.interval_secs}s  {definition.description}")
        print("Recipes:")
        if not self.app.recipes:
            print(f"  (none in {self.app.agents_dir})")
        for recipe in self.app.recipes.values():
            state = "running" if scheduler.is_running(recipe.name) else "stopped"
            trigger = recipe.to_task_def().trigger_summary()
            extra = f" trigger={trigger}" if trigger else ""
            print(f"  {recipe.name:<16} {state:<8} every {recipe.interval_secs}s{extra}  {recipe.description}")
        for error in self.app.recipe_errors:
            print(f"  ! {error}")

    # ========== /mcp ==========

    @with_error_boundary("/mcp")
    async def _handle_mcp(self, arg: Optional[str]) -> bool:
        sub, rest = _split_first(arg)
        app = self.app
        if sub in ("", "list"):
            servers = app.mcp.config.servers.values()
            if not servers:
                print(f"No tool servers configured ({app.settings.paths.mcp_config_path}).")
            for server in servers:
                state = "connected" if app.mcp.is_connected(server.id) else ("enabled" if server.enabled else "disabled")
                print(f"  {server.id:<16} {server.transport:<6} {state:<10} auth={server.auth.type}")
        elif sub == "status":
            connected = app.mcp.list_connected_servers()
            print(f"Connected: {', '.join(connected) or 'none'}")
            pending = app.oauth.pending
            print(f"OAuth: {app.oauth.state.value}" + (f" (pending for {pending.server_id})" if pending else ""))
        elif sub == "reload":
            config = app.reload_mcp_config()
            self.report("INFO", f"Reloaded MCP config: {len(config.servers)} server(s)")
        elif sub == "connect":
            server_id = self._require_name(rest)
            count = await app.connect_server(server_id)
            self.report("INFO", f"Connected {server_id} ({count} tools)")
        elif sub == "disconnect":
            server_id = self._require_name(rest)
            if await app.disconnect_server(server_id):
                self.report("INFO", f"Disconnected {server_id}")
            else:
                self.report("WARN", f"{server_id} was not connected.")
        elif sub == "tools":
            words = rest.split()
            refresh = "--refresh" in words
            named = [word for word in words if word != "--refresh"]
            server_ids = named[:1] or app.mcp.list_connected_servers()
            for server_id in server_ids:
                tools = await app.mcp.refresh_tools(server_id) if refresh else app.mcp.cached_tools(server_id)
                for tool in tools:
                    print(f"  {server_id}/{tool.name}  {truncate(tool.description or '', 80)}")
        elif sub == "call":
            name, raw_args = _split_first(rest, lower=False)
            if not name:
                raise ProtocolError("Usage: /mcp call <server/tool> [json-args]")
            print(await app.call_tool(name, raw_args))
        elif sub == "ask":
            if not rest:
                raise ProtocolError("Usage: /mcp ask <message>")
            await app.chat(rest, require_tools=True)
        elif sub == "auth":
            await app.start_oauth(self._require_name(rest))
        elif sub == "auth-code":
            server_id, raw = _split_first(rest, lower=False)
            if not raw:
                raise ProtocolError("Usage: /mcp auth-code <id> <url-or-code>")
            await app.complete_oauth_manual(server_id, raw)
        elif sub == "token":
            server_id, token = _split_first(rest, lower=False)
            if not token:
                raise ProtocolError("Usage: /mcp token <id> <token>")
            await app.set_server_token(server_id, token)
        elif sub == "token-clear":
            await app.clear_server_token(self._require_name(rest))
        else:
            raise ProtocolError(f"Unknown /mcp subcommand: {sub}")
        return True

    # ========== /agent and /share ==========

    @with_error_boundary("/agent")
    async def _handle_agent(self, arg: Optional[str]) -> bool:
        sub, rest = _split_first(arg)
        personas = self.app.personas
        if sub in ("", "list"):
            for persona in personas.personas():
                marker = "*" if persona.name == personas.active.name else " "
                kind = "built-in" if persona.builtin else "custom"
                print(f" {marker} {persona.name:<16} {kind:<8} {truncate(persona.description, 60)}")
        elif sub == "use":
            persona = await self.app.use_persona(self._require_name(rest))
            self.report("INFO", f"Now talking to {persona.name}; conversation cleared.")
        elif sub == "create":
            name, description = _split_first(rest, lower=False)
            if not description:
                raise ProtocolError("Usage: /agent create <name> <description>")
            persona = await self.app.create_persona(name, description)
            self.report("INFO", f"Created persona {persona.name}. Switch with /agent use {persona.name}")
        elif sub == "delete":
            persona = await self.app.delete_persona(self._require_name(rest))
            self.report("INFO", f"Deleted persona {persona.name}.")
        elif sub == "info":
            persona = personas.get(rest.split()[0]) if rest else personas.active
            print(f"{persona.name}: {persona.description}\n{persona.prompt}")
        else:
            raise ProtocolError(f"Unknown /agent subcommand: {sub}")
        return True

    @with_error_boundary("/share")
    async def _handle_share(self, arg: Optional[str]) -> bool:
        sub, rest = _split_first(arg)
        memory = self.app.memory
        if sub in ("", "status"):
            print(f"Memory: {memory.label}")
        elif sub == "join":
            turns = await self.app.join_workspace(rest)
            self.report("INFO", f"Joined shared workspace {memory.shared_run_id} ({turns} turn(s) loaded).")
        elif sub == "leave":
            previous = await self.app.leave_workspace()
            if previous:
                self.report("INFO", f"Left shared workspace {previous}.")
            else:
                self.report("WARN", "Not in a shared workspace.")
        else:
            raise ProtocolError(f"Unknown /share subcommand: {sub}")
        return True

    # ========== Memory, variables, keys ==========

    @with_error_boundary("/memory")
    async def _handle_memory(self, arg: Optional[str]) -> bool:
        if not arg:
            raise ProtocolError("Usage: /memory <query>")
        records = await self.app.recall(arg)
        if not records:
            print("No memories found.")
        for record in records:
            print(f"  {record.render()}")
        return True

    @with_error_boundary("/var")
    async def _handle_var(self, arg: Optional[str]) -> bool:
        sub, rest = _split_first(arg)
        parts = rest.split(maxsplit=1)
        if sub != "set" or len(parts) < 2:
            raise ProtocolError("Usage: /var set <name> <value>")
        woken = await self.app.set_variable(parts[0], parts[1])
        suffix = f"; woke {', '.join(woken)}" if woken else ""
        self.report("INFO", f"Set {parts[0]}{suffix}")
        return True

    @with_error_boundary("/openai")
    async def _handle_openai(self, arg: Optional[str]) -> bool:
        sub, rest = _split_first(arg)
        if sub == "set":
            await self.app.set_openai_key(rest)
        elif sub == "clear":
            await self.app.clear_openai_key()
        elif sub == "import-env":
            await self.app.import_openai_env()
        elif sub == "":
            key = getattr(self.app.llm, "api_key", None)
            print(f"OpenAI key: {mask_key(key) if key else 'not set'}")
        else:
            raise ProtocolError(f"Unknown /openai subcommand: {sub}")
        return True

    @with_error_boundary("/key")
    async def _handle_key(self, arg: Optional[str]) -> bool:
        if not arg:
            raise ProtocolError("Usage: /key <key>")
        await self.app.set_openai_key(arg)
        return True

    @with_error_boundary("/clear")
    async def _handle_clear(self, arg: Optional[str]) -> bool:
        self.app.thread.clear()
        await self.app.memory.clear_thread(self.app.personas.active.agent_id)
        self.report("INFO", "Conversation cleared.")
        return True


__all__ = ["MeminiCLI"]
