"""Application state: update draining, daemons, credentials, personas and workspaces."""

import asyncio

import httpx
import pytest
import pytest_asyncio
from langchain_core.messages import AIMessage, HumanMessage, ToolMessage

from helpers import AuthServer, ScriptedLLM, ai, free_port
from memini.agents.personas import ACTIVE_AGENT_VAR, CUSTOM_AGENTS_VAR
from memini.agents.session import WindowStatus
from memini.auth.oauth import OAuthFlowController, OAuthToken
from memini.daemon.tasks import DaemonTaskDef
from memini.memory.store import SHARED_WORKSPACE_VAR
from memini.prompts import NEEDS_INPUT_MARKER
from memini.runtime.app import ACTIVE_MCP_VAR, build_application
from memini.runtime.events import DaemonRunResult, OAuthFinished
from memini.tools.mcp.config import McpAuth, McpConfig, McpServer
from memini.tools.workspace import READ_FILE_TOOL
from memini.utils.error_handler import ConfigurationError, ProtocolError, StateError
from memini.utils.logging_utils import LogLevel


class OfflineLLM(ScriptedLLM):
    @property
    def ready(self):
        return False


@pytest_asyncio.fixture
async def app(settings, llm, memory, activity):
    application = build_application(
        settings=settings, llm=llm, memory=memory, mcp_config=McpConfig(), activity=activity
    )
    yield application
    await application.shutdown()


async def drain_until(app, predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        await app.drain_updates()
        if predicate():
            return
        if loop.time() > deadline:
            pytest.fail("condition not reached while draining updates")
        await asyncio.sleep(0.01)


def messages_at(activity, level):
    return [line.message for line in activity.since(0) if line.level == level]


@pytest.mark.asyncio
async def test_chat_logs_user_and_assistant_lines(app, llm, activity):
    llm.push(ai("Hello there."))

    result = await app.chat("hi")

    assert result.text == "Hello there."
    assert messages_at(activity, LogLevel.USER) == ["hi"]
    assert messages_at(activity, LogLevel.ASSISTANT) == ["Hello there."]
    assert app.thread.turns == 1


@pytest.mark.asyncio
async def test_chat_without_key_is_a_configuration_error(settings, memory):
    app = build_application(settings=settings, llm=OfflineLLM(), memory=memory, mcp_config=McpConfig())
    with pytest.raises(ConfigurationError) as excinfo:
        await app.chat("hi")
    assert "/key" in excinfo.value.user_message
    await app.shutdown()


@pytest.mark.asyncio
async def test_window_events_are_applied_on_drain(app, llm, activity):
    llm.push(ai("Found three flights."))

    window = app.spawn_window("find flights to Lisbon", label="flights")
    assert window.status == WindowStatus.THINKING

    await drain_until(app, lambda: app.windows.get(window.id).is_done)

    assert app.windows.get(window.id).result == "Found three flights."
    assert any("#1 flights" in line and "done" in line for line in messages_at(activity, LogLevel.INFO))


@pytest.mark.asyncio
async def test_spawn_on_disconnected_server_fails(app):
    with pytest.raises(StateError, match="not connected"):
        app.spawn_window("anything", server_id="github")


@pytest.mark.asyncio
async def test_daemon_results_are_recorded(app, activity):
    await app.updates.put(DaemonRunResult("briefing", True, "All quiet."))
    await app.updates.put(DaemonRunResult("digest", False, "Memory store unreachable"))

    assert await app.drain_updates() == 2

    assert [entry.name for entry in app.recent_daemon_results()] == ["briefing", "digest"]
    assert app.recent_daemon_results("DIGEST")[0].ok is False
    assert "[daemon digest] run failed: Memory store unreachable" in messages_at(activity, LogLevel.WARN)


@pytest.mark.asyncio
async def test_variable_update_wakes_triggered_recipe(app, llm, memory, settings):
    agents_dir = settings.paths.agents_dir
    agents_dir.mkdir(parents=True)
    (agents_dir / "deploy-watch.md").write_text(
        "---\n"
        "interval_secs: 3600\n"
        "auto_start: true\n"
        "trigger_variables: deploy.*\n"
        "---\n"
        "Check the deploy request and report.\n",
        encoding="utf-8",
    )
    app.reload_recipes()
    assert app.autostart_recipes() == ["deploy-watch"]
    assert app.autostart_recipes() == []

    llm.push(ai("Deploy looks healthy."))
    assert await app.set_variable("deploy.request", "v2") == ["deploy-watch"]
    assert await app.set_variable("unrelated", "x") == []

    await drain_until(app, lambda: len(app.daemon_results) == 1)

    entry = app.daemon_results[0]
    assert (entry.name, entry.ok, entry.message) == ("deploy-watch", True, "Deploy looks healthy.")
    assert await memory.get_variable("deploy.request") == "v2"
    assert memory.traces()[-1].action == "daemon:deploy-watch"


@pytest.mark.asyncio
async def test_create_and_remove_daemon(app, settings):
    recipe = app.create_daemon("Inbox Sweep", 900, "Summarize unread mail.")
    assert recipe.name == "inbox-sweep"
    assert recipe.path.exists()
    assert app.scheduler.is_running("inbox-sweep")

    path = app.remove_daemon("inbox-sweep")
    assert not path.exists()
    assert not app.scheduler.is_running("inbox-sweep")

    with pytest.raises(ConfigurationError, match="built-in"):
        app.create_daemon("briefing", 60, "shadow the builtin")
    assert not (settings.paths.agents_dir / "briefing.md").exists()

    with pytest.raises(StateError):
        app.remove_daemon("briefing")
    with pytest.raises(StateError, match="Unknown daemon"):
        app.daemon_definition("nothing-here")


@pytest.mark.asyncio
async def test_run_daemon_now_runs_builtin_once(app, llm):
    llm.push(ai("Briefing ready."))
    assert app.run_daemon_now("briefing") == "oneshot"
    assert not app.scheduler.is_running("briefing")

    await drain_until(app, lambda: len(app.daemon_results) == 1)
    assert app.daemon_results[0].message == "Briefing ready."


@pytest.mark.asyncio
async def test_oauth_finished_event_stores_token(app, memory, activity):
    token = OAuthToken(access_token="gho_abc", refresh_token="r1", client_id="c1")
    await app.updates.put(OAuthFinished("github", True, "Authorization complete.", token=token))
    await app.updates.put(OAuthFinished("linear", False, "Callback not received.", timed_out=True))
    await app.drain_updates()

    assert app.credentials.cache.tokens == {"github": "gho_abc"}
    assert await memory.get_variable("mcp_token_github") == "gho_abc"
    assert "Callback not received." in messages_at(activity, LogLevel.WARN)
    assert any("/mcp connect github" in line for line in messages_at(activity, LogLevel.INFO))


@pytest.mark.asyncio
async def test_manual_oauth_without_pending_flow(app):
    with pytest.raises(StateError, match="No pending OAuth flow"):
        await app.complete_oauth_manual("github", "code")


@pytest.mark.asyncio
async def test_call_tool_argument_and_reference_errors(app):
    with pytest.raises(ProtocolError, match="Ambiguous"):
        await app.call_tool("echo", "{}")
    with pytest.raises(ProtocolError, match="JSON object"):
        await app.call_tool("notes/echo", "[1, 2]")
    with pytest.raises(ProtocolError, match="JSON object"):
        await app.call_tool("mcp__notes__echo", "{not json")


@pytest.mark.asyncio
async def test_persona_switch_clears_thread_and_persists(app, memory):
    app.thread.append_turn("hello", "hi")
    await app.create_persona("writer", "Drafts prose.")

    persona = await app.use_persona("writer")

    assert persona.name == "writer"
    assert app.thread.turns == 0
    assert await memory.get_variable(ACTIVE_AGENT_VAR) == "writer"
    assert "writer" in await memory.get_variable(CUSTOM_AGENTS_VAR)

    await app.delete_persona("writer")
    assert app.personas.active.name == "memini"


@pytest.mark.asyncio
async def test_join_and_leave_workspace(app, memory):
    await memory.save_thread("memini", [HumanMessage(content="old"), AIMessage(content="turn")])
    memory.join_workspace("team")
    await memory.save_thread("memini", [HumanMessage(content="team q"), AIMessage(content="team a")])
    memory.leave_workspace()

    assert await app.join_workspace("team") == 1
    assert app.thread.messages[0].content == "team q"
    assert memory.active_run_id == "team"

    assert await app.leave_workspace() == "team"
    assert app.thread.turns == 0
    assert await memory.get_variable(SHARED_WORKSPACE_VAR) is None
    assert await app.leave_workspace() is None

    with pytest.raises(ProtocolError):
        await app.join_workspace("  ")


@pytest.mark.asyncio
async def test_bootstrap_restores_personas_thread_and_workspace(settings, llm, memory, activity):
    await memory.set_variable(SHARED_WORKSPACE_VAR, "team")
    # Everything else lives in the shared workspace's run
    memory.join_workspace("team")
    await memory.set_variable(CUSTOM_AGENTS_VAR, '[{"name": "coach", "description": "Keeps me on track."}]')
    await memory.set_variable(ACTIVE_AGENT_VAR, "coach")
    await memory.set_variable(ACTIVE_MCP_VAR, "not-configured")
    await memory.save_thread("coach", [HumanMessage(content="plan?"), AIMessage(content="run 5k")])
    memory.leave_workspace()

    app = build_application(settings=settings, llm=llm, memory=memory, mcp_config=McpConfig(), activity=activity)
    await app.bootstrap()

    assert memory.active_run_id == "team"
    assert app.personas.active.name == "coach"
    assert app.thread.turns == 1
    assert messages_at(activity, LogLevel.WARN) == []
    await app.shutdown()


@pytest.mark.asyncio
async def test_remove_daemon_deletes_the_recipe_file_it_came_from(app, settings):
    agents_dir = settings.paths.agents_dir
    agents_dir.mkdir(parents=True)
    path = agents_dir / "watch.md"
    path.write_text(
        "---\nname: deploy-watch\ninterval_secs: 3600\nauto_start: true\n---\nWatch deploys.\n",
        encoding="utf-8",
    )
    app.reload_recipes()
    assert app.autostart_recipes() == ["deploy-watch"]

    assert app.remove_daemon("deploy-watch") == path

    assert not path.exists()
    assert "deploy-watch" not in app.recipes
    assert not app.scheduler.is_running("deploy-watch")


@pytest.mark.asyncio
async def test_remove_daemon_without_recipe_only_stops_it(app):
    recipe = app.create_daemon("sweep", 900, "Sweep the inbox.")
    recipe.path.unlink()
    app.reload_recipes()
    assert "sweep" not in app.recipes
    assert app.scheduler.is_running("sweep")

    assert app.remove_daemon("sweep") is None
    assert not app.scheduler.is_running("sweep")
    with pytest.raises(StateError, match="Unknown daemon"):
        app.remove_daemon("sweep")


@pytest.mark.asyncio
async def test_daemon_runs_get_workspace_tools_and_no_input_marker(app, llm, settings):
    root = settings.paths.workspace_path
    root.mkdir(parents=True)
    (root / "status.txt").write_text("build is green\n", encoding="utf-8")
    llm.push(
        ai("", [(READ_FILE_TOOL, {"path": "status.txt"})]),
        ai("Build is green."),
    )
    definition = DaemonTaskDef(
        name="status", persona="You watch the build.", prompt="Report build status.",
        interval_secs=600, tools=(READ_FILE_TOOL,),
    )

    assert await app.run_daemon(definition) == "Build is green."

    system_prompt = llm.calls[0]["messages"][0].content
    assert NEEDS_INPUT_MARKER not in system_prompt
    assert [schema["function"]["name"] for schema in llm.calls[0]["tools"]] == [READ_FILE_TOOL]
    tool_message = next(m for m in llm.calls[1]["messages"] if isinstance(m, ToolMessage))
    assert "build is green" in tool_message.content


@pytest.mark.asyncio
async def test_oauth_timeout_then_pasted_redirect_stores_token(settings, llm, memory, activity):
    redirect_uri = f"http://127.0.0.1:{free_port()}/callback"
    server = McpServer(
        id="github",
        url="https://mcp.example.com/mcp",
        auth=McpAuth(type="oauth_browser", redirect_uri=redirect_uri),
    )
    http = httpx.AsyncClient(transport=httpx.MockTransport(AuthServer()))
    opened = []
    controller = OAuthFlowController(
        http=http, timeout_secs=0.2, browser_opener=lambda url: opened.append(url) or True
    )
    app = build_application(
        settings=settings, llm=llm, memory=memory,
        mcp_config=McpConfig(servers={"github": server}), oauth=controller, activity=activity,
    )

    pending = await app.start_oauth("github")
    assert opened == [pending.authorization_url]

    await drain_until(
        app, lambda: any("/mcp auth-code github" in line for line in messages_at(activity, LogLevel.WARN))
    )
    assert app.credentials.cache.tokens == {}

    await app.complete_oauth_manual("github", f"{redirect_uri}?code=pasted&state={pending.state}")

    assert await app.credentials.resolve_token(server) == ("token-for-pasted", "local cache")
    assert await memory.get_variable("mcp_token_github") == "token-for-pasted"
    assert any("/mcp connect github" in line for line in messages_at(activity, LogLevel.INFO))
    await app.shutdown()
    await http.aclose()
