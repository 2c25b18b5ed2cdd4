"""Command routing and argument parsing for the terminal front end."""

import pytest
import pytest_asyncio

from helpers import ai
from memini.cli.app_cli import MeminiCLI, _parse_spawn_args, _split_first
from memini.runtime.app import build_application
from memini.tools.mcp.config import McpConfig
from memini.utils.logging_utils import LogLevel


@pytest_asyncio.fixture
async def cli(settings, llm, memory, activity):
    app = build_application(settings=settings, llm=llm, memory=memory, mcp_config=McpConfig(), activity=activity)
    yield MeminiCLI(app)
    await app.shutdown()


def test_split_first():
    assert _split_first(None) == ("", "")
    assert _split_first("Connect GitHub") == ("connect", "GitHub")
    assert _split_first("GitHub  tok_ABC ", lower=False) == ("GitHub", "tok_ABC")


@pytest.mark.parametrize("raw,expected", [
    ("summarize the repo", ("summarize the repo", None, None, None)),
    ("--label scout --mcp github find open PRs", ("find open PRs", "scout", "github", None)),
    ('--key release --label "release notes" draft notes', ("draft notes", "release notes", None, "release")),
    ("explain the --mcp flag", ("explain the --mcp flag", None, None, None)),
])
def test_parse_spawn_args(raw, expected):
    assert _parse_spawn_args(raw) == expected


@pytest.mark.asyncio
async def test_unknown_command_keeps_running(cli, capsys):
    assert await cli.handle_command("/frobnicate now") is True
    assert "Unknown command: /frobnicate" in capsys.readouterr().out
    assert await cli.handle_command("/quit") is False


@pytest.mark.asyncio
async def test_handler_errors_become_warnings(cli):
    assert await cli.handle_command("/daemon frobnicate") is True
    assert await cli.handle_command("/reply 7") is True
    assert await cli.handle_command("/spawn show abc") is True

    warnings = [line.message for line in cli.app.activity.since(0) if line.level == LogLevel.WARN]
    assert warnings == [
        "Unknown /daemon subcommand: frobnicate",
        "Usage: /reply <id|next> <message>",
        "Invalid agent id",
    ]


@pytest.mark.asyncio
async def test_var_set_and_chat_output(cli, llm, capsys):
    await cli.handle_command("/var set Mood sunny")
    assert await cli.app.memory.get_variable("Mood") == "sunny"

    llm.push(ai("Noted, sunny it is."))
    await cli.handle_user_message("how am I feeling?")

    out = capsys.readouterr().out
    assert "Set Mood" in out
    assert "Noted, sunny it is." in out
    assert "how am I feeling?" not in out


@pytest.mark.asyncio
async def test_agent_commands(cli, capsys):
    await cli.handle_command("/agent create Coach Keeps me on track.")
    await cli.handle_command("/agent use coach")
    await cli.handle_command("/agent list")

    out = capsys.readouterr().out
    assert " * coach" in out
    assert cli.app.personas.active.name == "coach"


@pytest.mark.asyncio
async def test_spawn_prompt_may_start_with_a_subcommand_word(cli, capsys):
    await cli.handle_command("/spawn list the open pull requests")
    await cli.handle_command("/spawn remove stale branches")
    await cli.handle_command("/spawn list")

    prompts = [window.prompt for window in cli.app.windows.windows()]
    assert prompts == ["list the open pull requests", "remove stale branches"]
    out = capsys.readouterr().out
    assert "list the open pull requests" in out


@pytest.mark.asyncio
async def test_mcp_tools_refresh_needs_a_connection(cli):
    await cli.handle_command("/mcp tools github --refresh")

    warnings = [line.message for line in cli.app.activity.since(0) if line.level == LogLevel.WARN]
    assert warnings == ["MCP server 'github' is not connected. Run /mcp connect github."]
