"""Connection pool tests against the stdio notes server."""

import sys

import pytest

from memini.tools.mcp.config import parse_mcp_config
from memini.tools.mcp.manager import MCPServerManager
from memini.utils.error_handler import ConfigurationError, ConnectivityError, ProtocolError


@pytest.fixture
def notes_config(notes_server_path):
    return parse_mcp_config({
        "servers": {
            "notes": {
                "transport": "stdio",
                "command": sys.executable,
                "args": [str(notes_server_path)],
            },
            "broken": {"transport": "stdio", "command": "memini-no-such-binary"},
        },
        "settings": {"startup_timeout": 20},
    })


@pytest.mark.asyncio
async def test_unknown_and_unconnected_servers(notes_config):
    manager = MCPServerManager(notes_config)

    with pytest.raises(ConfigurationError) as excinfo:
        await manager.connect("ghost")
    assert "/mcp list" in excinfo.value.user_message

    with pytest.raises(ConnectivityError, match="not connected"):
        await manager.call_tool("notes", "echo", {"message": "hi"})
    assert await manager.disconnect("notes") is False
    assert manager.list_configured_servers() == ["notes", "broken"]


def test_reload_reports_orphaned_connections(notes_config):
    manager = MCPServerManager(notes_config)
    manager._connections["notes"] = object()

    orphaned = manager.reload(parse_mcp_config({"servers": {}}))
    assert orphaned == ["notes"]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_stdio_server_lifecycle(notes_config):
    manager = MCPServerManager(notes_config)
    try:
        await manager.connect("notes")
        assert manager.is_connected("notes")
        assert manager.list_connected_servers() == ["notes"]
        names = sorted(tool.name for tool in manager.cached_tools("notes"))
        assert names == ["add_note", "echo", "fail", "list_notes"]

        assert await manager.call_tool("notes", "echo", {"message": "hello"}) == "Echo: hello"
        assert await manager.call_tool("notes", "add_note", {"text": "buy milk"}) == "Stored note #1"
        assert await manager.call_tool("notes", "list_notes", {}) == "buy milk"

        with pytest.raises(ProtocolError, match="read-only"):
            await manager.call_tool("notes", "fail", {})

        refreshed = await manager.refresh_tools("notes")
        assert sorted(tool.name for tool in refreshed) == names

        # Connecting twice reuses the open connection
        first = manager.get_connection("notes")
        assert await manager.connect("notes") is first

        assert await manager.disconnect("notes") is True
        assert not manager.is_connected("notes")
        assert manager.cached_tools("notes") == []
    finally:
        await manager.shutdown()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_failed_start_is_reported(notes_config):
    manager = MCPServerManager(notes_config)
    with pytest.raises(ConnectivityError):
        await manager.connect("broken")
    assert not manager.is_connected("broken")
