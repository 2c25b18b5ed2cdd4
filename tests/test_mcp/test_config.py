"""mcp_servers.yaml parsing and validation."""

import pytest

from memini.tools.mcp.config import load_mcp_config, parse_mcp_config
from memini.utils.error_handler import ConfigurationError


def test_parse_fills_ids_and_defaults():
    config = parse_mcp_config({
        "servers": {
            "github": {
                "url": "https://api.githubcopilot.com/mcp/",
                "auth": {"type": "oauth_browser", "scopes": "repo, read:user"},
            },
            "notes": {"transport": "stdio", "command": "python", "args": ["notes_server.py"]},
            "old": {"url": "https://old.example.com", "enabled": False},
        },
        "settings": {"startup_timeout": 5},
    })

    github = config.get("github")
    assert github.id == "github"
    assert github.transport == "http"
    assert github.uses_oauth
    assert github.auth.scopes == ["repo", "read:user"]
    assert github.display_name == "github"
    assert config.settings.startup_timeout == 5
    assert [s.id for s in config.enabled_servers()] == ["github", "notes"]


def test_empty_config():
    assert parse_mcp_config(None).servers == {}
    assert parse_mcp_config({"servers": None}).servers == {}


@pytest.mark.parametrize("servers,message", [
    ({"a__b": {"url": "https://x.example.com"}}, "must not contain '__'"),
    ({"local": {"transport": "stdio"}}, "has no command"),
    ({"remote": {"transport": "sse"}}, "has no url"),
    ({"weird": {"transport": "carrier-pigeon", "url": "x"}}, "Invalid MCP config"),
    ({"bad": {"url": "https://x.example.com", "auth": {"type": "kerberos"}}}, "Invalid MCP config"),
])
def test_invalid_servers_rejected(servers, message):
    with pytest.raises(ConfigurationError, match=message):
        parse_mcp_config({"servers": servers})


def test_load_from_yaml(tmp_path):
    path = tmp_path / "mcp_servers.yaml"
    path.write_text(
        "servers:\n"
        "  notes:\n"
        "    name: Notes\n"
        "    transport: stdio\n"
        "    command: python\n"
        "    env:\n"
        "      NOTES_DIR: ${HOME}\n",
        encoding="utf-8",
    )
    config = load_mcp_config(path)
    assert config.get("notes").display_name == "Notes"
    assert config.get("notes").env == {"NOTES_DIR": "${HOME}"}


def test_load_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_mcp_config(tmp_path / "missing.yaml")

    broken = tmp_path / "broken.yaml"
    broken.write_text("servers: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="Invalid YAML"):
        load_mcp_config(broken)
