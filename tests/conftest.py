"""Pytest configuration and fixtures for all tests.

Provides a scripted LLM and an in-memory stand-in for the MCP connection pool
(see helpers.py) so turns, sessions and daemon runs can be exercised without
network access.
"""

import sys
from pathlib import Path

import pytest

# Ensure project root is in PYTHONPATH for imports to work
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

from helpers import ScriptedLLM  # noqa: E402
from memini.config.settings import PathSettings, Settings  # noqa: E402
from memini.memory.store import LocalMemoryStore  # noqa: E402
from memini.utils.logging_utils import ActivityLog  # noqa: E402


@pytest.fixture
def llm():
    return ScriptedLLM()


@pytest.fixture
def memory():
    return LocalMemoryStore(run_id="test")


@pytest.fixture
def activity():
    return ActivityLog(max_lines=200)


@pytest.fixture
def settings(tmp_path):
    return Settings(paths=PathSettings(home=tmp_path / "home", workspace_root=tmp_path / "workspace"))


@pytest.fixture
def notes_server_path():
    """Path to the stdio notes server used by MCP integration tests."""
    return tests_dir / "mcp_servers" / "notes_server.py"
