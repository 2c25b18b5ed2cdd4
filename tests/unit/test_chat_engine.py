"""Main chat turns: recall, tool dispatch, spawn/collect and persistence."""

import asyncio
import json
from datetime import datetime

import pytest
from langchain_core.messages import SystemMessage, ToolMessage

from helpers import FakeToolServers, ScriptedLLM, ai, wait_for_events
from memini.agents.coordination import CoordinationStore
from memini.agents.personas import PersonaRegistry
from memini.agents.windows import AgentWindowManager
from memini.chat.engine import ChatTurnEngine
from memini.memory.store import LocalMemoryStore
from memini.utils.error_handler import ConnectivityError, StateError


def make_engine(llm, memory, activity, servers=None, worker_llm=None, max_tool_loops=6):
    windows = AgentWindowManager(
        llm=worker_llm or ScriptedLLM(),
        updates=asyncio.Queue(),
        coordination=CoordinationStore(),
    )
    return ChatTurnEngine(
        llm=llm,
        memory=memory,
        mcp_manager=servers or FakeToolServers(),
        windows=windows,
        personas=PersonaRegistry(),
        activity=activity,
        max_tool_loops=max_tool_loops,
        clock=lambda: datetime(2024, 5, 1, 9, 30),
    )


def tool_outputs(llm, call_index):
    return [m for m in llm.calls[call_index]["messages"] if isinstance(m, ToolMessage)]


@pytest.mark.asyncio
async def test_plain_turn_updates_thread_and_commits_trace(llm, memory, activity):
    llm.push(ai("Hi there"))
    engine = make_engine(llm, memory, activity)

    result = await engine.run_turn("  hello  ")

    assert result.text == "Hi there"
    assert [m.content for m in engine.thread.messages] == ["hello", "Hi there"]
    saved = await memory.load_thread("memini")
    assert [m.content for m in saved] == ["hello", "Hi there"]
    trace = memory.traces()[-1]
    assert (trace.input, trace.outcome, trace.action, trace.agent_id) == ("hello", "Hi there", "chat", "memini")

    tool_names = [t["function"]["name"] for t in llm.calls[0]["tools"]]
    assert tool_names == ["spawn_agent", "collect_results"]
    assert "2024-05-01 09:30" in llm.calls[0]["messages"][0].content


@pytest.mark.asyncio
async def test_recalled_memories_are_injected(llm, memory, activity):
    await memory.commit_trace("deploy schedule", "deploys happen on Fridays", "chat", [], "memini")
    llm.push(ai("Friday"))
    engine = make_engine(llm, memory, activity)

    result = await engine.run_turn("when is the deploy?")

    assert result.memories == 1
    systems = [m for m in llm.calls[0]["messages"] if isinstance(m, SystemMessage)]
    assert systems[1].content.startswith("Relevant memories:")
    assert "deploys happen on Fridays" in systems[1].content
    assert llm.embed_calls == ["when is the deploy?"]


class FlakyMemory(LocalMemoryStore):
    async def reminisce(self, embedding, limit, query):
        raise ConnectivityError("state instance down", "Memory store unreachable")

    async def commit_trace(self, *args, **kwargs):
        raise ConnectivityError("state instance down", "Memory store unreachable")


@pytest.mark.asyncio
async def test_memory_failures_only_warn(llm, activity):
    llm.push(ai("still answering"))
    engine = make_engine(llm, FlakyMemory(), activity)

    result = await engine.run_turn("hello")

    assert result.text == "still answering"
    warnings = [line.message for line in activity.tail(10) if line.level.value == "WARN"]
    assert "Memory recall failed: Memory store unreachable" in warnings
    assert "Could not commit memory trace: Memory store unreachable" in warnings


@pytest.mark.asyncio
async def test_remote_tool_dispatch(llm, memory, activity):
    servers = FakeToolServers({"notes": {"echo": lambda args: f"Echo: {args['message']}"}})
    llm.push(ai(calls=[("mcp__notes__echo", {"message": "ping"})]), ai("pong received"))
    engine = make_engine(llm, memory, activity, servers=servers)

    result = await engine.run_turn("ping the notes server")

    assert result.text == "pong received"
    assert result.tool_calls == 1
    assert servers.invocations == [("notes", "echo", {"message": "ping"})]
    assert tool_outputs(llm, 1)[0].content == "Echo: ping"
    tool_names = [t["function"]["name"] for t in llm.calls[0]["tools"]]
    assert tool_names[0] == "mcp__notes__echo"


@pytest.mark.asyncio
async def test_require_tools_without_servers_fails(llm, memory, activity):
    engine = make_engine(llm, memory, activity)
    with pytest.raises(StateError):
        await engine.run_turn("use tools", require_tools=True)
    assert llm.calls == []


@pytest.mark.asyncio
async def test_spawn_then_collect(llm, memory, activity):
    worker_llm = ScriptedLLM([ai("Findings about X")])
    llm.push(
        ai(calls=[("spawn_agent", {"label": "researcher", "prompt": "research X", "coordination_key": "k1"})]),
        ai(calls=[("collect_results", {"coordination_key": "k1"})]),
        ai("Spawned a researcher."),
    )
    engine = make_engine(llm, memory, activity, worker_llm=worker_llm)

    result = await engine.run_turn("look into X")

    assert result.spawned == [1]
    spawn_payload = json.loads(tool_outputs(llm, 1)[0].content)
    assert spawn_payload == {"status": "spawned", "window_id": 1, "label": "researcher", "coordination_key": "k1"}
    collect_payload = json.loads(tool_outputs(llm, 2)[1].content)
    assert collect_payload["results"] == []
    assert collect_payload["pending"] == [1]

    windows = engine.windows
    for event in await wait_for_events(windows.updates, 2):
        windows.apply_event(event)
    collected = json.loads(engine._collect({"coordination_key": "k1"}))
    assert collected["results"] == [{"window_id": 1, "label": "researcher", "result": "Findings about X"}]
    assert collected["pending"] == []
    await windows.shutdown()


@pytest.mark.asyncio
async def test_spawn_errors_become_tool_errors(llm, memory, activity):
    llm.push(
        ai(calls=[("spawn_agent", {"label": "empty"}), ("spawn_agent", {"prompt": "x", "mcp_server": "github"})]),
        ai("Could not spawn."),
    )
    engine = make_engine(llm, memory, activity)

    result = await engine.run_turn("spawn badly")

    errors = [json.loads(m.content)["error"] for m in tool_outputs(llm, 1)]
    assert errors == ["prompt is required", "MCP server 'github' is not connected"]
    assert result.spawned == []
    assert len(engine.windows) == 0


@pytest.mark.asyncio
async def test_loop_limit_warns(llm, memory, activity):
    servers = FakeToolServers({"notes": {"echo": lambda args: "again"}})
    llm.push(*[ai("partial", calls=[("mcp__notes__echo", {"message": "x"})]) for _ in range(5)])
    engine = make_engine(llm, memory, activity, servers=servers, max_tool_loops=2)

    result = await engine.run_turn("loop forever")

    assert result.exhausted
    assert result.text == "partial"
    assert any(line.message == "Tool loop limit reached." for line in activity.tail(10))
