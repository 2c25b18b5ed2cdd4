"""Agent windows: spawn, NEEDS_INPUT replies, completion and fan-in."""

import asyncio
import json

import pytest
from langchain_core.messages import HumanMessage, ToolMessage

from helpers import FakeToolServers, ScriptedLLM, ai, wait_for_events
from memini.agents.coordination import CoordinationStore
from memini.agents.session import WindowStatus
from memini.agents.windows import AgentWindowManager
from memini.runtime.events import WindowCompleted, WindowOutput, WindowStatusChanged
from memini.tools.dispatch import RemoteToolset
from memini.utils.error_handler import ModelInvocationError, ProtocolError, StateError


def make_manager(llm):
    return AgentWindowManager(llm=llm, updates=asyncio.Queue(), coordination=CoordinationStore())


async def drain(manager, count):
    events = await wait_for_events(manager.updates, count)
    for event in events:
        manager.apply_event(event)
    return events


@pytest.mark.asyncio
async def test_spawn_runs_to_done_and_records_result():
    llm = ScriptedLLM([ai("Research summary for X")])
    manager = make_manager(llm)

    window = manager.spawn("research X", coordination_key="k1")
    assert window.id == 1
    assert window.status == WindowStatus.THINKING
    assert window.label == "Agent #1"
    assert manager.coordination.collect("k1") == []

    events = await drain(manager, 2)

    assert isinstance(events[0], WindowOutput)
    assert isinstance(events[1], WindowCompleted)
    assert window.status == WindowStatus.DONE
    assert window.output_lines == ["Research summary for X"]
    records = manager.coordination.collect("k1")
    assert [(r.window_id, r.result) for r in records] == [(1, "Research summary for X")]
    assert manager.pending_for_key("k1") == []
    await manager.shutdown()


@pytest.mark.asyncio
async def test_needs_input_round_trip():
    llm = ScriptedLLM([
        ai("I found two branches.\n[NEEDS_INPUT] Which branch should I merge?"),
        ai("Merged main."),
    ])
    manager = make_manager(llm)
    window = manager.spawn("merge the release branch", label="merger")

    events = await drain(manager, 2)
    assert isinstance(events[1], WindowStatusChanged)
    assert window.status == WindowStatus.WAITING_FOR_INPUT
    assert window.pending_question == "Which branch should I merge?"
    assert manager.waiting() == [window]

    manager.reply("next", "main")
    assert window.status == WindowStatus.THINKING
    assert window.pending_question is None
    assert window.output_lines[-1] == "> main"

    await drain(manager, 2)
    assert window.status == WindowStatus.DONE
    assert window.result == "Merged main."
    second_call = llm.calls[1]["messages"]
    assert isinstance(second_call[-1], HumanMessage)
    assert second_call[-1].content == "main"
    await manager.shutdown()


@pytest.mark.asyncio
async def test_reply_routing_errors():
    llm = ScriptedLLM([ai("done")])
    manager = make_manager(llm)

    with pytest.raises(StateError, match="No agents are waiting"):
        manager.reply("next", "hello")

    window = manager.spawn("quick task")
    with pytest.raises(StateError, match="not waiting for input"):
        manager.reply(str(window.id), "hello")
    with pytest.raises(StateError, match="No agent window #99"):
        manager.reply("99", "hello")
    with pytest.raises(StateError, match="Invalid agent id"):
        manager.reply("abc", "hello")
    await manager.shutdown()


@pytest.mark.asyncio
async def test_next_picks_lowest_waiting_id():
    question = ai("[NEEDS_INPUT] Continue?")
    llm = ScriptedLLM([question, question])
    manager = make_manager(llm)
    first = manager.spawn("one")
    second = manager.spawn("two")

    await drain(manager, 2)
    assert [w.id for w in manager.waiting()] == [first.id, second.id]
    assert manager.resolve_target("next") is first
    await manager.shutdown()


@pytest.mark.asyncio
async def test_llm_failure_finishes_with_error():
    llm = ScriptedLLM([ModelInvocationError("timeout", "Model request timed out")])
    manager = make_manager(llm)
    window = manager.spawn("fragile", coordination_key="k2")

    events = await drain(manager, 1)

    assert events[0].error == "Model request timed out"
    assert window.status == WindowStatus.DONE
    assert window.output_lines[-1] == "Error: Model request timed out"
    assert manager.coordination.collect("k2")[0].result == "[error] Model request timed out"
    await manager.shutdown()


@pytest.mark.asyncio
async def test_worker_uses_remote_tools_but_not_builtins():
    servers = FakeToolServers({"notes": {"echo": lambda args: f"Echo: {args['message']}"}})
    llm = ScriptedLLM([
        ai(calls=[("mcp__notes__echo", {"message": "hi"}, "c1"), ("spawn_agent", {"prompt": "nested"}, "c2")]),
        ai("All done."),
    ])
    manager = make_manager(llm)
    window = manager.spawn("use tools", toolset=RemoteToolset.from_manager(servers))
    assert window.tool_servers == ["notes"]

    await drain(manager, 2)

    tool_messages = [m for m in llm.calls[1]["messages"] if isinstance(m, ToolMessage)]
    assert tool_messages[0].content == "Echo: hi"
    assert "Unknown tool" in json.loads(tool_messages[1].content)["error"]
    assert len(manager) == 1
    await manager.shutdown()


@pytest.mark.asyncio
async def test_ids_are_never_reused_and_removed_events_are_dropped():
    llm = ScriptedLLM([ai("[NEEDS_INPUT] wait"), ai("second")])
    manager = make_manager(llm)

    with pytest.raises(ProtocolError, match="prompt is required"):
        manager.spawn("   ")

    first = manager.spawn("first")
    await drain(manager, 1)
    manager.remove(first.id)
    assert manager.apply_event(WindowOutput(first.id, "late")) is None

    second = manager.spawn("second")
    assert second.id == first.id + 1
    await manager.shutdown()
