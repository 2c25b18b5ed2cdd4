"""Tool-call loop shared by chat turns, worker sessions and daemon runs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Sequence

from langchain_core.messages import AIMessage, BaseMessage, ToolMessage

from memini.models.llm import LLMClient
from memini.utils.error_handler import MeminiError, tool_error_payload
from memini.utils.message_utils import message_text, tool_calls_of, truncate

LOGGER = logging.getLogger(__name__)

ToolExecutor = Callable[[Dict[str, Any]], Awaitable[str]]


@dataclass
class ToolLoopResult:
    text: str
    messages: List[BaseMessage] = field(default_factory=list)
    rounds: int = 0
    tool_calls: int = 0
    exhausted: bool = False


async def run_tool_loop(
    llm: LLMClient,
    messages: Sequence[BaseMessage],
    tools: Sequence[Dict[str, Any]],
    execute: ToolExecutor,
    max_loops: int,
) -> ToolLoopResult:
    """Call the model, execute requested tools, repeat.

    At most max_loops tool rounds run; the model is therefore called at most
    max_loops + 1 times. A failing tool becomes an {"error": ...} payload in
    its ToolMessage. Model failures propagate to the caller.

    Returns:
        ToolLoopResult with the last non-empty assistant text and every
        message appended after the input (AI and tool messages).
    """
    working: List[BaseMessage] = list(messages)
    result = ToolLoopResult(text="")

    response = await llm.respond(working, tools)
    _record(working, result, response)

    while True:
        calls = tool_calls_of(response)
        if not calls:
            break
        if result.rounds >= max_loops:
            result.exhausted = True
            LOGGER.warning(f"Tool loop limit reached ({max_loops} rounds)")
            break
        result.rounds += 1

        for call in calls:
            result.tool_calls += 1
            LOGGER.info(f"  Tool call: {call['name']} {truncate(str(call['args']), 160)}")
            try:
                content = await execute(call)
            except MeminiError as e:
                LOGGER.warning(f"  Tool {call['name']} failed: {e}")
                content = tool_error_payload(e)
            except Exception as e:
                LOGGER.exception(f"Tool {call['name']} failed", exc_info=e)
                content = tool_error_payload(e)
            tool_message = ToolMessage(content=content, tool_call_id=call["id"], name=call["name"])
            working.append(tool_message)
            result.messages.append(tool_message)

        response = await llm.respond(working, tools)
        _record(working, result, response)

    return result


def _record(working: List[BaseMessage], result: ToolLoopResult, response: AIMessage) -> None:
    working.append(response)
    result.messages.append(response)
    text = message_text(response)
    if text:
        result.text = text
