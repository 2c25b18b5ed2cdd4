"""Message formatting utilities."""

from __future__ import annotations

import json
from typing import Any

from langchain_core.messages import AIMessage, BaseMessage


def stringify_content(content: Any) -> str:
    """Convert message content to string.

    Handles:
    - List content (content blocks)
    - Dict content with "text" field
    - Simple string content
    """
    if content is None:
        return ""
    if isinstance(content, list):
        pieces: list[str] = []
        for item in content:
            if isinstance(item, dict):
                if "text" in item:
                    pieces.append(str(item["text"]))
            else:
                pieces.append(str(item))
        return "\n".join(pieces)
    if isinstance(content, dict) and "text" in content:
        return str(content["text"])
    return str(content)


def message_text(message: BaseMessage) -> str:
    return stringify_content(message.content).strip()


def tool_calls_of(message: BaseMessage) -> list[dict]:
    """Return the tool calls of an assistant message as {name, args, id} dicts."""
    if not isinstance(message, AIMessage):
        return []
    return [
        {"name": call["name"], "args": call.get("args") or {}, "id": call.get("id") or ""}
        for call in message.tool_calls or []
    ]


def to_json_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def truncate(text: str, limit: int = 240) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


__all__ = ["stringify_content", "message_text", "tool_calls_of", "to_json_text", "truncate"]
