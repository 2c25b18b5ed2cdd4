"""Conversation thread kept for the active persona."""

from __future__ import annotations

from typing import Iterable, List, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage


class ConversationThread:
    """Ordered user/assistant messages, capped at max_messages.

    Every turn is stored as a user/assistant pair, and trimming drops the
    oldest pair first so the thread always starts on a user turn.
    """

    def __init__(self, max_messages: int = 40, messages: Optional[Iterable[BaseMessage]] = None):
        self.max_messages = max_messages
        self._messages: List[BaseMessage] = list(messages or [])
        self.trim()

    @property
    def messages(self) -> List[BaseMessage]:
        return list(self._messages)

    def append_turn(self, user_text: str, assistant_text: str) -> None:
        # An empty reply still takes its slot in the pair
        self._messages.append(HumanMessage(content=user_text))
        self._messages.append(AIMessage(content=assistant_text or ""))
        self.trim()

    def trim(self) -> int:
        dropped = 0
        while len(self._messages) > self.max_messages:
            del self._messages[:2]
            dropped += 2
        # Threads restored from storage may not be paired
        while self._messages and not isinstance(self._messages[0], HumanMessage):
            del self._messages[0]
            dropped += 1
        return dropped

    def replace(self, messages: Iterable[BaseMessage]) -> None:
        self._messages = list(messages)
        self.trim()

    def clear(self) -> None:
        self._messages.clear()

    @property
    def turns(self) -> int:
        return sum(1 for message in self._messages if isinstance(message, HumanMessage))

    def __len__(self) -> int:
        return len(self._messages)
