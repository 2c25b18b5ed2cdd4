"""Language-model client contract and the OpenAI adapter.

Callers only see LLMClient.respond(messages, tools) -> AIMessage. Tools are
OpenAI function-tool dicts; the returned AIMessage carries text content and
zero or more tool_calls ({name, args, id}).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from langchain_core.messages import AIMessage, BaseMessage
from langchain_openai import ChatOpenAI, OpenAIEmbeddings

from memini.config.settings import OpenAISettings
from memini.utils.error_handler import (
    ConfigurationError,
    ConnectivityError,
    ModelInvocationError,
    handle_model_error,
)

LOGGER = logging.getLogger(__name__)


class LLMClient(ABC):
    """Narrow contract for the chat model collaborator."""

    @abstractmethod
    async def respond(
        self, messages: Sequence[BaseMessage], tools: Sequence[Dict[str, Any]] = ()
    ) -> AIMessage:
        pass

    async def embed(self, text: str) -> List[float]:
        """Embedding for recall; adapters without embeddings return []."""
        return []

    @property
    def ready(self) -> bool:
        return True


class OpenAIChatClient(LLMClient):
    """ChatOpenAI-backed client.

    The API key can be swapped at runtime (/key, /openai set); the underlying
    ChatOpenAI and OpenAIEmbeddings instances are rebuilt lazily afterwards.
    """

    def __init__(self, settings: OpenAISettings, api_key: Optional[str] = None):
        self.settings = settings
        self._api_key = api_key or settings.api_key
        self._chat: Optional[ChatOpenAI] = None
        self._embeddings: Optional[OpenAIEmbeddings] = None

    @property
    def api_key(self) -> Optional[str]:
        return self._api_key

    def set_api_key(self, api_key: Optional[str]) -> None:
        self._api_key = api_key or None
        self._chat = None
        self._embeddings = None

    @property
    def ready(self) -> bool:
        return bool(self._api_key)

    def _chat_kwargs(self) -> Dict[str, object]:
        if not self._api_key:
            raise ConfigurationError(
                "OpenAI API key missing",
                "OpenAI API key missing. Use /key <key> or set OPENAI_API_KEY.",
            )
        kwargs: Dict[str, object] = {
            "model": self.settings.model,
            "api_key": self._api_key,
            "temperature": self.settings.temperature,
        }
        if self.settings.base_url:
            kwargs["base_url"] = self.settings.base_url
        return kwargs

    def _chat_model(self) -> ChatOpenAI:
        if self._chat is None:
            self._chat = ChatOpenAI(**self._chat_kwargs())
        return self._chat

    async def respond(
        self, messages: Sequence[BaseMessage], tools: Sequence[Dict[str, Any]] = ()
    ) -> AIMessage:
        model = self._chat_model()
        runnable = model.bind_tools(list(tools)) if tools else model
        LOGGER.debug(f"LLM request: {len(messages)} messages, {len(tools)} tools")
        try:
            response = await runnable.ainvoke(list(messages))
        except Exception as e:
            raise ModelInvocationError(str(e), handle_model_error(e)) from e
        if not isinstance(response, AIMessage):
            response = AIMessage(content=getattr(response, "content", str(response)))
        return response

    async def embed(self, text: str) -> List[float]:
        if not self._api_key:
            return []
        if self._embeddings is None:
            kwargs: Dict[str, object] = {"model": self.settings.embed_model, "api_key": self._api_key}
            if self.settings.base_url:
                kwargs["base_url"] = self.settings.base_url
            self._embeddings = OpenAIEmbeddings(**kwargs)
        try:
            return await self._embeddings.aembed_query(text)
        except Exception as e:
            raise ConnectivityError(f"Embedding request failed: {e}") from e
