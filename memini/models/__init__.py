"""Language-model clients."""

from .llm import LLMClient, OpenAIChatClient

__all__ = ["LLMClient", "OpenAIChatClient"]
