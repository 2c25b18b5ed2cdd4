"""Unified error handling for Memini turns, sessions, daemons and commands."""

from __future__ import annotations

import functools
import json
import logging
from typing import Any, Awaitable, Callable, Optional

LOGGER = logging.getLogger(__name__)


class MeminiError(Exception):
    """Base exception for Memini errors."""

    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message


class ConfigurationError(MeminiError):
    """Missing or invalid configuration: recipe, server entry, key, name collision."""
    pass


class ConnectivityError(MeminiError):
    """A remote collaborator (LLM, tool server, memory store) could not be reached."""
    pass


class ProtocolError(MeminiError):
    """Malformed tool arguments or an unexpected response shape."""
    pass


class ModelInvocationError(MeminiError):
    """Error during model invocation."""
    pass


class OAuthTimeoutError(MeminiError):
    """The OAuth callback did not arrive in time."""
    pass


class StateError(MeminiError):
    """Operation not valid in the current window, task or flow state."""
    pass


def tool_error_payload(error: Any) -> str:
    """Render a tool failure as the JSON object fed back to the model."""
    message = getattr(error, "user_message", None) or str(error)
    return json.dumps({"error": message}, ensure_ascii=False)


def handle_model_error(error: Exception) -> str:
    """Convert model invocation errors to user-friendly messages.

    Args:
        error: Exception raised during model invocation

    Returns:
        User-friendly error message
    """
    error_str = str(error).lower()

    if "rate_limit" in error_str or "429" in error_str:
        return "Rate limited by the model provider, try again shortly"

    if "timeout" in error_str:
        return "The model timed out, please retry"

    if "context_length" in error_str:
        return "Conversation is too long, run /clear and retry"

    if "invalid_api_key" in error_str or "authentication" in error_str or "401" in error_str:
        return "OpenAI API key rejected, set a new one with /key <key>"

    if "quota" in error_str or "insufficient" in error_str:
        return "Model quota exhausted"

    return f"Model request failed: {error}"


def with_error_boundary(
    label: str,
    report: Optional[Callable[[str, str], None]] = None,
):
    """Decorator for async command handlers.

    MeminiError subclasses are reported as warnings with their user message;
    anything else is logged with a traceback and reported as an error. The
    wrapped handler then returns True so the CLI keeps running.

    Args:
        label: Name used in log lines
        report: Optional callback receiving (level, message)

    Example:
        @with_error_boundary("/daemon")
        async def _handle_daemon(self, arg):
            ...
    """
    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return await func(*args, **kwargs)
            except MeminiError as e:
                LOGGER.warning(f"{label}: {e}")
                sink = report or _bound_report(args)
                if sink:
                    sink("WARN", e.user_message)
                return True
            except Exception as e:
                LOGGER.exception(f"{label} unexpected error", exc_info=e)
                sink = report or _bound_report(args)
                if sink:
                    sink("ERROR", f"{label} failed: {e}")
                return True
        return wrapper
    return decorator


def _bound_report(args: tuple) -> Optional[Callable[[str, str], None]]:
    # Methods decorated inside a CLI class report through its activity log.
    if args and hasattr(args[0], "report"):
        return args[0].report
    return None


__all__ = [
    "MeminiError",
    "ConfigurationError",
    "ConnectivityError",
    "ProtocolError",
    "ModelInvocationError",
    "OAuthTimeoutError",
    "StateError",
    "tool_error_payload",
    "handle_model_error",
    "with_error_boundary",
]
