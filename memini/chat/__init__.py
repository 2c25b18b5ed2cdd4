"""Main chat turn engine and the shared tool-call loop.

The engine lives in memini.chat.engine; it is not re-exported here because
agent sessions import the tool loop from this package.
"""

from .thread import ConversationThread
from .tool_loop import ToolLoopResult, run_tool_loop

__all__ = ["ConversationThread", "ToolLoopResult", "run_tool_loop"]
