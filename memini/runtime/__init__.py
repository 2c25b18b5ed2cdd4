"""Application state and the update channel.

memini.runtime.app is imported explicitly; this package only re-exports the
event types so background units can depend on it without cycles.
"""

from .events import (
    DaemonRunResult,
    OAuthFinished,
    UpdateEvent,
    WindowCompleted,
    WindowOutput,
    WindowStatusChanged,
)

__all__ = [
    "DaemonRunResult",
    "OAuthFinished",
    "UpdateEvent",
    "WindowCompleted",
    "WindowOutput",
    "WindowStatusChanged",
]
