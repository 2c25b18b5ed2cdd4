"""Events carried on the single update channel.

Background units (agent sessions, daemon runs, the OAuth wait) never touch
shared state. They put one of these on the channel and the foreground applies
it when it drains.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union


@dataclass(frozen=True)
class WindowOutput:
    window_id: int
    text: str


@dataclass(frozen=True)
class WindowStatusChanged:
    window_id: int
    status: str
    question: Optional[str] = None


@dataclass(frozen=True)
class WindowCompleted:
    window_id: int
    result: str
    error: Optional[str] = None


@dataclass(frozen=True)
class DaemonRunResult:
    task_name: str
    ok: bool
    message: str
    finished_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class OAuthFinished:
    server_id: str
    ok: bool
    message: str
    token: Optional[Any] = None
    timed_out: bool = False


UpdateEvent = Union[WindowOutput, WindowStatusChanged, WindowCompleted, DaemonRunResult, OAuthFinished]
