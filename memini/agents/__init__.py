"""Spawned agents, coordination and personas."""

from .coordination import CoordinationRecord, CoordinationStore
from .personas import Persona, PersonaRegistry
from .session import AgentSession, WindowStatus
from .windows import AgentWindow, AgentWindowManager

__all__ = [
    "AgentSession",
    "AgentWindow",
    "AgentWindowManager",
    "CoordinationRecord",
    "CoordinationStore",
    "Persona",
    "PersonaRegistry",
    "WindowStatus",
]
