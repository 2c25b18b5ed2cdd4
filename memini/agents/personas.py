"""Personas: named system-prompt profiles for the main chat.

The built-in "memini" persona always exists. Custom personas are persisted in
the memory store as a JSON list under the custom_agents variable, and the
active one under active_agent.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

from memini.prompts import custom_persona, default_memini_persona
from memini.utils.error_handler import ConfigurationError, StateError

LOGGER = logging.getLogger(__name__)

DEFAULT_PERSONA_NAME = "memini"
CUSTOM_AGENTS_VAR = "custom_agents"
ACTIVE_AGENT_VAR = "active_agent"

_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,39}$")


@dataclass(frozen=True)
class Persona:
    name: str
    description: str
    prompt: str
    builtin: bool = False

    @property
    def agent_id(self) -> str:
        return self.name


class PersonaRegistry:
    def __init__(self):
        self._personas: Dict[str, Persona] = {}
        default = Persona(
            name=DEFAULT_PERSONA_NAME,
            description="Default execution-first assistant",
            prompt=default_memini_persona(),
            builtin=True,
        )
        self._personas[default.name] = default
        self._active = default.name

    @property
    def active(self) -> Persona:
        return self._personas[self._active]

    def personas(self) -> List[Persona]:
        return sorted(self._personas.values(), key=lambda p: (not p.builtin, p.name))

    def get(self, name: str) -> Persona:
        persona = self._personas.get(name.strip().lower())
        if persona is None:
            raise StateError(f"Unknown agent persona: {name}")
        return persona

    def use(self, name: str) -> Persona:
        persona = self.get(name)
        self._active = persona.name
        return persona

    def create(self, name: str, description: str) -> Persona:
        name = name.strip().lower()
        if not _NAME_RE.match(name):
            raise ConfigurationError(
                f"Invalid persona name: {name!r}",
                "Persona names use lowercase letters, digits, '-' or '_' (max 40 chars).",
            )
        if name in self._personas:
            raise ConfigurationError(f"Persona '{name}' already exists.")
        description = description.strip()
        if not description:
            raise ConfigurationError("A persona needs a description.")
        persona = Persona(name=name, description=description, prompt=custom_persona(name, description))
        self._personas[name] = persona
        return persona

    def delete(self, name: str) -> Persona:
        persona = self.get(name)
        if persona.builtin:
            raise StateError(f"The built-in persona '{persona.name}' cannot be deleted.")
        del self._personas[persona.name]
        if self._active == persona.name:
            self._active = DEFAULT_PERSONA_NAME
        return persona

    # ========== Persistence ==========

    def dump_custom(self) -> str:
        return json.dumps([asdict(p) for p in self._personas.values() if not p.builtin])

    def load_custom(self, raw: Optional[str], active: Optional[str] = None) -> int:
        """Load personas saved by dump_custom(); malformed entries are skipped."""
        loaded = 0
        if raw:
            try:
                items = json.loads(raw) if isinstance(raw, str) else raw
            except ValueError as e:
                LOGGER.warning(f"Ignoring malformed {CUSTOM_AGENTS_VAR}: {e}")
                items = []
            for item in items if isinstance(items, list) else []:
                try:
                    persona = Persona(
                        name=str(item["name"]).lower(),
                        description=str(item.get("description", "")),
                        prompt=str(item.get("prompt") or custom_persona(item["name"], item.get("description", ""))),
                    )
                except (KeyError, TypeError, AttributeError):
                    continue
                if persona.name in self._personas:
                    continue
                self._personas[persona.name] = persona
                loaded += 1
        if active and active.lower() in self._personas:
            self._active = active.lower()
        return loaded
