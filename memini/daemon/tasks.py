"""Background task definitions and trigger matching."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

from memini import prompts

VARIABLE_UPDATE_EVENT = "VariableUpdate"


@dataclass(frozen=True)
class DaemonTaskDef:
    """What a background task runs and when.

    Names compare case-insensitively (see key). Built-in definitions can be
    stopped and restarted but never deleted.
    """

    name: str
    persona: str
    prompt: str
    interval_secs: float
    trigger_events: Tuple[str, ...] = ()
    trigger_variables: Tuple[str, ...] = ()
    tools: Tuple[str, ...] = ()
    paused: bool = False
    builtin: bool = False
    description: str = ""

    @property
    def key(self) -> str:
        return self.name.lower()

    def has_trigger(self) -> bool:
        return bool(self.trigger_events or self.trigger_variables)

    def trigger_summary(self) -> Optional[str]:
        if not self.has_trigger():
            return None
        events = ",".join(self.trigger_events) or VARIABLE_UPDATE_EVENT
        variables = ",".join(self.trigger_variables) or "*"
        return f"{events}:{variables}"

    def matches_trigger(self, event_type: str, variable_name: Optional[str] = None) -> bool:
        """Decide whether a published event should wake this task.

        - no trigger fields: never
        - no trigger_events: only VariableUpdate events qualify
        - trigger_variables: the variable must match an exact name, '*', or a
          'prefix*' pattern (all case-insensitive); a missing name never matches
        """
        if not self.has_trigger():
            return False

        event = event_type.strip().lower()
        if self.trigger_events:
            if event not in {e.strip().lower() for e in self.trigger_events}:
                return False
        elif event != VARIABLE_UPDATE_EVENT.lower():
            return False

        if not self.trigger_variables:
            return True
        if not variable_name:
            return False

        normalized = variable_name.strip().lower()
        for pattern in self.trigger_variables:
            candidate = pattern.strip().lower()
            if not candidate:
                continue
            if candidate == "*":
                return True
            if candidate.endswith("*"):
                if normalized.startswith(candidate[:-1]):
                    return True
                continue
            if candidate == normalized:
                return True
        return False


BRIEFING_INTERVAL_SECS = 3600
DIGEST_INTERVAL_SECS = 14400


def builtin_tasks() -> List[DaemonTaskDef]:
    return [
        DaemonTaskDef(
            name="briefing",
            persona=prompts.daemon_briefing_persona(),
            prompt=prompts.daemon_briefing_prompt(),
            interval_secs=BRIEFING_INTERVAL_SECS,
            builtin=True,
            description="Periodic status briefing",
        ),
        DaemonTaskDef(
            name="digest",
            persona=prompts.daemon_digest_persona(),
            prompt=prompts.daemon_digest_prompt(),
            interval_secs=DIGEST_INTERVAL_SECS,
            builtin=True,
            description="Digest of recent activity",
        ),
    ]
