"""Prompt builders for the orchestrator, worker sessions and daemons.

Every named prompt can be overridden by a Markdown file of the same name in
MEMINI_PROMPTS_DIR or MEMINI_HOME/prompts (first non-empty file wins);
otherwise the bundled default below is used.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional

from memini.config.settings import get_settings

LOGGER = logging.getLogger(__name__)

# Marker a worker session ends its output with when it needs the user.
NEEDS_INPUT_MARKER = "[NEEDS_INPUT]"

DEFAULT_MEMINI_PERSONA = (
    "You are Memini, an execution-first AI assistant living in the user's terminal. "
    "You have long-term memory and can delegate work to tool-using agents. "
    "Deliver concrete, actionable outcomes with minimal back-and-forth."
)

EXECUTION_STYLE = """\
Execution style:
- Prefer doing over describing. Produce final, ready-to-apply output.
- Be concise. Lead with the result, then the supporting detail.
- State assumptions explicitly instead of asking when the risk is low."""

ORCHESTRATION_RULES = """\
Orchestration rules:
- Use spawn_agent(label, prompt) to delegate self-contained work to a worker agent.
  Pass mcp_server to restrict the worker to one tool server.
- Give related workers the same coordination_key, then call
  collect_results(coordination_key) to gather what has finished so far.
  collect_results never waits: an empty list means nothing has finished yet.
- Tools named mcp__<server>__<tool> call a connected tool server directly."""

NEEDS_INPUT_RULE = f"""\
If you cannot finish without information only the user has, stop and end your
reply with a single line of the form:
{NEEDS_INPUT_MARKER} <your question>
The user's answer will arrive as the next message. Otherwise never use the marker."""

DAEMON_UNATTENDED_RULE = """\
Nobody is watching this run and no one can answer questions. Never ask for
input: make reasonable assumptions, state them, and report what you found and
what needs the user's attention."""

DAEMON_BRIEFING_PERSONA = (
    "You are Memini's briefing daemon. You prepare short, factual status briefings "
    "from long-term memory and connected tools."
)

DAEMON_BRIEFING_PROMPT = (
    "Prepare a brief status update: what changed recently, what is pending, and "
    "anything that needs the user's attention. Keep it under ten lines."
)

DAEMON_DIGEST_PERSONA = (
    "You are Memini's digest daemon. You condense recent activity into durable notes "
    "worth remembering."
)

DAEMON_DIGEST_PROMPT = (
    "Summarize recent conversations and agent results into a short digest of facts, "
    "decisions and open threads."
)


def load_prompt(file_name: str, bundled: str, dirs: Optional[Iterable[Path]] = None) -> str:
    """Return the first non-empty override for file_name, else the bundled text."""
    if dirs is None:
        dirs = get_settings().paths.prompt_override_dirs
    for directory in dirs:
        path = Path(directory) / file_name
        if not path.is_file():
            continue
        try:
            raw = path.read_text(encoding="utf-8").strip()
        except OSError as e:
            LOGGER.warning(f"Could not read prompt override {path}: {e}")
            continue
        if raw:
            LOGGER.debug(f"Using prompt override: {path}")
            return raw
    return bundled.strip()


def default_memini_persona() -> str:
    return load_prompt("default_memini_persona.md", DEFAULT_MEMINI_PERSONA)


def daemon_briefing_persona() -> str:
    return load_prompt("daemon_briefing_persona.md", DAEMON_BRIEFING_PERSONA)


def daemon_briefing_prompt() -> str:
    return load_prompt("daemon_briefing_prompt.md", DAEMON_BRIEFING_PROMPT)


def daemon_digest_persona() -> str:
    return load_prompt("daemon_digest_persona.md", DAEMON_DIGEST_PERSONA)


def daemon_digest_prompt() -> str:
    return load_prompt("daemon_digest_prompt.md", DAEMON_DIGEST_PROMPT)


def custom_persona(name: str, description: str) -> str:
    return (
        f"You are {name}, a specialized execution-first AI assistant. "
        f"{description} You have long-term memory and should deliver concrete, "
        "actionable outcomes with minimal back-and-forth."
    )


def main_chat_system_prompt(persona: str, now: str, require_tools: bool) -> str:
    if require_tools:
        tools_line = "Use connected tools, directly or through delegated agents, whenever tools are needed."
    else:
        tools_line = "Use memory context and delegated agents to complete tasks autonomously."
    execution_style = load_prompt("execution_style.md", EXECUTION_STYLE)
    orchestration_rules = load_prompt("orchestration_rules.md", ORCHESTRATION_RULES)
    return (
        f"{persona}\nCurrent date and time: {now}.\n{tools_line}\n\n"
        f"{execution_style}\n\n{orchestration_rules}"
    )


def _tools_line(has_tools: bool) -> str:
    if has_tools:
        return "You have tool access. Use tools proactively to complete the task fully."
    return "You may have limited tool access. Still produce final, ready-to-apply outputs."


def worker_system_prompt(persona: str, now: str, has_tools: bool) -> str:
    execution_style = load_prompt("execution_style.md", EXECUTION_STYLE)
    needs_input_rule = load_prompt("needs_input_rule.md", NEEDS_INPUT_RULE)
    return (
        f"{persona}\nCurrent date and time: {now}.\n"
        f"You are a delegated worker agent in a CLI workflow.\n{_tools_line(has_tools)}\n\n"
        f"{execution_style}\n\n{needs_input_rule}"
    )


def daemon_system_prompt(persona: str, now: str, has_tools: bool) -> str:
    """Background runs have nobody to answer questions, so no input marker rule."""
    execution_style = load_prompt("execution_style.md", EXECUTION_STYLE)
    unattended_rule = load_prompt("daemon_unattended_rule.md", DAEMON_UNATTENDED_RULE)
    return (
        f"{persona}\nCurrent date and time: {now}.\n"
        f"You are a background agent running on a schedule.\n{_tools_line(has_tools)}\n\n"
        f"{execution_style}\n\n{unattended_rule}"
    )


def split_needs_input(text: str) -> tuple[str, Optional[str]]:
    """Split worker output into (body, question) when it ends with the marker line."""
    stripped = text.rstrip()
    index = stripped.rfind(NEEDS_INPUT_MARKER)
    if index == -1:
        return text, None
    tail = stripped[index + len(NEEDS_INPUT_MARKER):]
    if "\n" in tail.strip():
        # Marker mentioned mid-text, not a trailing question line.
        return text, None
    question = tail.strip().lstrip(":").strip()
    body = stripped[:index].rstrip()
    return body, question or "The agent needs more input."
