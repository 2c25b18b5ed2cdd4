"""Agent recipes: Markdown files that define background tasks.

A recipe lives in MEMINI_HOME/agents/<name>.md:

    ---
    name: repo-watch
    description: Track repo state
    interval_secs: 1800
    auto_start: true
    trigger_events: VariableUpdate
    trigger_variables: deploy.request, ci.*
    tools: github, workspace_read_file, workspace_run_command
    persona: You are a repository watchdog agent.
    ---
    Inspect the repository and summarize what changed.

Front matter is optional; the Markdown body (or the `instructions` key) is
the task prompt. List fields accept YAML lists or comma-separated strings.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from memini.tools.workspace import LIST_FILES_TOOL, READ_FILE_TOOL, RUN_COMMAND_TOOL
from memini.utils.error_handler import ConfigurationError
from .tasks import DaemonTaskDef

LOGGER = logging.getLogger(__name__)

DEFAULT_AGENT_INTERVAL_SECS = 300

_FRONT_MATTER = re.compile(r'^---\s*\n(.*?)\n---\s*(?:\n(.*))?$', re.DOTALL)


@dataclass(frozen=True)
class AgentRecipe:
    name: str
    instructions: str
    description: str = ""
    interval_secs: int = DEFAULT_AGENT_INTERVAL_SECS
    auto_start: bool = False
    trigger_events: Tuple[str, ...] = ()
    trigger_variables: Tuple[str, ...] = ()
    tools: Tuple[str, ...] = ()
    persona: str = ""
    path: Optional[Path] = None

    def to_task_def(self) -> DaemonTaskDef:
        return DaemonTaskDef(
            name=self.name,
            persona=self.persona or default_recipe_persona(self.name),
            prompt=self.instructions,
            interval_secs=self.interval_secs,
            trigger_events=self.trigger_events,
            trigger_variables=self.trigger_variables,
            tools=self.tools,
            description=self.description,
        )


@dataclass(frozen=True)
class RecipeTemplate:
    id: str
    description: str
    interval_secs: int
    persona: str
    instructions: str
    tools: Tuple[str, ...] = field(default_factory=tuple)


RECIPE_TEMPLATES: Dict[str, RecipeTemplate] = {
    t.id: t
    for t in (
        RecipeTemplate(
            id="repo-watch",
            description="Track repo state, test failures, and unfinished work.",
            interval_secs=1800,
            persona="You are a repository watchdog agent. Focus on risky changes, broken tests, and unfinished tasks.",
            instructions="Inspect the repository, run quick verification commands, and summarize what changed, what failed, and what to do next.",
            tools=(LIST_FILES_TOOL, READ_FILE_TOOL, RUN_COMMAND_TOOL),
        ),
        RecipeTemplate(
            id="release-notes",
            description="Draft concise release notes from recent source changes.",
            interval_secs=3600,
            persona="You are a release-notes agent. Produce concise, accurate, developer-facing notes.",
            instructions="Analyze recent project changes and draft release notes with sections: Added, Changed, Fixed, and Follow-ups.",
            tools=(READ_FILE_TOOL, RUN_COMMAND_TOOL),
        ),
        RecipeTemplate(
            id="cleanup",
            description="Find stale files and suggest safe cleanup actions.",
            interval_secs=7200,
            persona="You are a codebase cleanup agent. Prefer safe, incremental improvements.",
            instructions="Scan for stale artifacts, dead scripts, and obvious cleanup opportunities. Propose a prioritized cleanup plan.",
            tools=(LIST_FILES_TOOL, READ_FILE_TOOL, RUN_COMMAND_TOOL),
        ),
    )
}


def default_recipe_persona(name: str) -> str:
    return (
        f"You are a background autonomous agent named '{name}'. "
        "Be concise, action-oriented, and explicit about changes."
    )


def sanitize_name(raw: str) -> str:
    """Lowercase; anything but [a-z0-9_-] becomes '-'; edge dashes trimmed."""
    candidate = "".join(
        ch if (ch.isascii() and ch.isalnum()) or ch in "-_" else "-"
        for ch in raw.strip().lower()
    ).strip("-")
    if not candidate:
        raise ConfigurationError("Recipe name cannot be empty.")
    return candidate


def split_front_matter(content: str) -> Tuple[Dict[str, Any], str]:
    """Return (front_matter, body); content without front matter is all body."""
    match = _FRONT_MATTER.match(content)
    if not match:
        return {}, content.strip()

    try:
        front_matter = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML front matter: {e}")
    if not isinstance(front_matter, dict):
        raise ConfigurationError("Front matter must be a YAML mapping")
    return front_matter, (match.group(2) or "").strip()


def _first(front_matter: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if front_matter.get(key) is not None:
            return front_matter[key]
    return None


def _as_list(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        items = [str(value)]
    return tuple(item.strip() for item in items if item.strip())


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "on", "1"):
            return True
        if lowered in ("false", "no", "off", "0"):
            return False
    return None


def _as_interval(value: Any, default: int) -> int:
    try:
        interval = int(value)
    except (TypeError, ValueError):
        return default
    return interval if interval > 0 else default


def parse_recipe(content: str, path: Path, default_interval: int = DEFAULT_AGENT_INTERVAL_SECS) -> AgentRecipe:
    """Parse a recipe file.

    Raises:
        ConfigurationError: invalid front matter, or no instructions
    """
    front_matter, body = split_front_matter(content)

    raw_name = _first(front_matter, "name")
    name = sanitize_name(str(raw_name)) if raw_name is not None else sanitize_name(path.stem)

    instructions = body or str(_first(front_matter, "instructions", "prompt") or "").strip()
    if not instructions:
        raise ConfigurationError(
            f"{path.name}: missing instructions: add markdown body or front matter `instructions`"
        )

    return AgentRecipe(
        name=name,
        instructions=instructions,
        description=str(front_matter.get("description") or "").strip(),
        interval_secs=_as_interval(_first(front_matter, "interval_secs", "interval"), default_interval),
        auto_start=bool(_as_bool(_first(front_matter, "auto_start", "autostart"))),
        trigger_events=_as_list(_first(front_matter, "trigger_events", "events")),
        trigger_variables=_as_list(_first(front_matter, "trigger_variables", "trigger_vars", "trigger_keys")),
        tools=_as_list(front_matter.get("tools")),
        persona=str(front_matter.get("persona") or "").strip() or default_recipe_persona(name),
        path=path,
    )


def load_recipes(
    directory: Path, default_interval: int = DEFAULT_AGENT_INTERVAL_SECS
) -> Tuple[List[AgentRecipe], List[str]]:
    """Load every *.md recipe; returns (recipes, errors). A bad file never blocks the rest."""
    directory = Path(directory)
    if not directory.is_dir():
        return [], []

    recipes: List[AgentRecipe] = []
    errors: List[str] = []
    seen: Dict[str, Path] = {}
    for path in sorted(directory.glob("*.md")):
        try:
            recipe = parse_recipe(path.read_text(encoding="utf-8"), path, default_interval)
        except (ConfigurationError, OSError) as e:
            errors.append(f"{path.name}: {getattr(e, 'user_message', e)}")
            continue
        if recipe.name in seen:
            errors.append(f"{path.name}: duplicate recipe name '{recipe.name}' (also in {seen[recipe.name].name})")
            continue
        seen[recipe.name] = path
        recipes.append(recipe)
    LOGGER.debug(f"Loaded {len(recipes)} recipe(s) from {directory} ({len(errors)} error(s))")
    return recipes, errors


def render_recipe(recipe: AgentRecipe) -> str:
    front_matter: Dict[str, Any] = {
        "name": recipe.name,
        "description": recipe.description or f"Background agent {recipe.name}",
        "interval_secs": recipe.interval_secs,
        "auto_start": recipe.auto_start,
    }
    if recipe.trigger_events:
        front_matter["trigger_events"] = list(recipe.trigger_events)
    if recipe.trigger_variables:
        front_matter["trigger_variables"] = list(recipe.trigger_variables)
    front_matter["tools"] = list(recipe.tools)
    front_matter["persona"] = recipe.persona or default_recipe_persona(recipe.name)
    header = yaml.safe_dump(front_matter, sort_keys=False, allow_unicode=True, default_flow_style=None)
    return f"---\n{header}---\n{recipe.instructions.strip()}\n"


def recipe_path(directory: Path, name: str) -> Path:
    return Path(directory) / f"{sanitize_name(name)}.md"


def write_recipe(directory: Path, recipe: AgentRecipe, overwrite: bool = False) -> Path:
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    path = recipe_path(directory, recipe.name)
    if path.exists() and not overwrite:
        raise ConfigurationError(f"Recipe '{recipe.name}' already exists: {path}")
    path.write_text(render_recipe(recipe), encoding="utf-8")
    LOGGER.info(f"Wrote recipe {path}")
    return path


def remove_recipe(directory: Path, name: str) -> Path:
    path = recipe_path(directory, name)
    if not path.exists():
        raise ConfigurationError(f"No recipe named '{name}' in {directory}")
    path.unlink()
    LOGGER.info(f"Removed recipe {path}")
    return path


def create_recipe(directory: Path, name: str, interval_secs: int, instructions: str) -> AgentRecipe:
    name = sanitize_name(name)
    if interval_secs <= 0:
        raise ConfigurationError("Interval must be a positive number of seconds.")
    if not instructions.strip():
        raise ConfigurationError("Instructions are required.")
    recipe = AgentRecipe(
        name=name,
        instructions=instructions.strip(),
        interval_secs=interval_secs,
        auto_start=True,
        persona=default_recipe_persona(name),
    )
    path = write_recipe(directory, recipe)
    return replace(recipe, path=path)


def scaffold_recipe(directory: Path, template_id: str, name: Optional[str] = None) -> AgentRecipe:
    template = RECIPE_TEMPLATES.get(template_id)
    if template is None:
        raise ConfigurationError(
            f"Unknown template: {template_id}",
            f"Unknown template '{template_id}'. Available: {', '.join(RECIPE_TEMPLATES)}",
        )
    recipe = AgentRecipe(
        name=sanitize_name(name or template.id),
        instructions=template.instructions,
        description=template.description,
        interval_secs=template.interval_secs,
        auto_start=False,
        tools=template.tools,
        persona=template.persona,
    )
    path = write_recipe(directory, recipe)
    return replace(recipe, path=path)
