"""Background task scheduler, task definitions and recipes."""

from .recipes import AgentRecipe, RECIPE_TEMPLATES, load_recipes
from .scheduler import BackgroundScheduler, DaemonHandle
from .tasks import DaemonTaskDef, VARIABLE_UPDATE_EVENT, builtin_tasks

__all__ = [
    "AgentRecipe",
    "BackgroundScheduler",
    "DaemonHandle",
    "DaemonTaskDef",
    "RECIPE_TEMPLATES",
    "VARIABLE_UPDATE_EVENT",
    "builtin_tasks",
    "load_recipes",
]
