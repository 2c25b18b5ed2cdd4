"""Terminal front end."""

from .base_cli import BaseCLI
from .app_cli import MeminiCLI

__all__ = ["BaseCLI", "MeminiCLI"]
