"""Base CLI framework: command routing and the input loop."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, Optional

LOGGER = logging.getLogger(__name__)

CommandHandler = Callable[[Optional[str]], Awaitable[bool]]


class BaseCLI(ABC):
    """Base CLI class handling common command-line interaction patterns.

    Provides:
    - Command routing (/quit, /exit, /help)
    - Main input/output loop

    Subclasses implement:
    - Welcome message
    - User message processing
    - Custom commands (optional)
    """

    BASE_COMMANDS: Dict[str, str] = {
        "/quit": "Exit memini",
        "/exit": "Exit memini",
        "/help": "Show this help",
    }

    def __init__(self):
        self._command_handlers = self._build_command_handlers()
        self._running = False

        LOGGER.info(f"{self.__class__.__name__} initialized")

    def _build_command_handlers(self) -> Dict[str, CommandHandler]:
        """Build command handler mapping.

        Subclasses can override to add custom commands.
        """
        return {
            "/quit": self._handle_quit,
            "/exit": self._handle_quit,
            "/help": self._handle_help,
        }

    @property
    def commands(self) -> Dict[str, str]:
        """Available commands (for help display)."""
        return self.BASE_COMMANDS

    # ========== Main Loop ==========

    async def run(self):
        """Main CLI loop: welcome, read, route, repeat, then shut down."""
        self._running = True
        await self.on_startup()
        self.print_welcome()

        try:
            while self._running:
                try:
                    user_input = await self.get_input()

                    if not user_input:
                        continue

                    if self.is_command(user_input):
                        should_continue = await self.handle_command(user_input)
                        if not should_continue:
                            break
                    else:
                        await self.handle_user_message(user_input)

                except (KeyboardInterrupt, EOFError):
                    print("\nBye!")
                    LOGGER.info("Session interrupted by user")
                    break
                except Exception as e:
                    LOGGER.error(f"Unexpected error in main loop: {e}", exc_info=True)
                    print(f"Error: {e}")
        finally:
            self._running = False
            await self.on_shutdown()

    async def on_startup(self):
        """Hook run before the welcome message."""

    async def on_shutdown(self):
        """Cleanup before shutdown."""
        LOGGER.info("CLI shutting down")

    # ========== Command Handling ==========

    def is_command(self, text: str) -> bool:
        return text.startswith("/")

    async def handle_command(self, cmd: str) -> bool:
        """Handle command input.

        Args:
            cmd: Command string (e.g., "/reply 2 yes")

        Returns:
            True to continue main loop, False to exit
        """
        parts = cmd.split(maxsplit=1)
        cmd_name = parts[0].lower()
        cmd_arg = parts[1].strip() if len(parts) > 1 else None

        handler = self._command_handlers.get(cmd_name)
        if handler:
            return await handler(cmd_arg)
        print(f"Unknown command: {cmd_name}")
        print("   Type /help for the command list")
        return True

    # ========== Built-in Command Handlers ==========

    async def _handle_quit(self, arg: Optional[str]) -> bool:
        print("Session ended.")
        LOGGER.info("Exit requested by /quit command")
        return False

    async def _handle_help(self, arg: Optional[str]) -> bool:
        print("\nCommands:")
        for cmd, desc in self.commands.items():
            print(f"  {cmd:<34} {desc}")
        print()
        return True

    # ========== Abstract Methods ==========

    @abstractmethod
    def print_welcome(self):
        """Print welcome message."""

    @abstractmethod
    async def get_input(self) -> str:
        """Read one line of user input."""

    @abstractmethod
    async def handle_user_message(self, message: str):
        """Process a non-command line."""


async def read_line(prompt: str) -> str:
    """Read a line from stdin without blocking the event loop."""
    loop = asyncio.get_running_loop()
    return (await loop.run_in_executor(None, lambda: input(prompt))).strip()


__all__ = ["BaseCLI", "CommandHandler", "read_line"]
