"""Memini - CLI entrypoint."""

from __future__ import annotations

import asyncio

from memini.cli import MeminiCLI
from memini.config import get_settings
from memini.runtime.app import build_application
from memini.utils.error_handler import MeminiError
from memini.utils.logging_utils import setup_logging


async def async_main():
    """Async entrypoint: configure logging, build the app and run the CLI."""
    settings = get_settings()
    logger = setup_logging(log_dir=settings.paths.home / "logs")

    try:
        app = build_application(settings)
        logger.info("Application built successfully")
    except MeminiError as e:
        logger.error(f"Startup failed: {e}")
        print(f"\nStartup failed: {e.user_message}")
        return
    except Exception as e:
        logger.error(f"Fatal error during startup: {e}", exc_info=True)
        print(f"\nStartup failed: {e}")
        print("See the log file for details")
        return

    cli = MeminiCLI(app)
    try:
        await cli.run()
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received, shutting down...")


def main():
    """Synchronous wrapper for async_main."""
    try:
        asyncio.run(async_main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
