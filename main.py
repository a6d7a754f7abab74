"""
Main entry point for the ytqueue server.

This script initializes the configuration, sets up logging, creates the
controller and the web application, and runs the event loop until SIGINT or
SIGTERM, at which point in-flight downloads are awaited before exiting.
"""

import os
import sys
import logging
import asyncio
from types import TracebackType
from typing import Type

from aiohttp import web

from ytqueue._version import __version__
from ytqueue.logging_config import setup_logging
from ytqueue.config import ConfigManager
from ytqueue.constants import CONFIG_FILE, USER_DATA_DIR
from ytqueue.controller import AppController
from ytqueue.exceptions import YtQueueError
from ytqueue.server import create_app

def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))

def handle_async_exception(loop, context):
    """Logs unhandled exceptions from asyncio tasks."""
    logger = logging.getLogger()
    msg = context.get("exception", context["message"])
    logger.critical(f"Caught exception from asyncio task: {msg}")


def main() -> int:
    # 1. Ensure the data directory exists before anything else
    USER_DATA_DIR.mkdir(parents=True, exist_ok=True)

    # 2. Load configuration before setting up logging
    config_manager = ConfigManager(CONFIG_FILE)
    config = config_manager.load()

    # 3. LOG_LEVEL in the environment wins over the configured level
    setup_logging(os.environ.get('LOG_LEVEL', config.log_level))
    logging.info(f"Starting ytqueue v{__version__}")

    # 4. Set up global exception handlers
    sys.excepthook = handle_exception

    # 5. Create the Controller, which holds all business logic, and the web app around it
    controller = AppController(config_manager, config, USER_DATA_DIR)
    app = create_app(controller)

    loop = asyncio.new_event_loop()
    loop.set_exception_handler(handle_async_exception)
    try:
        # run_app handles SIGINT/SIGTERM and runs the shutdown hooks
        web.run_app(app, host=config.host, port=config.port, loop=loop, print=None)
    except YtQueueError as e:
        logging.error(str(e))
        return 1
    except KeyboardInterrupt:
        logging.info("Application interrupted by user.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
