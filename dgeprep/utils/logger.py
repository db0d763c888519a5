"""
Logging configuration for dgeprep.

Every service obtains its logger through ``get_logger(__name__)`` so that
library use and CLI use share one format and one level setting.
"""

import logging
import os
import sys
from typing import Optional

LOG_FORMAT = "[%(asctime)s] %(levelname)s - [%(name)s] - %(message)s"


def _default_level() -> int:
    level_name = os.environ.get("DGEPREP_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_name, logging.INFO)


def setup_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """
    Configure a logger with consistent formatting.

    Handles two scenarios:
    1. CLI usage: the CLI installs a RichHandler on the root logger.
       We detect this and let logs propagate to root (single output).
    2. Library usage: no RichHandler on root. We add our own StreamHandler
       and disable propagation to prevent duplicate output.

    Args:
        name: Name of the logger
        level: Logging level (default: DGEPREP_LOG_LEVEL or INFO)

    Returns:
        logging.Logger: Configured logger instance
    """
    logger = logging.getLogger(name)

    # Only configure if it hasn't been configured yet
    if not logger.handlers:
        logger.setLevel(level if level is not None else _default_level())

        root_logger = logging.getLogger()
        has_rich_handler = False

        try:
            from rich.logging import RichHandler

            has_rich_handler = any(
                isinstance(handler, RichHandler) for handler in root_logger.handlers
            )
        except ImportError:
            pass

        if not has_rich_handler:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(handler)
            # Root's basicConfig handler would print the same record again
            logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Name of the logger

    Returns:
        logging.Logger: Logger instance
    """
    return setup_logger(name)


def setup_cli_logging(level: int = logging.INFO) -> None:
    """
    Route all dgeprep logging through a RichHandler on the root logger.

    Loggers created before this call got their own StreamHandler; those are
    removed so records are printed once.
    """
    from rich.logging import RichHandler

    rich_handler = RichHandler(
        show_time=True,
        show_level=True,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    rich_handler.setFormatter(logging.Formatter(fmt="%(message)s", datefmt="[%X]"))

    root_logger = logging.getLogger()
    root_logger.handlers = [rich_handler]
    root_logger.setLevel(level)

    for name, logger in logging.Logger.manager.loggerDict.items():
        if not name.startswith("dgeprep") or not isinstance(logger, logging.Logger):
            continue
        logger.handlers = []
        logger.propagate = True
        logger.setLevel(level)
