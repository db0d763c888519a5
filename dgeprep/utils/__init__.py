"""Utility helpers shared across dgeprep services."""

from dgeprep.utils.logger import get_logger, setup_cli_logging

__all__ = ["get_logger", "setup_cli_logging"]
