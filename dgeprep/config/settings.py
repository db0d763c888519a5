"""
Application settings and configuration.

This module centralizes the process-wide defaults for dgeprep. Values come
from environment variables (optionally loaded from a ``.env`` file). The
settings object is read-only in practice: services receive their own
configuration objects at construction and only fall back to these values
when a field is not given explicitly.
"""

import os
from pathlib import Path

from dotenv import load_dotenv


class Settings:
    """
    Application settings with environment variable support.

    This class manages application-wide settings with fallbacks
    and environment variable overrides for easier configuration
    on workstations, clusters and containers.
    """

    def __init__(self):
        """Initialize application settings."""
        load_dotenv()

        self.WORKSPACE_DIR = Path(
            os.environ.get("DGEPREP_WORKSPACE", str(Path.cwd()))
        ).expanduser()

        # NCBI E-utilities
        self.NCBI_API_KEY = os.environ.get("NCBI_API_KEY", "")
        self.NCBI_EMAIL = os.environ.get("NCBI_EMAIL", "")
        self.NCBI_TOOL = os.environ.get("NCBI_TOOL", "dgeprep")

        # Network policy for remote metadata queries
        self.HTTP_TIMEOUT = float(os.environ.get("DGEPREP_HTTP_TIMEOUT", "30"))
        self.MAX_RETRIES = int(os.environ.get("DGEPREP_MAX_RETRIES", "3"))
        self.BACKOFF_SECONDS = float(os.environ.get("DGEPREP_BACKOFF_SECONDS", "1.0"))

        # Logging settings
        self.LOG_LEVEL = os.environ.get("DGEPREP_LOG_LEVEL", "INFO").upper()


# Create singleton instance
settings = Settings()


def get_settings() -> Settings:
    """
    Get the application settings.

    Returns:
        Settings: Application settings
    """
    return settings
