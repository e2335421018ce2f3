"""
stackrun configuration.

Pydantic-based settings loaded from STACKRUN_* environment variables and an
optional .env file. CLI flags override individual fields per invocation.
"""

from stackrun.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
