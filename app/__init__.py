"""Restyle application package: settings, logging and admission control."""

from .config import Settings, get_settings
from .logging_config import configure_logging
from .rate_limit import Decision, RateLimiter

__all__ = ["Decision", "RateLimiter", "Settings", "get_settings", "configure_logging"]
