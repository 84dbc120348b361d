"""
Common Utilities

Shared modules used across all services:
- config.py - Data model and settings dataclasses
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- scheduler.py - Fixed-interval background loop
"""

from .config import (
    ConfigEntry,
    Sentinel,
    RefreshSettings,
    StartupPolicy,
    FEATURE_FLAG_PREFIX,
    NULL_LABEL,
    load_refresh_settings,
)
from .exceptions import (
    RefreshError,
    ConfigError,
    FetchError,
    NotFoundError,
    StartupFetchError,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    log_refresh_outcome,
    reconfigure_service_loggers,
)
from .scheduler import ScheduledLoop

__all__ = [
    # Config
    "ConfigEntry",
    "Sentinel",
    "RefreshSettings",
    "StartupPolicy",
    "FEATURE_FLAG_PREFIX",
    "NULL_LABEL",
    "load_refresh_settings",
    # Exceptions
    "RefreshError",
    "ConfigError",
    "FetchError",
    "NotFoundError",
    "StartupFetchError",
    # Logging
    "setup_logging",
    "get_service_logger",
    "log_refresh_outcome",
    "reconfigure_service_loggers",
    # Scheduling
    "ScheduledLoop",
]
