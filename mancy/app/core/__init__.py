"""Core utilities for the Mancy application."""

from mancy.app.core.cache import ABSENT, TTLCache, make_key, scope_prefix
from mancy.app.core.config import settings
from mancy.app.core.logging import get_logger, setup_logging

__all__ = [
    "ABSENT",
    "TTLCache",
    "make_key",
    "scope_prefix",
    "settings",
    "get_logger",
    "setup_logging",
]
