"""Utility functions shared across Mancy services."""

import hashlib
import re
import time
from typing import Callable

# Injectable time source returning seconds. Components default to the
# monotonic clock; tests pass a controllable fake.
Clock = Callable[[], float]

default_clock: Clock = time.monotonic

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_key_text(text: str) -> str:
    """Case-fold and collapse whitespace so query variants share a key.

    Examples:
        >>> normalize_key_text("  Qué es   la  FOTOSÍNTESIS ")
        'qué es la fotosíntesis'
    """
    return _WHITESPACE_RE.sub(" ", str(text)).strip().casefold()


def digest(text: str) -> str:
    """Return a stable SHA-256 hex digest of the given text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def preview(text: str | None, limit: int = 50) -> str:
    """Truncate text for log lines."""
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit] + "..."
