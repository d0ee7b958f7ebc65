"""Mancy: rate-limited, cached, self-validating conversation layer over Groq."""

__version__ = "2.0.1"
