"""API endpoints package for Mancy."""

from mancy.app.api.messages import router as messages_router

__all__ = [
    "messages_router",
]
