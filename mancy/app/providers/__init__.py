"""Upstream providers for Mancy.

This package provides:
- Chat completion against Groq's OpenAI-compatible API (CompletionService)
- Knowledge sources and their concurrent lookup (WikipediaSource,
  OpenLibrarySource, KnowledgeLookup)
"""

from mancy.app.providers.completion import CompletionService, GenerationParams
from mancy.app.providers.knowledge import (
    ExternalInfoResult,
    KnowledgeLookup,
    KnowledgeSource,
    OpenLibrarySource,
    WikipediaSource,
)

__all__ = [
    # Completion
    "CompletionService",
    "GenerationParams",
    # Knowledge
    "ExternalInfoResult",
    "KnowledgeLookup",
    "KnowledgeSource",
    "OpenLibrarySource",
    "WikipediaSource",
]
