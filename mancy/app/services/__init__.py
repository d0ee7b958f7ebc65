"""Services package for Mancy.

This package provides:
- Admission control (rate_limiter)
- Conversation history and prompt assembly (conversation)
- Text normalization and validation (text_quality)
- Query analysis for knowledge lookups (query_analyzer)
- The retry/fallback response generator (response_generator)
- Durable cache mirror and interaction history (durable_store)
- Message pipeline, maintenance scheduler and wiring (pipeline, maintenance, factory)

Submodules are imported directly; this package does not re-export them.
"""
