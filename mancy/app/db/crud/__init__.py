"""CRUD operations package.

- cache.py: durable cache rows
- interaction.py: interaction history and user statistics
"""

from mancy.app.db.crud.cache import (
    delete_cache_entry,
    delete_expired_cache_entries,
    get_cache_entry,
    upsert_cache_entry,
)
from mancy.app.db.crud.interaction import (
    count_interactions,
    get_recent_interactions,
    get_user_stats,
    save_interaction,
)

__all__ = [
    # Cache operations
    "delete_cache_entry",
    "delete_expired_cache_entries",
    "get_cache_entry",
    "upsert_cache_entry",
    # Interaction operations
    "count_interactions",
    "get_recent_interactions",
    "get_user_stats",
    "save_interaction",
]
