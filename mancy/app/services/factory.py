"""Wiring of the service objects from settings.

All state maps live in explicit objects owned by one ``ServiceContainer``;
nothing is a module global. Tests build containers with fakes or with
``build_container(Settings(...))``.
"""

from dataclasses import dataclass
from typing import List, Optional

import httpx

from mancy.app.core.cache import TTLCache
from mancy.app.core.config import Settings
from mancy.app.core.http_client import create_http_client
from mancy.app.core.logging import get_logger
from mancy.app.core.utils import Clock, default_clock
from mancy.app.db.async_session import create_engine_for
from mancy.app.providers.completion import CompletionService, GenerationParams
from mancy.app.providers.knowledge import (
    KnowledgeLookup,
    KnowledgeSource,
    OpenLibrarySource,
    WikipediaSource,
)
from mancy.app.services.conversation import ConversationManager
from mancy.app.services.durable_store import (
    DurableStore,
    InteractionHistory,
    RedisDurableStore,
    SQLDurableStore,
)
from mancy.app.services.maintenance import MaintenanceScheduler
from mancy.app.services.pipeline import MessagePipeline
from mancy.app.services.query_analyzer import QueryAnalyzer
from mancy.app.services.rate_limiter import RateLimiter
from mancy.app.services.response_generator import ResponseGenerator, build_model_plan

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    rate_limiter: RateLimiter
    search_cache: TTLCache
    response_cache: TTLCache
    reply_tracker: TTLCache
    conversations: ConversationManager
    completion: CompletionService
    knowledge: KnowledgeLookup
    generator: ResponseGenerator
    pipeline: MessagePipeline
    maintenance: MaintenanceScheduler
    http_client: httpx.AsyncClient
    durable: Optional[DurableStore] = None
    history: Optional[InteractionHistory] = None

    def metrics(self) -> dict:
        """Point-in-time numbers for the periodic health log."""
        return {
            "in_flight": self.rate_limiter.in_flight,
            "buckets": self.rate_limiter.get_stats()["buckets"],
            "conversations": len(self.conversations),
            "search_cache_size": len(self.search_cache),
            "response_cache_size": len(self.response_cache),
            "response_cache_hit_rate": self.response_cache.get_stats()["hit_rate"],
        }

    async def startup(self) -> None:
        """Initialize storage, warm caches and start background sweeps."""
        if isinstance(self.durable, SQLDurableStore):
            try:
                await self.durable.init()
            except Exception as e:
                logger.error(f"Durable store unavailable, continuing in memory: {e}")
                self.detach_durable()

        if self.settings.precache_enabled and self.settings.precache_terms:
            try:
                await self.knowledge.warm_up(self.settings.precache_terms)
            except Exception as e:
                logger.warning(f"Pre-caching failed: {e}")

        await self.maintenance.start()

    def detach_durable(self) -> None:
        """Run without the durable store from now on."""
        self.durable = None
        self.history = None
        self.search_cache.durable = None
        self.conversations.history = None
        self.pipeline.history = None

    async def shutdown(self) -> None:
        await self.maintenance.stop()
        await self.http_client.aclose()
        await self.completion.close()
        if self.durable is not None:
            await self.durable.close()

    async def health(self) -> dict:
        database = "disabled"
        if self.durable is not None:
            database = "healthy" if await self.durable.health_check() else "unhealthy"
        completion = "healthy" if await self.completion.health_check() else "unhealthy"
        return {"database": database, "completion": completion}


def build_durable_store(settings: Settings) -> Optional[DurableStore]:
    if settings.durable_store_backend == "sql":
        return SQLDurableStore.from_engine(create_engine_for(settings.database_url))
    if settings.durable_store_backend == "redis":
        return RedisDurableStore(settings.redis_url)
    return None


def build_knowledge_sources(settings: Settings, http_client: httpx.AsyncClient) -> List[KnowledgeSource]:
    return [
        WikipediaSource(
            http_client,
            language=settings.wikipedia_language,
            timeout=settings.wikipedia_timeout,
            content_max_chars=settings.knowledge_content_max_chars,
        ),
        OpenLibrarySource(http_client, mode="title", limit=2, timeout=settings.openlibrary_timeout),
        OpenLibrarySource(http_client, mode="author", limit=1, timeout=settings.openlibrary_timeout),
    ]


def build_container(
    settings: Settings,
    completion: Optional[CompletionService] = None,
    durable: Optional[DurableStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Clock = default_clock,
) -> ServiceContainer:
    """Create every service object for one application instance.

    Args:
        settings: Application settings
        completion: Completion service override (tests)
        durable: Durable store override; built from settings when omitted
        http_client: HTTP client override for knowledge sources (tests)
        clock: Time source shared by every component
    """
    if durable is None:
        durable = build_durable_store(settings)
    history = durable if isinstance(durable, InteractionHistory) else None

    rate_limiter = RateLimiter(
        capacity=settings.rate_limit_capacity,
        refill_amount=settings.rate_limit_refill_amount,
        refill_interval=settings.rate_limit_refill_interval,
        global_limit=settings.global_rate_limit,
        global_window=settings.global_rate_window,
        max_concurrent=settings.max_concurrent_requests,
        max_buckets=settings.rate_limit_max_buckets,
        clock=clock,
    )
    search_cache = TTLCache(
        "search",
        default_ttl=settings.search_cache_ttl,
        max_entries=settings.cache_max_entries,
        durable=durable,
        clock=clock,
    )
    response_cache = TTLCache(
        "response",
        default_ttl=settings.response_cache_ttl,
        max_entries=settings.cache_max_entries,
        clock=clock,
    )
    reply_tracker = TTLCache(
        "replies",
        default_ttl=settings.reply_tracking_ttl,
        max_entries=settings.cache_max_entries * 10,
        clock=clock,
    )

    conversations = ConversationManager(
        settings.system_prompt_template,
        bot_name=settings.bot_name,
        max_chars=settings.max_response_chars,
        max_history_pairs=settings.max_history_pairs,
        history=history,
        summary_limit=settings.history_summary_limit,
        clock=clock,
    )

    params = GenerationParams(
        temperature=settings.groq_temperature,
        max_tokens=settings.groq_max_tokens,
        top_p=settings.groq_top_p,
        frequency_penalty=settings.groq_frequency_penalty,
        presence_penalty=settings.groq_presence_penalty,
    )
    if completion is None:
        completion = CompletionService(
            api_key=settings.groq_api_key,
            base_url=settings.groq_base_url,
            timeout=settings.groq_timeout,
            max_retries=settings.groq_max_retries,
            default_params=params,
        )

    http_client = http_client or create_http_client()
    knowledge = KnowledgeLookup(
        build_knowledge_sources(settings, http_client),
        search_cache,
        positive_ttl=settings.search_cache_ttl,
        negative_ttl=settings.negative_cache_ttl,
    )

    generator = ResponseGenerator(
        completion,
        conversations,
        response_cache,
        build_model_plan(
            settings.groq_model,
            settings.groq_fallback_model,
            settings.groq_temperature,
            settings.generation_temperature_step,
            settings.generation_max_attempts,
        ),
        params=params,
        response_ttl=settings.response_cache_ttl,
        backoff_base=settings.retry_backoff_base,
        bot_name=settings.bot_name,
        clock=clock,
    )

    pipeline = MessagePipeline(
        rate_limiter,
        conversations,
        generator,
        reply_tracker,
        analyzer=QueryAnalyzer(),
        knowledge=knowledge,
        history=history,
        bot_name=settings.bot_name,
        clock=clock,
    )

    container = ServiceContainer(
        settings=settings,
        rate_limiter=rate_limiter,
        search_cache=search_cache,
        response_cache=response_cache,
        reply_tracker=reply_tracker,
        conversations=conversations,
        completion=completion,
        knowledge=knowledge,
        generator=generator,
        pipeline=pipeline,
        maintenance=MaintenanceScheduler(
            interval=settings.cleanup_interval,
            metrics=lambda: container.metrics(),
        ),
        http_client=http_client,
        durable=durable,
        history=history,
    )
    _register_sweeps(container)
    return container


def _register_sweeps(container: ServiceContainer) -> None:
    settings = container.settings
    maintenance = container.maintenance

    maintenance.register("search_cache", container.search_cache.cleanup)
    maintenance.register("response_cache", container.response_cache.cleanup)
    maintenance.register("reply_tracker", container.reply_tracker.cleanup)
    maintenance.register("rate_limiter", container.rate_limiter.cleanup)

    async def sweep_conversations() -> int:
        return await container.conversations.sweep(
            max_age=settings.conversation_max_age,
            max_conversations=settings.max_conversations_in_memory,
        )

    async def sweep_durable() -> int:
        if container.durable is None:
            return 0
        return await container.durable.delete_expired()

    maintenance.register("conversations", sweep_conversations)
    maintenance.register("durable_cache", sweep_durable)
