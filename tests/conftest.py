"""Shared fixtures: controllable clock, scripted upstreams, in-memory stores."""

import asyncio
from typing import Any, List, Optional

import pytest

from mancy.app.core.cache import TTLCache, make_key
from mancy.app.core.config import DEFAULT_SYSTEM_PROMPT
from mancy.app.providers.knowledge import ExternalInfoResult, KnowledgeLookup, KnowledgeSource
from mancy.app.services.conversation import ConversationManager
from mancy.app.services.durable_store import (
    DurableStore,
    Interaction,
    InteractionHistory,
    StoredValue,
)
from mancy.app.services.pipeline import MessagePipeline
from mancy.app.services.rate_limiter import RateLimiter
from mancy.app.services.response_generator import ResponseGenerator, build_model_plan


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedCompletion:
    """Stands in for CompletionService, answering from a script.

    Script items are returned in order; exceptions are raised. Once the
    script runs out every call returns ``default``.
    """

    configured = True

    def __init__(self, responses: Optional[List[Any]] = None, default: str = "Respuesta por defecto del modelo."):
        self.responses = list(responses or [])
        self.default = default
        self.calls: List[dict] = []
        self.closed = False

    async def complete(self, messages, model, params=None) -> str:
        self.calls.append({"messages": list(messages), "model": model, "params": params})
        if not self.responses:
            return self.default
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def health_check(self, timeout: float = 5.0) -> bool:
        return True

    async def close(self) -> None:
        self.closed = True


class StaticSource(KnowledgeSource):
    """Knowledge source returning fixed results without any network."""

    def __init__(
        self,
        name: str,
        results: Optional[List[ExternalInfoResult]] = None,
        error: Optional[BaseException] = None,
        delay: float = 0.0,
        timeout: float = 1.0,
    ):
        super().__init__(http_client=None, timeout=timeout)
        self.name = name
        self.results = results
        self.error = error
        self.delay = delay
        self.calls = 0

    def cache_key(self, term: str) -> str:
        return make_key(self.name.lower(), term)

    async def search(self, term: str) -> Optional[List[ExternalInfoResult]]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.results


class MemoryDurableStore(DurableStore):
    """Dict-backed durable store. Rows written through ``set`` expire on ``clock``."""

    def __init__(self, fail: bool = False, clock: Optional[FakeClock] = None):
        self.data: dict = {}
        self.expires: dict = {}
        self.fail = fail
        self.clock = clock or FakeClock()
        self.set_calls: List[tuple] = []

    async def get(self, key: str) -> Optional[StoredValue]:
        if self.fail:
            raise ConnectionError("store down")
        if key not in self.data:
            return None
        expires_at = self.expires.get(key)
        if expires_at is None:
            return StoredValue(self.data[key])
        remaining = expires_at - self.clock()
        if remaining <= 0:
            return None
        return StoredValue(self.data[key], ttl=remaining)

    async def set(self, key: str, value, ttl: float) -> None:
        if self.fail:
            raise ConnectionError("store down")
        self.set_calls.append((key, value, ttl))
        self.data[key] = value
        self.expires[key] = self.clock() + ttl

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)
        self.expires.pop(key, None)

    async def delete_expired(self) -> int:
        now = self.clock()
        expired = [key for key, at in self.expires.items() if at <= now]
        for key in expired:
            await self.delete(key)
        return len(expired)


class MemoryHistory(InteractionHistory):
    """List-backed interaction history."""

    def __init__(self, recent: Optional[List[Interaction]] = None, fail: bool = False):
        self.saved: List[Interaction] = []
        self.recent = list(recent or [])
        self.fail = fail

    async def save_interaction(self, interaction: Interaction) -> None:
        if self.fail:
            raise ConnectionError("history down")
        self.saved.append(interaction)

    async def recent_interactions(self, principal_id: str, limit: int = 3) -> List[Interaction]:
        if self.fail:
            raise ConnectionError("history down")
        return [i for i in self.recent if i.principal_id == principal_id][:limit]

    async def get_user_stats(self, principal_id: str) -> dict | None:
        count = sum(1 for i in self.saved if i.principal_id == principal_id)
        return {"principal_id": principal_id, "total_interactions": count} if count else None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> List[float]:
    """Delays requested from the fake sleep passed to generators."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)
    return _sleep


@pytest.fixture
def completion() -> ScriptedCompletion:
    return ScriptedCompletion()


@pytest.fixture
def scripted_completion():
    """Factory for completions with a custom script."""
    return ScriptedCompletion


@pytest.fixture
def static_source():
    """Factory for network-free knowledge sources."""
    return StaticSource


@pytest.fixture
def memory_store(clock) -> MemoryDurableStore:
    return MemoryDurableStore(clock=clock)


@pytest.fixture
def memory_history() -> MemoryHistory:
    return MemoryHistory()


@pytest.fixture
def conversations(clock) -> ConversationManager:
    return ConversationManager(DEFAULT_SYSTEM_PROMPT, bot_name="Mancy", clock=clock)


@pytest.fixture
def make_generator(clock, fake_sleep, conversations):
    """Factory for a ResponseGenerator over a given completion."""

    def _build(completion, max_attempts: int = 3, response_cache: Optional[TTLCache] = None):
        return ResponseGenerator(
            completion,
            conversations,
            response_cache or TTLCache("response", default_ttl=300, clock=clock),
            build_model_plan("primary-model", "fallback-model", 0.25, 0.1, max_attempts),
            response_ttl=300,
            backoff_base=1.0,
            bot_name="Mancy",
            sleep=fake_sleep,
            clock=clock,
        )

    return _build


@pytest.fixture
def make_pipeline(clock, make_generator, memory_history):
    """Factory for a fully wired MessagePipeline without network access."""

    def _build(
        completion,
        sources: Optional[List[KnowledgeSource]] = None,
        capacity: int = 5,
        max_concurrent: int = 3,
        max_attempts: int = 3,
    ) -> MessagePipeline:
        generator = make_generator(completion, max_attempts=max_attempts)
        limiter = RateLimiter(
            capacity=capacity,
            refill_amount=capacity,
            refill_interval=10.0,
            global_limit=25,
            global_window=10.0,
            max_concurrent=max_concurrent,
            clock=clock,
        )
        knowledge = KnowledgeLookup(
            sources or [],
            TTLCache("search", default_ttl=900, clock=clock),
            positive_ttl=900,
            negative_ttl=300,
        )
        counter = iter(range(1, 10000))
        return MessagePipeline(
            limiter,
            generator.conversations,
            generator,
            TTLCache("replies", default_ttl=86400, clock=clock),
            knowledge=knowledge,
            history=memory_history,
            bot_name="Mancy",
            id_factory=lambda: f"reply-{next(counter)}",
            clock=clock,
        )

    return _build
