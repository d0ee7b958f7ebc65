"""External knowledge sources (Wikipedia, OpenLibrary) and their joint lookup.

Every source answers ``search(term)`` with a list of results or ``None`` for
"not found". Transport failures raise. ``KnowledgeLookup`` queries all
sources concurrently, each under its own deadline, and caches what they
return: positive results for the search TTL (mirrored to the durable store),
not-found answers for the shorter negative TTL.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, List, Literal, Optional, Sequence
from urllib.parse import quote

import httpx

from mancy.app.core.cache import ABSENT, TTLCache, make_key
from mancy.app.core.logging import get_logger, get_log_context
from mancy.app.exceptions import UpstreamError, UpstreamTimeout
from mancy.app.services.text_quality import normalize

logger = get_logger(__name__)


@dataclass
class ExternalInfoResult:
    """One piece of external knowledge."""
    source: str
    title: str
    content: str = ""
    url: str = ""
    authors: Optional[List[str]] = None
    year: Optional[int] = None
    kind: Optional[str] = None

    def describe(self) -> str:
        """Text used when serializing the result into a prompt."""
        if self.content:
            return self.content
        details = []
        if self.authors:
            details.append(", ".join(self.authors))
        if self.year:
            details.append(str(self.year))
        return " ".join(details) if details else "Información disponible"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ExternalInfoResult":
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__ if k in data})


class KnowledgeSource(ABC):
    """Base class for knowledge sources.

    Subclasses share one ``httpx.AsyncClient`` for connection pooling.
    """

    name: str = "unknown"

    def __init__(self, http_client: httpx.AsyncClient, timeout: float = 10.0):
        self._client = http_client
        self.timeout = timeout

    @abstractmethod
    def cache_key(self, term: str) -> str:
        """Cache key for a term; variants of one query share a key."""
        pass

    @abstractmethod
    async def search(self, term: str) -> Optional[List[ExternalInfoResult]]:
        """Search the source.

        Returns:
            Results, or None when the source has nothing for the term

        Raises:
            httpx.HTTPError: On transport failures and unexpected statuses
        """
        pass

    async def health_check(self) -> bool:
        return True


class WikipediaSource(KnowledgeSource):
    """Wikipedia REST page summary."""

    name = "Wikipedia"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        language: str = "es",
        timeout: float = 8.0,
        content_max_chars: int = 300,
    ):
        super().__init__(http_client, timeout)
        self.language = language
        self.content_max_chars = content_max_chars

    @property
    def base_url(self) -> str:
        return f"https://{self.language}.wikipedia.org"

    def cache_key(self, term: str) -> str:
        return make_key("wiki", self.language, term)

    async def search(self, term: str) -> Optional[List[ExternalInfoResult]]:
        encoded = quote(term.replace(" ", "_"), safe="")
        resp = await self._client.get(f"{self.base_url}/api/rest_v1/page/summary/{encoded}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()

        data = resp.json()
        extract = data.get("extract")
        if not extract:
            return None

        page_url = (
            data.get("content_urls", {}).get("desktop", {}).get("page")
            or f"{self.base_url}/wiki/{encoded}"
        )
        return [
            ExternalInfoResult(
                source=self.name,
                title=normalize(data.get("title") or term),
                content=normalize(extract)[: self.content_max_chars],
                url=page_url,
                kind="article",
            )
        ]


class OpenLibrarySource(KnowledgeSource):
    """OpenLibrary book (title) or author search."""

    name = "OpenLibrary"
    BASE_URL = "https://openlibrary.org"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        mode: Literal["title", "author"] = "title",
        limit: int = 2,
        timeout: float = 10.0,
    ):
        super().__init__(http_client, timeout)
        self.mode = mode
        self.limit = limit

    def cache_key(self, term: str) -> str:
        return make_key("ol", self.mode, self.limit, term)

    async def search(self, term: str) -> Optional[List[ExternalInfoResult]]:
        if self.mode == "author":
            url = f"{self.BASE_URL}/search/authors.json"
            params = {"q": term, "limit": self.limit}
        else:
            url = f"{self.BASE_URL}/search.json"
            params = {
                "q": term,
                "limit": self.limit,
                "fields": "title,author_name,first_publish_year,subject,key",
            }

        resp = await self._client.get(url, params=params)
        resp.raise_for_status()

        docs = resp.json().get("docs") or []
        if not docs:
            return None

        results = []
        for doc in docs[: self.limit]:
            authors = doc.get("author_name")
            key = doc.get("key") or ""
            if self.mode == "author" and key and not key.startswith("/"):
                key = f"/authors/{key}"
            results.append(
                ExternalInfoResult(
                    source=self.name,
                    title=normalize(doc.get("title") or doc.get("name") or "Sin título"),
                    url=f"{self.BASE_URL}{key}",
                    authors=[normalize(a) for a in authors] if authors else None,
                    year=doc.get("first_publish_year"),
                    kind=self.mode,
                )
            )
        return results


class KnowledgeLookup:
    """Concurrent, cached lookup across several knowledge sources.

    A failing or slow source never fails the others; its contribution is
    simply missing from the joined result.
    """

    def __init__(
        self,
        sources: Sequence[KnowledgeSource],
        cache: TTLCache,
        positive_ttl: float = 900.0,
        negative_ttl: float = 300.0,
    ):
        self.sources = list(sources)
        self.cache = cache
        self.positive_ttl = positive_ttl
        self.negative_ttl = negative_ttl
        self._failures = {source.name: 0 for source in self.sources}

    async def lookup_source(
        self, source: KnowledgeSource, term: str
    ) -> Optional[List[ExternalInfoResult]]:
        """Look a term up in one source, through the cache.

        Raises:
            UpstreamTimeout: If the source exceeds its deadline
            UpstreamError: On any other transport failure
        """
        key = source.cache_key(term)
        cached = await self.cache.get(key)
        if cached is not ABSENT:
            if cached is None:
                return None
            return [ExternalInfoResult.from_dict(item) for item in cached]

        start = time.perf_counter()
        try:
            results = await asyncio.wait_for(source.search(term), timeout=source.timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamTimeout(source.timeout, source=source.name) from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"{source.name} lookup failed: {e}", source=source.name) from e

        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        if not results:
            await self.cache.set(key, None, ttl=self.negative_ttl)
            logger.debug(
                "Lookup found nothing",
                extra=get_log_context(source=source.name, duration_ms=duration_ms),
            )
            return None

        await self.cache.set(
            key, [item.to_dict() for item in results], ttl=self.positive_ttl, persist=True
        )
        logger.debug(
            "Lookup succeeded",
            extra=get_log_context(source=source.name, duration_ms=duration_ms, count=len(results)),
        )
        return results

    async def search_all(self, term: str) -> Optional[List[ExternalInfoResult]]:
        """Query every source concurrently and join what they found.

        Results keep source order. Returns None when nothing was found.
        """
        if not term or not term.strip():
            return None

        outcomes: List[Any] = await asyncio.gather(
            *(self.lookup_source(source, term) for source in self.sources),
            return_exceptions=True,
        )

        joined: List[ExternalInfoResult] = []
        for source, outcome in zip(self.sources, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                self._failures[source.name] = self._failures.get(source.name, 0) + 1
                logger.warning(
                    f"Knowledge source failed: {outcome}",
                    extra=get_log_context(source=source.name),
                )
                continue
            if outcome:
                joined.extend(outcome)
        return joined or None

    async def warm_up(self, terms: Sequence[str]) -> int:
        """Pre-populate the cache for common terms.

        Returns:
            Number of terms that produced at least one result.
        """
        found = 0
        for term in terms:
            if await self.search_all(term):
                found += 1
        logger.info("Knowledge cache warmed up", extra={"terms": len(terms), "found": found})
        return found

    def get_stats(self) -> dict:
        return {
            "sources": [source.name for source in self.sources],
            "failures": dict(self._failures),
            "cache": self.cache.get_stats(),
        }
