"""Chat completion client for Groq's OpenAI-compatible API."""

import asyncio
import time
from dataclasses import dataclass
from typing import Optional, Sequence

import httpx
from openai import APIConnectionError, APIError, APITimeoutError, AsyncOpenAI

from mancy.app.core.logging import get_logger, get_log_context
from mancy.app.exceptions import UpstreamError, UpstreamTimeout

logger = get_logger(__name__)


@dataclass(frozen=True)
class GenerationParams:
    """Sampling parameters of one completion call."""
    temperature: float = 0.25
    max_tokens: int = 400
    top_p: float = 0.9
    frequency_penalty: float = 0.2
    presence_penalty: float = 0.1

    def with_temperature(self, temperature: float) -> "GenerationParams":
        return GenerationParams(
            temperature=temperature,
            max_tokens=self.max_tokens,
            top_p=self.top_p,
            frequency_penalty=self.frequency_penalty,
            presence_penalty=self.presence_penalty,
        )


class CompletionService:
    """Thin wrapper over ``AsyncOpenAI`` with a hard per-call deadline.

    Transport, upstream and timeout failures are mapped to ``UpstreamError``
    and ``UpstreamTimeout`` so callers handle one taxonomy. Retrying is the
    caller's job; the SDK's own retries are disabled by default.

    Usage:
        service = CompletionService(api_key, base_url="https://api.groq.com/openai/v1")
        text = await service.complete(messages, model="llama-3.1-70b-versatile")
    """

    name = "groq"

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 45.0,
        max_retries: int = 0,
        default_params: Optional[GenerationParams] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.timeout = timeout
        self.default_params = default_params or GenerationParams()
        self._client = client or AsyncOpenAI(
            api_key=api_key or "missing",
            base_url=base_url,
            timeout=timeout,
            max_retries=max_retries,
        )
        self.configured = bool(api_key) or client is not None

    async def complete(
        self,
        messages: Sequence[dict],
        model: str,
        params: Optional[GenerationParams] = None,
    ) -> str:
        """Request one non-streaming completion.

        Args:
            messages: Chat messages (``{"role", "content"}`` dicts)
            model: Model identifier
            params: Sampling parameters; defaults to the configured ones

        Returns:
            The raw assistant text ("" if the upstream returned no content)

        Raises:
            UpstreamTimeout: If the call exceeds ``timeout``
            UpstreamError: On transport or upstream API errors
        """
        params = params or self.default_params
        start = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=model,
                    messages=list(messages),
                    temperature=params.temperature,
                    max_tokens=params.max_tokens,
                    top_p=params.top_p,
                    frequency_penalty=params.frequency_penalty,
                    presence_penalty=params.presence_penalty,
                    stream=False,
                ),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, APITimeoutError, httpx.TimeoutException) as e:
            raise UpstreamTimeout(self.timeout, source=self.name) from e
        except (APIConnectionError, APIError, httpx.HTTPError) as e:
            raise UpstreamError(f"Completion call failed: {e}", source=self.name) from e

        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        total_tokens = response.usage.total_tokens if response.usage else 0
        logger.debug(
            "Completion received",
            extra=get_log_context(model=model, duration_ms=duration_ms, tokens=total_tokens),
        )

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def health_check(self, timeout: float = 5.0) -> bool:
        """Check the upstream answers a model listing within ``timeout``."""
        if not self.configured:
            return False
        try:
            await asyncio.wait_for(self._client.models.list(), timeout=timeout)
            return True
        except Exception as e:
            logger.warning(f"Completion service health check failed: {e}")
            return False

    async def close(self) -> None:
        await self._client.close()
