"""Retry/fallback state machine around the completion call.

States::

    IDLE -> ATTEMPTING(1) -> SUCCEEDED
                          -> ATTEMPTING(n + 1) -> ...
                          -> FALLBACK_USED (after the last attempt)

``transition`` is the whole state machine and has no side effects. The
generator drives it: it assembles context, calls the completion service,
normalizes and validates the output, and performs the side effects that
belong to each transition (cache write and history append on success,
backoff after a failed call, a pre-authored text on exhaustion).
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from mancy.app.core.cache import ABSENT, TTLCache, make_key, scope_prefix
from mancy.app.core.logging import get_logger, get_log_context
from mancy.app.core.utils import Clock, default_clock, digest, preview
from mancy.app.exceptions import ExhaustionFallback, UpstreamError, ValidationRejected
from mancy.app.providers.completion import CompletionService, GenerationParams
from mancy.app.providers.knowledge import ExternalInfoResult
from mancy.app.services.conversation import ConversationManager
from mancy.app.services.query_analyzer import QueryAnalysis
from mancy.app.services.text_quality import normalize, validate

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]

RETRY_DIRECTIVE = (
    "IMPORTANTE: Responde de forma completa y coherente, con frases bien "
    "formadas y sin caracteres extraños."
)

FALLBACK_MESSAGES = [
    "Hola, soy {bot_name}. Parece que hubo un problema técnico. Por favor, "
    "respóndeme de nuevo y haré mi mejor esfuerzo por ayudarte.",
    "Disculpa los inconvenientes. Como chica gato seria, prefiero asegurarme "
    "de darte una respuesta adecuada. ¿Podrías repetir tu pregunta?",
    "Mis circuitos felinos están teniendo un momento. Te sugiero intentar de "
    "nuevo con tu pregunta.",
    "Lamento los problemas técnicos. Por favor, reformula tu pregunta y te "
    "responderé lo mejor que pueda.",
]

FALLBACK_WITH_INFO = (
    'Según mis registros: "{title}". Sin embargo, estoy teniendo dificultades '
    "técnicas. La fuente es {source}."
)

FALLBACK_MODEL = "fallback"
CACHE_MODEL = "cache"


class GenerationState(str, Enum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    FALLBACK_USED = "fallback_used"


class AttemptOutcome(str, Enum):
    START = "start"
    VALID = "valid"
    INVALID = "invalid"
    FAILED = "failed"


def transition(
    state: GenerationState,
    attempt: int,
    outcome: AttemptOutcome,
    max_attempts: int,
) -> Tuple[GenerationState, int]:
    """Next ``(state, attempt)`` for an outcome.

    Examples:
        >>> transition(GenerationState.IDLE, 0, AttemptOutcome.START, 3)
        (<GenerationState.ATTEMPTING: 'attempting'>, 1)
        >>> transition(GenerationState.ATTEMPTING, 3, AttemptOutcome.FAILED, 3)
        (<GenerationState.FALLBACK_USED: 'fallback_used'>, 3)

    Raises:
        ValueError: For a terminal state or an outcome the state can't take.
    """
    if state is GenerationState.IDLE and outcome is AttemptOutcome.START:
        return GenerationState.ATTEMPTING, 1
    if state is GenerationState.ATTEMPTING:
        if outcome is AttemptOutcome.VALID:
            return GenerationState.SUCCEEDED, attempt
        if outcome in (AttemptOutcome.INVALID, AttemptOutcome.FAILED):
            if attempt < max_attempts:
                return GenerationState.ATTEMPTING, attempt + 1
            return GenerationState.FALLBACK_USED, attempt
    raise ValueError(f"No transition from {state.value} on {outcome.value}")


@dataclass(frozen=True)
class ModelChoice:
    model: str
    temperature: float


def build_model_plan(
    primary_model: str,
    fallback_model: str,
    base_temperature: float,
    temperature_step: float = 0.1,
    max_attempts: int = 3,
) -> List[ModelChoice]:
    """Primary model at the base temperature, then the fallback model with
    the temperature raised by one step per attempt.

    Examples:
        >>> [c.model for c in build_model_plan("a", "b", 0.25)]
        ['a', 'b', 'b']
    """
    plan = [ModelChoice(primary_model, base_temperature)]
    for step in range(1, max_attempts):
        plan.append(
            ModelChoice(fallback_model, round(base_temperature + step * temperature_step, 4))
        )
    return plan


@dataclass
class GenerationContext:
    external_info: Optional[List[ExternalInfoResult]] = None
    analysis: Optional[QueryAnalysis] = None


@dataclass
class GenerationResult:
    text: str
    model_used: str
    attempt: int
    state: GenerationState
    from_cache: bool = False
    response_time: float = 0.0
    errors: List[str] = field(default_factory=list)

    @property
    def used_fallback(self) -> bool:
        return self.state is GenerationState.FALLBACK_USED


class ResponseGenerator:
    """Drive 1..N completion attempts for one message.

    On success the response is written to the response cache and the
    exchange appended to history, exactly once. The fallback path writes
    neither.
    """

    def __init__(
        self,
        completion: CompletionService,
        conversations: ConversationManager,
        response_cache: TTLCache,
        model_plan: Sequence[ModelChoice],
        params: Optional[GenerationParams] = None,
        response_ttl: Optional[float] = None,
        backoff_base: float = 1.0,
        bot_name: str = "Mancy",
        sleep: Sleep = asyncio.sleep,
        clock: Clock = default_clock,
    ):
        if not model_plan:
            raise ValueError("model_plan must contain at least one model")
        self.completion = completion
        self.conversations = conversations
        self.response_cache = response_cache
        self.model_plan = list(model_plan)
        self.params = params or GenerationParams()
        self.response_ttl = response_ttl
        self.backoff_base = backoff_base
        self.bot_name = bot_name
        self._sleep = sleep
        self._clock = clock

    @property
    def max_attempts(self) -> int:
        return len(self.model_plan)

    @staticmethod
    def cache_key(principal_id: str, message: str) -> str:
        return make_key("response", principal_id, message, scope=principal_id)

    @staticmethod
    def cache_prefix(principal_id: str) -> str:
        """Prefix shared by every cached response of one principal."""
        return scope_prefix("response", principal_id)

    async def generate(
        self,
        principal_id: str,
        message: str,
        context: Optional[GenerationContext] = None,
    ) -> GenerationResult:
        context = context or GenerationContext()
        start = self._clock()
        key = self.cache_key(principal_id, message)

        cached = await self.response_cache.get(key, use_durable=False)
        if cached is not ABSENT and cached:
            logger.info(
                "Response served from cache",
                extra=get_log_context(principal_id=principal_id),
            )
            return GenerationResult(
                text=cached,
                model_used=CACHE_MODEL,
                attempt=0,
                state=GenerationState.SUCCEEDED,
                from_cache=True,
            )

        try:
            return await self._attempt_all(principal_id, message, context, key, start)
        except ExhaustionFallback as e:
            logger.warning(
                f"{e.message}, using fallback",
                extra=get_log_context(principal_id=principal_id, attempt=e.attempts, last_error=e.last_error),
            )
            errors = [e.last_error] if e.last_error else []
            return self.fallback(message, context, attempt=e.attempts, start=start, errors=errors)

    async def _attempt_all(
        self,
        principal_id: str,
        message: str,
        context: GenerationContext,
        key: str,
        start: float,
    ) -> GenerationResult:
        state, attempt = transition(
            GenerationState.IDLE, 0, AttemptOutcome.START, self.max_attempts
        )
        directives: List[str] = []
        errors: List[str] = []

        while state is GenerationState.ATTEMPTING:
            choice = self.model_plan[attempt - 1]
            log_ctx = get_log_context(principal_id=principal_id, model=choice.model, attempt=attempt)
            text: Optional[str] = None
            try:
                text = await self._attempt_once(principal_id, message, context, choice, directives)
                outcome = AttemptOutcome.VALID
            except ValidationRejected as e:
                outcome = AttemptOutcome.INVALID
                errors.append(e.message)
                directives = [RETRY_DIRECTIVE]
                logger.warning(f"Invalid response: {e.reason}", extra={**log_ctx, "preview": e.preview})
            except UpstreamError as e:
                outcome = AttemptOutcome.FAILED
                errors.append(e.message)
                logger.error(f"Completion failed: {e.message}", extra=log_ctx)

            next_state, next_attempt = transition(state, attempt, outcome, self.max_attempts)

            if next_state is GenerationState.SUCCEEDED:
                await self.response_cache.set(key, text, ttl=self.response_ttl)
                await self.conversations.append_exchange(principal_id, message, text)
                response_time = self._clock() - start
                logger.info(
                    "Response generated",
                    extra={
                        **log_ctx,
                        "duration_ms": round(response_time * 1000, 2),
                        "length": len(text),
                    },
                )
                return GenerationResult(
                    text=text,
                    model_used=choice.model,
                    attempt=attempt,
                    state=next_state,
                    response_time=response_time,
                    errors=errors,
                )

            if next_state is GenerationState.ATTEMPTING and outcome is AttemptOutcome.FAILED:
                delay = self.backoff_base * attempt
                logger.debug(f"Backing off {delay:.1f}s before retrying", extra=log_ctx)
                await self._sleep(delay)

            state, attempt = next_state, next_attempt

        raise ExhaustionFallback(attempt, last_error=errors[-1] if errors else None)

    async def _attempt_once(
        self,
        principal_id: str,
        message: str,
        context: GenerationContext,
        choice: ModelChoice,
        directives: Sequence[str],
    ) -> str:
        """One completion call. Returns the usable text.

        Raises:
            ValidationRejected: If the output fails validation
            UpstreamError: If the completion call fails
        """
        turns = await self.conversations.prepare(
            principal_id, context.external_info, extra_directives=directives
        )
        messages = [turn.to_message() for turn in turns]
        messages.append({"role": "user", "content": message})

        raw = await self.completion.complete(
            messages, choice.model, self.params.with_temperature(choice.temperature)
        )
        result = validate(normalize(raw))
        if not result.valid:
            raise ValidationRejected(result.reason.value, preview=preview(raw, 200))
        return result.corrected_text

    def fallback_text(self, message: str, context: GenerationContext) -> str:
        """Pre-authored text, chosen deterministically from the message."""
        if context.external_info:
            info = context.external_info[0]
            return FALLBACK_WITH_INFO.format(title=info.title, source=info.source)
        index = int(digest(message), 16) % len(FALLBACK_MESSAGES)
        return FALLBACK_MESSAGES[index].format(bot_name=self.bot_name)

    def fallback(
        self,
        message: str,
        context: GenerationContext,
        attempt: int = 0,
        start: Optional[float] = None,
        errors: Optional[List[str]] = None,
    ) -> GenerationResult:
        return GenerationResult(
            text=self.fallback_text(message, context),
            model_used=FALLBACK_MODEL,
            attempt=attempt,
            state=GenerationState.FALLBACK_USED,
            response_time=(self._clock() - start) if start is not None else 0.0,
            errors=errors or [],
        )
