"""Inbound message handling: gating, admission, lookup, generation, persistence.

Every call to ``MessagePipeline.handle`` ends in an ``OutboundReply``. Rate
limiting and empty input produce designed replies, generation failures end
in the generator's fallback text, and any unexpected fault is contained as
``StateCorruption``: the principal's conversation and rate state are reset
and a generic apology is returned.
"""

import math
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from mancy.app.core.cache import TTLCache
from mancy.app.core.logging import get_logger, get_log_context
from mancy.app.core.utils import Clock, default_clock, preview
from mancy.app.exceptions import AdmissionDenied, StateCorruption
from mancy.app.providers.knowledge import KnowledgeLookup
from mancy.app.services.conversation import ConversationManager
from mancy.app.services.durable_store import Interaction, InteractionHistory
from mancy.app.services.query_analyzer import QueryAnalyzer
from mancy.app.services.rate_limiter import RateLimiter
from mancy.app.services.response_generator import GenerationContext, ResponseGenerator
from mancy.app.services.text_quality import normalize

logger = get_logger(__name__)

GREETING_TEMPLATE = (
    "Hola {name}. Soy {bot_name}, una chica gato seria. Responde a este mensaje "
    "para conversar conmigo o preguntarme algo."
)
RATE_LIMITED_TEMPLATE = "Por favor espera {seconds} segundos antes de enviar otra pregunta."
BUSY_MESSAGE = "Estoy atendiendo muchas consultas ahora mismo. Inténtalo de nuevo en unos segundos."
EMPTY_MESSAGE = "Por favor envía un mensaje con contenido."
APOLOGY_MESSAGE = (
    "*{bot_name} parpadea confundida*\nDisculpa, algo salió mal con mis "
    "circuitos felinos. ¿Podrías intentar de nuevo?"
)


class ReplyKind(str, Enum):
    REPLY = "reply"
    GREETING = "greeting"
    RATE_LIMITED = "rate_limited"
    INVALID = "invalid"
    ERROR = "error"
    IGNORED = "ignored"


@dataclass
class InboundMessage:
    principal_id: str
    text: str
    message_id: Optional[str] = None
    replied_to_id: Optional[str] = None
    mentions_bot: bool = False
    guild_id: Optional[str] = None
    display_name: Optional[str] = None


@dataclass
class OutboundReply:
    text: str
    kind: ReplyKind
    reply_id: Optional[str] = None
    from_cache: bool = False
    model_used: Optional[str] = None
    wait_time: Optional[float] = None
    denial_reason: Optional[str] = None


class MessagePipeline:
    """Processes inbound chat events end to end.

    The system only converses when a message replies to one of its own
    earlier replies. A mention without a reply gets an introduction whose
    id is remembered so that replying to it starts a conversation.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        conversations: ConversationManager,
        generator: ResponseGenerator,
        reply_tracker: TTLCache,
        analyzer: Optional[QueryAnalyzer] = None,
        knowledge: Optional[KnowledgeLookup] = None,
        history: Optional[InteractionHistory] = None,
        bot_name: str = "Mancy",
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
        clock: Clock = default_clock,
    ):
        self.rate_limiter = rate_limiter
        self.conversations = conversations
        self.generator = generator
        self.reply_tracker = reply_tracker
        self.analyzer = analyzer or QueryAnalyzer()
        self.knowledge = knowledge
        self.history = history
        self.bot_name = bot_name
        self._id_factory = id_factory
        self._clock = clock
        self._processed = 0
        self._errors = 0

    async def register_reply(self) -> str:
        """Allocate an id for an outbound reply and remember it as ours."""
        reply_id = self._id_factory()
        await self.reply_tracker.set(reply_id, True)
        return reply_id

    async def is_own_reply(self, message_id: Optional[str]) -> bool:
        if not message_id:
            return False
        return (await self.reply_tracker.get(message_id, use_durable=False)) is True

    async def handle(self, message: InboundMessage) -> OutboundReply:
        if not await self.is_own_reply(message.replied_to_id):
            if message.mentions_bot:
                return await self._greet(message)
            return OutboundReply(text="", kind=ReplyKind.IGNORED)

        # Held from arrival so one principal's turns are appended in order.
        async with self.conversations.exclusive(message.principal_id):
            try:
                async with self.rate_limiter.admission(message.principal_id):
                    try:
                        return await self._process(message)
                    except Exception as e:
                        raise StateCorruption(message.principal_id, cause=e) from e
            except AdmissionDenied as e:
                return self._rate_limited(message, e)
            except StateCorruption as e:
                return await self._recover(message, e)

    async def _greet(self, message: InboundMessage) -> OutboundReply:
        name = message.display_name or message.principal_id
        text = GREETING_TEMPLATE.format(name=name, bot_name=self.bot_name)
        reply_id = await self.register_reply()
        logger.info("Greeting sent", extra=get_log_context(principal_id=message.principal_id))
        return OutboundReply(text=text, kind=ReplyKind.GREETING, reply_id=reply_id)

    def _rate_limited(self, message: InboundMessage, denied: AdmissionDenied) -> OutboundReply:
        logger.warning(
            f"Rate limit exceeded: {denied.reason}",
            extra=get_log_context(principal_id=message.principal_id, wait_time=round(denied.wait_time, 3)),
        )
        if denied.wait_time > 0:
            text = RATE_LIMITED_TEMPLATE.format(seconds=math.ceil(denied.wait_time))
        else:
            text = BUSY_MESSAGE
        return OutboundReply(
            text=text,
            kind=ReplyKind.RATE_LIMITED,
            wait_time=denied.wait_time,
            denial_reason=denied.reason,
        )

    async def _process(self, message: InboundMessage) -> OutboundReply:
        start = self._clock()
        principal_id = message.principal_id
        text = normalize(message.text)
        if not text:
            logger.warning("Empty message", extra=get_log_context(principal_id=principal_id))
            return OutboundReply(text=EMPTY_MESSAGE, kind=ReplyKind.INVALID)

        logger.info(
            "Processing reply",
            extra=get_log_context(
                request_id=message.message_id,
                principal_id=principal_id,
                preview=preview(text),
            ),
        )

        analysis = self.analyzer.analyze(text)
        external_info = None
        if self.knowledge is not None and analysis.needs_external_info and analysis.search_term:
            external_info = await self.knowledge.search_all(analysis.search_term)

        result = await self.generator.generate(
            principal_id,
            text,
            GenerationContext(external_info=external_info, analysis=analysis),
        )

        if not result.used_fallback and not result.from_cache:
            await self._save_interaction(message, text, result.text, result.model_used,
                                         result.response_time, bool(external_info))

        reply_id = await self.register_reply()
        self._processed += 1
        logger.info(
            "Message processed",
            extra=get_log_context(
                request_id=message.message_id,
                principal_id=principal_id,
                model=result.model_used,
                attempt=result.attempt,
                duration_ms=round((self._clock() - start) * 1000, 2),
                from_cache=result.from_cache,
                with_external_info=bool(external_info),
            ),
        )
        return OutboundReply(
            text=result.text,
            kind=ReplyKind.REPLY,
            reply_id=reply_id,
            from_cache=result.from_cache,
            model_used=result.model_used,
        )

    async def _save_interaction(
        self,
        message: InboundMessage,
        text: str,
        response: str,
        model_used: str,
        response_time: float,
        has_external_info: bool,
    ) -> None:
        if self.history is None:
            return
        try:
            await self.history.save_interaction(
                Interaction(
                    principal_id=message.principal_id,
                    guild_id=message.guild_id,
                    user_message=text,
                    bot_response=response,
                    model_used=model_used,
                    response_time_ms=int(response_time * 1000),
                    has_external_info=has_external_info,
                )
            )
        except Exception as e:
            logger.warning(
                f"Saving interaction failed: {e}",
                extra=get_log_context(principal_id=message.principal_id),
            )

    async def _recover(self, message: InboundMessage, error: StateCorruption) -> OutboundReply:
        self._errors += 1
        logger.error(
            f"Error processing message: {error.message}",
            exc_info=error.cause,
            extra=get_log_context(request_id=message.message_id, principal_id=message.principal_id),
        )
        await self.conversations.clear(message.principal_id)
        await self.rate_limiter.reset(message.principal_id)
        return OutboundReply(
            text=APOLOGY_MESSAGE.format(bot_name=self.bot_name),
            kind=ReplyKind.ERROR,
        )

    async def reset_principal(self, principal_id: str) -> dict:
        """Forget a principal's conversation, rate state and cached responses."""
        cleared = await self.conversations.clear(principal_id)
        await self.rate_limiter.reset(principal_id)
        prefix = self.generator.cache_prefix(principal_id)
        purged = await self.generator.response_cache.delete_matching(
            lambda key: key.startswith(prefix)
        )
        logger.info(
            "Principal reset",
            extra=get_log_context(principal_id=principal_id, purged_responses=purged),
        )
        return {
            "principal_id": principal_id,
            "conversation_cleared": cleared,
            "cached_responses_purged": purged,
        }

    async def diagnostics(self, principal_id: Optional[str] = None) -> dict:
        """Statistics of every component, plus one principal's state if given."""
        data = {
            "bot": self.bot_name,
            "messages_processed": self._processed,
            "errors": self._errors,
            "rate_limiter": self.rate_limiter.get_stats(),
            "response_cache": self.generator.response_cache.get_stats(),
            "conversations": self.conversations.get_stats(),
            "knowledge": self.knowledge.get_stats() if self.knowledge else None,
            "history": type(self.history).__name__ if self.history else None,
        }
        if principal_id is not None:
            user_stats = None
            if self.history is not None:
                try:
                    user_stats = await self.history.get_user_stats(principal_id)
                except Exception as e:
                    logger.warning(f"User stats lookup failed: {e}")
            data["principal"] = {
                "principal_id": principal_id,
                "tokens": self.rate_limiter.tokens(principal_id),
                "wait_time": round(self.rate_limiter.wait_time(principal_id), 3),
                "turns": len(self.conversations.get(principal_id)),
                "stats": user_stats,
            }
        return data
