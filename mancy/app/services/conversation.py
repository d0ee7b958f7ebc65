"""Per-principal conversation history and system-prompt assembly."""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import AsyncIterator, Dict, List, Literal, Optional, Sequence

from mancy.app.core.logging import get_logger, get_log_context
from mancy.app.core.utils import Clock, default_clock
from mancy.app.providers.knowledge import ExternalInfoResult
from mancy.app.services.durable_store import Interaction, InteractionHistory
from mancy.app.services.text_quality import normalize

logger = get_logger(__name__)

Role = Literal["system", "user", "assistant"]

NO_HISTORY_PLACEHOLDER = "No hay historial previo."
NO_EXTERNAL_INFO_PLACEHOLDER = "No hay información externa disponible."
SUMMARY_EXCERPT_CHARS = 100


@dataclass
class ConversationTurn:
    role: Role
    content: str
    timestamp: float

    def to_message(self) -> dict:
        """Shape expected by chat completion APIs."""
        return {"role": self.role, "content": self.content}


@dataclass
class ConversationState:
    """History of one principal. ``turns[0]`` is always the system turn."""
    principal_id: str
    turns: List[ConversationTurn]
    last_active: float
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


def summarize_history(interactions: Sequence[Interaction], limit: int = 3) -> str:
    """Summarize recent durable interactions for the system prompt.

    Examples:
        >>> summarize_history([])
        ''
    """
    if not interactions:
        return ""
    lines = [
        f'Interacción {i}: Usuario: "{item.user_message[:SUMMARY_EXCERPT_CHARS]}" '
        f'| Tú: "{item.bot_response[:SUMMARY_EXCERPT_CHARS]}"'
        for i, item in enumerate(interactions[:limit], start=1)
    ]
    return "Historial reciente:\n" + "\n".join(lines)


def format_external_info(external_info: Optional[Sequence[ExternalInfoResult]]) -> str:
    """One line per lookup result, ``source: title - content``."""
    if not external_info:
        return ""
    return "\n".join(
        f"{info.source}: {info.title} - {info.describe()}" for info in external_info
    )


class ConversationManager:
    """Bounded, ordered history per principal.

    History holds at most ``1 + 2 * max_history_pairs`` turns. On overflow
    the system turn is kept and the oldest user/assistant turns are dropped.
    Mutations for one principal are serialized by that principal's lock;
    the lock is never held across a network call. Whole requests are
    serialized separately through ``exclusive``, which callers hold from
    arrival until the exchange has been appended.

    Usage:
        manager = ConversationManager(template, bot_name="Mancy")
        turns = await manager.prepare("U1", external_info=results)
        await manager.append_exchange("U1", "hola", "Hola, ¿en qué te ayudo?")
    """

    def __init__(
        self,
        system_prompt_template: str,
        bot_name: str = "Mancy",
        max_chars: int = 400,
        max_history_pairs: int = 6,
        history: Optional[InteractionHistory] = None,
        summary_limit: int = 3,
        clock: Clock = default_clock,
    ):
        if max_history_pairs < 1:
            raise ValueError("max_history_pairs must be at least 1")
        self.system_prompt_template = system_prompt_template
        self.bot_name = bot_name
        self.max_chars = max_chars
        self.max_history_pairs = max_history_pairs
        self.summary_limit = summary_limit
        self.history = history
        self._clock = clock
        self._states: Dict[str, ConversationState] = {}
        self._request_locks: Dict[str, asyncio.Lock] = {}
        self._request_users: Dict[str, int] = {}

    @asynccontextmanager
    async def exclusive(self, principal_id: str) -> AsyncIterator[None]:
        """Run one request of ``principal_id`` at a time, in arrival order.

        Waiters are woken first in, first out. Other principals never wait
        on this lock. The lock outlives ``clear`` so a reset issued while a
        request is running cannot let the next request overtake it.
        """
        lock = self._request_locks.get(principal_id)
        if lock is None:
            lock = self._request_locks[principal_id] = asyncio.Lock()
        # Counts the holder and every waiter; the lock is only dropped at zero.
        self._request_users[principal_id] = self._request_users.get(principal_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._request_users[principal_id] - 1
            if remaining:
                self._request_users[principal_id] = remaining
            else:
                del self._request_users[principal_id]

    def _busy(self, principal_id: str) -> bool:
        return principal_id in self._request_users

    @property
    def max_turns(self) -> int:
        return 1 + 2 * self.max_history_pairs

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, principal_id: str) -> bool:
        return principal_id in self._states

    def render_system_prompt(self, context_summary: str = "", external_info: str = "") -> str:
        """Fill every placeholder of the system prompt template."""
        return self.system_prompt_template.format(
            bot_name=self.bot_name,
            max_chars=self.max_chars,
            context_summary=context_summary or NO_HISTORY_PLACEHOLDER,
            external_info=external_info or NO_EXTERNAL_INFO_PLACEHOLDER,
        )

    def _state(self, principal_id: str) -> ConversationState:
        state = self._states.get(principal_id)
        if state is None:
            now = self._clock()
            state = ConversationState(
                principal_id=principal_id,
                turns=[ConversationTurn("system", self.render_system_prompt(), now)],
                last_active=now,
            )
            self._states[principal_id] = state
        return state

    def _trim(self, state: ConversationState) -> None:
        overflow = len(state.turns) - self.max_turns
        if overflow > 0:
            state.turns = [state.turns[0]] + state.turns[1 + overflow:]

    async def append(self, principal_id: str, role: Role, content: str) -> ConversationTurn:
        """Append one normalized turn, trimming the oldest on overflow."""
        if role == "system":
            raise ValueError("System turns are managed by prepare()")
        state = self._state(principal_id)
        async with state.lock:
            now = self._clock()
            turn = ConversationTurn(role, normalize(content), now)
            state.turns.append(turn)
            state.last_active = now
            self._trim(state)
        return turn

    async def append_exchange(self, principal_id: str, user_text: str, assistant_text: str) -> None:
        """Append a user turn and its answer as one step."""
        state = self._state(principal_id)
        async with state.lock:
            now = self._clock()
            state.turns.append(ConversationTurn("user", normalize(user_text), now))
            state.turns.append(ConversationTurn("assistant", normalize(assistant_text), now))
            state.last_active = now
            self._trim(state)
        logger.debug(
            "Exchange appended",
            extra=get_log_context(principal_id=principal_id, turns=len(state.turns)),
        )

    async def _context_summary(self, principal_id: str) -> str:
        if self.history is None:
            return ""
        try:
            recent = await self.history.recent_interactions(principal_id, self.summary_limit)
        except Exception as e:
            logger.warning(
                f"History lookup failed: {e}",
                extra=get_log_context(principal_id=principal_id),
            )
            return ""
        return summarize_history(recent, self.summary_limit)

    async def prepare(
        self,
        principal_id: str,
        external_info: Optional[Sequence[ExternalInfoResult]] = None,
        extra_directives: Optional[Sequence[str]] = None,
    ) -> List[ConversationTurn]:
        """Rebuild the system turn and return a copy of the history.

        The returned list is the caller's to extend; stored history is not
        affected. ``extra_directives`` are appended to the system turn of
        the copy only.
        """
        summary = await self._context_summary(principal_id)
        system_prompt = self.render_system_prompt(summary, format_external_info(external_info))

        state = self._state(principal_id)
        async with state.lock:
            now = self._clock()
            if state.turns[0].content != system_prompt:
                state.turns[0] = ConversationTurn("system", system_prompt, now)
            state.last_active = now
            turns = [replace(turn) for turn in state.turns]

        if extra_directives:
            directives = "\n".join(extra_directives)
            turns[0] = replace(turns[0], content=f"{turns[0].content}\n\n{directives}")
        return turns

    def get(self, principal_id: str) -> List[ConversationTurn]:
        """Copy of the stored history (empty if the principal is unknown)."""
        state = self._states.get(principal_id)
        if state is None:
            return []
        return [replace(turn) for turn in state.turns]

    async def clear(self, principal_id: str) -> bool:
        """Forget a principal's conversation. Returns whether one existed."""
        removed = self._states.pop(principal_id, None) is not None
        if removed:
            logger.info("Conversation cleared", extra=get_log_context(principal_id=principal_id))
        return removed

    async def sweep(self, max_age: float = 3600.0, max_conversations: int = 500) -> int:
        """Drop idle conversations, then trim to ``max_conversations``.

        Returns:
            Number of conversations removed.
        """
        now = self._clock()
        stale = [
            key for key, state in self._states.items()
            if now - state.last_active > max_age
            and not state.lock.locked()
            and not self._busy(key)
        ]
        for key in stale:
            del self._states[key]

        removed = len(stale)
        excess = len(self._states) - max_conversations
        if excess > 0:
            idle = [s for s in self._states.values() if not self._busy(s.principal_id)]
            oldest = sorted(idle, key=lambda s: s.last_active)[:excess]
            for state in oldest:
                del self._states[state.principal_id]
            removed += len(oldest)

        for key in [k for k in self._request_locks if not self._busy(k)]:
            if key not in self._states:
                del self._request_locks[key]

        if removed:
            logger.info("Conversations swept", extra={"removed": removed, "remaining": len(self._states)})
        return removed

    def get_stats(self) -> dict:
        return {
            "conversations": len(self._states),
            "max_turns": self.max_turns,
        }
