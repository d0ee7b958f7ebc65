"""Tests for the retry/fallback state machine and the generator driving it."""

import pytest

from mancy.app.core.cache import TTLCache
from mancy.app.exceptions import UpstreamError, UpstreamTimeout
from mancy.app.providers.knowledge import ExternalInfoResult
from mancy.app.services.response_generator import (
    CACHE_MODEL,
    FALLBACK_MESSAGES,
    FALLBACK_MODEL,
    RETRY_DIRECTIVE,
    AttemptOutcome,
    GenerationContext,
    GenerationState,
    ResponseGenerator,
    build_model_plan,
    transition,
)

ATTEMPTING = GenerationState.ATTEMPTING
FALLBACKS = [m.format(bot_name="Mancy") for m in FALLBACK_MESSAGES]


class TestTransition:

    def test_start(self):
        assert transition(GenerationState.IDLE, 0, AttemptOutcome.START, 3) == (ATTEMPTING, 1)

    def test_valid_succeeds(self):
        assert transition(ATTEMPTING, 2, AttemptOutcome.VALID, 3) == (GenerationState.SUCCEEDED, 2)

    @pytest.mark.parametrize("outcome", [AttemptOutcome.INVALID, AttemptOutcome.FAILED])
    def test_retry_until_exhausted(self, outcome):
        assert transition(ATTEMPTING, 1, outcome, 3) == (ATTEMPTING, 2)
        assert transition(ATTEMPTING, 2, outcome, 3) == (ATTEMPTING, 3)
        assert transition(ATTEMPTING, 3, outcome, 3) == (GenerationState.FALLBACK_USED, 3)

    @pytest.mark.parametrize(
        "state, outcome",
        [
            (GenerationState.IDLE, AttemptOutcome.VALID),
            (ATTEMPTING, AttemptOutcome.START),
            (GenerationState.SUCCEEDED, AttemptOutcome.START),
            (GenerationState.FALLBACK_USED, AttemptOutcome.FAILED),
        ],
    )
    def test_invalid_transitions(self, state, outcome):
        with pytest.raises(ValueError):
            transition(state, 1, outcome, 3)


def test_model_plan_raises_temperature_per_attempt():
    plan = build_model_plan("primary", "fallback", 0.25, 0.1, 3)
    assert [(c.model, c.temperature) for c in plan] == [
        ("primary", 0.25), ("fallback", 0.35), ("fallback", 0.45),
    ]
    assert len(build_model_plan("primary", "fallback", 0.25, max_attempts=1)) == 1


class TestGenerate:

    @pytest.mark.asyncio
    async def test_first_attempt_success(self, make_generator, scripted_completion, conversations):
        completion = scripted_completion(["la fotosíntesis convierte luz en energía"])
        generator = make_generator(completion)

        result = await generator.generate("U1", "¿Qué es la fotosíntesis?")

        assert result.state is GenerationState.SUCCEEDED
        assert result.text == "La fotosíntesis convierte luz en energía."
        assert result.model_used == "primary-model"
        assert result.attempt == 1
        assert not result.from_cache
        assert completion.calls[0]["params"].temperature == 0.25

        messages = completion.calls[0]["messages"]
        assert messages[0]["role"] == "system"
        assert messages[-1] == {"role": "user", "content": "¿Qué es la fotosíntesis?"}

        turns = conversations.get("U1")
        assert [t.role for t in turns] == ["system", "user", "assistant"]
        assert turns[2].content == result.text

    @pytest.mark.asyncio
    async def test_repeat_is_served_from_cache(self, make_generator, scripted_completion, conversations):
        completion = scripted_completion(["Primera respuesta completa."])
        generator = make_generator(completion)

        await generator.generate("U1", "hola de nuevo")
        cached = await generator.generate("U1", "  Hola   de nuevo ")

        assert cached.from_cache
        assert cached.model_used == CACHE_MODEL
        assert cached.attempt == 0
        assert cached.text == "Primera respuesta completa."
        assert len(completion.calls) == 1
        assert len(conversations.get("U1")) == 3

    @pytest.mark.asyncio
    async def test_cache_is_per_principal(self, make_generator, scripted_completion):
        completion = scripted_completion(["Respuesta para uno.", "Respuesta para dos."])
        generator = make_generator(completion)

        await generator.generate("U1", "hola")
        other = await generator.generate("U2", "hola")
        assert not other.from_cache
        assert other.text == "Respuesta para dos."

    @pytest.mark.asyncio
    async def test_invalid_output_retries_with_directive(
        self, make_generator, scripted_completion, conversations, sleeps
    ):
        completion = scripted_completion(["aaaaaaaaaaaaaaaaaaaa", "Ahora sí, una respuesta clara."])
        generator = make_generator(completion)

        result = await generator.generate("U1", "explícame algo")

        assert result.attempt == 2
        assert result.model_used == "fallback-model"
        assert result.errors == ["Generated text rejected: repeated_character"]
        assert RETRY_DIRECTIVE not in completion.calls[0]["messages"][0]["content"]
        assert RETRY_DIRECTIVE in completion.calls[1]["messages"][0]["content"]
        assert completion.calls[1]["params"].temperature == 0.35
        assert RETRY_DIRECTIVE not in conversations.get("U1")[0].content
        # Invalid output is retried immediately
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_upstream_failures_back_off_linearly(self, make_generator, scripted_completion, sleeps):
        completion = scripted_completion([
            UpstreamError("Completion call failed: 500"),
            UpstreamTimeout(45.0),
            "Tercera vez es la vencida.",
        ])
        generator = make_generator(completion)

        result = await generator.generate("U1", "hola")

        assert result.state is GenerationState.SUCCEEDED
        assert result.attempt == 3
        assert sleeps == [1.0, 2.0]
        assert len(result.errors) == 2

    @pytest.mark.asyncio
    async def test_exhaustion_uses_fallback(self, make_generator, scripted_completion, conversations, sleeps):
        completion = scripted_completion([UpstreamError("down")] * 3)
        generator = make_generator(completion)

        result = await generator.generate("U1", "hola")

        assert result.state is GenerationState.FALLBACK_USED
        assert result.used_fallback
        assert result.model_used == FALLBACK_MODEL
        assert result.attempt == 3
        assert result.text in FALLBACKS
        assert result.errors == ["down"]
        assert len(completion.calls) == 3
        # No backoff after the last attempt
        assert sleeps == [1.0, 2.0]
        assert len(generator.response_cache) == 0
        assert [t.role for t in conversations.get("U1")] == ["system"]

    @pytest.mark.asyncio
    async def test_empty_output_counts_as_invalid(self, make_generator, scripted_completion):
        completion = scripted_completion(["", "   ", "\x00​"])
        generator = make_generator(completion)

        result = await generator.generate("U1", "hola")
        assert result.used_fallback
        assert len(completion.calls) == 3

    @pytest.mark.asyncio
    async def test_fallback_is_not_cached(self, make_generator, scripted_completion):
        completion = scripted_completion([UpstreamError("down")] * 3 + ["Ya funciona todo bien."])
        generator = make_generator(completion)

        first = await generator.generate("U1", "hola")
        second = await generator.generate("U1", "hola")
        assert first.used_fallback
        assert not second.from_cache
        assert second.text == "Ya funciona todo bien."

    @pytest.mark.asyncio
    async def test_fallback_with_external_info(self, make_generator, scripted_completion):
        completion = scripted_completion([UpstreamError("down")] * 3)
        generator = make_generator(completion)
        info = ExternalInfoResult(source="Wikipedia", title="Fotosíntesis", content="Proceso...")

        result = await generator.generate(
            "U1", "¿Qué es la fotosíntesis?", GenerationContext(external_info=[info])
        )
        assert '"Fotosíntesis"' in result.text
        assert "Wikipedia" in result.text


class TestFallbackText:

    def test_deterministic_per_message(self, make_generator, completion):
        generator = make_generator(completion)
        context = GenerationContext()
        assert generator.fallback_text("hola", context) == generator.fallback_text("hola", context)
        assert generator.fallback_text("hola", context) in FALLBACKS

    def test_messages_spread_over_fallbacks(self, make_generator, completion):
        generator = make_generator(completion)
        texts = {generator.fallback_text(f"mensaje {i}", GenerationContext()) for i in range(50)}
        assert len(texts) > 1

    def test_empty_plan_rejected(self, completion, conversations, clock):
        with pytest.raises(ValueError):
            ResponseGenerator(
                completion, conversations, TTLCache("response", default_ttl=300, clock=clock), []
            )
