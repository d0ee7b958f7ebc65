"""Tests for admission control."""

import pytest

from mancy.app.exceptions import AdmissionDenied
from mancy.app.services.rate_limiter import AdmissionReason, RateLimiter


def make_limiter(clock, **overrides) -> RateLimiter:
    options = dict(
        capacity=3,
        refill_amount=3,
        refill_interval=10.0,
        global_limit=25,
        global_window=10.0,
        max_concurrent=10,
        clock=clock,
    )
    options.update(overrides)
    return RateLimiter(**options)


class TestTokenBucket:

    @pytest.mark.asyncio
    async def test_admits_up_to_capacity(self, clock):
        limiter = make_limiter(clock)
        for _ in range(3):
            result = await limiter.try_admit("U1")
            assert result.allowed
            limiter.release()

        denied = await limiter.try_admit("U1")
        assert not denied
        assert denied.reason is AdmissionReason.USER_RATE_LIMITED
        assert denied.wait_time == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_wait_time_shrinks_with_elapsed_time(self, clock):
        limiter = make_limiter(clock, capacity=1, refill_amount=1)
        await limiter.try_admit("U1")
        limiter.release()

        clock.advance(9.5)
        denied = await limiter.try_admit("U1")
        assert not denied.allowed
        assert denied.wait_time == pytest.approx(0.5)
        assert limiter.wait_time("U1") == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_refill_after_interval(self, clock):
        limiter = make_limiter(clock)
        for _ in range(3):
            await limiter.try_admit("U1")
            limiter.release()
        assert limiter.tokens("U1") == 0

        clock.advance(10.0)
        assert limiter.tokens("U1") == 3
        assert (await limiter.try_admit("U1")).allowed

    @pytest.mark.asyncio
    async def test_refill_never_exceeds_capacity(self, clock):
        limiter = make_limiter(clock)
        await limiter.try_admit("U1")
        limiter.release()

        clock.advance(100.0)
        assert limiter.tokens("U1") == 3

    @pytest.mark.asyncio
    async def test_partial_interval_does_not_refill(self, clock):
        limiter = make_limiter(clock, capacity=2, refill_amount=2)
        await limiter.try_admit("U1")
        limiter.release()

        clock.advance(9.99)
        assert limiter.tokens("U1") == 1

    @pytest.mark.asyncio
    async def test_principals_are_independent(self, clock):
        limiter = make_limiter(clock, capacity=1, refill_amount=1)
        assert (await limiter.try_admit("U1")).allowed
        limiter.release()
        assert not (await limiter.try_admit("U1")).allowed
        assert (await limiter.try_admit("U2")).allowed

    def test_unknown_principal_has_full_bucket(self, clock):
        limiter = make_limiter(clock)
        assert limiter.tokens("nobody") == 3
        assert limiter.wait_time("nobody") == 0.0


class TestGlobalWindow:

    @pytest.mark.asyncio
    async def test_global_limit_across_principals(self, clock):
        limiter = make_limiter(clock, global_limit=2)
        assert (await limiter.try_admit("A")).allowed
        limiter.release()
        assert (await limiter.try_admit("B")).allowed
        limiter.release()

        denied = await limiter.try_admit("C")
        assert denied.reason is AdmissionReason.GLOBAL_RATE_LIMITED
        assert denied.wait_time == pytest.approx(10.0)
        # Denied requests keep their token
        assert limiter.tokens("C") == 3

    @pytest.mark.asyncio
    async def test_window_slides(self, clock):
        limiter = make_limiter(clock, global_limit=1)
        assert (await limiter.try_admit("A")).allowed
        limiter.release()

        clock.advance(4.0)
        denied = await limiter.try_admit("B")
        assert denied.wait_time == pytest.approx(6.0)

        clock.advance(6.0)
        assert (await limiter.try_admit("B")).allowed


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_concurrency_cap(self, clock):
        limiter = make_limiter(clock, max_concurrent=1)
        assert (await limiter.try_admit("A")).allowed
        assert limiter.in_flight == 1

        denied = await limiter.try_admit("B")
        assert denied.reason is AdmissionReason.CONCURRENCY_LIMITED
        assert denied.wait_time == 0.0
        assert limiter.tokens("B") == 3

        limiter.release()
        assert (await limiter.try_admit("B")).allowed

    def test_release_never_goes_negative(self, clock):
        limiter = make_limiter(clock)
        limiter.release()
        limiter.release()
        assert limiter.in_flight == 0

    @pytest.mark.asyncio
    async def test_admission_context_releases_on_error(self, clock):
        limiter = make_limiter(clock)
        with pytest.raises(RuntimeError):
            async with limiter.admission("U1"):
                assert limiter.in_flight == 1
                raise RuntimeError("boom")
        assert limiter.in_flight == 0

    @pytest.mark.asyncio
    async def test_admission_context_raises_when_denied(self, clock):
        limiter = make_limiter(clock, capacity=1, refill_amount=1)
        async with limiter.admission("U1"):
            pass

        with pytest.raises(AdmissionDenied) as exc_info:
            async with limiter.admission("U1"):
                pytest.fail("should not be admitted")
        assert exc_info.value.reason == "user_rate_limited"
        assert exc_info.value.wait_time == pytest.approx(10.0)
        assert limiter.in_flight == 0


class TestMaintenance:

    @pytest.mark.asyncio
    async def test_reset_restores_full_bucket(self, clock):
        limiter = make_limiter(clock, capacity=1, refill_amount=1)
        await limiter.try_admit("U1")
        limiter.release()
        await limiter.reset("U1")
        assert limiter.tokens("U1") == 1
        assert (await limiter.try_admit("U1")).allowed

    @pytest.mark.asyncio
    async def test_cleanup_drops_full_buckets_only(self, clock):
        limiter = make_limiter(clock)
        await limiter.try_admit("idle")
        limiter.release()
        clock.advance(10.0)
        await limiter.try_admit("busy")
        limiter.release()

        removed = await limiter.cleanup()
        assert removed == 1
        assert limiter.get_stats()["buckets"] == 1

    @pytest.mark.asyncio
    async def test_bucket_limit_trims_least_recent(self, clock):
        limiter = make_limiter(clock, max_buckets=5)
        for i in range(6):
            await limiter.try_admit(f"U{i}")
            limiter.release()
        assert limiter.get_stats()["buckets"] == 5
        # U0 was trimmed, so it starts with a full bucket again
        assert limiter.tokens("U0") == 3

    @pytest.mark.asyncio
    async def test_stats(self, clock):
        limiter = make_limiter(clock, capacity=1, refill_amount=1)
        await limiter.try_admit("U1")
        await limiter.try_admit("U1")
        stats = limiter.get_stats()
        assert stats["admitted_total"] == 1
        assert stats["denied_total"] == 1
        assert stats["in_flight"] == 1
