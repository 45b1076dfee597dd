"""Tests for token-bucket and sliding-window rate limiting."""

import asyncio

import pytest

from warden.config import FailurePolicy
from warden.service.errors import RateLimitedError, ServiceUnavailableError
from warden.service.rate_limit import (
    RESOURCE_POLICIES,
    TIER_LIMITS,
    Algorithm,
    RateLimiter,
    RateLimitPolicy,
    RateTier,
    SlidingWindow,
    TokenBucket,
    rate_key,
)
from warden.storage.errors import StoreUnavailable

BUCKET = RateLimitPolicy(
    "bucket", 3, 180, Algorithm.TOKEN_BUCKET, refill_amount=1, refill_interval_seconds=60
)
WINDOW = RateLimitPolicy("window", 5, 60)


@pytest.fixture
def limiter(settings, store, clock):
    return RateLimiter(
        settings, store, clock=clock, policies={"bucket": BUCKET, "window": WINDOW}
    )


class TestTokenBucket:
    def test_capacity_then_deny_then_refill(self):
        bucket = TokenBucket(capacity=3, refill_amount=1, refill_interval=60)
        state = None
        for _ in range(3):
            state, (allowed, _, _, _) = bucket.consume(state, 1000.0)
            assert allowed
        state, (allowed, remaining, retry_after, _) = bucket.consume(state, 1000.0)
        assert not allowed
        assert remaining == 0
        assert retry_after == 60
        state, (allowed, _, _, _) = bucket.consume(state, 1060.0)
        assert allowed

    def test_refill_never_exceeds_capacity(self):
        bucket = TokenBucket(capacity=3, refill_amount=2, refill_interval=10)
        state, _ = bucket.consume(None, 0.0)
        state, (_, remaining, _, _) = bucket.consume(state, 10_000.0)
        assert remaining == 2

    def test_partial_interval_is_kept(self):
        bucket = TokenBucket(capacity=2, refill_amount=1, refill_interval=60)
        state, _ = bucket.consume(None, 0.0)
        state, _ = bucket.consume(state, 0.0)
        state, (allowed, _, _, _) = bucket.consume(state, 90.0)
        assert allowed
        # 30s of the next interval were already banked at t=90
        state, (allowed, _, retry_after, _) = bucket.consume(state, 90.0)
        assert not allowed
        assert retry_after == 30

    def test_multi_token_cost(self):
        bucket = TokenBucket(capacity=5, refill_amount=1, refill_interval=1)
        state, (allowed, remaining, _, _) = bucket.consume(None, 0.0, cost=4)
        assert allowed and remaining == 1
        _, (allowed, _, retry_after, _) = bucket.consume(state, 0.0, cost=3)
        assert not allowed and retry_after == 2


class TestSlidingWindow:
    def test_five_per_minute(self):
        window = SlidingWindow(limit=5, window_seconds=60)
        state = None
        for offset in (0, 2, 4, 6, 8):
            state, (allowed, _, _, _) = window.consume(state, 100.0 + offset)
            assert allowed
        state, (allowed, remaining, retry_after, _) = window.consume(state, 110.0)
        assert not allowed
        assert remaining == 0
        assert 0 < retry_after <= 60
        assert retry_after == 50
        state, (allowed, _, _, _) = window.consume(state, 171.0)
        assert allowed

    def test_denied_requests_are_not_recorded(self):
        window = SlidingWindow(limit=1, window_seconds=10)
        state, _ = window.consume(None, 0.0)
        for _ in range(5):
            state, _ = window.consume(state, 1.0)
        assert state == [0.0]


class TestRateLimiter:
    async def test_bucket_policy(self, limiter, clock):
        for _ in range(3):
            assert (await limiter.check("user:1", "bucket")).allowed
        decision = await limiter.check("user:1", "bucket")
        assert not decision.allowed
        assert decision.headers["Retry-After"] == "60"
        clock.advance(60)
        assert (await limiter.check("user:1", "bucket")).allowed

    async def test_window_policy_and_headers(self, limiter, clock):
        for _ in range(5):
            decision = await limiter.check("ip:1.2.3.4", "window")
            clock.advance(2)
        assert decision.allowed
        assert decision.headers["X-RateLimit-Limit"] == "5"
        assert decision.headers["X-RateLimit-Remaining"] == "0"
        assert "Retry-After" not in decision.headers
        denied = await limiter.check("ip:1.2.3.4", "window")
        assert not denied.allowed
        assert denied.retry_after_seconds <= 60
        clock.advance(60)
        assert (await limiter.check("ip:1.2.3.4", "window")).allowed

    async def test_keys_are_independent(self, limiter):
        for _ in range(3):
            await limiter.check("user:1", "bucket")
        assert not (await limiter.check("user:1", "bucket")).allowed
        assert (await limiter.check("user:2", "bucket")).allowed

    async def test_last_token_admits_exactly_one(self, settings, store, clock):
        limiter = RateLimiter(
            settings,
            store,
            clock=clock,
            policies={"one": RateLimitPolicy("one", 1, 60, Algorithm.TOKEN_BUCKET)},
        )
        decisions = await asyncio.gather(*(limiter.check("user:1", "one") for _ in range(10)))
        assert sum(d.allowed for d in decisions) == 1

    async def test_enforce_raises_with_headers(self, limiter):
        for _ in range(3):
            await limiter.enforce("user:1", "bucket")
        with pytest.raises(RateLimitedError) as excinfo:
            await limiter.enforce("user:1", "bucket")
        assert excinfo.value.headers["Retry-After"] == "60"
        assert excinfo.value.headers["X-RateLimit-Limit"] == "3"

    async def test_idle_state_expires(self, limiter, store, clock):
        await limiter.check("user:1", "window")
        assert await store.exists("ratelimit:window:user:1")
        clock.advance(3601)
        assert not await store.exists("ratelimit:window:user:1")

    async def test_outage_fails_open_by_default(self, limiter, store, monkeypatch):
        async def _down(key):
            raise StoreUnavailable("down")

        monkeypatch.setattr(store, "get", _down)
        decision = await limiter.check("user:1", "bucket")
        assert decision.allowed
        assert decision.degraded

    async def test_outage_fails_closed_when_configured(self, settings, store, monkeypatch):
        limiter = RateLimiter(
            settings.model_copy(update={"rate_limit_failure_policy": FailurePolicy.CLOSED}),
            store,
        )

        async def _down(key):
            raise StoreUnavailable("down")

        monkeypatch.setattr(store, "get", _down)
        with pytest.raises(ServiceUnavailableError):
            await limiter.check("user:1", "api")

    async def test_unknown_resource(self, limiter):
        with pytest.raises(ValueError):
            await limiter.check("user:1", "nope")

    async def test_tier_limits_by_role(self, settings, store, clock):
        limiter = RateLimiter(settings, store, clock=clock)
        decision = await limiter.check_tier("ip:1.2.3.4", RateTier.for_role(None))
        assert decision.limit == 100
        decision = await limiter.check_tier("user:1", RateTier.for_role("premium"))
        assert decision.limit == 5000


def test_policy_table():
    assert RESOURCE_POLICIES["auth"].limit == 5
    assert RESOURCE_POLICIES["auth"].window_seconds == 15 * 60
    assert RESOURCE_POLICIES["newsletter"].window_seconds == 24 * 3600
    limits = [TIER_LIMITS[tier].limit for tier in RateTier]
    assert limits == sorted(limits)


def test_rate_key_prefers_principal():
    assert rate_key("p1", "1.2.3.4") == "user:p1"
    assert rate_key(None, "1.2.3.4") == "ip:1.2.3.4"
    assert rate_key(None, None) == "ip:unknown"
