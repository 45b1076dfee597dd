"""Token-bucket and sliding-window rate limiting over the shared store.

Both algorithms keep their state as a small JSON document per key and
mutate it through compare-and-set, so two instances racing for the last
token cannot both be admitted. Refill is a pure function of elapsed time;
there is no background timer. Idle keys expire on their own.
"""
from __future__ import annotations

import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from warden.config import FailurePolicy, Settings
from warden.logging import get_logger
from warden.service.errors import RateLimitedError
from warden.service.policy import handle_store_outage
from warden.storage.base import KeyValueStore, atomic_update
from warden.storage.errors import StoreUnavailable

logger = get_logger(__name__)

MINUTE = 60
HOUR = 60 * MINUTE
DAY = 24 * HOUR


class Algorithm(str, Enum):
    TOKEN_BUCKET = "token_bucket"
    SLIDING_WINDOW = "sliding_window"


class RateTier(str, Enum):
    ANONYMOUS = "anonymous"
    FREE = "free"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"

    @classmethod
    def for_role(cls, role: Optional[str]) -> "RateTier":
        if not role:
            return cls.ANONYMOUS
        return _ROLE_TIERS.get(role, cls.FREE)


_ROLE_TIERS = {
    "user": RateTier.FREE,
    "premium": RateTier.PREMIUM,
    "enterprise": RateTier.ENTERPRISE,
    "admin": RateTier.ENTERPRISE,
    "super_admin": RateTier.ENTERPRISE,
}


@dataclass(frozen=True)
class RateLimitPolicy:
    """``limit`` requests per ``window_seconds``.

    For token buckets ``limit`` is the capacity and the bucket regains
    ``refill_amount`` tokens every ``refill_interval``; by default the refill
    is spread so that a full bucket is regained over one window.
    """

    name: str
    limit: int
    window_seconds: int
    algorithm: Algorithm = Algorithm.SLIDING_WINDOW
    refill_amount: int = 1
    refill_interval_seconds: Optional[float] = None

    @property
    def refill_interval(self) -> float:
        if self.refill_interval_seconds is not None:
            return float(self.refill_interval_seconds)
        return self.window_seconds * self.refill_amount / self.limit


RESOURCE_POLICIES: Dict[str, RateLimitPolicy] = {
    "auth": RateLimitPolicy("auth", 5, 15 * MINUTE),
    "api": RateLimitPolicy("api", 100, 15 * MINUTE, Algorithm.TOKEN_BUCKET),
    "read": RateLimitPolicy("read", 1000, 15 * MINUTE, Algorithm.TOKEN_BUCKET),
    "write": RateLimitPolicy("write", 50, 15 * MINUTE, Algorithm.TOKEN_BUCKET),
    "sensitive": RateLimitPolicy("sensitive", 10, HOUR),
    "ai": RateLimitPolicy("ai", 100, HOUR, Algorithm.TOKEN_BUCKET),
    "upload": RateLimitPolicy("upload", 20, HOUR),
    "newsletter": RateLimitPolicy("newsletter", 3, DAY),
}

TIER_LIMITS: Dict[RateTier, RateLimitPolicy] = {
    RateTier.ANONYMOUS: RateLimitPolicy("tier:anonymous", 100, 15 * MINUTE, Algorithm.TOKEN_BUCKET),
    RateTier.FREE: RateLimitPolicy("tier:free", 1000, 15 * MINUTE, Algorithm.TOKEN_BUCKET),
    RateTier.PREMIUM: RateLimitPolicy("tier:premium", 5000, 15 * MINUTE, Algorithm.TOKEN_BUCKET),
    RateTier.ENTERPRISE: RateLimitPolicy(
        "tier:enterprise", 50000, 15 * MINUTE, Algorithm.TOKEN_BUCKET
    ),
}


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int
    reset_at: float
    degraded: bool = False

    @property
    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(int(math.ceil(self.reset_at))),
        }
        if not self.allowed:
            headers["Retry-After"] = str(max(1, self.retry_after_seconds))
        return headers


_Outcome = Tuple[bool, int, int, float]


class TokenBucket:
    """Capacity ``C``; ``refill_amount`` tokens come back every ``refill_interval``."""

    def __init__(self, capacity: int, refill_amount: int, refill_interval: float) -> None:
        if capacity <= 0 or refill_amount <= 0 or refill_interval <= 0:
            raise ValueError("token bucket parameters must be positive")
        self.capacity = capacity
        self.refill_amount = refill_amount
        self.refill_interval = refill_interval

    def consume(
        self, state: Optional[Mapping[str, Any]], now: float, cost: int = 1
    ) -> Tuple[Dict[str, Any], _Outcome]:
        """Apply elapsed refill then try to take ``cost`` tokens.

        Returns the new state and ``(allowed, remaining, retry_after, reset_at)``.
        """
        if state:
            tokens = int(state["tokens"])
            last_refill = float(state["last_refill"])
        else:
            tokens, last_refill = self.capacity, now

        ticks = int(max(0.0, now - last_refill) // self.refill_interval)
        if ticks:
            tokens = min(self.capacity, tokens + ticks * self.refill_amount)
            # keep the partial interval so refill does not drift
            last_refill = last_refill + ticks * self.refill_interval
        if tokens >= self.capacity:
            last_refill = now

        allowed = tokens >= cost
        if allowed:
            tokens -= cost
            retry_after = 0
        else:
            missing_ticks = math.ceil((cost - tokens) / self.refill_amount)
            wait = last_refill + missing_ticks * self.refill_interval - now
            retry_after = max(1, int(math.ceil(wait)))

        missing_to_full = math.ceil((self.capacity - tokens) / self.refill_amount)
        reset_at = last_refill + missing_to_full * self.refill_interval
        new_state = {"tokens": tokens, "last_refill": last_refill}
        return new_state, (allowed, tokens, retry_after, reset_at)


class SlidingWindow:
    """At most ``limit`` requests in any trailing ``window_seconds``."""

    def __init__(self, limit: int, window_seconds: float) -> None:
        if limit <= 0 or window_seconds <= 0:
            raise ValueError("sliding window parameters must be positive")
        self.limit = limit
        self.window_seconds = window_seconds

    def consume(
        self, state: Optional[List[float]], now: float, cost: int = 1
    ) -> Tuple[List[float], _Outcome]:
        cutoff = now - self.window_seconds
        timestamps = sorted(ts for ts in (state or []) if ts > cutoff)

        allowed = len(timestamps) + cost <= self.limit
        if allowed:
            timestamps.extend([now] * cost)
            retry_after = 0
        else:
            # the request fits once enough of the oldest entries age out
            needed = min(len(timestamps), len(timestamps) + cost - self.limit)
            frees_at = timestamps[needed - 1] + self.window_seconds if needed else now
            retry_after = max(1, int(math.ceil(frees_at - now)))

        remaining = max(0, self.limit - len(timestamps))
        reset_at = timestamps[0] + self.window_seconds if timestamps else now
        return timestamps, (allowed, remaining, retry_after, reset_at)


def rate_key(principal_id: Optional[str] = None, client_ip: Optional[str] = None) -> str:
    """Authenticated callers are limited per principal, everyone else per address."""
    if principal_id:
        return f"user:{principal_id}"
    return f"ip:{client_ip or 'unknown'}"


class RateLimiter:
    """Applies named policies to caller keys."""

    STATE_KEY = "ratelimit:{policy}:{key}"

    def __init__(
        self,
        settings: Settings,
        store: KeyValueStore,
        *,
        clock: Callable[[], float] = time.time,
        policies: Optional[Mapping[str, RateLimitPolicy]] = None,
        tiers: Optional[Mapping[RateTier, RateLimitPolicy]] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self._clock = clock
        self.policies: Dict[str, RateLimitPolicy] = dict(policies or RESOURCE_POLICIES)
        self.tiers: Dict[RateTier, RateLimitPolicy] = dict(tiers or TIER_LIMITS)
        self.failure_policy: FailurePolicy = settings.rate_limit_failure_policy
        self.idle_ttl_seconds = settings.rate_limit_idle_ttl_seconds

    def policy_for(self, resource: str) -> RateLimitPolicy:
        try:
            return self.policies[resource]
        except KeyError:
            raise ValueError(f"unknown rate limit resource: {resource}") from None

    @staticmethod
    def _algorithm(policy: RateLimitPolicy):
        if policy.algorithm is Algorithm.TOKEN_BUCKET:
            return TokenBucket(policy.limit, policy.refill_amount, policy.refill_interval)
        return SlidingWindow(policy.limit, policy.window_seconds)

    async def _apply(self, policy: RateLimitPolicy, key: str, cost: int) -> RateLimitDecision:
        now = self._clock()
        algorithm = self._algorithm(policy)
        state_key = self.STATE_KEY.format(policy=policy.name, key=key)

        def _mutate(current):
            return algorithm.consume(current, now, cost)

        try:
            allowed, remaining, retry_after, reset_at = await atomic_update(
                self.store,
                state_key,
                _mutate,
                ttl_seconds=max(self.idle_ttl_seconds, policy.window_seconds),
                retries=self.settings.store_cas_retries,
            )
        except StoreUnavailable as exc:
            handle_store_outage(
                self.failure_policy,
                exc,
                component="rate_limit",
                operation="check",
                policy_name=policy.name,
            )
            return RateLimitDecision(
                allowed=True,
                limit=policy.limit,
                remaining=policy.limit,
                retry_after_seconds=0,
                reset_at=now + policy.window_seconds,
                degraded=True,
            )

        if not allowed:
            logger.info(
                "rate_limit_exceeded",
                policy=policy.name,
                key=key,
                retry_after=retry_after,
            )
        return RateLimitDecision(
            allowed=allowed,
            limit=policy.limit,
            remaining=remaining,
            retry_after_seconds=retry_after,
            reset_at=reset_at,
        )

    async def check(self, key: str, resource: str = "api", *, cost: int = 1) -> RateLimitDecision:
        return await self._apply(self.policy_for(resource), key, cost)

    async def check_tier(self, key: str, tier: RateTier, *, cost: int = 1) -> RateLimitDecision:
        return await self._apply(self.tiers[tier], key, cost)

    async def enforce(self, key: str, resource: str = "api", *, cost: int = 1) -> RateLimitDecision:
        """Like ``check`` but raises ``RateLimitedError`` on denial."""
        decision = await self.check(key, resource, cost=cost)
        if not decision.allowed:
            raise RateLimitedError(
                "Too many requests, please try again later",
                retry_after=decision.retry_after_seconds,
                headers=decision.headers,
                detail={"resource": resource},
            )
        return decision

    async def reset(self, key: str, resource: str = "api") -> None:
        policy = self.policy_for(resource)
        await self.store.delete(self.STATE_KEY.format(policy=policy.name, key=key))
