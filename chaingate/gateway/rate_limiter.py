"""Tiered Rate Limiter: per-client fixed-window admission control.

Counting is delegated to ``limits`` (the engine under slowapi): one
FixedWindowRateLimiter over in-memory storage, one RateLimitItem per tier,
keyed by (tier, client_key). The storage expires finished windows itself.

Per (client_key, tier):
  - the window opens on the first call and the counter starts at 0
  - every admitted call increments the counter
  - a call that would exceed the tier maximum is rejected without incrementing
  - the first call observed after the window elapsed starts a fresh window

Rejection is immediate: no queueing, no backoff. The test-then-hit pair runs
under one asyncio.Lock so concurrent bursts from a key never over-admit.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field
from enum import Enum

from limits import RateLimitItem, RateLimitItemPerMinute, RateLimitItemPerSecond
from limits.aio.storage import MemoryStorage, Storage
from limits.aio.strategies import FixedWindowRateLimiter

DEFAULT_WINDOW_SECONDS = 15 * 60


class RateLimitTier(str, Enum):
    """Named rate-limit buckets (lower max = more expensive operation)."""

    AUTH = "auth"
    CHAIN = "chain"
    AI = "ai-single-provider"
    GENERAL = "general"


@dataclass(frozen=True)
class TierPolicy:
    max_requests: int
    window_seconds: int = DEFAULT_WINDOW_SECONDS
    message: str = "Too many requests from this IP, please try again later."

    def as_item(self) -> RateLimitItem:
        """The ``limits`` item for this policy (15 minutes → 100 per 15 minute)."""
        window = max(1, int(self.window_seconds))
        if window % 60 == 0:
            return RateLimitItemPerMinute(self.max_requests, window // 60)
        return RateLimitItemPerSecond(self.max_requests, window)


def build_tier_policies(
    profile: str = "production",
    window_seconds: int = DEFAULT_WINDOW_SECONDS,
) -> dict[RateLimitTier, TierPolicy]:
    """Default policy table. The ``development`` profile gets one lenient limit for every tier."""
    if profile == "development":
        dev = TierPolicy(1000, window_seconds, "Development rate limit exceeded.")
        return {tier: dev for tier in RateLimitTier}

    return {
        RateLimitTier.AUTH: TierPolicy(
            5, window_seconds, "Too many authentication attempts from this IP, please try again later."
        ),
        RateLimitTier.CHAIN: TierPolicy(10, window_seconds, "Too many chain requests from this IP, please try again later."),
        RateLimitTier.AI: TierPolicy(30, window_seconds, "Too many AI requests from this IP, please try again later."),
        RateLimitTier.GENERAL: TierPolicy(100, window_seconds, "Too many requests from this IP, please try again later."),
    }


@dataclass
class Admission:
    """Outcome of one admission check."""

    admitted: bool
    limit: int
    remaining: int
    retry_after: float = 0.0  # seconds until the window resets
    message: str = ""

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.retry_after))


@dataclass
class TieredRateLimiter:
    """In-process fixed-window limiter keyed by client and tier.

    Usage:
        limiter = TieredRateLimiter(build_tier_policies())
        admission = await limiter.admit("203.0.113.7", RateLimitTier.CHAIN)
        if not admission.admitted:
            ...  # reply 429 with admission.retry_after_seconds
    """

    policies: dict[RateLimitTier, TierPolicy] = field(default_factory=build_tier_policies)
    storage: Storage = field(default_factory=MemoryStorage)
    _strategy: FixedWindowRateLimiter = field(init=False, repr=False)
    _items: dict[RateLimitTier, RateLimitItem] = field(init=False, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self._strategy = FixedWindowRateLimiter(self.storage)
        self._items = {tier: policy.as_item() for tier, policy in self.policies.items()}

    def policy(self, tier: RateLimitTier) -> TierPolicy:
        try:
            return self.policies[tier]
        except KeyError:
            raise KeyError(f"No rate limit policy for tier: {tier.value}") from None

    async def admit(self, client_key: str, tier: RateLimitTier) -> Admission:
        """Count one call for ``client_key`` against ``tier``."""
        policy = self.policy(tier)
        item = self._items[tier]

        async with self._lock:
            admitted = await self._strategy.test(item, tier.value, client_key)
            if admitted:
                await self._strategy.hit(item, tier.value, client_key)
            stats = await self._strategy.get_window_stats(item, tier.value, client_key)

        return Admission(
            admitted=admitted,
            limit=policy.max_requests,
            remaining=max(0, stats.remaining),
            retry_after=max(0.0, stats.reset_time - time.time()),
            message="" if admitted else policy.message,
        )

    async def get_stats(self, client_key: str) -> list[dict]:
        """Current counters for one client across all tiers."""
        stats = []
        for tier, policy in self.policies.items():
            window = await self._strategy.get_window_stats(self._items[tier], tier.value, client_key)
            stats.append(
                {
                    "tier": tier.value,
                    "count": policy.max_requests - window.remaining,
                    "limit": policy.max_requests,
                    "window_seconds": policy.window_seconds,
                }
            )
        return stats

    async def reset(self) -> None:
        """Forget every window."""
        await self.storage.reset()
