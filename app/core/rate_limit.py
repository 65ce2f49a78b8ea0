"""MindfulAI — Meta Rate-Limit Tracking & Backoff.

Tier constants follow Meta's published Marketing API limits. The tracker is
in-memory and per process; nothing here is shared across workers.
"""

import asyncio
import json
import math
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from app.config import settings
from app.core.logging import get_logger

logger = get_logger("rate_limit")


@dataclass(frozen=True)
class TierLimits:
    max_score: int
    decay_time: int  # seconds
    block_time: int  # seconds
    ads_management_hourly: int
    insights_hourly: int


TIERS: Dict[str, TierLimits] = {
    "development": TierLimits(
        max_score=60,
        decay_time=300,
        block_time=300,
        ads_management_hourly=300,
        insights_hourly=600,
    ),
    "standard": TierLimits(
        max_score=9000,
        decay_time=300,
        block_time=60,
        ads_management_hourly=100_000,
        insights_hourly=190_000,
    ),
}

# Points charged per call type
POINTS = {"READ": 1, "WRITE": 3, "INSIGHTS": 2}

# Meta error codes that mean "slow down"
RATE_LIMIT_ERROR_CODES = frozenset({4, 17, 613, 80000, 80003, 80004})

BACKOFF_BASE = 1.0
BACKOFF_MAX = 300.0
BACKOFF_JITTER = 1.0
MAX_DYNAMIC_DELAY = 5.0
HIGH_USAGE_PERCENT = 80.0
MAX_RETRIES = 5


def get_tier(name: Optional[str] = None) -> TierLimits:
    return TIERS.get((name or settings.meta_api_tier).lower(), TIERS["development"])


def is_rate_limit_error(code: Optional[int]) -> bool:
    """True if a Meta error code is one of the throttling codes."""
    return (code or 0) in RATE_LIMIT_ERROR_CODES


def backoff_delay(
    retry: int,
    consecutive_errors: int = 0,
    base: float = BACKOFF_BASE,
    max_delay: float = BACKOFF_MAX,
    jitter: float = BACKOFF_JITTER,
    rng: Callable[[], float] = random.random,
) -> float:
    """Seconds to wait before the next attempt.

    Consecutive rate-limit hits escalate the base delay (capped at 16x);
    otherwise plain exponential backoff with jitter. Always clamped.
    """
    if consecutive_errors > 0:
        multiplier = min(2**consecutive_errors, 16)
        return min(base * multiplier, max_delay)
    return min(base * (2**retry) + rng() * jitter, max_delay)


def dynamic_delay(endpoint: str, points: int) -> float:
    """Pre-emptive pause that grows with the points a call costs."""
    base = settings.insights_delay if "insights" in endpoint else settings.min_delay
    multiplier = math.ceil(points / 10)
    return min(base * multiplier, MAX_DYNAMIC_DELAY)


async def pause(seconds: float) -> None:
    """Sleep unless there is nothing to wait for."""
    if seconds > 0:
        await asyncio.sleep(seconds)


# ─────────────────────────────────────────────
# Usage headers
# ─────────────────────────────────────────────


@dataclass
class RateLimitUsage:
    """Parsed view of Meta's usage headers for one response."""

    usage_percent: float = 0.0
    call_count: float = 0.0
    total_cputime: float = 0.0
    total_time: float = 0.0
    estimated_time_to_regain_access: int = 0  # minutes
    business_use_case: Optional[str] = None
    reset_time_duration: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.raw

    @property
    def is_high(self) -> bool:
        return self.usage_percent > HIGH_USAGE_PERCENT


def _load_header(headers: Mapping[str, str], name: str) -> Any:
    value = headers.get(name)
    if not value:
        return None
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring malformed {name} header: {value[:120]}")
        return None


def _number(value: Any, cast: Callable[[Any], Any] = float) -> Any:
    """Numeric header field; anything unparseable counts as 0."""
    try:
        return cast(value or 0)
    except (TypeError, ValueError):
        return cast(0)


def parse_usage_headers(headers: Mapping[str, str]) -> RateLimitUsage:
    """Collapse the three Meta usage headers into a single usage snapshot."""
    usage = RateLimitUsage()

    app_usage = _load_header(headers, "x-app-usage")
    if isinstance(app_usage, dict):
        usage.raw["x-app-usage"] = app_usage
        usage.call_count = max(usage.call_count, _number(app_usage.get("call_count")))
        usage.total_cputime = max(usage.total_cputime, _number(app_usage.get("total_cputime")))
        usage.total_time = max(usage.total_time, _number(app_usage.get("total_time")))

    account_usage = _load_header(headers, "x-ad-account-usage")
    if isinstance(account_usage, dict):
        usage.raw["x-ad-account-usage"] = account_usage
        usage.usage_percent = max(
            usage.usage_percent, _number(account_usage.get("acc_id_util_pct"))
        )
        if account_usage.get("reset_time_duration") is not None:
            usage.reset_time_duration = _number(account_usage["reset_time_duration"], int)

    buc_usage = _load_header(headers, "x-business-use-case-usage")
    if isinstance(buc_usage, dict):
        usage.raw["x-business-use-case-usage"] = buc_usage
        for entries in buc_usage.values():
            for entry in entries if isinstance(entries, list) else [entries]:
                if not isinstance(entry, dict):
                    continue
                usage.call_count = max(usage.call_count, _number(entry.get("call_count")))
                usage.total_cputime = max(
                    usage.total_cputime, _number(entry.get("total_cputime"))
                )
                usage.total_time = max(usage.total_time, _number(entry.get("total_time")))
                regain = _number(entry.get("estimated_time_to_regain_access"), int)
                if regain >= usage.estimated_time_to_regain_access:
                    usage.estimated_time_to_regain_access = regain
                    usage.business_use_case = entry.get("type", usage.business_use_case)

    usage.usage_percent = max(
        usage.usage_percent, usage.call_count, usage.total_cputime, usage.total_time
    )
    return usage


# ─────────────────────────────────────────────
# Cool-down state & token bucket
# ─────────────────────────────────────────────


class RateLimitTracker:
    """Cool-down bookkeeping shared by every call a client makes."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.consecutive_errors = 0
        self.last_error_time = 0.0
        self.wait_time = 0.0

    @property
    def in_cooldown(self) -> bool:
        return self.remaining_cooldown() > 0

    def remaining_cooldown(self) -> float:
        if not self.wait_time:
            return 0.0
        return max(0.0, self.wait_time - (self._clock() - self.last_error_time))

    def record_success(self) -> None:
        self.consecutive_errors = 0
        self.wait_time = 0.0

    def record_rate_limit(self, retry: int) -> float:
        """Register a throttling error and return how long to back off."""
        self.consecutive_errors += 1
        self.last_error_time = self._clock()
        self.wait_time = backoff_delay(retry, self.consecutive_errors)
        return self.wait_time

    def block_for(self, seconds: float) -> None:
        """Force a cool-down, e.g. when Meta reports time-to-regain-access."""
        self.last_error_time = self._clock()
        self.wait_time = max(self.wait_time, seconds)


class TokenBucket:
    """Token bucket sized to the tier's score budget.

    Capacity is the tier's max score and tokens refill at
    max_score / decay_time per second, matching how Meta decays the score.
    """

    def __init__(
        self,
        capacity: float,
        refill_rate: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.capacity = float(capacity)
        self.refill_rate = float(refill_rate)
        self._clock = clock
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = asyncio.Lock()

    @classmethod
    def for_tier(cls, tier: Optional[TierLimits] = None) -> "TokenBucket":
        tier = tier or get_tier()
        return cls(tier.max_score, tier.max_score / tier.decay_time)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self._updated = now

    @property
    def tokens(self) -> float:
        self._refill()
        return self._tokens

    def try_acquire(self, points: float = 1) -> bool:
        self._refill()
        if self._tokens >= points:
            self._tokens -= points
            return True
        return False

    def wait_time(self, points: float = 1) -> float:
        self._refill()
        deficit = min(points, self.capacity) - self._tokens
        return max(0.0, deficit / self.refill_rate) if self.refill_rate else 0.0

    async def acquire(self, points: float = 1) -> None:
        """Block until `points` tokens are available, then take them."""
        points = min(points, self.capacity)
        async with self._lock:
            while not self.try_acquire(points):
                await pause(self.wait_time(points))
