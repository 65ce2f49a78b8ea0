"""Backoff maths, usage-header parsing, cool-down tracking and the token bucket."""

import asyncio

import pytest

from app.core import rate_limit
from app.core.rate_limit import (
    BACKOFF_MAX,
    RateLimitTracker,
    TokenBucket,
    backoff_delay,
    dynamic_delay,
    get_tier,
    is_rate_limit_error,
    parse_usage_headers,
)
from conftest import FakeClock


class TestBackoff:
    def test_exponential_without_jitter(self):
        assert backoff_delay(0, rng=lambda: 0.0) == 1.0
        assert backoff_delay(3, rng=lambda: 0.0) == 8.0

    def test_jitter_is_added(self):
        assert backoff_delay(1, rng=lambda: 0.5) == pytest.approx(2.5)

    def test_consecutive_errors_escalate_and_cap_at_16x(self):
        assert backoff_delay(0, consecutive_errors=2) == 4.0
        assert backoff_delay(0, consecutive_errors=10) == 16.0

    def test_never_exceeds_max(self):
        assert backoff_delay(20, rng=lambda: 0.99) == BACKOFF_MAX

    def test_dynamic_delay_scales_with_points(self):
        assert dynamic_delay("insights", 2) == pytest.approx(0.6)
        assert dynamic_delay("campaigns", 25) == pytest.approx(0.3)
        assert dynamic_delay("insights", 1000) == rate_limit.MAX_DYNAMIC_DELAY


def test_rate_limit_codes():
    for code in (4, 17, 613, 80000, 80003, 80004):
        assert is_rate_limit_error(code)
    assert not is_rate_limit_error(100)
    assert not is_rate_limit_error(None)


def test_tiers():
    assert get_tier("standard").max_score == 9000
    assert get_tier("development").block_time == 300
    assert get_tier("nonsense") is get_tier("development")


class TestUsageHeaders:
    def test_business_use_case_header(self):
        usage = parse_usage_headers(
            {
                "x-business-use-case-usage": (
                    '{"123": [{"type": "ads_insights", "call_count": 85, '
                    '"total_cputime": 10, "total_time": 20, '
                    '"estimated_time_to_regain_access": 3}]}'
                )
            }
        )
        assert usage.usage_percent == 85
        assert usage.is_high
        assert usage.estimated_time_to_regain_access == 3
        assert usage.business_use_case == "ads_insights"

    def test_account_usage_header(self):
        usage = parse_usage_headers(
            {"x-ad-account-usage": '{"acc_id_util_pct": 42, "reset_time_duration": 120}'}
        )
        assert usage.usage_percent == 42
        assert usage.reset_time_duration == 120
        assert not usage.is_high

    def test_app_usage_takes_the_max(self):
        usage = parse_usage_headers(
            {"x-app-usage": '{"call_count": 12, "total_cputime": 55, "total_time": 30}'}
        )
        assert usage.usage_percent == 55

    def test_malformed_and_missing_headers_are_ignored(self):
        assert parse_usage_headers({"x-app-usage": "{not json"}).is_empty
        assert parse_usage_headers({}).usage_percent == 0

    def test_non_numeric_values_count_as_zero(self):
        usage = parse_usage_headers(
            {
                "x-app-usage": '{"call_count": "n/a", "total_time": 12}',
                "x-ad-account-usage": '{"acc_id_util_pct": [], "reset_time_duration": "soon"}',
                "x-business-use-case-usage": '{"1": [{"call_count": null, "estimated_time_to_regain_access": "?"}]}',
            }
        )

        assert usage.call_count == 0
        assert usage.total_time == 12
        assert usage.reset_time_duration == 0
        assert usage.estimated_time_to_regain_access == 0
        assert usage.usage_percent == 12


class TestTracker:
    def test_records_and_decays_cooldown(self):
        clock = FakeClock()
        tracker = RateLimitTracker(clock=clock)

        wait = tracker.record_rate_limit(0)
        assert wait == 2.0
        assert tracker.in_cooldown
        clock.advance(0.5)
        assert tracker.remaining_cooldown() == pytest.approx(1.5)
        clock.advance(2)
        assert not tracker.in_cooldown

    def test_success_resets(self):
        tracker = RateLimitTracker(clock=FakeClock())
        tracker.record_rate_limit(0)
        tracker.record_rate_limit(1)
        assert tracker.consecutive_errors == 2
        tracker.record_success()
        assert tracker.consecutive_errors == 0
        assert tracker.remaining_cooldown() == 0

    def test_block_for_extends_wait(self):
        tracker = RateLimitTracker(clock=FakeClock())
        tracker.record_rate_limit(0)
        tracker.block_for(120)
        assert tracker.remaining_cooldown() == 120


class TestTokenBucket:
    def test_spends_and_refills(self):
        clock = FakeClock()
        bucket = TokenBucket(10, 1, clock=clock)

        assert bucket.try_acquire(10)
        assert not bucket.try_acquire(1)
        assert bucket.wait_time(3) == pytest.approx(3.0)
        clock.advance(2)
        assert bucket.tokens == pytest.approx(2.0)

    def test_never_exceeds_capacity(self):
        clock = FakeClock()
        bucket = TokenBucket(5, 1, clock=clock)
        clock.advance(100)
        assert bucket.tokens == 5

    def test_for_tier_matches_decay(self):
        bucket = TokenBucket.for_tier(get_tier("development"))
        assert bucket.capacity == 60
        assert bucket.refill_rate == pytest.approx(60 / 300)

    def test_acquire_waits_for_refill(self, monkeypatch):
        clock = FakeClock()
        bucket = TokenBucket(5, 1, clock=clock)
        bucket.try_acquire(5)
        waits = []

        async def fake_pause(seconds):
            waits.append(seconds)
            clock.advance(seconds)

        monkeypatch.setattr("app.core.rate_limit.pause", fake_pause)
        asyncio.run(bucket.acquire(2))

        assert waits == [pytest.approx(2.0)]
        assert bucket.tokens == pytest.approx(0.0)
