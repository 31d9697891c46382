"""Tests for the shared backoff policy."""
from datetime import datetime, timedelta

from ghmirror.errors import RateLimitedError, TransientError
from ghmirror.retry import RetryPolicy

NOW = datetime(2025, 1, 15, 12, 0)


class TestComputeBackoff:
    def test_exponential_without_jitter(self):
        policy = RetryPolicy(base_delay_seconds=1.0, jitter=False)
        assert [policy.compute_backoff(n) for n in range(5)] == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_capped_at_max_delay(self):
        policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=900.0, jitter=False)
        assert policy.compute_backoff(20) == 900.0

    def test_jitter_stays_below_one_base_delay(self):
        policy = RetryPolicy(base_delay_seconds=2.0)
        for _ in range(50):
            delay = policy.compute_backoff(3)
            assert 16.0 <= delay < 18.0

    def test_delays_never_shrink_with_jitter(self):
        """Worst-case jitter on attempt n stays below the jitter-free delay of n+1."""
        policy = RetryPolicy(base_delay_seconds=1.0)
        for attempts in range(8):
            for _ in range(20):
                assert policy.compute_backoff(attempts) <= policy.compute_backoff(attempts + 1)


class TestNextRetryAt:
    def test_uses_backoff(self):
        policy = RetryPolicy(jitter=False)
        assert policy.next_retry_at(2, NOW) == NOW + timedelta(seconds=4)

    def test_rate_limited_error_waits_for_reset(self):
        policy = RetryPolicy(jitter=False)
        reset = NOW + timedelta(minutes=30)
        error = RateLimitedError("slow down", reset_at=reset)
        assert policy.next_retry_at(1, NOW, error) == reset

    def test_past_reset_falls_back_to_backoff(self):
        policy = RetryPolicy(jitter=False)
        error = RateLimitedError("slow down", reset_at=NOW - timedelta(minutes=1))
        assert policy.next_retry_at(1, NOW, error) == NOW + timedelta(seconds=2)

    def test_other_errors_use_backoff(self):
        policy = RetryPolicy(jitter=False)
        assert policy.next_retry_at(0, NOW, TransientError("db")) == NOW + timedelta(seconds=1)


class TestExhausted:
    def test_uses_policy_default(self):
        policy = RetryPolicy(max_attempts=5)
        assert not policy.exhausted(4)
        assert policy.exhausted(5)

    def test_per_item_limit_overrides(self):
        policy = RetryPolicy(max_attempts=5)
        assert policy.exhausted(2, max_attempts=2)
        assert not policy.exhausted(2, max_attempts=3)
