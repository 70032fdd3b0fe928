"""Unit tests for RetryPolicy."""

import datetime

import pytest

from smarthome_dispatch.retry_policy import RetryPolicy


class TestRetryPolicy:
    """Tests for exponential backoff."""

    def test_delay_doubles_per_attempt(self):
        policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=3600.0)

        assert [policy.get_delay(n) for n in range(1, 5)] == [2.0, 4.0, 8.0, 16.0]

    def test_delay_is_capped(self):
        policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=10.0)

        assert policy.get_delay(10) == 10.0

    def test_jitter_stays_within_bounds(self):
        policy = RetryPolicy(base_delay_seconds=1.0, jitter_factor=0.5)

        for _ in range(20):
            assert 4.0 <= policy.get_delay(2) <= 6.0

    def test_retry_after_is_absolute(self):
        policy = RetryPolicy(base_delay_seconds=0.5)
        now = datetime.datetime(2026, 3, 1, tzinfo=datetime.UTC)

        assert policy.retry_after(3, now) == now + datetime.timedelta(seconds=4)

    @pytest.mark.parametrize("base", [0, -1.0])
    def test_base_delay_must_be_positive(self, base):
        with pytest.raises(ValueError, match="positive"):
            _ = RetryPolicy(base_delay_seconds=base)

    def test_repr(self):
        assert repr(RetryPolicy(2.0, 60.0)) == "RetryPolicy(base_delay=2.0s, max_delay=60.0s, jitter_factor=0.0)"
