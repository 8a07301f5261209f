"""Tests for the retry backoff policy."""

from __future__ import annotations

import pytest

pytestmark = [pytest.mark.unit]

from packleech.utils.backoff import RetryPolicy


def test_nominal_schedule_doubles_up_to_ceiling():
    policy = RetryPolicy(max_attempts=6, base_delay=1.0, max_delay=10.0, jitter=0.0)
    assert policy.schedule() == [1.0, 2.0, 4.0, 8.0, 10.0]


def test_jittered_delays_stay_within_bounds():
    policy = RetryPolicy(max_attempts=8, base_delay=0.5, jitter=0.25)
    for attempt in range(1, 8):
        low, high = policy.delay_bounds(attempt)
        for _ in range(50):
            assert low <= policy.delay_for(attempt) <= high


def test_injected_rng_extremes():
    low = RetryPolicy(base_delay=2.0, jitter=0.5, rng=lambda a, b: a)
    high = RetryPolicy(base_delay=2.0, jitter=0.5, rng=lambda a, b: b)
    assert low.delay_for(1) == 1.0
    assert high.delay_for(1) == 3.0


def test_should_retry():
    policy = RetryPolicy(max_attempts=3)
    assert policy.should_retry(1)
    assert policy.should_retry(2)
    assert not policy.should_retry(3)


def test_single_attempt_has_empty_schedule():
    assert RetryPolicy(max_attempts=1).schedule() == []


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_attempts": 0},
        {"base_delay": -1.0},
        {"max_delay": -1.0},
        {"jitter": 1.5},
    ],
)
def test_invalid_policy(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)
