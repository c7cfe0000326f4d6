"""Unit tests for the bounded exponential backoff policy."""

from __future__ import annotations

import random

import pytest

from nexus_verifier.utils.retry import RetryPolicy


def test_default_policy_allows_two_retries() -> None:
    policy = RetryPolicy()

    assert policy.max_retries == 2
    assert policy.should_retry(1)
    assert policy.should_retry(2)
    assert not policy.should_retry(3)


def test_delays_grow_exponentially_and_cap() -> None:
    policy = RetryPolicy(base_delay_seconds=1.0, multiplier=3.0, max_delay_seconds=5.0, jitter=0.0)

    assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 3.0, 5.0, 5.0]


def test_jitter_stays_within_fraction() -> None:
    policy = RetryPolicy(base_delay_seconds=2.0, jitter=0.25)
    rng = random.Random(7)

    for _ in range(50):
        delay = policy.delay_for(1, rng=rng)
        assert 1.5 <= delay <= 2.5


def test_no_retry_policy() -> None:
    policy = RetryPolicy.no_retry()

    assert policy.max_retries == 0
    assert not policy.should_retry(1)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_attempts": 0},
        {"base_delay_seconds": -1.0},
        {"multiplier": 0.5},
        {"base_delay_seconds": 5.0, "max_delay_seconds": 1.0},
        {"jitter": 1.0},
    ],
)
def test_invalid_policies_are_rejected(kwargs: dict[str, float]) -> None:
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)  # type: ignore[arg-type]


def test_retry_numbers_are_one_based() -> None:
    with pytest.raises(ValueError):
        RetryPolicy().delay_for(0)
