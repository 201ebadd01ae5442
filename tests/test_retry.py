"""
Property-based tests for RetryPolicy using Hypothesis.

Properties:
- delays are never negative and never exceed max_delay
- exponential delays are monotonic non-decreasing
- no delay is returned once attempts are exhausted
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from pytaxis.models import BackoffKind, RetryPolicy

policies = st.builds(
    RetryPolicy,
    max_attempts=st.integers(min_value=1, max_value=20),
    initial_delay_ms=st.integers(min_value=0, max_value=10_000),
    max_delay_ms=st.integers(min_value=0, max_value=100_000),
    backoff_multiplier=st.floats(min_value=1.0, max_value=5.0),
    kind=st.sampled_from(list(BackoffKind)),
)


@pytest.mark.property
@given(policy=policies, attempt=st.integers(min_value=1, max_value=25))
def test_delay_is_bounded(policy, attempt):
    """Property: 0 <= delay <= max(max_delay, 0) whenever a retry remains."""
    delay = policy.delay_for_attempt(attempt)
    if attempt >= policy.max_attempts:
        assert delay is None
    else:
        assert delay is not None
        assert 0 <= delay <= policy.max_delay_ms


@pytest.mark.property
@given(policy=policies)
def test_exponential_delays_never_decrease(policy):
    delays = [
        policy.delay_for_attempt(attempt) for attempt in range(1, policy.max_attempts)
    ]
    assert all(a <= b for a, b in zip(delays, delays[1:], strict=False))


@pytest.mark.property
@given(
    max_attempts=st.integers(min_value=2, max_value=10),
    delay_ms=st.integers(min_value=0, max_value=5000),
)
def test_constant_policy_uses_same_delay(max_attempts, delay_ms):
    policy = RetryPolicy.constant(max_attempts, delay_ms)
    assert {policy.delay_for_attempt(a) for a in range(1, max_attempts)} == {delay_ms}


def test_exponential_delay_is_capped():
    policy = RetryPolicy(
        max_attempts=10, initial_delay_ms=1000, max_delay_ms=5000, backoff_multiplier=2.0
    )
    assert [policy.delay_for_attempt(a) for a in range(1, 6)] == [1000, 2000, 4000, 5000, 5000]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_attempts": 0, "initial_delay_ms": 0, "max_delay_ms": 0},
        {"max_attempts": 1, "initial_delay_ms": -1, "max_delay_ms": 0},
        {"max_attempts": 1, "initial_delay_ms": 0, "max_delay_ms": 0, "backoff_multiplier": 0.5},
    ],
)
def test_invalid_policies(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)
