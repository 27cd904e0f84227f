"""Property-based tests for retry logic with exponential backoff.

Feature: incident-sync
"""

import pytest
import structlog
from hypothesis import given, settings
from hypothesis import strategies as st

from incident_sync.utils.retry import exponential_backoff_retry

log = structlog.stdlib.get_logger()


@given(
    st.integers(min_value=1, max_value=6),
    st.floats(min_value=0.01, max_value=5.0),
    st.floats(min_value=1.0, max_value=60.0),
)
@settings(max_examples=50, deadline=None)
def test_property_17_exponential_backoff_behavior(
    num_failures: int, base_delay: float, max_delay: float
):
    """Property 17: Exponential backoff behavior.

    For any run of retryable failures, the n-th delay is base * 2**n, capped
    at max_delay, and the call succeeds once the failures stop.

    **Feature: incident-sync, Property 17: Exponential backoff behavior**
    """
    delays: list[float] = []
    call_count = 0

    @exponential_backoff_retry(
        max_retries=num_failures,
        base_delay=base_delay,
        max_delay=max_delay,
        exceptions=(ValueError,),
        sleep=delays.append,
    )
    def failing_function():
        nonlocal call_count
        call_count += 1
        if call_count <= num_failures:
            raise ValueError(f"Simulated failure {call_count}")
        return "success"

    assert failing_function() == "success"
    assert call_count == num_failures + 1
    assert delays == [min(base_delay * (2**i), max_delay) for i in range(num_failures)]

    log.info("test_property_17_exponential_backoff_behavior_passed", delays=delays)


@given(st.integers(min_value=0, max_value=10))
@settings(max_examples=30, deadline=None)
def test_backoff_respects_max_retries(max_retries: int):
    """The wrapped call runs exactly max_retries + 1 times before giving up."""
    call_count = 0
    sleeps: list[float] = []

    @exponential_backoff_retry(
        max_retries=max_retries, base_delay=0.01, exceptions=(ValueError,), sleep=sleeps.append
    )
    def always_failing_function():
        nonlocal call_count
        call_count += 1
        raise ValueError("Always fails")

    with pytest.raises(ValueError):
        always_failing_function()

    assert call_count == max_retries + 1
    assert len(sleeps) == max_retries


def test_predicate_rejected_errors_are_raised_immediately():
    calls = 0

    @exponential_backoff_retry(
        max_retries=5,
        exceptions=(ValueError,),
        should_retry=lambda e: "retry" in str(e),
        sleep=lambda _: None,
    )
    def client_error():
        nonlocal calls
        calls += 1
        raise ValueError("bad request")

    with pytest.raises(ValueError):
        client_error()

    assert calls == 1


def test_unlisted_exception_types_are_not_retried():
    calls = 0

    @exponential_backoff_retry(max_retries=5, exceptions=(ValueError,), sleep=lambda _: None)
    def type_error():
        nonlocal calls
        calls += 1
        raise TypeError("wrong type")

    with pytest.raises(TypeError):
        type_error()

    assert calls == 1
