"""Property-based tests for the fixed-window quota limiter.

Feature: incident-sync
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest
import structlog
from hypothesis import given, settings
from hypothesis import strategies as st

from fakes import FrozenClock
from incident_sync.sync.quota_limiter import QuotaLimiter

log = structlog.stdlib.get_logger()

WINDOW_START = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


@given(
    capacity=st.integers(min_value=1, max_value=10_000),
    costs=st.lists(st.integers(min_value=1, max_value=2_000), max_size=60),
)
@settings(max_examples=200)
def test_property_1_granted_costs_never_exceed_capacity(capacity: int, costs: list[int]):
    """Property 1: Within one window, granted costs sum to at most capacity.

    **Feature: incident-sync, Property 1: Budget bound**
    """
    limiter = QuotaLimiter(capacity, 3600, clock=FrozenClock(WINDOW_START))

    granted = 0
    for cost in costs:
        before = limiter.remaining()
        if limiter.try_consume(cost):
            granted += cost
            assert limiter.remaining() == before - cost
        else:
            assert limiter.remaining() == before, "Denied consume must not change the balance"
            assert before < cost

    assert granted <= capacity
    assert limiter.remaining() == capacity - granted


@given(capacity=st.integers(min_value=1, max_value=10_000))
@settings(max_examples=50)
def test_property_2_window_boundary_restores_full_capacity(capacity: int):
    """Property 2: After a window boundary, try_consume(C) succeeds again.

    **Feature: incident-sync, Property 2: Window reset**
    """
    clock = FrozenClock(WINDOW_START + timedelta(minutes=59))
    limiter = QuotaLimiter(capacity, 3600, clock=clock)

    assert limiter.try_consume(capacity)
    assert not limiter.try_consume(1)

    clock.advance(minutes=1)

    assert limiter.remaining() == capacity
    assert limiter.try_consume(capacity)


def test_windows_are_aligned_to_epoch_multiples():
    clock = FrozenClock(WINDOW_START + timedelta(minutes=17, seconds=3))
    limiter = QuotaLimiter(100, 3600, clock=clock)

    assert limiter.reset_at() == WINDOW_START + timedelta(hours=1)

    limiter.try_consume(100)
    clock.advance(minutes=42)  # 10:59:03, same window
    assert limiter.remaining() == 0
    clock.advance(seconds=57)  # 11:00:00
    assert limiter.remaining() == 100
    assert limiter.reset_at() == WINDOW_START + timedelta(hours=2)


@given(
    capacity=st.integers(min_value=1, max_value=5_000),
    hints=st.lists(st.integers(min_value=0, max_value=10_000), min_size=1, max_size=20),
)
def test_property_3_upstream_hint_only_lowers_balance(capacity: int, hints: list[int]):
    """Property 3: Remaining-quota hints reconcile the balance downward, never upward.

    **Feature: incident-sync, Property 3: Hint reconciliation**
    """
    limiter = QuotaLimiter(capacity, 3600, clock=FrozenClock(WINDOW_START))

    expected = capacity
    for hint in hints:
        expected = min(expected, hint)
        assert limiter.observe_remaining(hint) == expected

    assert limiter.remaining() == expected


def test_missing_hint_is_ignored():
    limiter = QuotaLimiter(10, 60, clock=FrozenClock(WINDOW_START))
    assert limiter.observe_remaining(None) == 10


def test_exhaust_lasts_until_next_window():
    clock = FrozenClock(WINDOW_START)
    limiter = QuotaLimiter(500, 3600, clock=clock)

    limiter.exhaust()
    assert not limiter.try_consume(1)

    clock.advance(hours=1)
    assert limiter.try_consume(500)


def test_concurrent_consumers_never_overdraw():
    """Atomic admission: racing threads are granted at most capacity in total."""
    capacity = 1_000
    limiter = QuotaLimiter(capacity, 3600, clock=FrozenClock(WINDOW_START))
    granted: list[int] = []
    granted_lock = threading.Lock()
    start = threading.Barrier(8)

    def consume():
        start.wait()
        for _ in range(200):
            if limiter.try_consume(3):
                with granted_lock:
                    granted.append(3)

    threads = [threading.Thread(target=consume) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(granted) <= capacity
    assert sum(granted) == capacity - limiter.remaining()
    log.info("concurrent_consumers_checked", granted=sum(granted))


@pytest.mark.parametrize("cost", [0, -5])
def test_non_positive_cost_rejected(cost: int):
    limiter = QuotaLimiter(10, 60)
    with pytest.raises(ValueError):
        limiter.try_consume(cost)


def test_cost_above_capacity_is_always_denied():
    limiter = QuotaLimiter(10, 60, clock=FrozenClock(WINDOW_START))
    assert not limiter.try_consume(11)
    assert limiter.remaining() == 10
