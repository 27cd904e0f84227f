"""Property-based tests for logging functionality.

**Feature: incident-sync, Property 18: Structured log format**

Every record is a JSON object carrying a timestamp, a level, the event name
and any context bound for the running cycle.
"""

import json
import logging
from datetime import datetime

import pytest
import structlog
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from fakes import FakeTicketingClient, FrozenClock, T0, make_incident, new_store, ts
from incident_sync.sync.quota_limiter import QuotaLimiter
from incident_sync.sync.sync_coordinator import SyncOrchestrator
from incident_sync.utils.logging_config import configure_logging


@pytest.fixture
def json_logging(capsys):
    configure_logging(log_level="DEBUG", json_logs=True)
    # Loggers must pick up each reconfiguration within the test session.
    structlog.configure(cache_logger_on_first_use=False)
    yield capsys
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)


def _records(output: str) -> list[dict]:
    return [json.loads(line) for line in output.splitlines() if line.startswith("{")]


@given(
    log_level=st.sampled_from(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
    error_message=st.text(min_size=1, max_size=200),
)
@settings(max_examples=50, suppress_health_check=[HealthCheck.function_scoped_fixture])
def test_property_18_log_records_contain_required_fields(
    json_logging, log_level: str, error_message: str
) -> None:
    """
    Property 18: Structured log format

    *For any* logged event, the record contains timestamp, level, event name
    and the keyword context it was logged with.

    **Feature: incident-sync, Property 18: Structured log format**
    """
    json_logging.readouterr()
    log = structlog.stdlib.get_logger("incident_sync.test")

    getattr(log, log_level.lower())("detail_fetch_failed", error=error_message)

    records = _records(json_logging.readouterr().out)
    assert len(records) == 1
    entry = records[0]
    datetime.fromisoformat(entry["timestamp"].replace("Z", "+00:00"))
    assert entry["level"] == log_level.lower()
    assert entry["event"] == "detail_fetch_failed"
    assert entry["error"] == error_message
    assert entry["logger"] == "incident_sync.test"


def test_bound_context_is_merged_into_records(json_logging):
    log = structlog.stdlib.get_logger()

    structlog.contextvars.bind_contextvars(cycle_id="abc123")
    log.info("hydration_started", candidates=3)
    structlog.contextvars.unbind_contextvars("cycle_id")
    log.info("outside_cycle")

    records = _records(json_logging.readouterr().out)
    assert records[0]["cycle_id"] == "abc123"
    assert "cycle_id" not in records[1]


def test_every_record_of_a_cycle_carries_the_same_cycle_id(json_logging):
    client = FakeTicketingClient()
    client.put(make_incident("inc-1", updated_at=ts(1)))
    limiter = QuotaLimiter(100, 3600, clock=FrozenClock(T0))
    orchestrator = SyncOrchestrator(client, new_store(), limiter, clock=FrozenClock(T0))
    json_logging.readouterr()

    orchestrator.run_cycle()

    records = _records(json_logging.readouterr().out)
    cycle_records = [r for r in records if "cycle_id" in r]
    events = [r["event"] for r in cycle_records]
    assert "sync_cycle_started" in events
    assert "sync_cycle_completed" in events
    assert "checkpoint_advanced" in events
    assert len({r["cycle_id"] for r in cycle_records}) == 1


def test_console_rendering_is_selectable(capsys):
    try:
        configure_logging(log_level="INFO", json_logs=False)
        structlog.configure(cache_logger_on_first_use=False)
        structlog.stdlib.get_logger().info("console_event", answer=42)
        output = capsys.readouterr().out
        assert "console_event" in output
        assert not output.lstrip().startswith("{")
    finally:
        structlog.reset_defaults()
        for handler in logging.root.handlers[:]:
            logging.root.removeHandler(handler)
