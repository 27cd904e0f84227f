"""Property-based tests for the SQLAlchemy incident store.

Feature: incident-sync
"""

from datetime import timedelta, timezone

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from sqlalchemy.exc import OperationalError

from fakes import make_activity, make_incident, new_store, ts
from incident_sync.exceptions import IncidentHasActivity, StoreUnavailable
from incident_sync.models.incident import IncidentState
from incident_sync.storage.incident_store import IncidentStore


@given(minutes=st.lists(st.integers(min_value=0, max_value=1_000), min_size=1, max_size=20))
@settings(max_examples=40, deadline=None)
def test_property_12_stored_checkpoint_never_moves_backward(minutes: list[int]):
    """Property 12: The persisted checkpoint is the maximum ever saved.

    **Feature: incident-sync, Property 12: Monotonic checkpoint**
    """
    store = new_store()

    for index, minute in enumerate(minutes):
        effective = store.save_checkpoint(ts(minute))
        assert effective == ts(max(minutes[: index + 1]))

    assert store.load_checkpoint() == ts(max(minutes))


def test_checkpoint_starts_empty():
    assert new_store().load_checkpoint() is None


def test_timestamps_round_trip_as_aware_utc():
    store = new_store()
    offset = timezone(timedelta(hours=5))
    incident = make_incident(
        "inc-1",
        updated_at=ts(30).astimezone(offset),
        acknowledged_at=ts(10).astimezone(offset),
    )

    store.save_incident(incident, [make_activity("inc-1", ts(10))])

    stored = store.get_incident("inc-1")
    assert stored.updated_at == ts(30)
    assert stored.updated_at.tzinfo == timezone.utc
    assert stored.acknowledged_at == ts(10)
    assert store.list_activities("inc-1")[0].timestamp.tzinfo == timezone.utc


def test_activity_is_returned_in_local_sequence_order():
    store = new_store()
    incident = make_incident("inc-1", updated_at=ts(5))
    store.save_incident(incident, [make_activity("inc-1", ts(3), new="b")])
    store.save_incident(incident, [make_activity("inc-1", ts(1), new="a")])

    activities = store.list_activities("inc-1")

    assert [a.new_value for a in activities] == ["b", "a"]
    assert activities[0].sequence < activities[1].sequence


def test_get_known_returns_only_stored_ids():
    store = new_store()
    store.save_incident(make_incident("inc-1", updated_at=ts(1), state="CLOSED"), [])
    store.save_incident(make_incident("inc-2", updated_at=ts(2)), [])

    known = store.get_known(["inc-1", "inc-2", "inc-3", "inc-1"])

    assert set(known) == {"inc-1", "inc-2"}
    assert known["inc-1"].state == IncidentState.CLOSED
    assert known["inc-2"].updated_at == ts(2)
    assert store.get_known([]) == {}


def test_get_known_handles_more_ids_than_one_query_chunk():
    store = new_store()
    for i in range(3):
        store.save_incident(make_incident(f"inc-{i}", updated_at=ts(i)), [])

    known = store.get_known([f"inc-{i}" for i in range(1_200)])

    assert len(known) == 3


def test_incident_with_activity_cannot_be_deleted():
    store = new_store()
    store.save_incident(make_incident("inc-1"), [make_activity("inc-1", ts(1))])
    store.save_incident(make_incident("inc-2"), [])

    with pytest.raises(IncidentHasActivity):
        store.delete_incident("inc-1")

    assert store.delete_incident("inc-2") is True
    assert store.delete_incident("inc-2") is False
    assert store.get_incident("inc-1") is not None


def test_counts_by_state():
    store = new_store()
    store.save_incident(make_incident("a", state="NEW"), [])
    store.save_incident(make_incident("b", state="CLOSED"), [])
    store.save_incident(make_incident("c", state="CLOSED"), [])

    assert store.count_incidents() == 3
    assert store.count_by_state() == {"NEW": 1, "CLOSED": 2}


def test_database_errors_surface_as_store_unavailable(tmp_path):
    store = IncidentStore(f"sqlite:///{tmp_path / 'incidents.db'}")
    # Schema never created

    with pytest.raises(StoreUnavailable) as exc_info:
        store.load_checkpoint()

    assert isinstance(exc_info.value.__cause__, OperationalError)


def test_store_requires_url_or_engine():
    with pytest.raises(ValueError):
        IncidentStore()
