"""Test doubles shared by the property tests: a fake ticketing API, clock and store."""

from datetime import datetime, timedelta, timezone
from typing import Any

from incident_sync.exceptions import MalformedRecord, QuotaRejected, TransientFetchFailure
from incident_sync.ingestion.ticketing_client import FetchedDetail, SummaryPage
from incident_sync.models.incident import (
    Incident,
    IncidentActivity,
    IncidentDetail,
    IncidentState,
    IncidentSummary,
)
from incident_sync.storage.incident_store import IncidentStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def ts(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


def make_incident(incident_id: str, updated_at: datetime | None = None, **overrides: Any) -> Incident:
    fields: dict[str, Any] = {
        "id": incident_id,
        "ticket_number": f"RQ-{incident_id}",
        "title": f"Incident {incident_id}",
        "severity": "HIGH",
        "state": "NEW",
        "created_at": T0,
        "updated_at": updated_at or T0,
    }
    fields.update(overrides)
    return Incident(**fields)


def make_activity(
    incident_id: str, at: datetime, activity_type: str = "state_change", old=None, new=None
) -> IncidentActivity:
    return IncidentActivity(
        incident_id=incident_id,
        activity_type=activity_type,
        old_value=old,
        new_value=new,
        timestamp=at,
    )


def new_store() -> IncidentStore:
    store = IncidentStore("sqlite://")
    store.create_schema()
    return store


class FrozenClock:
    """Callable clock the test moves by hand."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeTicketingClient:
    """
    In-memory stand-in for ``TicketingClient``.

    Holds one current version of each incident. List pages are served in
    ascending ``updated_at`` order, filtered strictly after ``updated_since``.
    """

    def __init__(self) -> None:
        self.incidents: dict[str, Incident] = {}
        self.activities: dict[str, list[IncidentActivity]] = {}
        self.transient_ids: set[str] = set()
        self.malformed_ids: set[str] = set()
        self.rejected_ids: set[str] = set()
        self.reject_list_pages = False
        self.fail_list_pages = False
        self.quota_hint: int | None = None
        self.list_calls: list[tuple[datetime | None, int, int]] = []
        self.detail_calls: list[tuple[str, datetime | None]] = []

    def put(self, incident: Incident, activities: list[IncidentActivity] | None = None) -> None:
        self.incidents[incident.id] = incident
        if activities is not None:
            self.activities[incident.id] = list(activities)

    def list_incident_summaries(
        self, updated_since: datetime | None, offset: int = 0, limit: int = 100
    ) -> SummaryPage:
        self.list_calls.append((updated_since, offset, limit))
        if self.reject_list_pages:
            raise QuotaRejected("429 on list")
        if self.fail_list_pages:
            raise TransientFetchFailure("list timed out")

        ordered = sorted(
            (
                incident
                for incident in self.incidents.values()
                if updated_since is None or incident.updated_at > updated_since
            ),
            key=lambda incident: (incident.updated_at, incident.id),
        )
        window = ordered[offset : offset + limit]
        next_offset = offset + limit if offset + limit < len(ordered) else None
        return SummaryPage(
            items=[
                IncidentSummary(id=i.id, state=i.state, updated_at=i.updated_at) for i in window
            ],
            next_offset=next_offset,
            quota_remaining=self.quota_hint,
        )

    def get_incident_detail(
        self, incident_id: str, activities_since: datetime | None = None
    ) -> FetchedDetail:
        self.detail_calls.append((incident_id, activities_since))
        if incident_id in self.rejected_ids:
            raise QuotaRejected("429 on detail", incident_id)
        if incident_id in self.transient_ids:
            raise TransientFetchFailure("read timed out", incident_id)
        if incident_id in self.malformed_ids:
            raise MalformedRecord("missing title", incident_id)

        activities = [
            activity
            for activity in self.activities.get(incident_id, [])
            if activities_since is None or activity.timestamp > activities_since
        ]
        return FetchedDetail(
            detail=IncidentDetail(incident=self.incidents[incident_id], activities=activities),
            quota_remaining=self.quota_hint,
        )
