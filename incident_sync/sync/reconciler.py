"""Idempotent merge of hydrated incidents into the local store."""

import threading
from contextlib import contextmanager
from datetime import datetime
from itertools import groupby
from typing import Iterable, Iterator, Protocol

import structlog

from incident_sync.models.incident import Incident, IncidentActivity, IncidentDetail, IncidentSummary
from incident_sync.sync.models import ReconcileResult

log = structlog.stdlib.get_logger()

# Replaced wholesale by a fresh record, kept when the incoming record is stale.
_DESCRIPTIVE_FIELDS = (
    "ticket_number",
    "title",
    "severity",
    "state",
    "rule_name",
    "close_code",
    "assignee_name",
    "raw_payload",
)


class ReconcileStore(Protocol):
    def get_incident(self, incident_id: str) -> Incident | None: ...

    def activity_keys(self, incident_id: str) -> set[tuple]: ...

    def save_incident(self, incident: Incident, activities: list[IncidentActivity]) -> int: ...


def _latest(stored: datetime | None, incoming: datetime | None) -> datetime | None:
    """Never clear a set timestamp, never move it backward."""
    if stored is None:
        return incoming
    if incoming is None:
        return stored
    return max(stored, incoming)


def merge_incident(stored: Incident | None, incoming: Incident) -> Incident:
    """
    Merge an upstream record into the stored one.

    - ``created_at`` is immutable once stored, ``escalated_at`` is set at most once
    - ``acknowledged_at``, ``closed_at`` and ``updated_at`` keep the later value
      and are never replaced by null
    - descriptive fields come from ``incoming`` unless it is older than
      ``stored`` (a late, out-of-order response)

    The result is independent of the order in which two payloads arrive for
    the timestamp fields, and applying the same payload twice is a no-op.
    """
    if stored is None:
        return incoming.model_copy(deep=True)

    fresh = incoming.updated_at >= stored.updated_at
    source = incoming if fresh else stored
    merged = {field: getattr(source, field) for field in _DESCRIPTIVE_FIELDS}

    merged.update(
        id=stored.id,
        created_at=stored.created_at,
        escalated_at=stored.escalated_at if stored.escalated_at is not None else incoming.escalated_at,
        acknowledged_at=_latest(stored.acknowledged_at, incoming.acknowledged_at),
        closed_at=_latest(stored.closed_at, incoming.closed_at),
        updated_at=max(stored.updated_at, incoming.updated_at),
    )
    return Incident.model_validate(merged)


def dedupe_activities(
    activities: Iterable[IncidentActivity], existing_keys: set[tuple]
) -> list[IncidentActivity]:
    """Drop activity already stored or repeated within the batch; receipt order is kept."""
    seen = set(existing_keys)
    fresh: list[IncidentActivity] = []
    for activity in activities:
        key = activity.dedup_key
        if key in seen:
            continue
        seen.add(key)
        fresh.append(activity)
    return fresh


def safe_checkpoint(
    summaries: Iterable[IncidentSummary],
    reconciled_ids: set[str],
    listing_complete: bool,
    skipped_ids: Iterable[str] = (),
) -> datetime | None:
    """
    Highest ``updated_at`` the checkpoint may move to after a cycle.

    Walking summaries in ascending ``updated_at`` order, the walk may pass a
    timestamp only if every summary at that timestamp was reconciled or
    skipped as terminal. The first other summary stops the walk, so failed or
    unattempted records are listed again next cycle. The candidate is the
    last timestamp passed that holds a reconciled summary: skipped records
    after the last reconciled one are listed again too, so the checkpoint
    never exceeds what this cycle actually wrote. If the listing ended early,
    the last timestamp group is left out: the unread page may hold more
    records with the same timestamp.

    Args:
        summaries: Every summary the list phase produced this cycle
        reconciled_ids: Ids durably reconciled this cycle
        listing_complete: Whether the list phase reached the last page
        skipped_ids: Ids skipped by the immutability filter

    Returns:
        The candidate checkpoint, or None if it cannot advance
    """
    ordered = sorted(summaries, key=lambda summary: summary.updated_at)
    groups = [(ts, list(group)) for ts, group in groupby(ordered, key=lambda s: s.updated_at)]
    if not listing_complete and groups:
        groups = groups[:-1]

    resolved_ids = set(reconciled_ids) | set(skipped_ids)
    candidate: datetime | None = None
    for updated_at, group in groups:
        ids = {summary.id for summary in group}
        if not ids <= resolved_ids:
            break
        if ids & reconciled_ids:
            candidate = updated_at
    return candidate


class Reconciler:
    """Applies hydrated incidents to the store, at-least-once safe."""

    def __init__(self, store: ReconcileStore):
        self._store = store
        # incident id -> (lock, holders and waiters); dropped when unused
        self._locks: dict[str, tuple[threading.Lock, int]] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _incident_lock(self, incident_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock, users = self._locks.get(incident_id, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[incident_id] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                lock, users = self._locks[incident_id]
                if users == 1:
                    del self._locks[incident_id]
                else:
                    self._locks[incident_id] = (lock, users - 1)

    @property
    def tracked_locks(self) -> int:
        with self._locks_guard:
            return len(self._locks)

    def reconcile(self, detail: IncidentDetail) -> ReconcileResult:
        """
        Upsert an incident and append its new activity.

        Writes for the same incident are serialised. Store failures propagate
        as ``StoreUnavailable``.
        """
        incoming = detail.incident
        with self._incident_lock(incoming.id):
            stored = self._store.get_incident(incoming.id)
            merged = merge_incident(stored, incoming)

            activities = [a for a in detail.activities if a.incident_id == incoming.id]
            if len(activities) != len(detail.activities):
                log.warning(
                    "foreign_activity_dropped",
                    incident_id=incoming.id,
                    dropped=len(detail.activities) - len(activities),
                )
            existing_keys = self._store.activity_keys(incoming.id) if stored else set()
            new_activities = dedupe_activities(activities, existing_keys)

            appended = self._store.save_incident(merged, new_activities)

        stale = stored is not None and incoming.updated_at < stored.updated_at
        if stale:
            log.warning(
                "stale_incident_response",
                incident_id=incoming.id,
                stored_updated_at=stored.updated_at,
                incoming_updated_at=incoming.updated_at,
            )
        log.debug(
            "incident_reconciled",
            incident_id=incoming.id,
            created=stored is None,
            activities_appended=appended,
        )
        return ReconcileResult(
            incident_id=incoming.id,
            created=stored is None,
            activities_appended=appended,
            stale=stale,
        )
