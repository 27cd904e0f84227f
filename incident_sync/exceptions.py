"""Error taxonomy for the synchronization engine.

Running out of quota is not an error: it ends a cycle early and is reported
through ``CycleResult.quota_exhausted``.
"""


class IncidentSyncError(Exception):
    """Base class for all engine errors."""


class TransientFetchFailure(IncidentSyncError):
    """Upstream call failed for a reason that may succeed next cycle (network, timeout, 5xx)."""

    def __init__(self, message: str, incident_id: str | None = None):
        super().__init__(message)
        self.incident_id = incident_id


class QuotaRejected(TransientFetchFailure):
    """Upstream refused the request because its quota is spent (HTTP 429)."""


class MalformedRecord(IncidentSyncError):
    """Upstream payload failed required-field validation."""

    def __init__(self, message: str, incident_id: str | None = None):
        super().__init__(message)
        self.incident_id = incident_id


class StoreUnavailable(IncidentSyncError):
    """The local store could not be read or written. Fatal for the current cycle."""


class IncidentHasActivity(IncidentSyncError):
    """An incident cannot be deleted while activity rows still reference it."""


class CycleInProgressError(IncidentSyncError):
    """A cycle was requested while another one is still running."""
