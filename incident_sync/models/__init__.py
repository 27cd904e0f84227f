"""Data models for the incident synchronization engine."""

from incident_sync.models.config import (
    AppConfig,
    LoggingConfig,
    QuotaConfig,
    StoreConfig,
    SyncSettings,
    UpstreamConfig,
)
from incident_sync.models.incident import (
    TERMINAL_STATES,
    Incident,
    IncidentActivity,
    IncidentDetail,
    IncidentState,
    IncidentSummary,
    KnownIncident,
    Severity,
    ensure_utc,
)

__all__ = [
    "Incident",
    "IncidentActivity",
    "IncidentDetail",
    "IncidentState",
    "IncidentSummary",
    "KnownIncident",
    "Severity",
    "TERMINAL_STATES",
    "ensure_utc",
    "AppConfig",
    "LoggingConfig",
    "QuotaConfig",
    "StoreConfig",
    "SyncSettings",
    "UpstreamConfig",
]
