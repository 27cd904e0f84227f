"""Synchronization engine components."""

from incident_sync.sync.change_detector import ChangeDetector, ChangeListing
from incident_sync.sync.detail_hydrator import DetailHydrator
from incident_sync.sync.immutability_filter import ImmutabilityFilter
from incident_sync.sync.models import (
    CycleResult,
    CycleState,
    HydrationBatch,
    HydrationOutcome,
    ReconcileResult,
    SyncStatus,
)
from incident_sync.sync.quota_limiter import QuotaLimiter
from incident_sync.sync.reconciler import Reconciler, merge_incident, safe_checkpoint
from incident_sync.sync.sync_coordinator import SyncOrchestrator
from incident_sync.sync.timestamp_tracker import TimestampTracker

__all__ = [
    "ChangeDetector",
    "ChangeListing",
    "CycleResult",
    "CycleState",
    "DetailHydrator",
    "HydrationBatch",
    "HydrationOutcome",
    "ImmutabilityFilter",
    "QuotaLimiter",
    "ReconcileResult",
    "Reconciler",
    "SyncOrchestrator",
    "SyncStatus",
    "TimestampTracker",
    "merge_incident",
    "safe_checkpoint",
]
