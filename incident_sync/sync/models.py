"""Data models for synchronization cycles."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from incident_sync.models.incident import IncidentDetail, IncidentSummary


class CycleState(str, Enum):
    """Orchestrator state machine."""

    IDLE = "IDLE"
    LISTING = "LISTING"
    FILTERING = "FILTERING"
    HYDRATING = "HYDRATING"
    RECONCILING = "RECONCILING"
    QUOTA_EXHAUSTED = "QUOTA_EXHAUSTED"


class HydrationOutcome(BaseModel):
    """Result of hydrating a single summary: a detail or a failure, never both."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    summary: IncidentSummary
    detail: IncidentDetail | None = None
    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        return self.detail is not None


class HydrationBatch(BaseModel):
    """All outcomes of one hydrate phase, in input order."""

    outcomes: list[HydrationOutcome] = Field(default_factory=list)
    attempted: int = Field(default=0, ge=0, description="Identifiers admitted and fetched")
    quota_exhausted: bool = False
    cancelled: bool = False

    @property
    def succeeded(self) -> list[HydrationOutcome]:
        return [outcome for outcome in self.outcomes if outcome.succeeded]

    @property
    def failed(self) -> list[HydrationOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.succeeded]


class ReconcileResult(BaseModel):
    """What a single reconcile call changed."""

    incident_id: str
    created: bool = Field(description="True if no local row existed before")
    activities_appended: int = Field(default=0, ge=0)
    stale: bool = Field(
        default=False, description="Incoming record was older than the stored one"
    )


class CycleResult(BaseModel):
    """Report of one synchronization cycle, returned to the external scheduler."""

    items_listed: int = Field(default=0, ge=0, description="Summaries returned by the list phase")
    items_skipped: int = Field(
        default=0, ge=0, description="Summaries pruned by the immutability filter"
    )
    items_hydrated: int = Field(default=0, ge=0, description="Details fetched successfully")
    items_reconciled: int = Field(default=0, ge=0, description="Details persisted locally")
    items_failed: int = Field(
        default=0, ge=0, description="Per-record failures (transient, malformed)"
    )
    quota_exhausted: bool = Field(default=False, description="Cycle ended early on quota")
    cancelled: bool = Field(default=False, description="Cycle stopped by cancellation")
    checkpoint_advanced_to: datetime | None = Field(
        default=None, description="New checkpoint, or None if it did not move"
    )
    started_at: datetime = Field(..., description="Cycle start timestamp")
    finished_at: datetime = Field(..., description="Cycle end timestamp")
    duration_seconds: float = Field(default=0.0, ge=0.0)
    errors: list[str] = Field(default_factory=list, description="Per-record failure messages")

    @property
    def success(self) -> bool:
        """True when no record failed. Quota exhaustion is not a failure."""
        return self.items_failed == 0


class SyncStatus(BaseModel):
    """Snapshot for external polling and alerting."""

    state: CycleState
    last_cycle_at: datetime | None = None
    quota_remaining: int
    quota_reset_at: datetime
    checkpoint: datetime | None = None
    last_result: CycleResult | None = None
