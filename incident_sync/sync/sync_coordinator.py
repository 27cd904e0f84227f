"""Synchronization orchestrator: drives one list/filter/hydrate/reconcile cycle."""

import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable

import structlog

from incident_sync.exceptions import CycleInProgressError, StoreUnavailable
from incident_sync.ingestion.ticketing_client import TicketingClient
from incident_sync.models.config import AppConfig
from incident_sync.models.incident import IncidentSummary, KnownIncident
from incident_sync.storage.incident_store import IncidentStore
from incident_sync.sync.change_detector import ChangeDetector, ChangeListing
from incident_sync.sync.detail_hydrator import DetailHydrator
from incident_sync.sync.immutability_filter import ImmutabilityFilter
from incident_sync.sync.models import CycleResult, CycleState, SyncStatus
from incident_sync.sync.quota_limiter import QuotaLimiter
from incident_sync.sync.reconciler import Reconciler, safe_checkpoint
from incident_sync.sync.timestamp_tracker import TimestampTracker

log = structlog.stdlib.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _keep_latest(latest: dict[str, IncidentSummary], summaries: Iterable[IncidentSummary]) -> None:
    """Keep one summary per id, the most recent."""
    for summary in summaries:
        current = latest.get(summary.id)
        if current is None or summary.updated_at > current.updated_at:
            latest[summary.id] = summary


class SyncOrchestrator:
    """
    Runs synchronization cycles between the ticketing API and the local store.

    State machine: IDLE -> LISTING -> FILTERING -> HYDRATING -> RECONCILING -> IDLE.
    When the limiter denies admission the machine moves to QUOTA_EXHAUSTED,
    persists whatever was already fetched, and returns to IDLE. At most one
    cycle runs at a time; the engine holds no timers and relies on an
    external scheduler to call ``run_cycle``.
    """

    def __init__(
        self,
        client: TicketingClient,
        store: IncidentStore,
        limiter: QuotaLimiter,
        page_size: int = 100,
        list_page_cost: int = 1,
        detail_cost: int = 1,
        max_workers: int = 1,
        activity_overlap: timedelta = timedelta(0),
        force_refresh_ids: Iterable[str] = (),
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            client: Upstream client (list summaries, fetch details)
            store: Local incident store
            limiter: Quota limiter shared with anything else calling the same upstream
            page_size: Summaries per list page
            list_page_cost: Cost units charged per list page
            detail_cost: Cost units charged per detail fetch
            max_workers: Concurrent detail fetches
            activity_overlap: How far before a stored ``updated_at`` activity is re-requested
            force_refresh_ids: Ids hydrated even when stored as terminal
            clock: Returns the current aware datetime; defaults to UTC wall clock
        """
        self._client = client
        self._owns_client = False
        self._store = store
        self._limiter = limiter
        self._clock = clock or _utcnow
        self._detail_cost = detail_cost
        self._change_detector = ChangeDetector(
            client, limiter, page_size=page_size, page_cost=list_page_cost
        )
        self._immutability_filter = ImmutabilityFilter(force_refresh_ids)
        self._hydrator = DetailHydrator(
            client,
            limiter,
            detail_cost=detail_cost,
            max_workers=max_workers,
            activity_overlap=activity_overlap,
        )
        self._reconciler = Reconciler(store)
        self._timestamp_tracker = TimestampTracker(store)

        self._state = CycleState.IDLE
        self._state_lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._last_cycle_at: datetime | None = None
        self._last_result: CycleResult | None = None
        self._checkpoint: datetime | None = None

        log.info("sync_orchestrator_initialized", max_workers=max_workers)

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        client: TicketingClient | None = None,
        store: IncidentStore | None = None,
        limiter: QuotaLimiter | None = None,
    ) -> "SyncOrchestrator":
        """
        Build the engine and its collaborators from ``AppConfig``.

        A client built here is owned by the orchestrator and released by ``close``.
        """
        owns_client = client is None
        if client is None:
            client = TicketingClient(
                base_url=str(config.upstream.base_url),
                api_token=config.upstream.api_token,
                timeout_seconds=config.upstream.timeout_seconds,
                max_retries=config.upstream.max_retries,
                quota_header=config.upstream.quota_header,
            )
        if store is None:
            store = IncidentStore(config.store.database_url, echo=config.store.echo)
            store.create_schema()
        if limiter is None:
            limiter = QuotaLimiter(config.quota.capacity, config.quota.window_seconds)

        orchestrator = cls(
            client=client,
            store=store,
            limiter=limiter,
            page_size=config.upstream.page_size,
            list_page_cost=config.quota.list_page_cost,
            detail_cost=config.quota.detail_cost,
            max_workers=config.sync.max_workers,
            activity_overlap=timedelta(seconds=config.sync.activity_overlap_seconds),
            force_refresh_ids=config.sync.force_refresh_ids,
        )
        orchestrator._owns_client = owns_client
        return orchestrator

    def close(self) -> None:
        """Close the upstream session if ``from_config`` created the client."""
        if self._owns_client:
            self._client.close()
            log.debug("ticketing_client_closed")

    @property
    def state(self) -> CycleState:
        return self._state

    @property
    def immutability_filter(self) -> ImmutabilityFilter:
        return self._immutability_filter

    def status(self) -> SyncStatus:
        return SyncStatus(
            state=self._state,
            last_cycle_at=self._last_cycle_at,
            quota_remaining=self._limiter.remaining(),
            quota_reset_at=self._limiter.reset_at(),
            checkpoint=self._checkpoint,
            last_result=self._last_result,
        )

    def cancel(self) -> None:
        """
        Ask the running cycle to stop issuing upstream requests.

        Details already fetched are still reconciled before the cycle returns.
        Has no effect when no cycle is running.
        """
        if self._state != CycleState.IDLE:
            log.info("cycle_cancellation_requested", state=self._state.value)
            self._cancel_event.set()

    def run_cycle(self) -> CycleResult:
        """
        Run one synchronization cycle.

        Returns:
            CycleResult with counts, quota and checkpoint information. Per-record
            failures are reported here and never raised.

        Raises:
            CycleInProgressError: If another cycle is still running
            StoreUnavailable: If the local store fails; the checkpoint is not
                advanced past records already written
        """
        with self._state_lock:
            if self._state != CycleState.IDLE:
                raise CycleInProgressError(f"Cycle already running (state={self._state.value})")
            self._state = CycleState.LISTING
            self._cancel_event.clear()

        started_at = self._clock()
        structlog.contextvars.bind_contextvars(cycle_id=uuid.uuid4().hex[:12])
        log.info("sync_cycle_started", started_at=started_at)

        try:
            result = self._run(started_at)
        except StoreUnavailable as e:
            log.error(
                "sync_cycle_aborted",
                error=str(e),
                duration_seconds=(self._clock() - started_at).total_seconds(),
            )
            raise
        finally:
            self._last_cycle_at = started_at
            self._set_state(CycleState.IDLE)
            structlog.contextvars.unbind_contextvars("cycle_id")

        self._last_result = result
        log.info(
            "sync_cycle_completed",
            items_listed=result.items_listed,
            items_skipped=result.items_skipped,
            items_hydrated=result.items_hydrated,
            items_failed=result.items_failed,
            quota_exhausted=result.quota_exhausted,
            cancelled=result.cancelled,
            checkpoint_advanced_to=result.checkpoint_advanced_to,
            duration_seconds=result.duration_seconds,
        )
        return result

    def _set_state(self, state: CycleState) -> None:
        with self._state_lock:
            if state != self._state:
                log.debug("cycle_state_changed", previous=self._state.value, state=state.value)
            self._state = state

    def _run(self, started_at: datetime) -> CycleResult:
        errors: list[str] = []

        # List
        checkpoint = self._timestamp_tracker.load_checkpoint()
        self._checkpoint = checkpoint
        listing = self._change_detector.detect_changes(checkpoint, self._cancel_event)
        summaries, known = self._list_changes(listing)
        errors.extend(listing.errors)
        quota_exhausted = listing.quota_exhausted

        if quota_exhausted and not summaries:
            self._set_state(CycleState.QUOTA_EXHAUSTED)
            return self._result(
                started_at, errors, quota_exhausted=True, items_failed=listing.malformed
            )

        # Filter
        self._set_state(CycleState.FILTERING)
        eligible, skipped = self._immutability_filter.partition(summaries, known)
        skipped_ids = {summary.id for summary in skipped}
        reconciled_ids: set[str] = set()

        # Hydrate
        self._set_state(CycleState.HYDRATING)
        batch = self._hydrator.hydrate(eligible, known, self._cancel_event)
        quota_exhausted = quota_exhausted or batch.quota_exhausted

        # Reconcile everything fetched, even after quota exhaustion or cancellation
        self._set_state(CycleState.QUOTA_EXHAUSTED if quota_exhausted else CycleState.RECONCILING)
        reconciled = 0
        failed = listing.malformed
        for outcome in batch.outcomes:
            if not outcome.succeeded:
                failed += 1
                errors.append(
                    f"{type(outcome.error).__name__} for incident {outcome.summary.id}: {outcome.error}"
                )
                continue
            self._reconciler.reconcile(outcome.detail)
            reconciled_ids.add(outcome.summary.id)
            reconciled += 1

        candidate = safe_checkpoint(summaries, reconciled_ids, listing.complete, skipped_ids)
        advanced_to = self._timestamp_tracker.advance(checkpoint, candidate)
        if advanced_to is not None:
            self._checkpoint = advanced_to

        return self._result(
            started_at,
            errors,
            items_listed=len(summaries),
            items_skipped=len(skipped),
            items_hydrated=len(batch.succeeded),
            items_reconciled=reconciled,
            items_failed=failed,
            quota_exhausted=quota_exhausted,
            cancelled=listing.cancelled or batch.cancelled,
            checkpoint_advanced_to=advanced_to,
        )

    def _list_changes(
        self, listing: ChangeListing
    ) -> tuple[list[IncidentSummary], dict[str, KnownIncident]]:
        """
        Drain the listing page by page, leaving budget for hydration.

        Listing stops before the next page once the eligible summaries already
        held would use up every detail fetch the limiter can still grant. The
        rest of the backlog is listed again next cycle from the same checkpoint.

        Returns:
            Summaries (one per id, ascending by ``updated_at``) and the stored
            state of those already known locally
        """
        latest: dict[str, IncidentSummary] = {}
        known: dict[str, KnownIncident] = {}

        for page in listing.pages():
            _keep_latest(latest, page)
            known.update(self._store.get_known(summary.id for summary in page))

            eligible = sum(
                1
                for summary in latest.values()
                if self._immutability_filter.is_eligible(summary.id, known.get(summary.id))
            )
            affordable = self._limiter.remaining() // self._detail_cost
            if not listing.complete and eligible >= affordable:
                log.info(
                    "listing_stopped_for_hydration_budget",
                    pages_fetched=listing.pages_fetched,
                    eligible=eligible,
                    affordable=affordable,
                )
                break

        summaries = sorted(latest.values(), key=lambda summary: summary.updated_at)
        return summaries, known

    def _result(self, started_at: datetime, errors: list[str], **counts) -> CycleResult:
        finished_at = self._clock()
        return CycleResult(
            started_at=started_at,
            finished_at=finished_at,
            duration_seconds=max((finished_at - started_at).total_seconds(), 0.0),
            errors=errors,
            **counts,
        )
