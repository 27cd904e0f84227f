"""Detail hydration: full incident fetches under the shared quota budget."""

import contextvars
import threading
from concurrent.futures import ALL_COMPLETED, FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from typing import Mapping, Protocol, Sequence

import structlog

from incident_sync.exceptions import MalformedRecord, QuotaRejected, TransientFetchFailure
from incident_sync.ingestion.ticketing_client import FetchedDetail
from incident_sync.models.incident import IncidentSummary, KnownIncident
from incident_sync.sync.models import HydrationBatch, HydrationOutcome
from incident_sync.sync.quota_limiter import QuotaLimiter

log = structlog.stdlib.get_logger()


class DetailSource(Protocol):
    def get_incident_detail(
        self, incident_id: str, activities_since: datetime | None = None
    ) -> FetchedDetail: ...


class DetailHydrator:
    """
    Fetches full detail for eligible incidents, oldest change first.

    One admission unit is charged right before each fetch. At most
    ``max_workers`` fetches are in flight; with the default of one the
    hydrator is a plain sequential loop. Denied admission, an upstream 429 or
    cancellation stop new fetches, while fetches already in flight finish and
    are returned so nothing fetched is dropped.

    For an incident already stored, activity is requested from
    ``activity_overlap`` before its stored ``updated_at``. Activity events may
    arrive after later ones; the reconciler drops the repeats.
    """

    def __init__(
        self,
        client: DetailSource,
        limiter: QuotaLimiter,
        detail_cost: int = 1,
        max_workers: int = 1,
        activity_overlap: timedelta = timedelta(0),
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if activity_overlap < timedelta(0):
            raise ValueError("activity_overlap must not be negative")
        self._client = client
        self._limiter = limiter
        self._detail_cost = detail_cost
        self._max_workers = max_workers
        self._activity_overlap = activity_overlap

    def hydrate(
        self,
        summaries: Sequence[IncidentSummary],
        known_by_id: Mapping[str, KnownIncident] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> HydrationBatch:
        """
        Hydrate ``summaries`` in the given order.

        Args:
            summaries: Eligible summaries, ascending by ``updated_at``
            known_by_id: Stored records; their ``updated_at``, less the overlap, bounds
                the activity requested
            cancel_event: Stops new fetches once set

        Returns:
            HydrationBatch with one outcome per attempted fetch, in input order.
            Identifiers never attempted, or rejected upstream with 429, have no outcome.
        """
        known_by_id = known_by_id or {}
        outcomes: dict[int, HydrationOutcome] = {}
        in_flight: dict[Future, int] = {}
        rejected = threading.Event()
        attempted = 0
        quota_exhausted = False
        cancelled = False

        def collect(return_when: str) -> None:
            done, _ = wait(list(in_flight), return_when=return_when)
            for future in done:
                index = in_flight.pop(future)
                outcome = future.result()
                if outcome is not None:
                    outcomes[index] = outcome

        log.info("hydration_started", candidates=len(summaries), max_workers=self._max_workers)

        with ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="hydrator"
        ) as pool:
            for index, summary in enumerate(summaries):
                while len(in_flight) >= self._max_workers:
                    collect(FIRST_COMPLETED)

                if rejected.is_set():
                    quota_exhausted = True
                    break
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    log.info("hydration_cancelled", attempted=attempted)
                    break
                if not self._limiter.try_consume(self._detail_cost):
                    quota_exhausted = True
                    log.info(
                        "hydration_quota_exhausted",
                        attempted=attempted,
                        left_for_next_cycle=len(summaries) - index,
                    )
                    break

                attempted += 1
                # Each fetch runs in a copy of the caller's context (cycle_id).
                future = pool.submit(
                    contextvars.copy_context().run,
                    self._fetch_one,
                    summary,
                    known_by_id.get(summary.id),
                    rejected,
                )
                in_flight[future] = index

            while in_flight:
                collect(ALL_COMPLETED)

        if rejected.is_set():
            quota_exhausted = True

        batch = HydrationBatch(
            outcomes=[outcomes[index] for index in sorted(outcomes)],
            attempted=attempted,
            quota_exhausted=quota_exhausted,
            cancelled=cancelled,
        )
        log.info(
            "hydration_finished",
            attempted=attempted,
            succeeded=len(batch.succeeded),
            failed=len(batch.failed),
            quota_exhausted=quota_exhausted,
            cancelled=cancelled,
        )
        return batch

    def _fetch_one(
        self,
        summary: IncidentSummary,
        known: KnownIncident | None,
        rejected: threading.Event,
    ) -> HydrationOutcome | None:
        activities_since = (
            known.updated_at - self._activity_overlap if known is not None else None
        )
        try:
            fetched = self._client.get_incident_detail(
                summary.id, activities_since=activities_since
            )
        except QuotaRejected as e:
            self._limiter.exhaust()
            rejected.set()
            log.warning("detail_fetch_rejected", incident_id=summary.id, error=str(e))
            return None
        except (TransientFetchFailure, MalformedRecord) as e:
            log.error(
                "detail_fetch_failed",
                incident_id=summary.id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return HydrationOutcome(summary=summary, error=e)

        self._limiter.observe_remaining(fetched.quota_remaining)
        return HydrationOutcome(summary=summary, detail=fetched.detail)
