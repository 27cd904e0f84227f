"""Change detection: which upstream incidents moved past the checkpoint."""

import threading
from datetime import datetime
from typing import Iterator, Protocol

import structlog

from incident_sync.exceptions import MalformedRecord, QuotaRejected, TransientFetchFailure
from incident_sync.ingestion.ticketing_client import SummaryPage
from incident_sync.models.incident import IncidentSummary
from incident_sync.sync.quota_limiter import QuotaLimiter

log = structlog.stdlib.get_logger()


class SummarySource(Protocol):
    def list_incident_summaries(
        self, updated_since: datetime | None, offset: int = 0, limit: int = 100
    ) -> SummaryPage: ...


class ChangeListing:
    """
    Lazy, restartable sequence of summaries newer than a checkpoint.

    Each iteration starts over from the checkpoint and charges the limiter
    for every page it requests. When admission is denied, the upstream
    rejects a page, or a page fails, iteration simply stops; the flags below
    tell the caller why. Summaries already yielded remain valid.
    """

    def __init__(
        self,
        client: SummarySource,
        limiter: QuotaLimiter,
        checkpoint: datetime | None,
        page_size: int,
        page_cost: int,
        cancel_event: threading.Event | None = None,
    ):
        self._client = client
        self._limiter = limiter
        self.checkpoint = checkpoint
        self._page_size = page_size
        self._page_cost = page_cost
        self._cancel_event = cancel_event
        self._reset()

    def _reset(self) -> None:
        self.quota_exhausted = False
        self.complete = False
        self.cancelled = False
        self.pages_fetched = 0
        self.malformed = 0
        self.errors: list[str] = []

    def __iter__(self) -> Iterator[IncidentSummary]:
        for page in self.pages():
            yield from page

    def pages(self) -> Iterator[list[IncidentSummary]]:
        """
        Same listing, one list per upstream page.

        A caller that stops iterating between pages prevents the next page
        from being requested or charged. ``complete`` is already set when the
        last page is handed out.
        """
        self._reset()
        offset = 0

        while True:
            if self._cancel_event is not None and self._cancel_event.is_set():
                self.cancelled = True
                log.info("listing_cancelled", pages_fetched=self.pages_fetched)
                return

            if not self._limiter.try_consume(self._page_cost):
                self.quota_exhausted = True
                log.info(
                    "listing_quota_exhausted",
                    pages_fetched=self.pages_fetched,
                    remaining=self._limiter.remaining(),
                )
                return

            try:
                page = self._client.list_incident_summaries(
                    self.checkpoint, offset=offset, limit=self._page_size
                )
            except QuotaRejected as e:
                # A rejected page is a quota boundary, not a partial page.
                self._limiter.exhaust()
                self.quota_exhausted = True
                log.warning("listing_page_rejected", offset=offset, error=str(e))
                return
            except (TransientFetchFailure, MalformedRecord) as e:
                self.errors.append(f"List page at offset {offset} failed: {e}")
                log.error("listing_page_failed", offset=offset, error=str(e))
                return

            self.pages_fetched += 1
            self.malformed += page.malformed
            self._limiter.observe_remaining(page.quota_remaining)

            items = [
                summary
                for summary in page.items
                if self.checkpoint is None or summary.updated_at > self.checkpoint
            ]

            if page.next_offset is None:
                self.complete = True
                log.info(
                    "listing_complete",
                    pages_fetched=self.pages_fetched,
                    malformed=self.malformed,
                )
                yield items
                return

            yield items
            offset = page.next_offset


class ChangeDetector:
    """Produces change listings; never advances the checkpoint itself."""

    def __init__(
        self,
        client: SummarySource,
        limiter: QuotaLimiter,
        page_size: int = 100,
        page_cost: int = 1,
    ):
        """
        Initialize the change detector.

        Args:
            client: Upstream client offering ``list_incident_summaries``
            limiter: Shared quota limiter
            page_size: Summaries requested per page
            page_cost: Cost units charged before each page request
        """
        self._client = client
        self._limiter = limiter
        self._page_size = page_size
        self._page_cost = page_cost

    def detect_changes(
        self, checkpoint: datetime | None, cancel_event: threading.Event | None = None
    ) -> ChangeListing:
        """
        Build the listing of summaries updated strictly after ``checkpoint``.

        Args:
            checkpoint: Last synchronized ``updated_at``; None means the beginning of time
            cancel_event: Checked before every page request

        Returns:
            ChangeListing, lazily fetched on iteration
        """
        log.info("detecting_changes", checkpoint=checkpoint, page_size=self._page_size)
        return ChangeListing(
            self._client,
            self._limiter,
            checkpoint,
            page_size=self._page_size,
            page_cost=self._page_cost,
            cancel_event=cancel_event,
        )
