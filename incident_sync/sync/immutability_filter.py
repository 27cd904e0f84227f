"""Skips re-fetching incidents whose stored state can no longer change."""

from typing import Iterable, Mapping

import structlog

from incident_sync.models.incident import IncidentSummary, KnownIncident

log = structlog.stdlib.get_logger()


class ImmutabilityFilter:
    """
    Decides which listed incidents are worth a detail fetch.

    An incident is ineligible only when it is already stored, its stored state
    is terminal, and no force-refresh override is set for it. First-seen
    incidents are always eligible.
    """

    def __init__(self, force_refresh_ids: Iterable[str] = ()):
        self._force_refresh: set[str] = set(force_refresh_ids)

    def force_refresh(self, incident_id: str) -> None:
        self._force_refresh.add(incident_id)

    def is_eligible(self, incident_id: str, known: KnownIncident | None) -> bool:
        if known is None:
            return True
        if incident_id in self._force_refresh:
            return True
        return not known.state.is_terminal

    def partition(
        self,
        summaries: Iterable[IncidentSummary],
        known_by_id: Mapping[str, KnownIncident],
    ) -> tuple[list[IncidentSummary], list[IncidentSummary]]:
        """
        Split summaries into (eligible, skipped), preserving order.

        Args:
            summaries: List-phase summaries in ascending ``updated_at`` order
            known_by_id: Stored state for the ids that exist locally

        Returns:
            Tuple of eligible and skipped summaries
        """
        eligible: list[IncidentSummary] = []
        skipped: list[IncidentSummary] = []
        for summary in summaries:
            if self.is_eligible(summary.id, known_by_id.get(summary.id)):
                eligible.append(summary)
            else:
                skipped.append(summary)

        log.info("immutability_filter_applied", eligible=len(eligible), skipped=len(skipped))
        return eligible, skipped
