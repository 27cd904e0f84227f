"""Upstream ticketing API access"""

from incident_sync.ingestion.ticketing_client import FetchedDetail, SummaryPage, TicketingClient

__all__ = ["FetchedDetail", "SummaryPage", "TicketingClient"]
