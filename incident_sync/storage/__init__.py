"""Local relational store for replicated incidents."""

from incident_sync.storage.incident_store import IncidentStore, build_engine

__all__ = ["IncidentStore", "build_engine"]
