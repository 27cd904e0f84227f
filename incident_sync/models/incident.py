"""Pydantic models for incidents, their activity and list-phase summaries."""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


def _normalize_token(value: str) -> str:
    return re.sub(r"[\s\-]+", "_", value.strip()).upper()


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class IncidentState(str, Enum):
    """Lifecycle state of an incident."""

    NEW = "NEW"
    IN_PROGRESS = "IN_PROGRESS"
    PENDING_CUSTOMER = "PENDING_CUSTOMER"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @classmethod
    def _missing_(cls, value: object) -> "IncidentState | None":
        if isinstance(value, str):
            normalized = _normalize_token(value)
            for member in cls:
                if member.value == normalized:
                    return member
        return None


TERMINAL_STATES = frozenset({IncidentState.RESOLVED, IncidentState.CLOSED})


class Severity(str, Enum):
    """Ordered severity category, LOW < MEDIUM < HIGH < CRITICAL."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def _missing_(cls, value: object) -> "Severity | None":
        if isinstance(value, str):
            normalized = _normalize_token(value)
            for member in cls:
                if member.value == normalized:
                    return member
        return None


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class Incident(BaseModel):
    """Full incident record as replicated into the local store."""

    id: str = Field(default=..., min_length=1, description="Stable upstream identifier")
    ticket_number: str = Field(default=..., description="Human-readable ticket number")
    title: str = Field(default=..., description="Incident title")
    severity: Severity = Field(default=..., description="Ordered severity category")
    state: IncidentState = Field(default=..., description="Current lifecycle state")
    rule_name: str | None = Field(default=None, description="Detection rule that raised it")
    close_code: str | None = Field(default=None, description="Resolution code")
    assignee_name: str | None = Field(default=None, description="Current assignee")
    created_at: datetime = Field(default=..., description="Creation timestamp")
    escalated_at: datetime | None = Field(default=None, description="Escalation timestamp")
    acknowledged_at: datetime | None = Field(default=None, description="Acknowledgement timestamp")
    closed_at: datetime | None = Field(default=None, description="Closure timestamp")
    updated_at: datetime = Field(default=..., description="Upstream last-updated timestamp")
    raw_payload: dict[str, Any] = Field(
        default_factory=dict, description="Full upstream response, kept uninterpreted"
    )

    @field_validator("state", "severity", mode="before")
    @classmethod
    def _normalize_enums(cls, v: Any) -> Any:
        return _normalize_token(v) if isinstance(v, str) else v

    @field_validator("created_at", "escalated_at", "acknowledged_at", "closed_at", "updated_at")
    @classmethod
    def _to_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)

    model_config = {
        "json_schema_extra": {
            "example": {
                "id": "inc-7f3a",
                "ticket_number": "RQ-123",
                "title": "Suspicious login from new country",
                "severity": "HIGH",
                "state": "IN_PROGRESS",
                "rule_name": "impossible-travel",
                "created_at": "2024-03-01T10:00:00Z",
                "acknowledged_at": "2024-03-01T10:05:00Z",
                "updated_at": "2024-03-01T11:30:00Z",
            }
        }
    }


class IncidentActivity(BaseModel):
    """Append-only sub-event of an incident."""

    incident_id: str = Field(default=..., min_length=1, description="Parent incident identifier")
    activity_type: str = Field(default=..., min_length=1, description="Activity category")
    old_value: str | None = Field(default=None, description="Value before the change")
    new_value: str | None = Field(default=None, description="Value after the change")
    timestamp: datetime = Field(default=..., description="When the activity happened upstream")
    sequence: int | None = Field(
        default=None, description="Local sequence number, assigned by the store"
    )

    @field_validator("timestamp")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def dedup_key(self) -> tuple[str, str, str | None, str | None, datetime]:
        return (self.incident_id, self.activity_type, self.old_value, self.new_value, self.timestamp)


class IncidentSummary(BaseModel):
    """Lightweight list-phase record."""

    id: str = Field(default=..., min_length=1)
    state: IncidentState
    updated_at: datetime

    @field_validator("state", mode="before")
    @classmethod
    def _normalize_state(cls, v: Any) -> Any:
        return _normalize_token(v) if isinstance(v, str) else v

    @field_validator("updated_at")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class IncidentDetail(BaseModel):
    """Result of hydrating one incident: the record plus its activity."""

    incident: Incident
    activities: list[IncidentActivity] = Field(default_factory=list)


class KnownIncident(BaseModel):
    """What the local store already knows about an incident."""

    id: str
    state: IncidentState
    updated_at: datetime

    @field_validator("state", mode="before")
    @classmethod
    def _normalize_state(cls, v: Any) -> Any:
        return _normalize_token(v) if isinstance(v, str) else v

    @field_validator("updated_at")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)
