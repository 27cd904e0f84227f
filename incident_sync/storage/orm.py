"""SQLAlchemy tables for replicated incidents, their activity and the sync checkpoint."""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that survives SQLite, which drops tzinfo on read."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class IncidentRow(Base):
    __tablename__ = "incidents"
    __table_args__ = (Index("ix_incidents_state_updated", "state", "updated_at"),)

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    ticket_number: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    state: Mapped[str] = mapped_column(String(32), nullable=False)
    rule_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    close_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    assignee_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    escalated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    raw_payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # No cascade: deleting an incident that still has activity must fail.
    activities: Mapped[list["IncidentActivityRow"]] = relationship(
        back_populates="incident", passive_deletes="all"
    )

    def __repr__(self) -> str:
        return f"<IncidentRow {self.id} {self.state} updated={self.updated_at}>"


class IncidentActivityRow(Base):
    __tablename__ = "incident_activities"
    __table_args__ = (
        UniqueConstraint(
            "incident_id",
            "activity_type",
            "old_value",
            "new_value",
            "timestamp",
            name="uq_incident_activity_event",
        ),
    )

    # Local sequence number, monotonically increasing.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    incident_id: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("incidents.id", ondelete="RESTRICT", onupdate="CASCADE"),
        nullable=False,
        index=True,
    )
    activity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    old_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    new_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    incident: Mapped[IncidentRow] = relationship(back_populates="activities")


class SyncCheckpointRow(Base):
    """Single logical row (id = 1) holding the list-phase high-water mark."""

    __tablename__ = "sync_checkpoint"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    advanced_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<SyncCheckpointRow {self.last_updated_at}>"
