"""SQLAlchemy-backed local store for replicated incidents."""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Iterator

import structlog
from sqlalchemy import Engine, create_engine, event, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from incident_sync.exceptions import IncidentHasActivity, StoreUnavailable
from incident_sync.models.incident import (
    Incident,
    IncidentActivity,
    KnownIncident,
    ensure_utc,
)
from incident_sync.storage.orm import (
    Base,
    IncidentActivityRow,
    IncidentRow,
    SyncCheckpointRow,
)

log = structlog.stdlib.get_logger()

CHECKPOINT_ROW_ID = 1

_INCIDENT_FIELDS = (
    "ticket_number",
    "title",
    "rule_name",
    "close_code",
    "assignee_name",
    "created_at",
    "escalated_at",
    "acknowledged_at",
    "closed_at",
    "updated_at",
    "raw_payload",
)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine; SQLite gets foreign keys enforced and, in memory, a shared connection."""
    kwargs: dict = {"echo": echo, "future": True, "pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, **kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def _row_to_incident(row: IncidentRow) -> Incident:
    return Incident(
        id=row.id,
        ticket_number=row.ticket_number,
        title=row.title,
        severity=row.severity,
        state=row.state,
        rule_name=row.rule_name,
        close_code=row.close_code,
        assignee_name=row.assignee_name,
        created_at=row.created_at,
        escalated_at=row.escalated_at,
        acknowledged_at=row.acknowledged_at,
        closed_at=row.closed_at,
        updated_at=row.updated_at,
        raw_payload=row.raw_payload or {},
    )


def _row_to_activity(row: IncidentActivityRow) -> IncidentActivity:
    return IncidentActivity(
        incident_id=row.incident_id,
        activity_type=row.activity_type,
        old_value=row.old_value,
        new_value=row.new_value,
        timestamp=row.timestamp,
        sequence=row.id,
    )


class IncidentStore:
    """Reads and writes incidents, activity and the checkpoint.

    Every database failure surfaces as ``StoreUnavailable`` so the orchestrator
    can abort the cycle without knowing about SQLAlchemy.
    """

    def __init__(self, database_url: str | None = None, engine: Engine | None = None, echo: bool = False):
        if engine is None:
            if database_url is None:
                raise ValueError("database_url is required when engine is not provided")
            engine = build_engine(database_url, echo=echo)
        self._engine: Engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        log.info("incident_store_initialized", dialect=engine.dialect.name)

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_schema(self) -> None:
        try:
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            log.error("failed_to_create_schema", error=str(e))
            raise StoreUnavailable(f"Failed to create schema: {e}") from e

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            log.error("store_operation_failed", operation=operation, error=str(e))
            raise StoreUnavailable(f"Store operation '{operation}' failed: {e}") from e
        finally:
            session.close()

    # Checkpoint

    def load_checkpoint(self) -> datetime | None:
        with self._session("load_checkpoint") as session:
            row = session.get(SyncCheckpointRow, CHECKPOINT_ROW_ID)
            return row.last_updated_at if row else None

    def save_checkpoint(self, checkpoint: datetime) -> datetime:
        """Persist ``checkpoint`` unless the stored one is already later.

        Returns:
            The checkpoint in effect after the call
        """
        checkpoint = ensure_utc(checkpoint)
        with self._session("save_checkpoint") as session:
            row = session.get(SyncCheckpointRow, CHECKPOINT_ROW_ID)
            if row is None:
                row = SyncCheckpointRow(id=CHECKPOINT_ROW_ID)
                session.add(row)
            if row.last_updated_at is not None and row.last_updated_at >= checkpoint:
                return row.last_updated_at
            row.last_updated_at = checkpoint
            row.advanced_at = datetime.now(timezone.utc)
            return checkpoint

    # Incidents

    def get_known(self, incident_ids: Iterable[str]) -> dict[str, KnownIncident]:
        """Return the stored state and last-updated time for each id that exists locally."""
        ids = list(dict.fromkeys(incident_ids))
        if not ids:
            return {}
        known: dict[str, KnownIncident] = {}
        with self._session("get_known") as session:
            # Chunked to stay under SQLite's bound-parameter limit.
            for start in range(0, len(ids), 500):
                chunk = ids[start : start + 500]
                rows = session.execute(
                    select(IncidentRow.id, IncidentRow.state, IncidentRow.updated_at).where(
                        IncidentRow.id.in_(chunk)
                    )
                )
                for incident_id, state, updated_at in rows:
                    known[incident_id] = KnownIncident(
                        id=incident_id, state=state, updated_at=updated_at
                    )
        return known

    def get_incident(self, incident_id: str) -> Incident | None:
        with self._session("get_incident") as session:
            row = session.get(IncidentRow, incident_id)
            return _row_to_incident(row) if row else None

    def list_activities(self, incident_id: str) -> list[IncidentActivity]:
        """Activity for an incident in local sequence order (receipt order)."""
        with self._session("list_activities") as session:
            rows = session.scalars(
                select(IncidentActivityRow)
                .where(IncidentActivityRow.incident_id == incident_id)
                .order_by(IncidentActivityRow.id)
            )
            return [_row_to_activity(row) for row in rows]

    def activity_keys(self, incident_id: str) -> set[tuple]:
        return {activity.dedup_key for activity in self.list_activities(incident_id)}

    def save_incident(self, incident: Incident, activities: list[IncidentActivity]) -> int:
        """Upsert ``incident`` and append ``activities`` in one transaction.

        The caller has already merged the incident against stored state and
        removed duplicate activity.

        Returns:
            Number of activity rows appended
        """
        with self._session("save_incident") as session:
            row = session.get(IncidentRow, incident.id)
            if row is None:
                row = IncidentRow(id=incident.id)
                session.add(row)
            for field in _INCIDENT_FIELDS:
                setattr(row, field, getattr(incident, field))
            row.severity = incident.severity.value
            row.state = incident.state.value
            session.flush()

            for activity in activities:
                session.add(
                    IncidentActivityRow(
                        incident_id=incident.id,
                        activity_type=activity.activity_type,
                        old_value=activity.old_value,
                        new_value=activity.new_value,
                        timestamp=activity.timestamp,
                    )
                )
            return len(activities)

    def delete_incident(self, incident_id: str) -> bool:
        """Delete an incident that has no activity.

        Raises:
            IncidentHasActivity: If activity rows still reference the incident
            StoreUnavailable: On any other database failure
        """
        session = self._session_factory()
        try:
            activity_count = session.scalar(
                select(func.count())
                .select_from(IncidentActivityRow)
                .where(IncidentActivityRow.incident_id == incident_id)
            )
            if activity_count:
                raise IncidentHasActivity(
                    f"Incident {incident_id} still has {activity_count} activity rows"
                )
            row = session.get(IncidentRow, incident_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            log.info("incident_deleted", incident_id=incident_id)
            return True
        except IntegrityError as e:
            session.rollback()
            raise IncidentHasActivity(f"Incident {incident_id} still has activity rows") from e
        except SQLAlchemyError as e:
            session.rollback()
            log.error("store_operation_failed", operation="delete_incident", error=str(e))
            raise StoreUnavailable(f"Store operation 'delete_incident' failed: {e}") from e
        finally:
            session.close()

    def count_incidents(self) -> int:
        with self._session("count_incidents") as session:
            return session.scalar(select(func.count()).select_from(IncidentRow)) or 0

    def count_by_state(self) -> dict[str, int]:
        with self._session("count_by_state") as session:
            rows = session.execute(
                select(IncidentRow.state, func.count()).group_by(IncidentRow.state)
            )
            return {state: count for state, count in rows}
