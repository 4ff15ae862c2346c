"""TAXOMETRICS — Integrated Metrics Repository.

Persistence contract used by the orchestrator:

* ``upsert_integrated_metrics`` — idempotent on
  (entity_type, entity_id, metrics_date, tenant_id).
* ``record_unmatched`` — insert, or increment ``match_attempts`` on
  (tenant_id, source, identifier).
* ``persist_run`` — both of the above for a whole run in one transaction.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Sequence

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from taxometrics.core.errors import PersistenceError
from taxometrics.core.logging import get_logger
from taxometrics.models.integrated_models import (
    IntegratedMetric,
    IntegrationResult,
    IntegrationRun,
    MetricMapping,
    UnmatchedEntry,
    UnmatchedMetric,
)

logger = get_logger("integration.repository")

_NON_KEY_FIELDS = [
    name
    for name in IntegratedMetric.model_fields
    if name not in ("id", "entity_type", "entity_id", "metrics_date", "tenant_id")
]


class MetricsRepository(ABC):
    """Storage used by one orchestrator."""

    @abstractmethod
    def load_mappings(self, tenant_id: str) -> List[MetricMapping]:
        ...

    @abstractmethod
    def upsert_integrated_metrics(
        self, tenant_id: str, metrics_date: str, rows: Sequence[IntegratedMetric]
    ) -> int:
        ...

    @abstractmethod
    def record_unmatched(
        self,
        tenant_id: str,
        source: str,
        identifier: str,
        identifier_type: str,
        payload: Dict[str, Any],
    ) -> UnmatchedMetric:
        ...

    @abstractmethod
    def persist_run(
        self,
        tenant_id: str,
        metrics_date: str,
        rows: Sequence[IntegratedMetric],
        unmatched: Sequence[UnmatchedEntry],
    ) -> None:
        ...

    def save_run(self, result: IntegrationResult) -> None:
        """Store the run outcome; optional for repositories without history."""


class SQLMetricsRepository(MetricsRepository):
    """SQLModel-backed repository."""

    def __init__(self, engine: Engine):
        self.engine = engine

    # ── Reads ──

    def load_mappings(self, tenant_id: str) -> List[MetricMapping]:
        with Session(self.engine, expire_on_commit=False) as session:
            mappings = session.exec(
                select(MetricMapping).where(
                    MetricMapping.tenant_id == tenant_id,
                    MetricMapping.active == True,  # noqa: E712
                )
            ).all()
            session.expunge_all()
        return list(mappings)

    # ── Writes ──

    def upsert_integrated_metrics(
        self, tenant_id: str, metrics_date: str, rows: Sequence[IntegratedMetric]
    ) -> int:
        with Session(self.engine) as session:
            try:
                count = self._upsert_rows(session, tenant_id, metrics_date, rows)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise PersistenceError(f"Integrated metrics upsert failed: {e}") from e
        return count

    def record_unmatched(
        self,
        tenant_id: str,
        source: str,
        identifier: str,
        identifier_type: str,
        payload: Dict[str, Any],
    ) -> UnmatchedMetric:
        entry = UnmatchedEntry(
            source=source,
            identifier=identifier,
            identifier_type=identifier_type,
            payload=payload,
        )
        with Session(self.engine, expire_on_commit=False) as session:
            try:
                row = self._record_unmatched(session, tenant_id, [entry])[0]
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise PersistenceError(f"Unmatched tracking failed: {e}") from e
        return row

    def persist_run(
        self,
        tenant_id: str,
        metrics_date: str,
        rows: Sequence[IntegratedMetric],
        unmatched: Sequence[UnmatchedEntry],
    ) -> None:
        """Write a run's rows and review-queue updates atomically."""
        with Session(self.engine) as session:
            try:
                written = self._upsert_rows(session, tenant_id, metrics_date, rows)
                self._record_unmatched(session, tenant_id, unmatched)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise PersistenceError(f"Batched write failed: {e}") from e
        logger.info(
            f"Persisted {written} integrated rows and {len(unmatched)} unmatched identifiers",
            extra={"tenant_id": tenant_id, "metrics_date": metrics_date},
        )

    def save_run(self, result: IntegrationResult) -> None:
        with Session(self.engine) as session:
            session.add(
                IntegrationRun(
                    tenant_id=result.tenant_id,
                    metrics_date=result.metrics_date,
                    success=result.success,
                    result_json=result.model_dump_json(),
                )
            )
            session.commit()

    # ── Helpers (caller owns the transaction) ──

    @staticmethod
    def _upsert_rows(
        session: Session,
        tenant_id: str,
        metrics_date: str,
        rows: Iterable[IntegratedMetric],
    ) -> int:
        existing = {
            (r.entity_type, r.entity_id): r
            for r in session.exec(
                select(IntegratedMetric).where(
                    IntegratedMetric.tenant_id == tenant_id,
                    IntegratedMetric.metrics_date == metrics_date,
                )
            ).all()
        }
        now = datetime.now(timezone.utc)
        count = 0
        for row in rows:
            current = existing.get((row.entity_type, row.entity_id))
            if current is None:
                current = IntegratedMetric(
                    entity_type=row.entity_type,
                    entity_id=row.entity_id,
                    metrics_date=metrics_date,
                    tenant_id=tenant_id,
                )
                existing[(row.entity_type, row.entity_id)] = current
            for name in _NON_KEY_FIELDS:
                setattr(current, name, getattr(row, name))
            current.last_updated = now
            session.add(current)
            count += 1
        session.flush()
        return count

    @staticmethod
    def _record_unmatched(
        session: Session, tenant_id: str, entries: Sequence[UnmatchedEntry]
    ) -> List[UnmatchedMetric]:
        if not entries:
            return []
        table = UnmatchedMetric.__table__
        connection = session.connection()
        insert = pg_insert if connection.dialect.name == "postgresql" else sqlite_insert
        now = datetime.now(timezone.utc)

        for entry in entries:
            # Insert-or-increment in one statement; runs for other dates share this key
            stmt = insert(table).values(
                tenant_id=tenant_id,
                source=entry.source,
                identifier=entry.identifier,
                identifier_type=entry.identifier_type,
                payload=entry.payload,
                best_confidence=entry.best_confidence,
                match_attempts=1,
                last_attempt_at=now,
                resolved=False,
                created_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.tenant_id, table.c.source, table.c.identifier],
                set_={
                    "match_attempts": table.c.match_attempts + 1,
                    "identifier_type": stmt.excluded.identifier_type,
                    "payload": stmt.excluded.payload,
                    "best_confidence": stmt.excluded.best_confidence,
                    "last_attempt_at": stmt.excluded.last_attempt_at,
                    "resolved": False,
                },
            )
            connection.execute(stmt)

        return [
            session.exec(
                select(UnmatchedMetric)
                .where(
                    UnmatchedMetric.tenant_id == tenant_id,
                    UnmatchedMetric.source == entry.source,
                    UnmatchedMetric.identifier == entry.identifier,
                )
                .execution_options(populate_existing=True)
            ).one()
            for entry in entries
        ]
