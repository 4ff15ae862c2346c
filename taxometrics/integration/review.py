"""TAXOMETRICS — Review Queue & Run Status Queries.

Read-side helpers behind the HTTP surface, plus resolving an unmatched
identifier into a manual mapping that the next run will pick up.
"""

import json
from collections import defaultdict
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from taxometrics.core.logging import get_logger
from taxometrics.matching.confidence import ConfidenceScorer, normalize_confidence
from taxometrics.models.catalog_models import Product, TaxonomyNode
from taxometrics.models.integrated_models import (
    IntegratedMetric,
    IntegrationRun,
    MetricMapping,
    UnmatchedMetric,
)
from taxometrics.models.match_models import EntityType

logger = get_logger("integration.review")

TOP_UNMATCHED = 20


class ReviewError(ValueError):
    """A resolve request that cannot be applied."""


def latest_run(session: Session, tenant_id: str) -> Optional[IntegrationRun]:
    return session.exec(
        select(IntegrationRun)
        .where(IntegrationRun.tenant_id == tenant_id)
        .order_by(IntegrationRun.created_at.desc(), IntegrationRun.id.desc())  # type: ignore
        .limit(1)
    ).first()


def list_runs(
    session: Session, tenant_id: str, metrics_date: Optional[str] = None, limit: int = 10
) -> List[dict]:
    query = select(IntegrationRun).where(IntegrationRun.tenant_id == tenant_id)
    if metrics_date:
        query = query.where(IntegrationRun.metrics_date == metrics_date)
    runs = session.exec(
        query.order_by(IntegrationRun.created_at.desc(), IntegrationRun.id.desc()).limit(limit)  # type: ignore
    ).all()
    return [
        {
            "id": run.id,
            "created_at": run.created_at.isoformat(),
            "metrics_date": run.metrics_date,
            "success": run.success,
            "result": json.loads(run.result_json),
        }
        for run in runs
    ]


def describe_unmatched(
    row: UnmatchedMetric, scorer: Optional[ConfidenceScorer] = None
) -> dict:
    """Review-queue row plus what a reviewer should do with its best candidate."""
    scorer = scorer or ConfidenceScorer()
    return {
        **row.model_dump(mode="json"),
        "recommended_action": scorer.recommended_action(row.best_confidence or 0.0),
    }


def unmatched_summary(
    session: Session, tenant_id: str, scorer: Optional[ConfidenceScorer] = None
) -> dict:
    """Unresolved counts per source and the most retried identifiers."""
    scorer = scorer or ConfidenceScorer()
    rows = session.exec(
        select(UnmatchedMetric).where(
            UnmatchedMetric.tenant_id == tenant_id,
            UnmatchedMetric.resolved == False,  # noqa: E712
        )
    ).all()
    by_source: dict = defaultdict(int)
    for row in rows:
        by_source[row.source] += 1
    top = sorted(rows, key=lambda r: (-r.match_attempts, r.source, r.identifier))
    return {
        "total": len(rows),
        "by_source": dict(by_source),
        "top": [
            {
                "id": row.id,
                "source": row.source,
                "identifier": row.identifier,
                "identifier_type": row.identifier_type,
                "match_attempts": row.match_attempts,
                "best_confidence": row.best_confidence,
                "recommended_action": scorer.recommended_action(
                    row.best_confidence or 0.0
                )["action"],
            }
            for row in top[:TOP_UNMATCHED]
        ],
    }


def integration_status(
    session: Session, tenant_id: str, scorer: Optional[ConfidenceScorer] = None
) -> dict:
    """Last run, current row counts and the unresolved review queue for a tenant."""
    scorer = scorer or ConfidenceScorer()
    run = latest_run(session, tenant_id)
    last_run = None
    last_date = None
    if run:
        result = json.loads(run.result_json)
        last_date = run.metrics_date
        avg_confidence = result.get("stats", {}).get("avg_confidence", 0.0)
        last_run = {
            "metrics_date": run.metrics_date,
            "success": run.success,
            "created_at": run.created_at.isoformat(),
            "stats": result.get("stats", {}),
            "errors": result.get("errors", []),
            "confidence_level": scorer.confidence_level(avg_confidence),
        }

    row_counts: dict = {}
    if last_date:
        counts = session.exec(
            select(IntegratedMetric.is_aggregated, func.count())
            .where(
                IntegratedMetric.tenant_id == tenant_id,
                IntegratedMetric.metrics_date == last_date,
            )
            .group_by(IntegratedMetric.is_aggregated)
        ).all()
        row_counts = {
            ("aggregated" if aggregated else "direct"): count
            for aggregated, count in counts
        }

    return {
        "tenant_id": tenant_id,
        "last_run": last_run,
        "integrated_rows": row_counts,
        "unmatched": unmatched_summary(session, tenant_id, scorer),
    }


def list_metrics(
    session: Session,
    tenant_id: str,
    metrics_date: str,
    entity_type: Optional[str] = None,
    aggregated_only: bool = False,
) -> List[IntegratedMetric]:
    query = select(IntegratedMetric).where(
        IntegratedMetric.tenant_id == tenant_id,
        IntegratedMetric.metrics_date == metrics_date,
    )
    if entity_type:
        query = query.where(IntegratedMetric.entity_type == entity_type)
    if aggregated_only:
        query = query.where(IntegratedMetric.is_aggregated == True)  # noqa: E712
    return list(
        session.exec(
            query.order_by(IntegratedMetric.entity_type, IntegratedMetric.entity_id)
        ).all()
    )


def list_unmatched(
    session: Session,
    tenant_id: str,
    source: Optional[str] = None,
    include_resolved: bool = False,
    limit: int = 100,
) -> List[UnmatchedMetric]:
    query = select(UnmatchedMetric).where(UnmatchedMetric.tenant_id == tenant_id)
    if source:
        query = query.where(UnmatchedMetric.source == source)
    if not include_resolved:
        query = query.where(UnmatchedMetric.resolved == False)  # noqa: E712
    return list(
        session.exec(
            query.order_by(
                UnmatchedMetric.match_attempts.desc(), UnmatchedMetric.id  # type: ignore
            ).limit(limit)
        ).all()
    )


def resolve_unmatched(
    session: Session,
    unmatched_id: int,
    entity_type: str,
    entity_id: str,
    confidence: Optional[float] = None,
) -> MetricMapping:
    """Map an unmatched identifier to a catalog entity and close it out."""
    row = session.get(UnmatchedMetric, unmatched_id)
    if row is None:
        raise ReviewError(f"Unmatched identifier {unmatched_id} not found")

    try:
        kind = EntityType(entity_type)
    except ValueError as e:
        raise ReviewError(f"Unknown entity type '{entity_type}'") from e
    model = TaxonomyNode if kind == EntityType.NODE else Product
    entity = session.get(model, entity_id)
    if entity is None or entity.tenant_id != row.tenant_id:
        raise ReviewError(f"{kind.value} '{entity_id}' not found for tenant {row.tenant_id}")

    mapping = session.exec(
        select(MetricMapping).where(
            MetricMapping.tenant_id == row.tenant_id,
            MetricMapping.source_type == row.identifier_type,
            MetricMapping.source_identifier == row.identifier,
        )
    ).first()
    if mapping is None:
        mapping = MetricMapping(
            tenant_id=row.tenant_id,
            source_identifier=row.identifier,
            source_type=row.identifier_type,
            entity_type=kind.value,
            entity_id=entity_id,
        )
    else:
        mapping.entity_type = kind.value
        mapping.entity_id = entity_id
        mapping.active = True
    if confidence is not None:
        mapping.confidence = normalize_confidence(confidence)

    row.resolved = True
    row.resolved_entity_type = kind.value
    row.resolved_entity_id = entity_id
    row.last_attempt_at = datetime.now(timezone.utc)
    session.add(mapping)
    session.add(row)
    session.commit()
    session.refresh(mapping)

    logger.info(
        f"Resolved {row.source} '{row.identifier}' to {kind.value} {entity_id}",
        extra={"tenant_id": row.tenant_id, "source": row.source, "identifier": row.identifier},
    )
    return mapping
