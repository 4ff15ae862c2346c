"""TAXOMETRICS — Integrated Metric Models.

Unique constraint on (entity_type, entity_id, metrics_date, tenant_id)
ensures idempotent upserts: re-running a date overwrites, never duplicates.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import Column, JSON
from sqlmodel import SQLModel, Field, UniqueConstraint


# ─────────────────────────────────────────────
# DATABASE MODELS
# ─────────────────────────────────────────────


class IntegratedMetric(SQLModel, table=True):
    """Merged per-entity metrics for one reporting date."""

    __tablename__ = "integrated_metrics"
    __table_args__ = (
        UniqueConstraint(
            "entity_type",
            "entity_id",
            "metrics_date",
            "tenant_id",
            name="uq_integrated_metric",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    entity_type: str = Field(index=True, description="node | product")
    entity_id: str = Field(index=True)
    metrics_date: str = Field(index=True, description="YYYY-MM-DD")
    tenant_id: str = Field(index=True)

    # Search Console
    gsc_clicks: int = 0
    gsc_impressions: int = 0
    gsc_ctr: float = 0.0
    gsc_position: float = 0.0
    gsc_match_confidence: Optional[float] = None

    # GA4
    ga4_sessions: int = 0
    ga4_revenue: float = 0.0
    ga4_transactions: int = 0
    ga4_conversion_rate: float = 0.0
    ga4_engagement_rate: float = 0.0
    ga4_match_confidence: Optional[float] = None

    # Market
    market_price_median: Optional[float] = None
    market_lowest_price: Optional[float] = None
    market_highest_price: Optional[float] = None
    market_competitor_count: Optional[int] = None
    price_position: Optional[str] = Field(
        default=None, description="lowest | below | at | above | highest"
    )
    market_match_confidence: Optional[float] = None

    # Harmonic mean of the per-source confidences above
    match_confidence: Optional[float] = None

    # Aggregation metadata
    is_aggregated: bool = False
    child_count: int = 0

    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> tuple[str, str, str, str]:
        return self.entity_type, self.entity_id, self.metrics_date, self.tenant_id


class UnmatchedMetric(SQLModel, table=True):
    """A source identifier that no strategy resolved above threshold.

    Persists across runs so a reviewer can supply a manual mapping.
    """

    __tablename__ = "unmatched_metrics"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "source", "identifier", name="uq_unmatched_identifier"
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    source: str = Field(index=True, description="gsc | ga4 | market")
    identifier: str = Field(index=True, description="URL, path, or GTIN")
    identifier_type: str = Field(description="url | gtin")
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    best_confidence: Optional[float] = None
    match_attempts: int = 1
    last_attempt_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    resolved: bool = Field(default=False, index=True)
    resolved_entity_type: Optional[str] = None
    resolved_entity_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class MetricMapping(SQLModel, table=True):
    """Manual identifier → entity override supplied by a reviewer."""

    __tablename__ = "metric_mappings"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "source_type", "source_identifier", name="uq_metric_mapping"
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    source_identifier: str = Field(index=True)
    source_type: str = Field(description="url | gtin")
    entity_type: str = Field(description="node | product")
    entity_id: str
    confidence: float = 0.95
    active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class IntegrationRun(SQLModel, table=True):
    """Stored outcome of one orchestrator run."""

    __tablename__ = "integration_runs"

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    metrics_date: str = Field(index=True)
    success: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    result_json: str = Field(description="Full IntegrationResult as JSON")


# ─────────────────────────────────────────────
# PYDANTIC SCHEMAS — Run Output
# ─────────────────────────────────────────────


class RunState(str, Enum):
    """Lifecycle of a single integration run."""

    LOADING_CATALOG = "loading_catalog"
    FETCHING_SOURCES = "fetching_sources"
    MATCHING = "matching"
    COMBINING = "combining"
    AGGREGATING = "aggregating"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


class UnmatchedEntry(BaseModel):
    """A record routed to the review queue during one run."""

    source: str
    identifier: str
    identifier_type: str
    payload: Dict[str, Any] = {}
    best_confidence: Optional[float] = None
    reason: str = ""


class IntegrationStats(BaseModel):
    total_processed: int = 0
    matched: int = 0
    unmatched: int = 0
    aggregated: int = 0
    avg_confidence: float = 0.0


class IntegrationResult(BaseModel):
    """Structured result returned to every caller of a run."""

    success: bool
    tenant_id: str
    metrics_date: str
    state: RunState
    stats: IntegrationStats = IntegrationStats()
    errors: List[str] = []
    duration_ms: int = 0
