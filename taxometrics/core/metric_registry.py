"""TAXOMETRICS — Unified Metric Registry.

Defines the canonical set of integrated metric fields, which source feeds each
one, and how it rolls up. The aggregator and the date-range rollup read this
table, so a summed or averaged field only has to be registered here.
"""

from enum import Enum
from typing import Dict, Optional


class MetricType(str, Enum):
    """How a metric is categorised."""

    VOLUME = "volume"  # Raw counts: clicks, impressions, sessions
    REVENUE = "revenue"  # Income: ga4 revenue
    RATE = "rate"  # Ratios: ctr, conversion rate
    RANK = "rank"  # Search position
    PRICE = "price"  # Market prices


class RollupRule(str, Enum):
    """How a metric is folded into an ancestor category."""

    SUM = "sum"
    WEIGHTED_AVG = "weighted_avg"  # Averaged by another (count) field
    RATIO = "ratio"  # Recomputed from summed numerator / denominator
    NONE = "none"  # Not rolled up


class MetricDefinition:
    """Describes a single integrated metric field."""

    def __init__(
        self,
        name: str,
        source: str,
        metric_type: MetricType,
        rollup: RollupRule,
        weight_field: Optional[str] = None,
        numerator: Optional[str] = None,
        denominator: Optional[str] = None,
        description: str = "",
    ):
        self.name = name
        self.source = source
        self.metric_type = metric_type
        self.rollup = rollup
        self.weight_field = weight_field
        self.numerator = numerator
        self.denominator = denominator
        self.description = description

    def __repr__(self) -> str:
        return f"<Metric {self.name} ({self.source}, {self.rollup.value})>"


# ─────────────────────────────────────────────
# INTEGRATED METRICS — Canonical Registry
# ─────────────────────────────────────────────

INTEGRATED_METRICS: Dict[str, MetricDefinition] = {
    # Search Console
    "gsc_clicks": MetricDefinition(
        "gsc_clicks", "gsc", MetricType.VOLUME, RollupRule.SUM, description="Clicks"
    ),
    "gsc_impressions": MetricDefinition(
        "gsc_impressions",
        "gsc",
        MetricType.VOLUME,
        RollupRule.SUM,
        description="Search impressions",
    ),
    "gsc_ctr": MetricDefinition(
        "gsc_ctr",
        "gsc",
        MetricType.RATE,
        RollupRule.RATIO,
        numerator="gsc_clicks",
        denominator="gsc_impressions",
        description="Clicks / impressions",
    ),
    "gsc_position": MetricDefinition(
        "gsc_position",
        "gsc",
        MetricType.RANK,
        RollupRule.WEIGHTED_AVG,
        weight_field="gsc_impressions",
        description="Impression-weighted average position",
    ),
    # GA4
    "ga4_sessions": MetricDefinition(
        "ga4_sessions", "ga4", MetricType.VOLUME, RollupRule.SUM, description="Sessions"
    ),
    "ga4_revenue": MetricDefinition(
        "ga4_revenue",
        "ga4",
        MetricType.REVENUE,
        RollupRule.SUM,
        description="Purchase revenue",
    ),
    "ga4_transactions": MetricDefinition(
        "ga4_transactions",
        "ga4",
        MetricType.VOLUME,
        RollupRule.SUM,
        description="Transactions",
    ),
    "ga4_conversion_rate": MetricDefinition(
        "ga4_conversion_rate",
        "ga4",
        MetricType.RATE,
        RollupRule.RATIO,
        numerator="ga4_transactions",
        denominator="ga4_sessions",
        description="Transactions / sessions",
    ),
    "ga4_engagement_rate": MetricDefinition(
        "ga4_engagement_rate",
        "ga4",
        MetricType.RATE,
        RollupRule.WEIGHTED_AVG,
        weight_field="ga4_sessions",
        description="Session-weighted engagement rate",
    ),
    # Market
    "market_price_median": MetricDefinition(
        "market_price_median", "market", MetricType.PRICE, RollupRule.NONE
    ),
    "market_lowest_price": MetricDefinition(
        "market_lowest_price", "market", MetricType.PRICE, RollupRule.NONE
    ),
    "market_highest_price": MetricDefinition(
        "market_highest_price", "market", MetricType.PRICE, RollupRule.NONE
    ),
    "market_competitor_count": MetricDefinition(
        "market_competitor_count", "market", MetricType.VOLUME, RollupRule.NONE
    ),
}

SOURCES = ("gsc", "ga4", "market")

CONFIDENCE_FIELDS: Dict[str, str] = {
    source: f"{source}_match_confidence" for source in SOURCES
}


# ─────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────


def get_metric(name: str) -> MetricDefinition | None:
    """Look up a metric by name."""
    return INTEGRATED_METRICS.get(name)


def metrics_by_rollup(rule: RollupRule) -> list[MetricDefinition]:
    """Return all metrics folded with the given rule."""
    return [m for m in INTEGRATED_METRICS.values() if m.rollup == rule]
