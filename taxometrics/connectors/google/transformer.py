"""TAXOMETRICS — Google Raw → Typed Record Transformer.

Converts raw report rows into ``SearchMetric`` / ``AnalyticsMetric`` /
``MarketMetric``. Rows without an identifier are dropped.
"""

from typing import Any, Dict, List, Optional, Sequence

from taxometrics.connectors.google.endpoints import GA4_METRICS
from taxometrics.core.logging import get_logger
from taxometrics.models.raw_models import AnalyticsMetric, MarketMetric, SearchMetric

logger = get_logger("google.transformer")

MICROS = 1_000_000


def _safe_float(value: Any) -> float:
    """Safely convert a value to float."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _safe_int(value: Any) -> int:
    return int(round(_safe_float(value)))


def _micros(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    return round(_safe_float(value) / MICROS, 2)


def transform_search_rows(rows: List[Dict[str, Any]], metrics_date: str) -> List[SearchMetric]:
    records: List[SearchMetric] = []
    for row in rows:
        keys = row.get("keys") or []
        if not keys or not keys[0]:
            continue
        records.append(
            SearchMetric(
                url=keys[0],
                date=metrics_date,
                clicks=_safe_int(row.get("clicks")),
                impressions=_safe_int(row.get("impressions")),
                ctr=_safe_float(row.get("ctr")),
                position=_safe_float(row.get("position")),
            )
        )
    logger.info(f"Transformed {len(records)}/{len(rows)} Search Console rows")
    return records


def transform_analytics_rows(
    rows: List[Dict[str, Any]],
    metrics_date: str,
    metric_names: Sequence[str] = GA4_METRICS,
) -> List[AnalyticsMetric]:
    records: List[AnalyticsMetric] = []
    for row in rows:
        dimensions = row.get("dimensionValues") or []
        page_path = dimensions[0].get("value") if dimensions else None
        if not page_path:
            continue
        metric_values = row.get("metricValues") or []
        values = {
            name: metric_values[i].get("value")
            for i, name in enumerate(metric_names)
            if i < len(metric_values)
        }
        sessions = _safe_int(values.get("sessions"))
        transactions = _safe_int(values.get("transactions"))
        records.append(
            AnalyticsMetric(
                page_path=page_path,
                date=metrics_date,
                sessions=sessions,
                users=_safe_int(values.get("totalUsers")),
                revenue=_safe_float(values.get("purchaseRevenue")),
                transactions=transactions,
                conversion_rate=(transactions / sessions) if sessions > 0 else 0.0,
                engagement_rate=_safe_float(values.get("engagementRate")),
                bounce_rate=_safe_float(values.get("bounceRate")),
            )
        )
    logger.info(f"Transformed {len(records)}/{len(rows)} GA4 rows")
    return records


def transform_merchant_rows(rows: List[Dict[str, Any]], metrics_date: str) -> List[MarketMetric]:
    """Merchant rows carry a single benchmark price, used as the market median."""
    records: List[MarketMetric] = []
    for row in rows:
        product_view = row.get("productView") or {}
        competitiveness = row.get("priceCompetitiveness") or {}
        identifier = product_view.get("gtin") or product_view.get("offerId")
        if isinstance(identifier, list):
            identifier = identifier[0] if identifier else None
        if not identifier:
            continue
        records.append(
            MarketMetric(
                gtin=str(identifier),
                date=metrics_date,
                median_price=_micros(competitiveness.get("benchmarkPriceMicros")),
            )
        )
    logger.info(f"Transformed {len(records)}/{len(rows)} Merchant Center rows")
    return records
