"""TAXOMETRICS — Metrics Combiner.

Merges the accepted records of the three sources that resolved to the same
``(entity_type, entity_id)`` into one ``IntegratedMetric``. Each source keeps
its own match confidence; a source with no records leaves its confidence
unset rather than zero.
"""

import statistics
from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from taxometrics.core.logging import get_logger
from taxometrics.core.metric_registry import CONFIDENCE_FIELDS
from taxometrics.matching.confidence import ConfidenceScorer
from taxometrics.models.integrated_models import IntegratedMetric
from taxometrics.models.match_models import MatchedRecord
from taxometrics.models.raw_models import AnalyticsMetric, MarketMetric, SearchMetric

logger = get_logger("integration.combiner")

# Within this fraction of the market median a price counts as "at" market
PRICE_PARITY_TOLERANCE = 0.02

EntityKey = Tuple[str, str]


def _confidence(items: Sequence[MatchedRecord]) -> float:
    # Several identifiers folded into one entity are only as trustworthy as the weakest
    return min(item.match.confidence for item in items)


def overall_confidence(fields: Mapping[str, Optional[float]]) -> Optional[float]:
    """Combined confidence over the sources present in ``fields``; None when none are."""
    present = [fields.get(field) for field in CONFIDENCE_FIELDS.values()]
    if all(c is None for c in present):
        return None
    return round(ConfidenceScorer.combined_confidence(*present), 4)


def _merge_search(fields: dict, items: Sequence[MatchedRecord]) -> None:
    records: List[SearchMetric] = [item.record for item in items]
    clicks = sum(r.clicks for r in records)
    impressions = sum(r.impressions for r in records)

    ranked = [r for r in records if r.position > 0]
    ranked_impressions = sum(r.impressions for r in ranked)
    if ranked_impressions > 0:
        position = sum(r.position * r.impressions for r in ranked) / ranked_impressions
    elif ranked:
        position = sum(r.position for r in ranked) / len(ranked)
    else:
        position = 0.0

    if impressions > 0:
        ctr = clicks / impressions
    else:
        ctr = records[0].ctr if len(records) == 1 else 0.0

    fields.update(
        gsc_clicks=clicks,
        gsc_impressions=impressions,
        gsc_ctr=round(ctr, 6),
        gsc_position=round(position, 4),
        gsc_match_confidence=_confidence(items),
    )


def _merge_analytics(fields: dict, items: Sequence[MatchedRecord]) -> None:
    records: List[AnalyticsMetric] = [item.record for item in items]
    sessions = sum(r.sessions for r in records)
    transactions = sum(r.transactions for r in records)
    revenue = sum(r.revenue for r in records)

    if sessions > 0:
        conversion_rate = transactions / sessions
        engagement_rate = sum(r.engagement_rate * r.sessions for r in records) / sessions
    elif len(records) == 1:
        conversion_rate = records[0].conversion_rate
        engagement_rate = records[0].engagement_rate
    else:
        conversion_rate = 0.0
        engagement_rate = 0.0

    fields.update(
        ga4_sessions=sessions,
        ga4_revenue=round(revenue, 2),
        ga4_transactions=transactions,
        ga4_conversion_rate=round(conversion_rate, 6),
        ga4_engagement_rate=round(engagement_rate, 6),
        ga4_match_confidence=_confidence(items),
    )


def _merge_market(fields: dict, items: Sequence[MatchedRecord]) -> None:
    records: List[MarketMetric] = [item.record for item in items]
    medians = [r.median_price for r in records if r.median_price is not None]
    lows = [r.lowest_price for r in records if r.lowest_price is not None]
    highs = [r.highest_price for r in records if r.highest_price is not None]
    counts = [r.competitor_count for r in records if r.competitor_count is not None]

    fields.update(
        market_price_median=statistics.median(medians) if medians else None,
        market_lowest_price=min(lows) if lows else None,
        market_highest_price=max(highs) if highs else None,
        market_competitor_count=max(counts) if counts else None,
        market_match_confidence=_confidence(items),
    )


def price_position(
    price: Optional[float],
    median: Optional[float],
    lowest: Optional[float] = None,
    highest: Optional[float] = None,
) -> Optional[str]:
    """Place a product's own price relative to the market."""
    if price is None or median is None or median <= 0:
        return None
    if lowest is not None and price <= lowest:
        return "lowest"
    if highest is not None and price >= highest:
        return "highest"
    if abs(price - median) / median <= PRICE_PARITY_TOLERANCE:
        return "at"
    return "below" if price < median else "above"


def combine_metrics(
    tenant_id: str,
    metrics_date: str,
    entity_type: str,
    entity_id: str,
    search: Optional[Sequence[MatchedRecord]] = None,
    analytics: Optional[Sequence[MatchedRecord]] = None,
    market: Optional[Sequence[MatchedRecord]] = None,
    product_price: Optional[float] = None,
) -> IntegratedMetric:
    """Build one IntegratedMetric from whichever sources are present."""
    fields: dict = {}
    if search:
        _merge_search(fields, search)
    if analytics:
        _merge_analytics(fields, analytics)
    if market:
        _merge_market(fields, market)
        fields["price_position"] = price_position(
            product_price,
            fields["market_price_median"],
            fields["market_lowest_price"],
            fields["market_highest_price"],
        )
    fields["match_confidence"] = overall_confidence(fields)

    return IntegratedMetric(
        tenant_id=tenant_id,
        metrics_date=metrics_date,
        entity_type=entity_type,
        entity_id=entity_id,
        is_aggregated=False,
        child_count=0,
        **fields,
    )


def combine_by_entity(
    tenant_id: str,
    metrics_date: str,
    matched: Mapping[str, Iterable[MatchedRecord]],
    product_prices: Optional[Mapping[str, Optional[float]]] = None,
) -> Dict[EntityKey, IntegratedMetric]:
    """Group accepted records of every source by entity and combine each group.

    ``matched`` maps a source name (``gsc`` / ``ga4`` / ``market``) to its
    accepted records. Keys of the result are ``(entity_type, entity_id)``.
    """
    product_prices = product_prices or {}
    grouped: Dict[EntityKey, Dict[str, List[MatchedRecord]]] = defaultdict(
        lambda: defaultdict(list)
    )
    for source, items in matched.items():
        for item in items:
            grouped[item.match.key][source].append(item)

    combined: Dict[EntityKey, IntegratedMetric] = {}
    for key in sorted(grouped):
        entity_type, entity_id = key
        by_source = grouped[key]
        combined[key] = combine_metrics(
            tenant_id,
            metrics_date,
            entity_type,
            entity_id,
            search=by_source.get("gsc"),
            analytics=by_source.get("ga4"),
            market=by_source.get("market"),
            product_price=product_prices.get(entity_id) if entity_type == "product" else None,
        )

    logger.info(
        f"Combined {sum(len(v) for v in grouped.values())} source groups into {len(combined)} entities",
        extra={"tenant_id": tenant_id, "metrics_date": metrics_date},
    )
    return combined
