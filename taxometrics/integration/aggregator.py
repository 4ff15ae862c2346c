"""TAXOMETRICS — Hierarchical Aggregator.

Rolls product- and node-level metrics up the taxonomy, deepest nodes first.

The tree is strict: a node's parent is the node whose path equals its own
minus the last segment, so every contribution travels up exactly one chain.
Accumulators carry raw sums (and weight sums for averaged fields) so ratios
and averages are computed once from counts, never averaged again.
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from taxometrics.core.logging import get_logger
from taxometrics.core.metric_registry import (
    CONFIDENCE_FIELDS,
    RollupRule,
    metrics_by_rollup,
)
from taxometrics.integration.combiner import overall_confidence
from taxometrics.matching.category_matcher import CategoryMatcher, extract_category_from_url
from taxometrics.matching.confidence import ConfidenceScorer
from taxometrics.matching.normalizers import normalize_url_path
from taxometrics.models.catalog_models import Product, TaxonomyNode
from taxometrics.models.integrated_models import IntegratedMetric

logger = get_logger("integration.aggregator")

EntityKey = Tuple[str, str]

_SUM_FIELDS = [m.name for m in metrics_by_rollup(RollupRule.SUM)]
_WEIGHTED_FIELDS = metrics_by_rollup(RollupRule.WEIGHTED_AVG)
_RATIO_FIELDS = metrics_by_rollup(RollupRule.RATIO)
_INT_FIELDS = {"gsc_clicks", "gsc_impressions", "ga4_sessions", "ga4_transactions"}


class Rollup:
    """Additive accumulator for one category (or one date range)."""

    def __init__(self):
        self.sums: Dict[str, float] = defaultdict(float)
        self.weighted: Dict[str, List[float]] = defaultdict(lambda: [0.0, 0.0])
        self.confidences: Dict[str, List[float]] = defaultdict(list)
        self.child_count = 0
        self.has_data = False

    def add_metric(self, metric: IntegratedMetric) -> None:
        self.has_data = True
        for name in _SUM_FIELDS:
            self.sums[name] += getattr(metric, name) or 0
        for definition in _WEIGHTED_FIELDS:
            value = getattr(metric, definition.name) or 0
            weight = getattr(metric, definition.weight_field) or 0
            if value > 0 and weight > 0:
                bucket = self.weighted[definition.name]
                bucket[0] += value * weight
                bucket[1] += weight
        for source, field in CONFIDENCE_FIELDS.items():
            confidence = getattr(metric, field)
            if confidence is not None:
                self.confidences[source].append(confidence)

    def merge(self, other: "Rollup") -> None:
        self.has_data = self.has_data or other.has_data
        for name, value in other.sums.items():
            self.sums[name] += value
        for name, (weighted_sum, weight) in other.weighted.items():
            bucket = self.weighted[name]
            bucket[0] += weighted_sum
            bucket[1] += weight
        for source, values in other.confidences.items():
            self.confidences[source].extend(values)
        self.child_count += other.child_count

    def to_fields(self) -> dict:
        fields: dict = {}
        for name in _SUM_FIELDS:
            value = self.sums.get(name, 0)
            fields[name] = int(round(value)) if name in _INT_FIELDS else round(value, 2)
        for definition in _RATIO_FIELDS:
            denominator = self.sums.get(definition.denominator, 0)
            numerator = self.sums.get(definition.numerator, 0)
            fields[definition.name] = (
                round(numerator / denominator, 6) if denominator > 0 else 0.0
            )
        for definition in _WEIGHTED_FIELDS:
            weighted_sum, weight = self.weighted.get(definition.name, (0.0, 0.0))
            fields[definition.name] = round(weighted_sum / weight, 4) if weight > 0 else 0.0
        for source, field in CONFIDENCE_FIELDS.items():
            values = self.confidences.get(source)
            fields[field] = round(sum(values) / len(values), 4) if values else None
        fields["match_confidence"] = overall_confidence(fields)
        return fields


class HierarchicalAggregator:
    """Bottom-up rollup of integrated metrics over a taxonomy snapshot."""

    def __init__(
        self,
        nodes: Iterable[TaxonomyNode],
        products: Iterable[Product] = (),
        category_matcher: Optional[CategoryMatcher] = None,
        scorer: Optional[ConfidenceScorer] = None,
    ):
        self.nodes: Dict[str, TaxonomyNode] = {}
        self.path_to_node: Dict[str, str] = {}
        self.depth: Dict[str, int] = {}
        for node in nodes:
            path = normalize_url_path(node.path)
            if not path or path in self.path_to_node:
                continue
            self.nodes[node.id] = node
            self.path_to_node[path] = node.id
            self.depth[node.id] = len(path.split("/"))

        self.parent: Dict[str, Optional[str]] = {}
        for path, node_id in self.path_to_node.items():
            parent_path = path.rsplit("/", 1)[0] if "/" in path else ""
            self.parent[node_id] = self.path_to_node.get(parent_path)

        self.category_matcher = category_matcher
        self.scorer = scorer or ConfidenceScorer()
        self.product_category: Dict[str, Optional[str]] = {
            product.id: self.resolve_category(
                product.category_path or extract_category_from_url(product.url)
            )
            for product in products
        }

    def resolve_category(self, category_path: Optional[str]) -> Optional[str]:
        """Node id for a product's category path, exact path first, breadcrumb second."""
        if not category_path:
            return None
        node_id = self.path_to_node.get(normalize_url_path(category_path))
        if node_id:
            return node_id
        node_id = self.path_to_node.get(CategoryMatcher.to_path(category_path))
        if node_id or self.category_matcher is None:
            return node_id
        match = self.category_matcher.match_breadcrumb(category_path)
        if self.scorer.accepts(match) and match.entity_id in self.nodes:
            return match.entity_id
        return None

    def aggregate(
        self,
        metrics: Mapping[EntityKey, IntegratedMetric],
        tenant_id: str,
        metrics_date: str,
    ) -> Dict[str, IntegratedMetric]:
        """Return one aggregated row per node with contributing descendants."""
        rollups: Dict[str, Rollup] = defaultdict(Rollup)
        unassigned = 0

        for (entity_type, entity_id), metric in metrics.items():
            if entity_type == "node":
                if entity_id in self.nodes:
                    # A category page's own traffic counts toward that category
                    rollups[entity_id].add_metric(metric)
                continue
            node_id = self.product_category.get(entity_id)
            if node_id is None:
                unassigned += 1
                continue
            rollup = rollups[node_id]
            rollup.add_metric(metric)
            rollup.child_count += 1

        ordered = sorted(self.nodes, key=lambda nid: (-self.depth[nid], nid))
        for node_id in ordered:
            rollup = rollups.get(node_id)
            parent_id = self.parent.get(node_id)
            if rollup is None or not rollup.has_data or parent_id is None:
                continue
            parent = rollups[parent_id]
            parent.merge(rollup)
            parent.child_count += 1

        aggregated: Dict[str, IntegratedMetric] = {}
        for node_id in ordered:
            rollup = rollups.get(node_id)
            if rollup is None or rollup.child_count == 0:
                continue
            aggregated[node_id] = IntegratedMetric(
                tenant_id=tenant_id,
                metrics_date=metrics_date,
                entity_type="node",
                entity_id=node_id,
                is_aggregated=True,
                child_count=rollup.child_count,
                **rollup.to_fields(),
            )

        if unassigned:
            logger.info(
                f"{unassigned} product metrics have no resolvable category and were not rolled up",
                extra={"tenant_id": tenant_id, "metrics_date": metrics_date},
            )
        logger.info(
            f"Aggregated {len(aggregated)} categories",
            extra={"tenant_id": tenant_id, "metrics_date": metrics_date},
        )
        return aggregated


def rollup_date_range(rows: Iterable[IntegratedMetric]) -> dict:
    """Fold rows for one entity across several dates using the rollup rules."""
    rollup = Rollup()
    days = set()
    for row in rows:
        rollup.add_metric(row)
        days.add(row.metrics_date)
    fields = rollup.to_fields()
    fields["days"] = len(days)
    return fields
