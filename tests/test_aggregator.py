from __future__ import annotations

import pytest

from taxometrics.integration.aggregator import HierarchicalAggregator, rollup_date_range
from taxometrics.matching.category_matcher import CategoryMatcher
from taxometrics.matching.url_matcher import UrlMatcher
from taxometrics.models.catalog_models import Product, TaxonomyNode
from taxometrics.models.integrated_models import IntegratedMetric

DATE = "2026-03-01"


def _tree():
    nodes = [
        TaxonomyNode(id="P", path="p", title="Parent"),
        TaxonomyNode(id="A", path="p/a", title="Alpha"),
        TaxonomyNode(id="B", path="p/b", title="Beta"),
    ]
    products = [
        Product(id="a1", category_path="p/a"),
        Product(id="b1", category_path="p/b"),
        Product(id="b2", category_path="P > B"),
        Product(id="orphan", category_path="elsewhere"),
    ]
    return nodes, products


def _product_metric(entity_id: str, **fields) -> IntegratedMetric:
    return IntegratedMetric(
        tenant_id="acme",
        metrics_date=DATE,
        entity_type="product",
        entity_id=entity_id,
        **fields,
    )


def test_parent_sums_children():
    nodes, products = _tree()
    metrics = {
        ("product", "a1"): _product_metric("a1", gsc_clicks=10, gsc_match_confidence=1.0),
        ("product", "b1"): _product_metric("b1", gsc_clicks=20, gsc_match_confidence=0.8),
    }
    aggregated = HierarchicalAggregator(nodes, products).aggregate(metrics, "acme", DATE)

    assert aggregated["P"].gsc_clicks == 30
    assert aggregated["P"].is_aggregated is True
    assert aggregated["P"].entity_type == "node"
    assert aggregated["A"].gsc_clicks == 10
    assert aggregated["B"].gsc_clicks == 20
    assert aggregated["P"].gsc_match_confidence == pytest.approx(0.9)
    assert aggregated["P"].match_confidence == pytest.approx(0.9)
    assert aggregated["P"].ga4_match_confidence is None


def test_ratios_come_from_counts_not_averages():
    nodes, products = _tree()
    metrics = {
        ("product", "a1"): _product_metric(
            "a1", gsc_clicks=10, gsc_impressions=100, gsc_position=2.0,
            ga4_sessions=100, ga4_transactions=10,
        ),
        ("product", "b1"): _product_metric(
            "b1", gsc_clicks=30, gsc_impressions=300, gsc_position=4.0,
            ga4_sessions=900, ga4_transactions=10,
        ),
    }
    parent = HierarchicalAggregator(nodes, products).aggregate(metrics, "acme", DATE)["P"]
    assert parent.gsc_position == pytest.approx(3.5)
    assert parent.gsc_ctr == pytest.approx(0.1)
    # Simple average of 0.1 and 0.0111 would be 0.0556
    assert parent.ga4_conversion_rate == pytest.approx(0.02)


def test_nodes_without_contributions_produce_no_rows():
    nodes, products = _tree()
    metrics = {("product", "a1"): _product_metric("a1", gsc_clicks=10)}
    aggregated = HierarchicalAggregator(nodes, products).aggregate(metrics, "acme", DATE)
    assert set(aggregated) == {"A", "P"}
    assert aggregated["A"].child_count == 1
    assert aggregated["P"].child_count == 2


def test_leaf_counted_once_in_each_ancestor():
    nodes = [
        TaxonomyNode(id="R", path="r"),
        TaxonomyNode(id="M", path="r/m"),
        TaxonomyNode(id="L", path="r/m/l"),
    ]
    products = [Product(id="x", category_path="r/m/l")]
    metrics = {("product", "x"): _product_metric("x", gsc_clicks=7, ga4_revenue=12.5)}
    aggregated = HierarchicalAggregator(nodes, products).aggregate(metrics, "acme", DATE)
    assert [aggregated[n].gsc_clicks for n in ("L", "M", "R")] == [7, 7, 7]
    assert aggregated["R"].ga4_revenue == 12.5


def test_breadcrumb_category_and_direct_node_metrics_roll_up():
    nodes, products = _tree()
    metrics = {
        ("product", "b2"): _product_metric("b2", gsc_clicks=5),
        ("node", "B"): IntegratedMetric(
            tenant_id="acme", metrics_date=DATE, entity_type="node", entity_id="B",
            gsc_clicks=3, gsc_match_confidence=1.0,
        ),
        ("product", "orphan"): _product_metric("orphan", gsc_clicks=100),
    }
    aggregated = HierarchicalAggregator(nodes, products).aggregate(metrics, "acme", DATE)
    assert aggregated["B"].gsc_clicks == 8
    assert aggregated["P"].gsc_clicks == 8


def test_category_matcher_resolves_loose_breadcrumbs():
    nodes, _ = _tree()
    products = [Product(id="z", category_path="Home > P > A")]
    matcher = CategoryMatcher(UrlMatcher.from_catalog(nodes))
    aggregator = HierarchicalAggregator(nodes, products, category_matcher=matcher)
    assert aggregator.product_category["z"] == "A"


def test_product_without_category_path_is_placed_by_its_url():
    nodes = [
        TaxonomyNode(id="S", path="shoes", title="Shoes"),
        TaxonomyNode(id="T", path="shoes/trail", title="Trail"),
    ]
    products = [Product(id="r9", url="https://shop.example.com/shoes/trail/runner-9")]
    matcher = CategoryMatcher(UrlMatcher.from_catalog(nodes, products))
    aggregator = HierarchicalAggregator(nodes, products, category_matcher=matcher)
    assert aggregator.product_category["r9"] == "T"

    metrics = {("product", "r9"): _product_metric("r9", gsc_clicks=4)}
    aggregated = aggregator.aggregate(metrics, "acme", DATE)
    assert aggregated["S"].gsc_clicks == 4


def test_rollup_date_range():
    rows = [
        _product_metric("a1", gsc_clicks=10, gsc_impressions=100, gsc_position=2.0),
        IntegratedMetric(
            tenant_id="acme", metrics_date="2026-03-02", entity_type="product",
            entity_id="a1", gsc_clicks=20, gsc_impressions=100, gsc_position=4.0,
        ),
    ]
    totals = rollup_date_range(rows)
    assert totals["days"] == 2
    assert totals["gsc_clicks"] == 30
    assert totals["gsc_position"] == pytest.approx(3.0)
    assert totals["gsc_ctr"] == pytest.approx(0.15)
