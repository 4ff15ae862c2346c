from __future__ import annotations

import random

from taxometrics.matching.resolver import RecordResolver
from taxometrics.models.integrated_models import MetricMapping
from taxometrics.models.match_models import MatchStrategy
from taxometrics.models.raw_models import AnalyticsMetric, MarketMetric, SearchMetric

DATE = "2026-03-01"


def _records():
    return [
        SearchMetric(date=DATE, url="https://shop.example.com/products/Winter-Jackets/"),
        SearchMetric(date=DATE, url="https://shop.example.com/blog/how-to-wax-skis"),
        AnalyticsMetric(date=DATE, page_path="/products/shoes/trail-runner"),
        MarketMetric(date=DATE, gtin="4006381333931"),
        MarketMetric(date=DATE, gtin="012345678905"),
        MarketMetric(date=DATE, gtin="RUN-7"),
    ]


def _resolver(nodes, products):
    mapping = MetricMapping(
        tenant_id="acme",
        source_identifier="/blog/how-to-wax-skis",
        source_type="url",
        entity_type="node",
        entity_id="n-shoes",
        confidence=0.9,
    )
    return RecordResolver.from_catalog(nodes, products, [mapping])


def test_batch_resolution_equals_single_resolution_in_any_order(nodes, products):
    resolver = _resolver(nodes, products)
    records = _records()
    expected = [resolver.resolve(r) for r in records]

    for seed in (1, 2, 3):
        order = list(range(len(records)))
        random.Random(seed).shuffle(order)
        batch = resolver.resolve_batch([records[i] for i in order])
        assert batch == [expected[i] for i in order]


def test_batch_routes_each_record_to_its_matcher(nodes, products):
    results = _resolver(nodes, products).resolve_batch(_records())
    assert [r.entity_id if r else None for r in results] == [
        "n-winter-jackets",
        "n-shoes",
        "p-runner",
        "p-parka",
        None,
        "p-runner",
    ]
    assert results[1].strategy == MatchStrategy.MANUAL
    assert results[5].strategy == MatchStrategy.SKU_FALLBACK
