from __future__ import annotations

import asyncio

from sqlmodel import Session, select

from conftest import FakeCatalogLoader, FakeSources, InMemoryRepository, make_nodes, make_products
from taxometrics.connectors.stored import DatabaseCatalogLoader, StoredMetricSources
from taxometrics.integration.pipeline import IntegrationOrchestrator, RunGuard
from taxometrics.integration.repository import SQLMetricsRepository
from taxometrics.matching.confidence import ConfidenceScorer
from taxometrics.models.integrated_models import (
    IntegratedMetric,
    IntegrationRun,
    MetricMapping,
    RunState,
    UnmatchedMetric,
)
from taxometrics.models.raw_models import (
    AnalyticsMetric,
    MarketMetric,
    MarketMetricRow,
    SearchMetric,
    SearchMetricRow,
)

DATE = "2026-03-01"


def _sources(**overrides) -> FakeSources:
    data = dict(
        search=[
            SearchMetric(date=DATE, url="https://shop.example.com/products/Winter-Jackets/", clicks=5, impressions=40, position=3.0),
            SearchMetric(date=DATE, url="https://shop.example.com/products/jackets/winter/arctic-parka", clicks=12, impressions=200, position=2.5),
            SearchMetric(date=DATE, url="https://shop.example.com/blog/how-to-wax-skis", clicks=3, impressions=90),
        ],
        analytics=[
            AnalyticsMetric(date=DATE, page_path="/products/shoes/trail-runner", sessions=50, transactions=2, revenue=178.0),
        ],
        market=[
            MarketMetric(date=DATE, gtin="4006381333931", median_price=210.0, lowest_price=180.0, highest_price=260.0, competitor_count=5),
            MarketMetric(date=DATE, gtin="012345678905", median_price=19.99),
        ],
    )
    data.update(overrides)
    return FakeSources(**data)


def _orchestrator(sources=None, repository=None, catalog=None, **kwargs) -> IntegrationOrchestrator:
    return IntegrationOrchestrator(
        catalog_loader=catalog or FakeCatalogLoader(),
        sources=sources or _sources(),
        repository=repository or InMemoryRepository(),
        scorer=kwargs.pop("scorer", ConfidenceScorer(threshold=0.7)),
        max_workers=2,
        chunk_size=2,
        **kwargs,
    )


def test_full_run_matches_combines_and_aggregates():
    repo = InMemoryRepository()
    result = asyncio.run(_orchestrator(repository=repo).run("acme", DATE))

    assert result.success is True
    assert result.state == RunState.DONE
    assert result.errors == []
    assert result.stats.total_processed == 6
    assert result.stats.matched == 4
    assert result.stats.unmatched == 2
    assert result.duration_ms >= 0

    category = repo.rows[("node", "n-winter-jackets", DATE, "acme")]
    assert category.gsc_clicks == 5
    assert category.gsc_match_confidence == 1.0

    parka = repo.rows[("product", "p-parka", DATE, "acme")]
    assert parka.gsc_clicks == 12
    assert parka.market_price_median == 210.0
    assert parka.price_position == "below"
    assert parka.ga4_match_confidence is None

    winter = repo.rows[("node", "n-winter", DATE, "acme")]
    assert winter.is_aggregated is True
    assert winter.gsc_clicks == 12
    root = repo.rows[("node", "n-products", DATE, "acme")]
    assert root.gsc_clicks == 17
    assert root.ga4_sessions == 50
    # n-winter-jackets only has its own traffic, so it keeps a direct row
    assert result.stats.aggregated == 4
    assert category.is_aggregated is False

    assert repo.runs == [result]


def test_below_threshold_identifiers_only_reach_unmatched():
    # Title-only hits score 0.75, under this tenant's threshold
    sources = _sources(
        search=[SearchMetric(date=DATE, url="/sale/winter-collection", clicks=4)],
        analytics=[],
        market=[],
    )
    repo = InMemoryRepository()
    result = asyncio.run(
        _orchestrator(sources=sources, repository=repo, scorer=ConfidenceScorer(threshold=0.8)).run("acme", DATE)
    )

    assert result.success is True
    assert result.stats.unmatched == 1
    assert repo.rows == {}
    assert ("acme", "gsc", "/sale/winter-collection") in repo.unmatched


def test_failing_source_is_treated_as_empty():
    repo = InMemoryRepository()
    result = asyncio.run(
        _orchestrator(sources=_sources(failing={"ga4"}), repository=repo).run("acme", DATE)
    )
    assert result.success is True
    assert len(result.errors) == 1
    assert "ga4 source unavailable" in result.errors[0]
    assert result.stats.total_processed == 5
    assert ("product", "p-runner", DATE, "acme") not in repo.rows


def test_sources_are_fetched_for_requested_tenant_and_date():
    sources = _sources()
    asyncio.run(_orchestrator(sources=sources).run("acme", DATE))
    assert sorted(sources.calls) == [("ga4", "acme", DATE), ("gsc", "acme", DATE), ("market", "acme", DATE)]


def test_empty_catalog_fails_without_writes():
    repo = InMemoryRepository()
    sources = _sources()
    result = asyncio.run(
        _orchestrator(sources=sources, repository=repo, catalog=FakeCatalogLoader(products=[])).run("acme", DATE)
    )
    assert result.success is False
    assert result.state == RunState.FAILED
    assert "0 products" in result.errors[0]
    assert sources.calls == []
    assert repo.rows == {} and repo.unmatched == {}


def test_catalog_loader_error_fails_run():
    result = asyncio.run(
        _orchestrator(catalog=FakeCatalogLoader(error=RuntimeError("catalog service down"))).run("acme", DATE)
    )
    assert result.success is False
    assert "catalog service down" in result.errors[0]


def test_persistence_failure_returns_partial_stats():
    repo = InMemoryRepository(fail_persist=True)
    result = asyncio.run(_orchestrator(repository=repo).run("acme", DATE))
    assert result.success is False
    assert result.state == RunState.FAILED
    assert result.stats.total_processed == 6
    assert result.stats.matched == 4
    assert any("Batched write failed" in e for e in result.errors)
    assert repo.rows == {}
    assert repo.runs[0].success is False


def test_matching_failure_routes_single_record_to_unmatched(monkeypatch):
    from taxometrics.matching.resolver import RecordResolver

    original = RecordResolver.resolve
    original_batch = RecordResolver.resolve_batch

    def flaky(self, record):
        if record.identifier.endswith("arctic-parka"):
            raise RuntimeError("index corrupted")
        return original(self, record)

    def flaky_batch(self, records):
        if any(r.identifier.endswith("arctic-parka") for r in records):
            raise RuntimeError("index corrupted")
        return original_batch(self, records)

    monkeypatch.setattr(RecordResolver, "resolve", flaky)
    monkeypatch.setattr(RecordResolver, "resolve_batch", flaky_batch)
    repo = InMemoryRepository()
    result = asyncio.run(_orchestrator(repository=repo).run("acme", DATE))

    assert result.success is True
    key = ("acme", "gsc", "https://shop.example.com/products/jackets/winter/arctic-parka")
    assert repo.unmatched[key]["match_attempts"] == 1
    assert repo.rows[("node", "n-winter-jackets", DATE, "acme")].gsc_clicks == 5


def test_manual_mapping_overrides_automatic_matching():
    mapping = MetricMapping(
        tenant_id="acme",
        source_identifier="https://shop.example.com/blog/how-to-wax-skis",
        source_type="url",
        entity_type="node",
        entity_id="n-shoes",
        confidence=95,
    )
    repo = InMemoryRepository(mappings=[mapping])
    result = asyncio.run(_orchestrator(repository=repo).run("acme", DATE))

    assert result.stats.unmatched == 1
    shoes = repo.rows[("node", "n-shoes", DATE, "acme")]
    assert shoes.gsc_clicks == 3
    assert shoes.is_aggregated is True


def test_same_key_runs_are_serialized():
    orchestrator = _orchestrator(sources=_sources(), lock_timeout=5.0)
    orchestrator.sources.delay = 0.05

    async def both():
        return await asyncio.gather(
            orchestrator.run("acme", DATE), orchestrator.run("acme", DATE)
        )

    first, second = asyncio.run(both())
    assert first.success and second.success
    assert orchestrator.guard._locks == {}


def test_same_key_run_times_out_while_another_holds_the_guard():
    guard = RunGuard()
    slow = _orchestrator(sources=_sources(), guard=guard, lock_timeout=5.0)
    slow.sources.delay = 0.3
    impatient = _orchestrator(guard=guard, lock_timeout=0.01)
    other_date = _orchestrator(guard=guard, lock_timeout=0.01)

    async def race():
        return await asyncio.gather(
            slow.run("acme", DATE),
            impatient.run("acme", DATE),
            other_date.run("acme", "2026-03-02"),
        )

    held, blocked, independent = asyncio.run(race())
    assert held.success is True
    assert blocked.success is False
    assert "still in progress" in blocked.errors[0]
    assert independent.success is True


def _seed_database(engine):
    with Session(engine) as session:
        for node in make_nodes():
            session.add(node)
        for product in make_products():
            session.add(product)
        session.add(
            SearchMetricRow(
                tenant_id="acme",
                date=DATE,
                url="https://shop.example.com/products/Winter-Jackets/",
                clicks=5,
                impressions=40,
                position=3.0,
            )
        )
        session.add(MarketMetricRow(tenant_id="acme", date=DATE, gtin="012345678905", median_price=19.99))
        session.commit()


def _db_orchestrator(engine) -> IntegrationOrchestrator:
    return IntegrationOrchestrator(
        catalog_loader=DatabaseCatalogLoader(engine),
        sources=StoredMetricSources(engine),
        repository=SQLMetricsRepository(engine),
        max_workers=2,
    )


def test_end_to_end_rerun_is_idempotent_and_counts_attempts(engine):
    _seed_database(engine)
    orchestrator = _db_orchestrator(engine)

    first = asyncio.run(orchestrator.run("acme", DATE))
    with Session(engine) as session:
        rows_after_first = len(session.exec(select(IntegratedMetric)).all())
        category = session.exec(
            select(IntegratedMetric).where(IntegratedMetric.entity_id == "n-winter-jackets")
        ).one()
        unmatched = session.exec(select(UnmatchedMetric)).one()
        assert category.gsc_clicks == 5
        assert category.gsc_match_confidence == 1.0
        assert unmatched.source == "market"
        assert unmatched.identifier_type == "gtin"
        assert unmatched.match_attempts == 1

    second = asyncio.run(orchestrator.run("acme", DATE))
    with Session(engine) as session:
        assert len(session.exec(select(IntegratedMetric)).all()) == rows_after_first
        assert session.exec(select(UnmatchedMetric)).one().match_attempts == 2
        assert len(session.exec(select(IntegrationRun)).all()) == 2

    assert first.success and second.success
    assert first.stats == second.stats
