from __future__ import annotations

import asyncio
from typing import Dict, List, Sequence, Tuple

import pytest
from sqlmodel import SQLModel, create_engine

from taxometrics.connectors.base import CatalogLoader, MetricSources
from taxometrics.core.errors import PersistenceError
from taxometrics.integration.repository import MetricsRepository
from taxometrics.models import catalog_models, integrated_models, raw_models  # noqa: F401
from taxometrics.models.catalog_models import Product, TaxonomyNode
from taxometrics.models.integrated_models import (
    IntegratedMetric,
    IntegrationResult,
    MetricMapping,
    UnmatchedEntry,
    UnmatchedMetric,
)


def make_nodes(tenant_id: str = "acme") -> List[TaxonomyNode]:
    paths = [
        ("n-products", "products", "Products", []),
        ("n-jackets", "products/jackets", "Jackets", ["coats"]),
        ("n-winter", "products/jackets/winter", "Winter Jackets", []),
        ("n-winter-jackets", "products/winter-jackets", "Winter Collection", []),
        ("n-shoes", "products/shoes", "Shoes", ["footwear"]),
    ]
    return [
        TaxonomyNode(
            id=node_id,
            tenant_id=tenant_id,
            path=path,
            title=title,
            depth=len(path.split("/")),
            aliases=aliases,
        )
        for node_id, path, title, aliases in paths
    ]


def make_products(tenant_id: str = "acme") -> List[Product]:
    return [
        Product(
            id="p-parka",
            tenant_id=tenant_id,
            title="Arctic Parka",
            url="https://shop.example.com/products/jackets/winter/arctic-parka",
            gtin="4006381333931",
            sku="PARKA-01",
            category_path="products/jackets/winter",
            price=199.0,
        ),
        Product(
            id="p-runner",
            tenant_id=tenant_id,
            title="Trail Runner",
            url="https://shop.example.com/products/shoes/trail-runner",
            gtin="0075678164125",
            sku="RUN-7",
            category_path="Products > Shoes",
            price=89.0,
        ),
    ]


class FakeCatalogLoader(CatalogLoader):
    def __init__(self, nodes=None, products=None, error: Exception | None = None):
        self.nodes = make_nodes() if nodes is None else nodes
        self.products = make_products() if products is None else products
        self.error = error

    async def load_catalog(self, tenant_id: str):
        if self.error:
            raise self.error
        return list(self.nodes), list(self.products)


class FakeSources(MetricSources):
    def __init__(self, search=(), analytics=(), market=(), failing=(), delay: float = 0.0):
        self.search = list(search)
        self.analytics = list(analytics)
        self.market = list(market)
        self.failing = set(failing)
        self.delay = delay
        self.calls: List[Tuple[str, str, str]] = []

    async def _serve(self, source: str, tenant_id: str, metrics_date: str, rows: list):
        self.calls.append((source, tenant_id, metrics_date))
        if self.delay:
            await asyncio.sleep(self.delay)
        if source in self.failing:
            raise ConnectionError(f"{source} endpoint timed out")
        return [r for r in rows if r.date == metrics_date]

    async def fetch_search_metrics(self, tenant_id, metrics_date):
        return await self._serve("gsc", tenant_id, metrics_date, self.search)

    async def fetch_analytics_metrics(self, tenant_id, metrics_date):
        return await self._serve("ga4", tenant_id, metrics_date, self.analytics)

    async def fetch_market_metrics(self, tenant_id, metrics_date):
        return await self._serve("market", tenant_id, metrics_date, self.market)


class InMemoryRepository(MetricsRepository):
    """Mirrors the SQL repository's upsert and increment rules."""

    def __init__(self, mappings: Sequence[MetricMapping] = (), fail_persist: bool = False):
        self.mappings = list(mappings)
        self.fail_persist = fail_persist
        self.rows: Dict[tuple, IntegratedMetric] = {}
        self.unmatched: Dict[tuple, dict] = {}
        self.runs: List[IntegrationResult] = []

    def load_mappings(self, tenant_id):
        return [m for m in self.mappings if m.tenant_id == tenant_id and m.active]

    def upsert_integrated_metrics(self, tenant_id, metrics_date, rows):
        for row in rows:
            self.rows[row.key] = row
        return len(rows)

    def record_unmatched(self, tenant_id, source, identifier, identifier_type, payload):
        key = (tenant_id, source, identifier)
        entry = self.unmatched.setdefault(
            key,
            {"identifier_type": identifier_type, "payload": payload, "match_attempts": 0},
        )
        entry["match_attempts"] += 1
        entry["payload"] = payload
        return UnmatchedMetric(
            tenant_id=tenant_id,
            source=source,
            identifier=identifier,
            identifier_type=identifier_type,
            match_attempts=entry["match_attempts"],
        )

    def persist_run(self, tenant_id, metrics_date, rows, unmatched: Sequence[UnmatchedEntry]):
        if self.fail_persist:
            raise PersistenceError("Batched write failed: database is locked")
        self.upsert_integrated_metrics(tenant_id, metrics_date, rows)
        for entry in unmatched:
            self.record_unmatched(
                tenant_id, entry.source, entry.identifier, entry.identifier_type, entry.payload
            )

    def save_run(self, result):
        self.runs.append(result)


@pytest.fixture
def engine(tmp_path):
    # File-backed so worker threads share one database
    engine = create_engine(
        f"sqlite:///{tmp_path / 'taxometrics.db'}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def nodes():
    return make_nodes()


@pytest.fixture
def products():
    return make_products()
