"""TAXOMETRICS — Stored Snapshot Sources.

Reads the per-date snapshot tables that the surrounding sync jobs fill, and
the tenant's catalog. Each read uses its own session on a worker thread so
the three feeds really overlap.
"""

import asyncio
from typing import List, Tuple

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from taxometrics.connectors.base import CatalogLoader, MetricSources
from taxometrics.core.logging import get_logger
from taxometrics.models.catalog_models import Product, TaxonomyNode
from taxometrics.models.raw_models import (
    AnalyticsMetric,
    AnalyticsMetricRow,
    MarketMetric,
    MarketMetricRow,
    SearchMetric,
    SearchMetricRow,
)

logger = get_logger("connectors.stored")


class StoredMetricSources(MetricSources):
    """``MetricSources`` backed by the snapshot tables."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def _read(self, model, tenant_id: str, metrics_date: str) -> list:
        with Session(self.engine) as session:
            rows = session.exec(
                select(model)
                .where(model.tenant_id == tenant_id, model.date == metrics_date)
                .order_by(model.id)
            ).all()
            records = [row.to_record() for row in rows]
        logger.info(
            f"Loaded {len(records)} rows from {model.__tablename__}",
            extra={"tenant_id": tenant_id, "metrics_date": metrics_date},
        )
        return records

    async def fetch_search_metrics(
        self, tenant_id: str, metrics_date: str
    ) -> List[SearchMetric]:
        return await asyncio.to_thread(self._read, SearchMetricRow, tenant_id, metrics_date)

    async def fetch_analytics_metrics(
        self, tenant_id: str, metrics_date: str
    ) -> List[AnalyticsMetric]:
        return await asyncio.to_thread(
            self._read, AnalyticsMetricRow, tenant_id, metrics_date
        )

    async def fetch_market_metrics(
        self, tenant_id: str, metrics_date: str
    ) -> List[MarketMetric]:
        return await asyncio.to_thread(self._read, MarketMetricRow, tenant_id, metrics_date)


class DatabaseCatalogLoader(CatalogLoader):
    """Loads taxonomy nodes and products for one tenant."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def _load(self, tenant_id: str) -> Tuple[List[TaxonomyNode], List[Product]]:
        with Session(self.engine, expire_on_commit=False) as session:
            nodes = session.exec(
                select(TaxonomyNode)
                .where(TaxonomyNode.tenant_id == tenant_id)
                .order_by(TaxonomyNode.path)
            ).all()
            products = session.exec(
                select(Product)
                .where(Product.tenant_id == tenant_id)
                .order_by(Product.id)
            ).all()
            session.expunge_all()
        return list(nodes), list(products)

    async def load_catalog(
        self, tenant_id: str
    ) -> Tuple[List[TaxonomyNode], List[Product]]:
        return await asyncio.to_thread(self._load, tenant_id)
