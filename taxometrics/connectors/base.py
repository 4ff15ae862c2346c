"""TAXOMETRICS — Abstract Source & Catalog Interfaces."""

from abc import ABC, abstractmethod
from typing import List, Tuple

from taxometrics.models.catalog_models import Product, TaxonomyNode
from taxometrics.models.raw_models import AnalyticsMetric, MarketMetric, SearchMetric


class MetricSources(ABC):
    """The three external metric feeds for one tenant and reporting date.

    Implementations may raise any exception; the orchestrator treats a
    failing feed as empty and keeps going.
    """

    @abstractmethod
    async def fetch_search_metrics(
        self, tenant_id: str, metrics_date: str
    ) -> List[SearchMetric]:
        ...

    @abstractmethod
    async def fetch_analytics_metrics(
        self, tenant_id: str, metrics_date: str
    ) -> List[AnalyticsMetric]:
        ...

    @abstractmethod
    async def fetch_market_metrics(
        self, tenant_id: str, metrics_date: str
    ) -> List[MarketMetric]:
        ...

    async def close(self) -> None:
        """Release any held connections."""


class CatalogLoader(ABC):
    """Read-only access to a tenant's taxonomy and products."""

    @abstractmethod
    async def load_catalog(
        self, tenant_id: str
    ) -> Tuple[List[TaxonomyNode], List[Product]]:
        ...
