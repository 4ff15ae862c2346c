"""TAXOMETRICS — Live Google Metric Sources."""

from typing import List

from taxometrics.connectors.base import MetricSources
from taxometrics.connectors.google.client import GoogleAPIClient
from taxometrics.connectors.google.endpoints import GoogleEndpoints
from taxometrics.connectors.google.transformer import (
    transform_analytics_rows,
    transform_merchant_rows,
    transform_search_rows,
)
from taxometrics.models.raw_models import AnalyticsMetric, MarketMetric, SearchMetric


class GoogleMetricSources(MetricSources):
    """``MetricSources`` that query Search Console, GA4 and Merchant Center directly."""

    def __init__(
        self,
        client: GoogleAPIClient | None = None,
        endpoints: GoogleEndpoints | None = None,
    ):
        self.client = client or GoogleAPIClient()
        self.endpoints = endpoints or GoogleEndpoints(self.client)

    async def fetch_search_metrics(
        self, tenant_id: str, metrics_date: str
    ) -> List[SearchMetric]:
        rows = await self.endpoints.fetch_search_analytics(metrics_date)
        return transform_search_rows(rows, metrics_date)

    async def fetch_analytics_metrics(
        self, tenant_id: str, metrics_date: str
    ) -> List[AnalyticsMetric]:
        rows = await self.endpoints.fetch_page_report(metrics_date)
        return transform_analytics_rows(rows, metrics_date)

    async def fetch_market_metrics(
        self, tenant_id: str, metrics_date: str
    ) -> List[MarketMetric]:
        rows = await self.endpoints.fetch_price_competitiveness()
        return transform_merchant_rows(rows, metrics_date)

    async def close(self) -> None:
        await self.client.close()
