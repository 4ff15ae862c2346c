"""TAXOMETRICS — Google Reporting Endpoints.

Fetch functions for the three report APIs. Each returns the raw row list for
one reporting date; ``transformer`` turns rows into typed records.
"""

from typing import Any, Dict, List
from urllib.parse import quote

from taxometrics.config import settings
from taxometrics.connectors.google.client import GoogleAPIClient
from taxometrics.core.logging import get_logger

logger = get_logger("google.endpoints")

GSC_ROW_LIMIT = 25000
GA4_ROW_LIMIT = 10000
MERCHANT_PAGE_SIZE = 1000

GA4_METRICS = (
    "sessions",
    "totalUsers",
    "purchaseRevenue",
    "transactions",
    "engagementRate",
    "bounceRate",
)

MERCHANT_QUERY = (
    "SELECT product_view.offer_id, product_view.gtin, product_view.price_micros, "
    "price_competitiveness.benchmark_price_micros "
    "FROM PriceCompetitivenessProductView"
)


class GoogleEndpoints:
    """Raw report fetches for one configured property set."""

    def __init__(
        self,
        client: GoogleAPIClient,
        site_url: str | None = None,
        property_id: str | None = None,
        merchant_id: str | None = None,
    ):
        self.client = client
        self.site_url = site_url or settings.gsc_site_url
        self.property_id = property_id or settings.ga4_property_id
        self.merchant_id = merchant_id or settings.merchant_id

    # ── Search Console ──

    async def fetch_search_analytics(self, metrics_date: str) -> List[Dict[str, Any]]:
        """Page-level clicks, impressions, CTR and position for one day."""
        url = (
            f"{settings.gsc_base_url}/sites/"
            f"{quote(self.site_url, safe='')}/searchAnalytics/query"
        )
        body = {
            "startDate": metrics_date,
            "endDate": metrics_date,
            "dimensions": ["page"],
            "rowLimit": GSC_ROW_LIMIT,
            "startRow": 0,
        }
        rows = await self.client.paginated_post(url, body, "rows", GSC_ROW_LIMIT)
        logger.info(f"Fetched {len(rows)} Search Console rows", extra={"source": "gsc"})
        return rows

    # ── GA4 Data API ──

    async def fetch_page_report(self, metrics_date: str) -> List[Dict[str, Any]]:
        """Per-page sessions and ecommerce metrics for one day."""
        url = f"{settings.ga4_base_url}/properties/{self.property_id}:runReport"
        body = {
            "dateRanges": [{"startDate": metrics_date, "endDate": metrics_date}],
            "dimensions": [{"name": "pagePath"}],
            "metrics": [{"name": name} for name in GA4_METRICS],
            "limit": GA4_ROW_LIMIT,
            "offset": 0,
        }
        rows = await self.client.paginated_post(url, body, "rows", GA4_ROW_LIMIT)
        logger.info(f"Fetched {len(rows)} GA4 rows", extra={"source": "ga4"})
        return rows

    # ── Merchant Center ──

    async def fetch_price_competitiveness(self) -> List[Dict[str, Any]]:
        """Benchmark prices per offer from the Merchant Center reports API."""
        url = f"{settings.merchant_base_url}/{self.merchant_id}/reports/search"
        body = {"query": MERCHANT_QUERY, "pageSize": MERCHANT_PAGE_SIZE}
        rows = await self.client.paginated_post(
            url, body, "results", MERCHANT_PAGE_SIZE, style="token"
        )
        logger.info(f"Fetched {len(rows)} Merchant Center rows", extra={"source": "market"})
        return rows
