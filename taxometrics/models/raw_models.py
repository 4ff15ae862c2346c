"""TAXOMETRICS — Raw Source Models (Immutable).

Two layers:
  * Snapshot tables (``*Row``) holding per-date source data synced by the
    surrounding system.
  * Typed, frozen records (``SearchMetric | AnalyticsMetric | MarketMetric``)
    that the matchers and the combiner consume.
"""

from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field as PydanticField
from sqlmodel import SQLModel, Field


# ─────────────────────────────────────────────
# TYPED RECORDS — discriminated on ``source``
# ─────────────────────────────────────────────


class _RawRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: str = PydanticField(description="YYYY-MM-DD")

    @property
    def identifier(self) -> str:
        raise NotImplementedError

    @property
    def identifier_type(self) -> str:
        raise NotImplementedError


class SearchMetric(_RawRecord):
    """One Search Console row keyed by page URL."""

    source: Literal["gsc"] = "gsc"
    url: str
    clicks: int = 0
    impressions: int = 0
    ctr: float = 0.0
    position: float = 0.0

    @property
    def identifier(self) -> str:
        return self.url

    @property
    def identifier_type(self) -> str:
        return "url"


class AnalyticsMetric(_RawRecord):
    """One GA4 row keyed by page path."""

    source: Literal["ga4"] = "ga4"
    page_path: str
    sessions: int = 0
    users: int = 0
    revenue: float = 0.0
    transactions: int = 0
    conversion_rate: float = 0.0
    engagement_rate: float = 0.0
    bounce_rate: float = 0.0

    @property
    def identifier(self) -> str:
        return self.page_path

    @property
    def identifier_type(self) -> str:
        return "url"


class MarketMetric(_RawRecord):
    """One marketplace pricing row keyed by GTIN (or SKU)."""

    source: Literal["market"] = "market"
    gtin: str
    median_price: Optional[float] = None
    lowest_price: Optional[float] = None
    highest_price: Optional[float] = None
    competitor_count: Optional[int] = None

    @property
    def identifier(self) -> str:
        return self.gtin

    @property
    def identifier_type(self) -> str:
        return "gtin"


RawMetricRecord = Annotated[
    Union[SearchMetric, AnalyticsMetric, MarketMetric],
    PydanticField(discriminator="source"),
]


# ─────────────────────────────────────────────
# SNAPSHOT TABLES — synced per tenant and date
# ─────────────────────────────────────────────


class SearchMetricRow(SQLModel, table=True):
    """Stored Search Console snapshot row."""

    __tablename__ = "search_metrics"

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    date: str = Field(index=True, description="YYYY-MM-DD")
    url: str
    clicks: int = 0
    impressions: int = 0
    ctr: float = 0.0
    position: float = 0.0
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_record(self) -> SearchMetric:
        return SearchMetric(
            url=self.url,
            date=self.date,
            clicks=self.clicks,
            impressions=self.impressions,
            ctr=self.ctr,
            position=self.position,
        )


class AnalyticsMetricRow(SQLModel, table=True):
    """Stored GA4 snapshot row."""

    __tablename__ = "analytics_metrics"

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    date: str = Field(index=True, description="YYYY-MM-DD")
    page_path: str
    sessions: int = 0
    users: int = 0
    revenue: float = 0.0
    transactions: int = 0
    conversion_rate: float = 0.0
    engagement_rate: float = 0.0
    bounce_rate: float = 0.0
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_record(self) -> AnalyticsMetric:
        return AnalyticsMetric(
            page_path=self.page_path,
            date=self.date,
            sessions=self.sessions,
            users=self.users,
            revenue=self.revenue,
            transactions=self.transactions,
            conversion_rate=self.conversion_rate,
            engagement_rate=self.engagement_rate,
            bounce_rate=self.bounce_rate,
        )


class MarketMetricRow(SQLModel, table=True):
    """Stored marketplace snapshot row."""

    __tablename__ = "market_metrics"

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    date: str = Field(index=True, description="YYYY-MM-DD")
    gtin: str
    median_price: Optional[float] = None
    lowest_price: Optional[float] = None
    highest_price: Optional[float] = None
    competitor_count: Optional[int] = None
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_record(self) -> MarketMetric:
        return MarketMetric(
            gtin=self.gtin,
            date=self.date,
            median_price=self.median_price,
            lowest_price=self.lowest_price,
            highest_price=self.highest_price,
            competitor_count=self.competitor_count,
        )
