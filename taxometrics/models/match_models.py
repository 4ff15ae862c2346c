"""TAXOMETRICS — Match Result Models."""

from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field

from taxometrics.models.raw_models import RawMetricRecord


class EntityType(str, Enum):
    """Kind of catalog entity a record resolved to."""

    NODE = "node"
    PRODUCT = "product"


class MatchStrategy(str, Enum):
    """Every strategy a matcher may report."""

    MANUAL = "manual"
    EXACT_PATH = "exact_path"
    GTIN_EXACT = "gtin_exact"
    ALIAS_MATCH = "alias_match"
    PARTIAL_PATH = "partial_path"
    SKU_FALLBACK = "sku_fallback"
    NAME_MATCH = "name_match"


class MatchResult(BaseModel):
    """A resolved catalog entity for one external identifier."""

    model_config = ConfigDict(frozen=True)

    entity_type: EntityType
    entity_id: str
    confidence: float = Field(ge=0.0, le=1.0)
    strategy: MatchStrategy
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str]:
        return self.entity_type.value, self.entity_id


class MatchedRecord(BaseModel):
    """A raw source record together with the match that accepted it."""

    model_config = ConfigDict(frozen=True)

    record: RawMetricRecord
    match: MatchResult

    @property
    def source(self) -> str:
        return self.record.source
