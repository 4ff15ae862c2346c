"""TAXOMETRICS — Manual Mapping Index.

Reviewer-supplied overrides take precedence over every automatic strategy.
"""

from types import MappingProxyType
from typing import Dict, Iterable, Optional, Tuple

from taxometrics.matching.confidence import normalize_confidence
from taxometrics.matching.normalizers import normalize_gtin, normalize_url_path
from taxometrics.models.integrated_models import MetricMapping
from taxometrics.models.match_models import EntityType, MatchResult, MatchStrategy


def mapping_key(identifier_type: str, identifier: Optional[str]) -> Optional[str]:
    """Canonical lookup key for an identifier of the given type."""
    if not identifier:
        return None
    if identifier_type == "gtin":
        return normalize_gtin(identifier) or identifier.strip().lower()
    return normalize_url_path(identifier) or None


class MappingIndex:
    def __init__(self, entries: Dict[Tuple[str, str], MatchResult]):
        self.entries = MappingProxyType(entries)

    @classmethod
    def build(cls, mappings: Iterable[MetricMapping]) -> "MappingIndex":
        entries: Dict[Tuple[str, str], MatchResult] = {}
        for mapping in mappings:
            if not mapping.active:
                continue
            key = mapping_key(mapping.source_type, mapping.source_identifier)
            if key is None:
                continue
            entries[(mapping.source_type, key)] = MatchResult(
                entity_type=EntityType(mapping.entity_type),
                entity_id=mapping.entity_id,
                confidence=normalize_confidence(mapping.confidence),
                strategy=MatchStrategy.MANUAL,
                metadata={"mapping_id": mapping.id},
            )
        return cls(entries)

    def match(self, identifier_type: str, identifier: Optional[str]) -> Optional[MatchResult]:
        key = mapping_key(identifier_type, identifier)
        if key is None:
            return None
        return self.entries.get((identifier_type, key))

    def __len__(self) -> int:
        return len(self.entries)
