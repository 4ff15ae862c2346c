"""TAXOMETRICS — Record Resolver.

Routes each typed source record to the right matcher:

  manual mapping → GTIN matcher (market) | URL matcher (gsc, ga4)

All indexes are built once per run and only read afterwards, so one resolver
can be shared by every worker thread.
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence

from taxometrics.matching.category_matcher import CategoryMatcher
from taxometrics.matching.confidence import ConfidenceScorer
from taxometrics.matching.gtin_matcher import GtinIndex, GtinMatcher
from taxometrics.matching.manual_mappings import MappingIndex
from taxometrics.matching.url_matcher import CatalogPathIndex, UrlMatcher
from taxometrics.models.catalog_models import Product, TaxonomyNode
from taxometrics.models.integrated_models import MetricMapping
from taxometrics.models.match_models import MatchResult
from taxometrics.models.raw_models import RawMetricRecord


class RecordResolver:
    def __init__(
        self,
        gtin_matcher: GtinMatcher,
        url_matcher: UrlMatcher,
        mappings: Optional[MappingIndex] = None,
        scorer: Optional[ConfidenceScorer] = None,
    ):
        self.gtin_matcher = gtin_matcher
        self.url_matcher = url_matcher
        self.mappings = mappings or MappingIndex({})
        self.scorer = scorer or ConfidenceScorer()
        self.category_matcher = CategoryMatcher(url_matcher)

    @classmethod
    def from_catalog(
        cls,
        nodes: Sequence[TaxonomyNode],
        products: Sequence[Product],
        mappings: Iterable[MetricMapping] = (),
        scorer: Optional[ConfidenceScorer] = None,
    ) -> "RecordResolver":
        scorer = scorer or ConfidenceScorer()
        return cls(
            GtinMatcher(GtinIndex.build(products)),
            UrlMatcher(CatalogPathIndex.build(nodes, products), scorer),
            MappingIndex.build(mappings),
            scorer,
        )

    def resolve(self, record: RawMetricRecord) -> Optional[MatchResult]:
        """Best candidate for one record, or None. Acceptance is the caller's call."""
        manual = self.mappings.match(record.identifier_type, record.identifier)
        if manual:
            return manual
        if record.identifier_type == "gtin":
            return self.gtin_matcher.match(record.identifier)
        return self.url_matcher.match(record.identifier)

    def resolve_batch(
        self, records: Sequence[RawMetricRecord]
    ) -> List[Optional[MatchResult]]:
        """Same answers as ``resolve`` per record, one matcher pass per identifier type."""
        results: List[Optional[MatchResult]] = [
            self.mappings.match(record.identifier_type, record.identifier)
            for record in records
        ]
        pending: Dict[str, List[int]] = defaultdict(list)
        for position, (record, manual) in enumerate(zip(records, results)):
            if manual is None:
                pending[record.identifier_type].append(position)

        for identifier_type, positions in pending.items():
            matcher = self.gtin_matcher if identifier_type == "gtin" else self.url_matcher
            found = matcher.match_batch([records[p].identifier for p in positions])
            for position, match in zip(positions, found):
                results[position] = match
        return results
