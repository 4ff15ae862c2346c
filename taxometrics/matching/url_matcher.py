"""TAXOMETRICS — URL Matcher.

Resolves page URLs and paths to taxonomy nodes or products, trying
progressively weaker strategies:

  exact_path (1.0) → partial_path (0.85) → alias_match (0.8) → name_match (0.75)

Exact hits return immediately. The three weaker strategies each propose at
most one candidate and the ``ConfidenceScorer`` picks between them.
"""

from collections import defaultdict
from types import MappingProxyType
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from taxometrics.core.logging import get_logger
from taxometrics.matching.confidence import ConfidenceScorer
from taxometrics.matching.normalizers import (
    normalize_name,
    normalize_url_path,
    path_segments,
)
from taxometrics.models.catalog_models import Product, TaxonomyNode
from taxometrics.models.match_models import EntityType, MatchResult, MatchStrategy

logger = get_logger("matching.url")

EXACT_CONFIDENCE = 1.0
PARTIAL_CONFIDENCE = 0.85
ALIAS_CONFIDENCE = 0.8
NAME_CONFIDENCE = 0.75

# (depth, path, node_id)
_NodeRef = Tuple[int, str, str]


def _deepest_first(refs: List[_NodeRef]) -> Tuple[_NodeRef, ...]:
    return tuple(sorted(set(refs), key=lambda r: (-r[0], r[1], r[2])))


class CatalogPathIndex:
    """Immutable path, segment, title and alias lookups for one catalog snapshot."""

    def __init__(
        self,
        node_paths: Dict[str, str],
        product_paths: Dict[str, str],
        by_first_segment: Dict[str, Tuple[Tuple[Tuple[str, ...], str], ...]],
        titles: Dict[str, Tuple[_NodeRef, ...]],
        aliases: Dict[str, Tuple[_NodeRef, ...]],
    ):
        self.node_paths = MappingProxyType(node_paths)
        self.product_paths = MappingProxyType(product_paths)
        self.by_first_segment = MappingProxyType(by_first_segment)
        self.titles = MappingProxyType(titles)
        self.aliases = MappingProxyType(aliases)

    @classmethod
    def build(
        cls, nodes: Iterable[TaxonomyNode], products: Iterable[Product] = ()
    ) -> "CatalogPathIndex":
        node_paths: Dict[str, str] = {}
        product_paths: Dict[str, str] = {}
        segment_lists: Dict[str, List[Tuple[Tuple[str, ...], str]]] = defaultdict(list)
        titles: Dict[str, List[_NodeRef]] = defaultdict(list)
        aliases: Dict[str, List[_NodeRef]] = defaultdict(list)

        node_count = 0
        for node in nodes:
            node_count += 1
            segments = tuple(path_segments(node.path))
            if segments:
                path = "/".join(segments)
                node_paths.setdefault(path, node.id)
                segment_lists[segments[0]].append((segments, node.id))
            else:
                path = ""
            ref = (len(segments), path, node.id)

            url_path = normalize_url_path(node.url)
            if url_path:
                node_paths.setdefault(url_path, node.id)

            title = normalize_name(node.title)
            if title:
                titles[title].append(ref)
            for alias in node.aliases or []:
                alias_key = normalize_name(alias)
                if alias_key:
                    aliases[alias_key].append(ref)

        for product in products:
            url_path = normalize_url_path(product.url)
            if url_path:
                product_paths.setdefault(url_path, product.id)

        by_first_segment = {
            first: tuple(
                sorted(set(entries), key=lambda e: (-len(e[0]), "/".join(e[0]), e[1]))
            )
            for first, entries in segment_lists.items()
        }
        logger.info(
            f"Path index built: {node_count} nodes, {len(product_paths)} product URLs"
        )
        return cls(
            node_paths,
            product_paths,
            by_first_segment,
            {k: _deepest_first(v) for k, v in titles.items()},
            {k: _deepest_first(v) for k, v in aliases.items()},
        )


class UrlMatcher:
    """Matches URLs and paths against a prebuilt ``CatalogPathIndex``."""

    def __init__(
        self, index: CatalogPathIndex, scorer: Optional[ConfidenceScorer] = None
    ):
        self.index = index
        self.scorer = scorer or ConfidenceScorer()

    @classmethod
    def from_catalog(
        cls,
        nodes: Iterable[TaxonomyNode],
        products: Iterable[Product] = (),
        scorer: Optional[ConfidenceScorer] = None,
    ) -> "UrlMatcher":
        return cls(CatalogPathIndex.build(nodes, products), scorer)

    def match(self, url: Optional[str]) -> Optional[MatchResult]:
        return self.match_segments(path_segments(url))

    def match_batch(self, urls: Sequence[Optional[str]]) -> List[Optional[MatchResult]]:
        """Resolve many URLs against the same index, in input order."""
        return [self.match(url) for url in urls]

    def match_segments(
        self, segments: Sequence[str], include_products: bool = True
    ) -> Optional[MatchResult]:
        """Run the strategies in trust order; ``include_products=False`` keeps results to nodes."""
        if not segments:
            return None
        segments = list(segments)
        normalized = "/".join(segments)

        exact = self._exact(normalized, include_products)
        if exact:
            return exact

        candidates = (
            self._partial(segments),
            self._alias(segments),
            self._name(segments),
        )
        return self.scorer.best(candidates)

    # ── Strategies ──

    def _exact(self, normalized: str, include_products: bool = True) -> Optional[MatchResult]:
        node_id = self.index.node_paths.get(normalized)
        if node_id:
            return self._result(
                EntityType.NODE, node_id, EXACT_CONFIDENCE, MatchStrategy.EXACT_PATH, normalized
            )
        if not include_products:
            return None
        product_id = self.index.product_paths.get(normalized)
        if product_id:
            return self._result(
                EntityType.PRODUCT,
                product_id,
                EXACT_CONFIDENCE,
                MatchStrategy.EXACT_PATH,
                normalized,
            )
        return None

    def _partial(self, segments: List[str]) -> Optional[MatchResult]:
        """Deepest node whose segments occur as a contiguous run in the input."""
        best: Optional[Tuple[int, int, str, str]] = None  # depth, end, path, id
        for start, segment in enumerate(segments):
            for node_segments, node_id in self.index.by_first_segment.get(segment, ()):
                end = start + len(node_segments)
                if end > len(segments):
                    continue
                if tuple(segments[start:end]) != node_segments:
                    continue
                path = "/".join(node_segments)
                candidate = (len(node_segments), end, path, node_id)
                if best is None or self._partial_key(candidate) < self._partial_key(best):
                    best = candidate
        if best is None:
            return None
        depth, _, path, node_id = best
        return self._result(
            EntityType.NODE,
            node_id,
            PARTIAL_CONFIDENCE,
            MatchStrategy.PARTIAL_PATH,
            "/".join(segments),
            matched_path=path,
            depth=depth,
        )

    @staticmethod
    def _partial_key(candidate: Tuple[int, int, str, str]) -> tuple:
        depth, end, path, node_id = candidate
        # Deepest first, then the run ending latest in the URL
        return (-depth, -end, path, node_id)

    def _name(self, segments: List[str]) -> Optional[MatchResult]:
        refs = self.index.titles.get(normalize_name(segments[-1]))
        if not refs:
            return None
        _, path, node_id = refs[0]
        return self._result(
            EntityType.NODE,
            node_id,
            NAME_CONFIDENCE,
            MatchStrategy.NAME_MATCH,
            "/".join(segments),
            matched_path=path,
        )

    def _alias(self, segments: List[str]) -> Optional[MatchResult]:
        for key in (normalize_name(segments[-1]), normalize_name("".join(segments))):
            refs = self.index.aliases.get(key) if key else None
            if refs:
                _, path, node_id = refs[0]
                return self._result(
                    EntityType.NODE,
                    node_id,
                    ALIAS_CONFIDENCE,
                    MatchStrategy.ALIAS_MATCH,
                    "/".join(segments),
                    matched_path=path,
                )
        return None

    @staticmethod
    def _result(
        entity_type: EntityType,
        entity_id: str,
        confidence: float,
        strategy: MatchStrategy,
        normalized: str,
        **extra,
    ) -> MatchResult:
        return MatchResult(
            entity_type=entity_type,
            entity_id=entity_id,
            confidence=confidence,
            strategy=strategy,
            metadata={"normalized_path": normalized, **extra},
        )
