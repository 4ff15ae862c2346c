"""TAXOMETRICS — GTIN Matcher.

Resolves GTIN / EAN / UPC codes (with SKU / MPN fallback) to products using
an immutable index built once per run.
"""

import re
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from taxometrics.core.errors import GtinValidationError
from taxometrics.core.logging import get_logger
from taxometrics.matching.normalizers import normalize_gtin
from taxometrics.models.catalog_models import Product
from taxometrics.models.match_models import EntityType, MatchResult, MatchStrategy

logger = get_logger("matching.gtin")

GTIN_LENGTHS = (8, 12, 13, 14)

EXACT_CONFIDENCE = 1.0
VARIANT_CONFIDENCE = 0.95
SKU_CONFIDENCE = 0.8
# Applied to variant hits when the incoming code fails its check digit
INVALID_CHECKSUM_FACTOR = 0.9

_GTIN_PATTERNS = (
    re.compile(r"\b(\d{14})\b"),
    re.compile(r"\b(\d{13})\b"),
    re.compile(r"\b(\d{12})\b"),
    re.compile(r"\b(\d{8})\b"),
    re.compile(r"(?:gtin|ean|upc)[:\s#-]*(\d+)", re.IGNORECASE),
    re.compile(r"(?:barcode|code)[:\s#-]*(\d+)", re.IGNORECASE),
)


def validate_gtin(value: Optional[str]) -> bool:
    """Check length and the 3×/1× weighted mod-10 check digit."""
    normalized = normalize_gtin(value)
    if not normalized or len(normalized) not in GTIN_LENGTHS:
        return False

    digits = [int(d) for d in normalized]
    total = 0
    for i, digit in enumerate(digits[:-1]):
        # Weight 3 lands on the digit immediately left of the check digit
        weight = 3 if (len(digits) - i) % 2 == 0 else 1
        total += digit * weight
    check_digit = (10 - (total % 10)) % 10
    return check_digit == digits[-1]


def require_gtin(value: Optional[str]) -> str:
    """Normalize or raise ``GtinValidationError``."""
    normalized = normalize_gtin(value)
    if normalized is None:
        raise GtinValidationError(f"not a GTIN: {value!r}")
    return normalized


def gtin_variants(gtin: str) -> List[str]:
    """Equivalent spellings: leading zeros stripped or padded, UPC-A → EAN-13."""
    variants: List[str] = []

    stripped = gtin.lstrip("0")
    if stripped and stripped != gtin:
        variants.append(stripped)

    for length in GTIN_LENGTHS:
        if len(gtin) < length:
            variants.append(gtin.zfill(length))
        if stripped and len(stripped) < length and stripped.zfill(length) != gtin:
            variants.append(stripped.zfill(length))

    if len(gtin) == 12:
        variants.append("0" + gtin)

    seen = set()
    unique = []
    for v in variants:
        if v != gtin and v not in seen:
            seen.add(v)
            unique.append(v)
    return unique


def extract_gtin(text: Optional[str]) -> Optional[str]:
    """Find the first checksum-valid GTIN embedded in free text."""
    if not text:
        return None
    for pattern in _GTIN_PATTERNS:
        for found in pattern.findall(text):
            gtin = normalize_gtin(found)
            if gtin and validate_gtin(gtin):
                return gtin
    return None


class GtinIndex:
    """Read-only lookup tables for one catalog snapshot."""

    def __init__(
        self,
        exact: Mapping[str, str],
        variants: Mapping[str, str],
        skus: Mapping[str, str],
    ):
        self.exact = MappingProxyType(dict(exact))
        self.variants = MappingProxyType(dict(variants))
        self.skus = MappingProxyType(dict(skus))

    @classmethod
    def build(cls, products: Iterable[Product]) -> "GtinIndex":
        exact: Dict[str, str] = {}
        variants: Dict[str, str] = {}
        skus: Dict[str, str] = {}

        for product in products:
            normalized = normalize_gtin(product.gtin)
            if normalized:
                exact.setdefault(normalized, product.id)
                for variant in gtin_variants(normalized):
                    variants.setdefault(variant, product.id)
            for code in (product.sku, product.mpn):
                if code and code.strip():
                    skus.setdefault(code.strip().lower(), product.id)

        logger.info(
            f"GTIN index built: {len(exact)} codes, {len(variants)} variants, {len(skus)} SKU/MPN"
        )
        return cls(exact, variants, skus)

    def __len__(self) -> int:
        return len(self.exact)


class GtinMatcher:
    """Matches identifiers against a prebuilt ``GtinIndex``."""

    def __init__(self, index: GtinIndex):
        self.index = index

    @classmethod
    def from_products(cls, products: Iterable[Product]) -> "GtinMatcher":
        return cls(GtinIndex.build(products))

    def match(self, identifier: Optional[str]) -> Optional[MatchResult]:
        if not identifier:
            return None

        try:
            gtin = require_gtin(identifier)
        except GtinValidationError:
            gtin = None

        if gtin:
            found = self._match_gtin(gtin)
            if found:
                return found

        found = self._match_sku(identifier, gtin)
        if found:
            return found

        # Feeds sometimes pack several codes or a label into one field
        extracted = extract_gtin(identifier)
        if extracted and extracted != gtin:
            found = self._match_gtin(extracted)
            if found:
                return found.model_copy(
                    update={"metadata": {**found.metadata, "extracted_from": identifier}}
                )
        return None

    def match_batch(
        self, identifiers: Sequence[Optional[str]]
    ) -> List[Optional[MatchResult]]:
        """Resolve many identifiers against the same index, in input order."""
        return [self.match(identifier) for identifier in identifiers]

    # ── Strategies ──

    def _match_gtin(self, gtin: str) -> Optional[MatchResult]:
        product_id = self.index.exact.get(gtin)
        if product_id:
            return MatchResult(
                entity_type=EntityType.PRODUCT,
                entity_id=product_id,
                confidence=EXACT_CONFIDENCE,
                strategy=MatchStrategy.GTIN_EXACT,
                metadata={"gtin": gtin},
            )

        product_id, matched_code = self._lookup_variant(gtin)
        if product_id:
            # Leading zeros never change the check digit, so judge the padded form
            checksum_valid = validate_gtin(gtin.zfill(GTIN_LENGTHS[-1]))
            confidence = VARIANT_CONFIDENCE
            if not checksum_valid:
                confidence = round(confidence * INVALID_CHECKSUM_FACTOR, 4)
            return MatchResult(
                entity_type=EntityType.PRODUCT,
                entity_id=product_id,
                confidence=confidence,
                strategy=MatchStrategy.GTIN_EXACT,
                metadata={
                    "gtin": matched_code,
                    "original_gtin": gtin,
                    "checksum_valid": checksum_valid,
                },
            )
        return None

    def _lookup_variant(self, gtin: str) -> tuple[Optional[str], Optional[str]]:
        if gtin in self.index.variants:
            return self.index.variants[gtin], gtin
        for variant in gtin_variants(gtin):
            if variant in self.index.exact:
                return self.index.exact[variant], variant
            if variant in self.index.variants:
                return self.index.variants[variant], variant
        return None, None

    def _match_sku(
        self, identifier: str, gtin: Optional[str]
    ) -> Optional[MatchResult]:
        candidates = [identifier.strip().lower()]
        if gtin and gtin not in candidates:
            candidates.append(gtin)
        for code in candidates:
            product_id = self.index.skus.get(code)
            if product_id:
                return MatchResult(
                    entity_type=EntityType.PRODUCT,
                    entity_id=product_id,
                    confidence=SKU_CONFIDENCE,
                    strategy=MatchStrategy.SKU_FALLBACK,
                    metadata={"matched_by": "sku", "identifier": code},
                )
        return None
