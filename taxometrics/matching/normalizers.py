"""TAXOMETRICS — Identifier Normalizers.

Pure functions that turn URLs, paths, breadcrumbs, titles, and GTINs into
comparable canonical forms. Every normalizer is idempotent.
"""

import re
from typing import List, Optional
from urllib.parse import unquote, urlsplit

_NON_DIGIT = re.compile(r"\D")
_WHITESPACE = re.compile(r"\s+")
_HYPHENS = re.compile(r"-+")
_PUNCTUATION = re.compile(r"[^a-z0-9]")
_PAGE_EXTENSION = re.compile(r"\.(html?|php|aspx?)$")
_HOST = re.compile(r"^(?:[a-z0-9](?:[a-z0-9-]*[a-z0-9])?\.)+[a-z]{2,}(?::\d+)?$")

# Ordered by priority, the first one found in the text wins
BREADCRUMB_DELIMITERS = (" > ", " / ", " | ", "::", "/", ">", "|")

MIN_GTIN_DIGITS = 8


def normalize_gtin(value: Optional[str]) -> Optional[str]:
    """Strip every non-digit; ``None`` when fewer than 8 digits remain."""
    if not value:
        return None
    digits = _NON_DIGIT.sub("", str(value))
    if len(digits) < MIN_GTIN_DIGITS:
        return None
    return digits


def _normalize_segment(segment: str) -> str:
    segment = _WHITESPACE.sub("-", segment.strip())
    return _HYPHENS.sub("-", segment).strip("-")


def path_segments(value: Optional[str]) -> List[str]:
    """Split a URL or path into normalized, non-empty segments."""
    if not value:
        return []
    text = value.strip().lower()

    try:
        parts = urlsplit(text)
    except ValueError:
        parts = urlsplit(text.replace("[", "").replace("]", ""))
    if parts.scheme in ("http", "https") or text.startswith("//"):
        path = parts.path
    elif parts.scheme and not parts.netloc:
        # "www.shop.com:8080/x" style strings parse with a bogus scheme
        path = text.split("?", 1)[0].split("#", 1)[0]
    else:
        path = parts.path

    if not path.startswith("/"):
        # Scheme-less "shop.example.com/products/x": drop the host
        first, slash, rest = path.partition("/")
        if slash and _HOST.match(first):
            path = rest

    path = _PAGE_EXTENSION.sub("", unquote(path))
    segments = (_normalize_segment(s) for s in path.split("/"))
    return [s for s in segments if s]


def normalize_url_path(value: Optional[str]) -> str:
    """Canonical slash-joined path: lowercase, no host/query/fragment/edge slashes."""
    return "/".join(path_segments(value))


def normalize_name(value: Optional[str]) -> str:
    """Lowercase and drop everything but letters and digits."""
    if not value:
        return ""
    return _PUNCTUATION.sub("", value.lower())


def detect_delimiter(text: str) -> str:
    """Return the highest-priority breadcrumb delimiter present in ``text``."""
    for delimiter in BREADCRUMB_DELIMITERS:
        if delimiter in text:
            return delimiter
    return "/"


def parse_category_hierarchy(text: Optional[str]) -> List[str]:
    """Split a breadcrumb such as ``Outdoor > Jackets > Winter`` into segments."""
    if not text:
        return []
    delimiter = detect_delimiter(text)
    return [part.strip() for part in text.split(delimiter) if part.strip()]
