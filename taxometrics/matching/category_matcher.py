"""TAXOMETRICS — Category Path Matcher.

Breadcrumb strings (``Outdoor > Jackets > Winter``) are parsed, rejoined with
``/`` and resolved by the URL matcher's strategies. Only nodes are returned.
"""

import re
from typing import Optional
from urllib.parse import urlsplit

from taxometrics.matching.normalizers import (
    normalize_url_path,
    parse_category_hierarchy,
    path_segments,
)
from taxometrics.matching.url_matcher import UrlMatcher
from taxometrics.models.match_models import MatchResult

_CATEGORY_URL_PATTERNS = (
    re.compile(r"/category/(.*?)(?:/|$)"),
    re.compile(r"/c/(.*?)(?:/|$)"),
    re.compile(r"/collections?/(.*?)(?:/|$)"),
    re.compile(r"/shop/(.*?)(?:/|$)"),
    re.compile(r"/products?/(.*?)(?:/|$)"),
)
_SKIP_SEGMENTS = {"product", "item", "p", "i", "detail", "view"}


class CategoryMatcher:
    """Thin wrapper that turns breadcrumbs into paths for ``UrlMatcher``."""

    def __init__(self, url_matcher: UrlMatcher):
        self.url_matcher = url_matcher

    @staticmethod
    def to_path(breadcrumb: Optional[str]) -> str:
        return normalize_url_path("/".join(parse_category_hierarchy(breadcrumb)))

    def match_breadcrumb(self, breadcrumb: Optional[str]) -> Optional[MatchResult]:
        # A product URL equal to the breadcrumb path must not hide the category
        return self.url_matcher.match_segments(
            path_segments(self.to_path(breadcrumb)), include_products=False
        )


def extract_category_from_url(url: Optional[str]) -> Optional[str]:
    """Pull the category portion out of common storefront URL shapes."""
    if not url:
        return None
    pathname = urlsplit(url.strip()).path
    for pattern in _CATEGORY_URL_PATTERNS:
        found = pattern.search(pathname)
        if found and found.group(1):
            return found.group(1)

    segments = [s for s in pathname.split("/") if s]
    if len(segments) > 1:
        category_segments = [
            s for s in segments if s.lower() not in _SKIP_SEGMENTS and not s.isdigit()
        ]
        if category_segments:
            return "/".join(category_segments)
    return None
