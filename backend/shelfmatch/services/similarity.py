"""
Similarity scoring primitives used by the pre-filter.

Pure functions, no I/O:
  string_similarity   — brand/title text closeness on a 0–1 scale
  size_similarity     — numeric size closeness with text-containment fallback
  retailer_from_store — point-of-sale name → canonical retailer
  retailers_from_urls — catalog source URLs → canonical retailers
"""
import re
from typing import Iterable, Optional

from shelfmatch.config import SIZE_DIFF_PENALTY, SIZE_TEXT_PARTIAL_CREDIT
from shelfmatch.models.domain import UNKNOWN, parse_size_number

# Canonical retailer names, matched as substrings of a store name
KNOWN_RETAILERS: list[str] = [
    "target", "walmart", "walgreens", "cvs", "kroger", "safeway",
    "albertsons", "publix", "whole foods", "trader joe", "costco",
    "sam's club", "aldi", "lidl", "food lion", "giant", "stop & shop",
]

# URL fragment → canonical retailer
RETAILER_DOMAINS: dict[str, str] = {
    "walmart.com": "walmart",
    "target.com": "target",
    "walgreens.com": "walgreens",
    "cvs.com": "cvs",
    "kroger.com": "kroger",
    "safeway.com": "safeway",
    "albertsons.com": "albertsons",
    "publix.com": "publix",
    "wholefoodsmarket.com": "whole foods",
    "traderjoes.com": "trader joe",
    "costco.com": "costco",
    "samsclub.com": "sam's club",
    "aldi.": "aldi",
    "lidl.": "lidl",
    "foodlion.com": "food lion",
    "giantfood.com": "giant",
    "stopandshop.com": "stop & shop",
}

_PUNCT_RE = re.compile(r"[^\w\s]")
_SPACE_RE = re.compile(r"\s+")


def _squash(text: str) -> str:
    """Lowercase, drop punctuation, collapse whitespace ("Coca-Cola" → "cocacola")."""
    return _SPACE_RE.sub(" ", _PUNCT_RE.sub("", text.lower())).strip()


def string_similarity(a: Optional[str], b: Optional[str]) -> float:
    """
    1.0 exact (case-insensitive), 0.8 containment, 0.5–0.8 word overlap, else 0.

    Containment ignores punctuation so that "CocaCola" is found inside
    "Coca-Cola Classic 12oz". Word overlap counts words longer than two
    characters present in both strings, divided by the larger word count.
    """
    if not a or not b:
        return 0.0
    s1 = a.lower().strip()
    s2 = b.lower().strip()
    if not s1 or not s2:
        return 0.0
    if s1 == s2:
        return 1.0
    if s1 in s2 or s2 in s1:
        return 0.8
    q1, q2 = _squash(s1), _squash(s2)
    if q1 and q2 and (q1 in q2 or q2 in q1):
        return 0.8

    words1 = s1.split()
    words2 = s2.split()
    common = [w for w in words1 if len(w) > 2 and w in words2]
    if common:
        overlap = len(common) / max(len(words1), len(words2))
        return 0.5 + 0.3 * overlap
    return 0.0


def size_similarity(extracted: Optional[str], catalog: Optional[str],
                    text_partial_credit: float = SIZE_TEXT_PARTIAL_CREDIT,
                    diff_penalty: float = SIZE_DIFF_PENALTY) -> float:
    """
    Size closeness on a 0–1 scale (before weighting).

    Both numeric: max(0, 1 − diff_penalty × |a−b| / max(a, b)), penalty 5 by default.
    Otherwise, if the texts contain one another: ``text_partial_credit``.
    """
    if not extracted or extracted == UNKNOWN:
        return 0.0
    a = parse_size_number(extracted)
    b = parse_size_number(catalog)
    if a is not None and b is not None:
        largest = max(a, b)
        if largest == 0:
            return 1.0
        relative_diff = abs(a - b) / largest
        return max(0.0, 1.0 - diff_penalty * relative_diff)
    if catalog:
        e, c = extracted.lower(), catalog.lower()
        if e in c or c in e:
            return text_partial_credit
    return 0.0


def retailer_from_store(store_name: Optional[str]) -> Optional[str]:
    """"Target Store #1234" → "target"; unknown chains fall back to the first word."""
    if not store_name:
        return None
    normalized = store_name.lower().strip()
    if not normalized:
        return None
    for retailer in KNOWN_RETAILERS:
        if retailer in normalized:
            return retailer
    return normalized.split()[0]


def retailers_from_urls(urls: Optional[Iterable[str]]) -> list[str]:
    """Retailers whose domains appear in the catalog's product-page URLs."""
    found: list[str] = []
    for url in urls or []:
        lowered = url.lower()
        for fragment, retailer in RETAILER_DOMAINS.items():
            if fragment in lowered and retailer not in found:
                found.append(retailer)
    return found
