"""
extractor/url_utils.py

URL and exclusion normalization.

Features:
- Candidate URL cleaning/validation (images and product links), memoized in the
  image_validation LRU cache
- Image list post-processing (filter junk, validate, promote main image, dedupe)
- Vendor/SKU inference from product URLs
- Vendor-specific path exclusions (e.g. superdrug.com /fashion/ and /health/)
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from apps.services.extractor.cache_manager import CacheManager, get_cache_manager

logger = logging.getLogger(__name__)

_LEADING_JUNK = re.compile(r"^[^\w]*([a-zA-Z]*://)")
_REJECTED_SCHEMES = re.compile(r"^(data:|blob:|javascript:|mailto:|tel:|#)", re.IGNORECASE)
_DIMENSION_STRING = re.compile(r"^\d+-\d+$")
_SKU_IN_PATH = re.compile(r"/p/([^/?#]+)")
_SKU_SEGMENT = re.compile(r"^[a-zA-Z0-9\-_]+$")

# Second-level labels used in two-part public suffixes (example.co.uk)
_SECOND_LEVEL_LABELS = {"co", "com", "org", "net", "gov", "edu"}


def _clean_url(value: str) -> Optional[str]:
    cleaned = value.strip()
    if not cleaned:
        return None
    if cleaned.startswith("@"):
        cleaned = cleaned[1:]
    cleaned = _LEADING_JUNK.sub(r"\1", cleaned, count=1)
    if _REJECTED_SCHEMES.match(cleaned):
        return None
    try:
        parsed = urlparse(cleaned)
    except ValueError:
        return None
    if parsed.scheme in ("http", "https") and parsed.netloc:
        return cleaned
    return None


def clean_and_validate_url(value: Any, cache_manager: Optional[CacheManager] = None) -> Optional[str]:
    """
    Clean a candidate URL and keep it only if it is an absolute http(s) URL.

    Returns:
        The cleaned URL, or None for non-strings, empty values and other schemes
    """
    if not isinstance(value, str):
        return None
    cache = (cache_manager or get_cache_manager()).cache("image_validation")
    if value in cache:
        return cache.get(value)
    result = _clean_url(value)
    cache.set(value, result)
    return result


def is_valid_image_candidate(value: Any) -> bool:
    """Reject pure numbers, WxH-style dimension strings and very short values."""
    if not isinstance(value, str):
        return False
    text = value.strip()
    if text.isdigit() or _DIMENSION_STRING.match(text):
        return False
    return len(text) >= 10


def process_image_list(
    images: Optional[Iterable[Any]],
    main_image: Optional[str] = None,
    cache_manager: Optional[CacheManager] = None,
) -> List[str]:
    """
    Filter, validate and deduplicate image URLs, main image first.
    """
    cleaned: List[str] = []
    for candidate in images or []:
        if not is_valid_image_candidate(candidate):
            continue
        url = clean_and_validate_url(candidate, cache_manager)
        if url:
            cleaned.append(url)

    main = clean_and_validate_url(main_image, cache_manager) if main_image else None
    if main:
        cleaned = [main] + [url for url in cleaned if url != main]

    seen = set()
    result = []
    for url in cleaned:
        if url not in seen:
            seen.add(url)
            result.append(url)
    return result


def get_hostname(url: str) -> Optional[str]:
    try:
        return urlparse(url).hostname
    except ValueError:
        return None


def infer_vendor_from_url(url: str) -> str:
    """superdrug.com -> superdrug, www.harrods.co.uk -> harrods."""
    host = (get_hostname(url) or "").lower()
    if not host:
        return "vendor"
    if host.startswith("www."):
        host = host[4:]
    parts = host.split(".")
    if len(parts) >= 3 and len(parts[-1]) == 2 and parts[-2] in _SECOND_LEVEL_LABELS:
        return parts[-3]
    if len(parts) >= 2:
        return parts[-2]
    return parts[0] or "vendor"


def extract_sku_from_url(url: str) -> Optional[str]:
    """Product id from /p/<sku> or a product-id-looking last path segment."""
    if not isinstance(url, str):
        return None
    match = _SKU_IN_PATH.search(url)
    if match:
        return match.group(1)
    try:
        segments = [segment for segment in urlparse(url).path.split("/") if segment]
    except ValueError:
        return None
    if segments and _SKU_SEGMENT.match(segments[-1]):
        return segments[-1]
    return None


def resolve_exclusions_for_hostname(
    hostname: Optional[str],
    domain_exclusions: Dict[str, List[str]],
) -> Optional[List[str]]:
    """Exclusion terms for a hostname: exact match first, then apex-domain suffix."""
    if not hostname:
        return None
    if isinstance(domain_exclusions.get(hostname), list):
        return domain_exclusions[hostname]
    for domain, terms in domain_exclusions.items():
        if not isinstance(terms, list):
            continue
        if hostname == domain or hostname.endswith(f".{domain}"):
            return terms
    return None


def get_exclusion_terms(url: str, domain_exclusions: Dict[str, List[str]]) -> List[str]:
    return resolve_exclusions_for_hostname(get_hostname(url), domain_exclusions) or []


def is_excluded(url: str, terms: Iterable[str]) -> bool:
    """True if the URL contains /term/ for any term (case-insensitive)."""
    lowered = (url or "").lower()
    return any(f"/{term.lower()}/" in lowered for term in terms if term)


def filter_excluded_urls(
    items: List[Dict[str, Any]],
    domain_exclusions: Dict[str, List[str]],
    extra_terms: Optional[Iterable[str]] = None,
) -> List[Dict[str, Any]]:
    """Drop work items whose URL falls under an excluded path segment."""
    extra = [term for term in (extra_terms or []) if term]
    kept = []
    for item in items:
        url = item.get("url", "")
        terms = get_exclusion_terms(url, domain_exclusions) + extra
        if terms and is_excluded(url, terms):
            continue
        kept.append(item)
    dropped = len(items) - len(kept)
    if dropped:
        logger.info(f"[Exclusion] Filtered {dropped} excluded URLs")
    return kept
