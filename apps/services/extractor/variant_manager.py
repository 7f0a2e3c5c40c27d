"""
extractor/variant_manager.py

Variant grouping for ingested work items.

Superdrug marketplace URLs share a slug before /p/mp-<digits>; those are
grouped deterministically. Everything else falls back to Jaccard similarity
of the URL path segments (last segment excluded, it usually carries the SKU).
"""

import re
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, urlparse

SUPERDRUG_MARKETPLACE_PATH = re.compile(r"/([^/]+)/p/mp-\d+", re.IGNORECASE)
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

SIMILARITY_THRESHOLD = 0.9


def normalize_slug(slug: Optional[str]) -> str:
    if not slug or not isinstance(slug, str):
        return ""
    return _NON_ALNUM.sub("-", unquote(slug).lower()).strip("-")


def superdrug_group_key(url: str) -> Optional[str]:
    """host/slug for Superdrug marketplace product URLs, else None."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    host = (parsed.netloc or "").lower()
    if "superdrug.com" not in host:
        return None
    match = SUPERDRUG_MARKETPLACE_PATH.search(parsed.path)
    if not match:
        return None
    return f"{host}/{normalize_slug(match.group(1))}"


def path_segments(url: str) -> List[str]:
    try:
        segments = [segment.lower() for segment in urlparse(url).path.split("/") if segment]
    except ValueError:
        return []
    return segments[:-1] if len(segments) > 1 else segments


def jaccard(a: List[str], b: List[str]) -> float:
    if not a and not b:
        return 1.0
    set_a, set_b = set(a), set(b)
    union = len(set_a | set_b) or 1
    return len(set_a & set_b) / union


def group_superdrug(items: List[Dict[str, Any]]) -> List[List[Dict[str, Any]]]:
    buckets: Dict[str, List[Dict[str, Any]]] = {}
    for item in items:
        key = superdrug_group_key(item.get("url", ""))
        if key:
            buckets.setdefault(key, []).append(item)
    return [group for group in buckets.values() if len(group) > 1]


def group_by_path_similarity(items: List[Dict[str, Any]], threshold: float = SIMILARITY_THRESHOLD) -> List[List[Dict[str, Any]]]:
    """Greedy grouping against each group's first member; only groups of 2+ are returned."""
    groups: List[List[Dict[str, Any]]] = []
    signatures: List[List[str]] = []
    for item in items:
        if not item.get("url"):
            continue
        segments = path_segments(item["url"])
        for group, signature in zip(groups, signatures):
            if jaccard(segments, signature) >= threshold:
                group.append(item)
                break
        else:
            groups.append([item])
            signatures.append(segments)
    return [group for group in groups if len(group) > 1]


def assign_variants(items: List[Dict[str, Any]], vendor: str) -> List[Dict[str, Any]]:
    """
    Fold variant groups into main items.

    Returns:
        Grouped main items (first member, with `variants`) followed by the
        ungrouped items with `variants: []`
    """
    if not items:
        return []

    groups: List[List[Dict[str, Any]]] = []
    if "superdrug" in (vendor or "").lower():
        groups = group_superdrug(items)
    if not groups:
        groups = group_by_path_similarity(items)

    grouped_urls = set()
    main_items = []
    for group in groups:
        main = dict(group[0])
        main["variants"] = [
            {"url": member["url"], "sku_id": member.get("sku_id"), "image_url": member.get("image_url")}
            for member in group[1:]
        ]
        main_items.append(main)
        grouped_urls.update(member["url"] for member in group)

    for item in items:
        if item.get("url") not in grouped_urls:
            single = dict(item)
            single["variants"] = []
            main_items.append(single)
    return main_items
