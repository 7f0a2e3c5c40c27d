"""
Unit tests for URL cleaning, vendor/SKU inference and path exclusions.

Tests apps/services/extractor/url_utils.py
"""

import pytest

from apps.services.extractor.cache_manager import CacheManager
from apps.services.extractor.url_utils import (
    clean_and_validate_url,
    extract_sku_from_url,
    filter_excluded_urls,
    get_exclusion_terms,
    infer_vendor_from_url,
    is_excluded,
    process_image_list,
)


@pytest.fixture
def cache_manager():
    return CacheManager()


class TestCleanAndValidateUrl:
    """Test candidate URL cleaning."""

    def test_keeps_absolute_http_urls(self, cache_manager):
        url = "https://cdn.example.com/img/1.jpg"
        assert clean_and_validate_url(url, cache_manager) == url

    def test_strips_leading_at_and_junk(self, cache_manager):
        assert clean_and_validate_url("@https://a.example.com/x.png", cache_manager) == "https://a.example.com/x.png"
        assert clean_and_validate_url("  ('https://a.example.com/y.png", cache_manager) == "https://a.example.com/y.png"

    def test_rejects_other_schemes(self, cache_manager):
        for value in ("data:image/png;base64,AAAA", "javascript:void(0)", "mailto:a@b.c", "#top", "/relative.jpg"):
            assert clean_and_validate_url(value, cache_manager) is None

    def test_non_strings_rejected(self, cache_manager):
        assert clean_and_validate_url(None, cache_manager) is None
        assert clean_and_validate_url(42, cache_manager) is None

    def test_results_are_memoized(self, cache_manager):
        clean_and_validate_url("https://a.example.com/1.jpg", cache_manager)
        clean_and_validate_url("https://a.example.com/1.jpg", cache_manager)
        stats = cache_manager.get_stats()["image_validation"]
        assert stats["size"] == 1
        assert stats["hits"] == 1


class TestProcessImageList:
    """Test gallery post-processing."""

    def test_main_image_first_and_deduplicated(self, cache_manager):
        images = [
            "https://cdn.example.com/a.jpg",
            "https://cdn.example.com/b.jpg",
            "https://cdn.example.com/a.jpg",
        ]
        result = process_image_list(images, "https://cdn.example.com/b.jpg", cache_manager)
        assert result == ["https://cdn.example.com/b.jpg", "https://cdn.example.com/a.jpg"]

    def test_junk_values_dropped(self, cache_manager):
        images = ["12345", "100-200", "short", "data:image/gif;base64,R0lGOD", "https://cdn.example.com/ok.jpg"]
        assert process_image_list(images, cache_manager=cache_manager) == ["https://cdn.example.com/ok.jpg"]

    def test_empty_input(self, cache_manager):
        assert process_image_list(None, cache_manager=cache_manager) == []


class TestVendorAndSku:
    """Test vendor and SKU inference from product URLs."""

    def test_infer_vendor(self):
        assert infer_vendor_from_url("https://www.superdrug.com/p/123") == "superdrug"
        assert infer_vendor_from_url("https://www.harrods.co.uk/en-gb/shopping/item") == "harrods"
        assert infer_vendor_from_url("not a url") == "vendor"

    def test_sku_from_p_segment(self):
        assert extract_sku_from_url("https://www.superdrug.com/make-up/lipstick/p/mp-00123") == "mp-00123"

    def test_sku_from_last_segment(self):
        assert extract_sku_from_url("https://shop.example.com/products/ABC-123") == "ABC-123"

    def test_no_sku(self):
        assert extract_sku_from_url("https://shop.example.com/") is None
        assert extract_sku_from_url(None) is None


class TestExclusions:
    """Test vendor path exclusions."""

    def test_terms_resolved_by_apex_domain(self):
        exclusions = {"superdrug.com": ["fashion", "health"]}
        assert get_exclusion_terms("https://www.superdrug.com/fashion/x/p/1", exclusions) == ["fashion", "health"]
        assert get_exclusion_terms("https://www.boots.com/fashion/x", exclusions) == []

    def test_is_excluded_matches_whole_segments(self):
        assert is_excluded("https://www.superdrug.com/Health/vitamins/p/1", ["health"])
        assert not is_excluded("https://www.superdrug.com/healthy-snacks/p/1", ["health"])

    def test_filter_excluded_urls_with_extra_terms(self):
        items = [
            {"url": "https://www.superdrug.com/fashion/tights/p/1"},
            {"url": "https://www.superdrug.com/make-up/lipstick/p/2"},
            {"url": "https://www.superdrug.com/clearance/soap/p/3"},
        ]
        kept = filter_excluded_urls(items, {"superdrug.com": ["fashion"]}, extra_terms=["clearance"])
        assert [item["url"] for item in kept] == ["https://www.superdrug.com/make-up/lipstick/p/2"]
