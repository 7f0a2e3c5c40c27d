"""
Unit tests for variant grouping.
"""

from apps.services.extractor.variant_manager import (
    assign_variants,
    group_by_path_similarity,
    jaccard,
    path_segments,
    superdrug_group_key,
)


class TestHelpers:
    def test_superdrug_group_key(self):
        assert superdrug_group_key("https://www.superdrug.com/make-up/Rose%20Lipstick/p/mp-00123") == (
            "www.superdrug.com/rose-lipstick"
        )
        assert superdrug_group_key("https://www.superdrug.com/make-up/lipstick/p/123") is None
        assert superdrug_group_key("https://www.boots.com/lipstick/p/mp-1") is None

    def test_path_segments_drop_last(self):
        assert path_segments("https://a.example.com/Beauty/Lipstick/123") == ["beauty", "lipstick"]
        assert path_segments("https://a.example.com/only") == ["only"]

    def test_jaccard(self):
        assert jaccard([], []) == 1.0
        assert jaccard(["a", "b"], ["a", "b"]) == 1.0
        assert jaccard(["a"], ["b"]) == 0.0


class TestAssignVariants:
    def test_superdrug_marketplace_grouping(self):
        items = [
            {"url": "https://www.superdrug.com/make-up/rose-lipstick/p/mp-001", "sku_id": "mp-001"},
            {"url": "https://www.superdrug.com/skin/face-wash/p/123"},
            {"url": "https://www.superdrug.com/make-up/rose-lipstick/p/mp-002", "sku_id": "mp-002", "image_url": "https://cdn/2.jpg"},
        ]

        grouped = assign_variants(items, "superdrug")

        assert [item["url"] for item in grouped] == [
            "https://www.superdrug.com/make-up/rose-lipstick/p/mp-001",
            "https://www.superdrug.com/skin/face-wash/p/123",
        ]
        assert grouped[0]["variants"] == [{
            "url": "https://www.superdrug.com/make-up/rose-lipstick/p/mp-002",
            "sku_id": "mp-002",
            "image_url": "https://cdn/2.jpg",
        }]
        assert grouped[1]["variants"] == []

    def test_path_similarity_grouping(self):
        items = [
            {"url": "https://www.harrods.com/en-gb/beauty/creams/rose-50ml"},
            {"url": "https://www.harrods.com/en-gb/shoes/boots/chelsea"},
            {"url": "https://www.harrods.com/en-gb/beauty/creams/rose-100ml"},
        ]

        grouped = assign_variants(items, "harrods")

        assert grouped[0]["url"].endswith("rose-50ml")
        assert [variant["url"] for variant in grouped[0]["variants"]] == [items[2]["url"]]
        assert grouped[1]["url"].endswith("chelsea")

    def test_every_url_kept_exactly_once(self):
        items = [{"url": f"https://www.harrods.com/en-gb/beauty/p{n}/item"} for n in range(5)]
        grouped = assign_variants(items, "harrods")
        urls = [item["url"] for item in grouped] + [
            variant["url"] for item in grouped for variant in item["variants"]
        ]
        assert sorted(urls) == sorted(item["url"] for item in items)

    def test_empty(self):
        assert assign_variants([], "harrods") == []
        assert group_by_path_similarity([]) == []
