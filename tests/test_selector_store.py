"""
Unit tests for the vendor selector store.

Tests apps/services/extractor/selector_store.py
"""

import json
from datetime import timedelta

import pytest

from apps.services.extractor.persistence import utc_now
from apps.services.extractor.selector_store import (
    MAX_SUCCESS_COUNT,
    SNAPSHOT_KEY,
    SelectorStore,
    compute_confidence,
    migrate_vendor_entry,
)


@pytest.fixture
def store(data_dir):
    return SelectorStore(data_dir / "cache" / "vendor-selectors.json", max_selectors_per_field=3)


class TestMigration:
    """Test legacy {field: "selector"} documents."""

    def test_flat_entry_migrated(self):
        migrated = migrate_vendor_entry({"name": "h1.title", "price": ".price", SNAPSHOT_KEY: {"results": {}}})
        assert [entry["selector"] for entry in migrated["selectors"]["name"]] == ["h1.title"]
        assert migrated["selectors"]["price"][0]["success_count"] == 1
        assert migrated[SNAPSHOT_KEY] == {"results": {}}

    def test_success_count_clamped(self):
        migrated = migrate_vendor_entry({"selectors": {"name": [{"selector": "h1", "success_count": 50}]}})
        assert migrated["selectors"]["name"][0]["success_count"] == MAX_SUCCESS_COUNT

    def test_legacy_file_loaded(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text(json.dumps({"harrods": {"name": "h1.product-name"}}))
        selectors = store.get_selectors("harrods", "name")
        assert [entry.selector for entry in selectors] == ["h1.product-name"]


class TestSaveSelectors:
    """Test promote-or-insert semantics."""

    @pytest.mark.asyncio
    async def test_new_selector_inserted_at_front(self, store):
        await store.save_selectors("harrods", {"name": "h1.a"})
        await store.save_selectors("harrods", {"name": "h1.b"})
        assert [entry.selector for entry in store.get_selectors("harrods", "name")] == ["h1.b", "h1.a"]

    @pytest.mark.asyncio
    async def test_list_capped(self, store):
        for selector in ("a", "b", "c", "d"):
            await store.save_selectors("harrods", {"price": f".{selector}"})
        assert [entry.selector for entry in store.get_selectors("harrods", "price")] == [".d", ".c", ".b"]

    @pytest.mark.asyncio
    async def test_success_promotes_and_caps(self, store):
        await store.save_selectors("harrods", {"name": "h1.a"})
        await store.save_selectors("harrods", {"name": "h1.b"})
        for _ in range(MAX_SUCCESS_COUNT + 3):
            await store.record_success("harrods", "name", "h1.a")

        entries = store.get_selectors("harrods", "name")
        assert entries[0].selector == "h1.a"
        assert entries[0].success_count == MAX_SUCCESS_COUNT
        assert not store.needs_success_update("harrods", "name", "h1.a")
        assert store.needs_success_update("harrods", "name", "h1.b")

    @pytest.mark.asyncio
    async def test_oversized_file_list_capped(self, data_dir):
        store = SelectorStore(data_dir / "cache" / "vendor-selectors.json", max_selectors_per_field=5)
        store.path.parent.mkdir(parents=True)
        entries = [{"selector": f".name-{i}", "success_count": 1} for i in range(8)]
        store.path.write_text(json.dumps({"harrods": {"selectors": {"name": entries}}}))

        assert len(store.get_selectors("harrods", "name")) == 5

        await store.record_success("harrods", "name", ".name-2")

        stored = json.loads(store.path.read_text())["harrods"]["selectors"]["name"]
        assert len(stored) <= 5
        assert stored[0]["selector"] == ".name-2"

    @pytest.mark.asyncio
    async def test_blank_selectors_ignored(self, store):
        await store.save_selectors("harrods", {"name": "  "})
        assert not store.has_selectors("harrods", "name")


class TestRecordFailure:
    @pytest.mark.asyncio
    async def test_failure_reorders_by_confidence(self, store):
        await store.save_selectors("harrods", {"name": "h1.a"})
        await store.save_selectors("harrods", {"name": "h1.b"})
        await store.record_failure("harrods", "name", "h1.b")

        entries = store.get_selectors("harrods", "name")
        assert [entry.selector for entry in entries] == ["h1.a", "h1.b"]
        assert entries[1].failure_count == 1
        assert entries[1].confidence_score == compute_confidence(1, 1)

    @pytest.mark.asyncio
    async def test_unknown_selector_ignored(self, store):
        await store.record_failure("harrods", "name", "h1.missing")
        assert store.get_selectors("harrods", "name") == []


class TestSnapshot:
    """Test the model-extraction snapshot used to skip absent fields."""

    @pytest.mark.asyncio
    async def test_confirmed_absent_fields(self, store):
        await store.update_snapshot("harrods", ["weight", "discount"], {"weight": "500g", "discount": ""})
        assert store.fields_confirmed_absent("harrods", 7) == {"discount"}

        snapshot = store.get_snapshot("harrods")
        assert snapshot["results"]["weight"] == {"found": True, "value_type": "string"}

    @pytest.mark.asyncio
    async def test_snapshot_merges_attempts(self, store):
        await store.update_snapshot("harrods", ["weight"], {"weight": ""})
        await store.update_snapshot("harrods", ["category"], {"category": "Beauty"})
        snapshot = store.get_snapshot("harrods")
        assert snapshot["attempted_fields"] == ["weight", "category"]
        assert store.fields_confirmed_absent("harrods", 7) == {"weight"}

    def test_stale_snapshot_ignored(self, store):
        stale = (utc_now() - timedelta(days=10)).isoformat()
        store.path.parent.mkdir(parents=True)
        store.path.write_text(json.dumps({
            "harrods": {
                "selectors": {},
                SNAPSHOT_KEY: {
                    "timestamp": stale,
                    "attempted_fields": ["weight"],
                    "results": {"weight": {"found": False, "value_type": "string"}},
                },
            }
        }))
        assert store.fields_confirmed_absent("harrods", 7) == set()
