"""
Unit tests for input ingestion.

Tests apps/services/extractor/input_manager.py
"""

import json

import pytest

from apps.services.extractor.errors import ExtractorError, NoInputFiles, VendorMismatch
from apps.services.extractor.input_manager import InputManager, validate_input_structure
from apps.services.extractor.ledger import LedgerManager


@pytest.fixture
def ledgers(data_dir):
    return LedgerManager(data_dir / "processing")


@pytest.fixture
def inputs(data_dir, ledgers):
    (data_dir / "input").mkdir()
    return InputManager(data_dir / "input", ledgers, {"superdrug.com": ["fashion"]})


def write_input(data_dir, name, data):
    path = data_dir / "input" / name
    path.write_text(json.dumps(data))
    return path


class TestValidation:
    def test_valid(self):
        assert validate_input_structure({"vendor": "superdrug", "items": [{"url": "https://x", "sku_id": "1"}]})

    def test_invalid(self):
        assert not validate_input_structure({"vendor": "", "items": []})
        assert not validate_input_structure({"vendor": "superdrug", "items": [{"url": 1}]})
        assert not validate_input_structure({"vendor": "superdrug", "items": [], "exclude": "fashion"})
        assert not validate_input_structure({"vendor": "superdrug", "items": [{"url": "https://x", "sku_id": 5}]})


class TestIngest:
    def test_no_files(self, inputs):
        with pytest.raises(NoInputFiles):
            inputs.ingest()

    def test_only_invalid_files(self, data_dir, inputs):
        write_input(data_dir, "bad.json", {"items": []})
        (data_dir / "input" / "broken.json").write_text("{not json")
        with pytest.raises(ExtractorError, match="No valid input files"):
            inputs.ingest()

    def test_vendor_mismatch(self, data_dir, inputs):
        write_input(data_dir, "a.json", {"vendor": "superdrug", "items": [{"url": "https://www.superdrug.com/p/1"}]})
        write_input(data_dir, "b.json", {"vendor": "boots", "items": [{"url": "https://www.boots.com/p/1"}]})
        with pytest.raises(VendorMismatch):
            inputs.ingest()

    def test_vendor_filter_skips_other_files(self, data_dir, inputs, ledgers):
        write_input(data_dir, "a.json", {"vendor": "superdrug", "items": [{"url": "https://www.superdrug.com/skin/p/1"}]})
        write_input(data_dir, "b.json", {"vendor": "boots", "items": [{"url": "https://www.boots.com/p/1"}]})

        path = inputs.ingest(["boots"])

        assert ledgers.read(path)["vendor"] == "boots"
        assert (data_dir / "input" / "a.json").exists()

    def test_ledger_built_from_inputs(self, data_dir, inputs, ledgers):
        write_input(data_dir, "a.json", {
            "vendor": "superdrug",
            "exclude": ["clearance"],
            "items": [
                {"url": " https://www.superdrug.com/make-up/rose-lipstick/p/mp-001 ", "sku_id": "mp-001"},
                {"url": "https://www.superdrug.com/fashion/tights/p/2"},
                {"url": "https://www.superdrug.com/clearance/soap/p/3"},
            ],
        })
        write_input(data_dir, "b.json", {
            "vendor": "superdrug",
            "items": [
                {"url": "https://www.superdrug.com/make-up/rose-lipstick/p/mp-001"},
                {"url": "https://www.superdrug.com/make-up/rose-lipstick/p/mp-002", "sku_id": "mp-002"},
                {"url": "https://www.superdrug.com/skin/face-wash/p/4", "image_url": "https://cdn.superdrug.com/4.jpg"},
            ],
        })

        path = inputs.ingest()
        data = ledgers.read(path)

        assert data["vendor"] == "superdrug"
        assert data["source_files"] == ["a.json", "b.json"]
        assert data["exclude"] == ["clearance"]
        assert data["total_count"] == 2
        main, single = data["items"]
        assert main == {
            "url": "https://www.superdrug.com/make-up/rose-lipstick/p/mp-001",
            "vendor": "superdrug",
            "image_url": None,
            "sku": "mp-001",
            "variants": [{
                "url": "https://www.superdrug.com/make-up/rose-lipstick/p/mp-002",
                "sku_id": "mp-002",
                "image_url": None,
            }],
        }
        assert single["image_url"] == "https://cdn.superdrug.com/4.jpg"
        assert single["variants"] == []

        assert inputs.list_input_files() == []
        assert len(list(inputs.archived_dir.glob("*_a.json"))) == 1
