"""
extractor/input_manager.py

Input ingestion: turns input/*.json files into a processing ledger.

Features:
- Structure validation per file (invalid files are skipped, not fatal)
- Vendor consistency across merged files
- URL de-duplication, domain/exclude-term filtering, variant grouping
- Processed inputs are archived to input/archived/YYYY-MM-DD_<name>
"""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from apps.services.extractor.error_log import get_event_log
from apps.services.extractor.errors import ExtractorError, NoInputFiles, VendorMismatch
from apps.services.extractor.ledger import LedgerManager
from apps.services.extractor.persistence import read_json, utc_now
from apps.services.extractor.url_utils import filter_excluded_urls
from apps.services.extractor.variant_manager import assign_variants

logger = logging.getLogger(__name__)


def validate_input_structure(data: Any) -> bool:
    """{vendor, items[{url, sku_id?, image_url?}], exclude?[], total_count?}"""
    if not isinstance(data, dict):
        return False
    if "exclude" in data and not isinstance(data["exclude"], list):
        return False
    total = data.get("total_count")
    if total is not None and (isinstance(total, bool) or not isinstance(total, (int, float))):
        return False
    if not isinstance(data.get("vendor"), str) or not data["vendor"].strip():
        return False
    if not isinstance(data.get("items"), list):
        return False
    for item in data["items"]:
        if not isinstance(item, dict) or not isinstance(item.get("url"), str):
            return False
        for key in ("sku_id", "image_url"):
            if item.get(key) is not None and not isinstance(item[key], str):
                return False
    return True


class InputManager:
    """Reads input files and creates the ledger for them."""

    def __init__(
        self,
        input_dir: Path,
        ledger_manager: LedgerManager,
        domain_exclusions: Optional[Dict[str, List[str]]] = None,
    ):
        self.input_dir = Path(input_dir)
        self.archived_dir = self.input_dir / "archived"
        self.ledgers = ledger_manager
        self.domain_exclusions = domain_exclusions or {}

    def list_input_files(self) -> List[Path]:
        if not self.input_dir.exists():
            return []
        return sorted(path for path in self.input_dir.glob("*.json") if path.is_file())

    def load_input_files(self, vendors: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        """
        Read every valid input file.

        Returns:
            [{path, data}] for valid files of the wanted vendors

        Raises:
            NoInputFiles: input/ holds no JSON files
        """
        files = self.list_input_files()
        if not files:
            raise NoInputFiles(f"No input files found in {self.input_dir}")

        wanted = set(vendors or [])
        loaded = []
        for path in files:
            try:
                data = read_json(path, default=None)
            except (OSError, ValueError) as e:
                logger.warning(f"[Input] Failed to read input file {path.name}: {e}")
                get_event_log().warning("input_file_read_failed", file=path.name, error=str(e))
                continue
            if not validate_input_structure(data):
                logger.warning(f"[Input] Invalid structure in {path.name}, skipping")
                get_event_log().warning("input_file_invalid_structure", file=path.name)
                continue
            if wanted and data["vendor"] not in wanted:
                logger.info(f"[Input] Skipping {path.name}: vendor {data['vendor']} not selected")
                continue
            loaded.append({"path": path, "data": data})
        return loaded

    def merge(self, loaded: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Merge input documents of a single vendor.

        Raises:
            VendorMismatch: the files name different vendors
        """
        vendor = loaded[0]["data"]["vendor"]
        exclude: List[str] = []
        seen = set()
        items = []
        for entry in loaded:
            data = entry["data"]
            if data["vendor"] != vendor:
                get_event_log().error(
                    "input_vendor_mismatch",
                    expected=vendor,
                    found=data["vendor"],
                    file=entry["path"].name,
                )
                raise VendorMismatch(
                    f"Vendor mismatch: {entry['path'].name} has {data['vendor']}, expected {vendor}"
                )
            for term in data.get("exclude") or []:
                if term not in exclude:
                    exclude.append(term)
            for item in data["items"]:
                url = item["url"].strip()
                if not url or url in seen:
                    continue
                seen.add(url)
                items.append({**item, "url": url})
        return {"vendor": vendor, "exclude": exclude, "items": items}

    def archive_input(self, path: Path) -> Optional[Path]:
        try:
            self.archived_dir.mkdir(parents=True, exist_ok=True)
            target = self.archived_dir / f"{utc_now().strftime('%Y-%m-%d')}_{path.name}"
            path.replace(target)
            logger.info(f"[Input] Archived input file: {path.name} -> archived/{target.name}")
            return target
        except OSError as e:
            logger.warning(f"[Input] Failed to archive input file {path.name}: {e}")
            get_event_log().warning("input_file_archive_failed", file=path.name, error=str(e))
            return None

    def ingest(self, vendors: Optional[Iterable[str]] = None) -> Path:
        """
        Build a ledger from input/ and archive the consumed files.

        Raises:
            NoInputFiles: nothing to ingest
            ExtractorError: no input file was valid
            VendorMismatch: mixed vendors
        """
        loaded = self.load_input_files(vendors)
        if not loaded:
            raise ExtractorError("No valid input files found")

        merged = self.merge(loaded)
        vendor = merged["vendor"]
        items = filter_excluded_urls(merged["items"], self.domain_exclusions, extra_terms=merged["exclude"])
        grouped = assign_variants(items, vendor)
        grouped_count = sum(1 for item in grouped if item["variants"])
        logger.info(
            f"[Input] {vendor}: {len(merged['items'])} unique URLs, {len(items)} after exclusions, "
            f"{len(grouped)} work items ({grouped_count} with variants)"
        )

        ledger_items = [
            {
                "url": item["url"],
                "vendor": vendor,
                "image_url": item.get("image_url") or None,
                "sku": item.get("sku_id") or None,
                "variants": item["variants"],
            }
            for item in grouped
        ]
        path = self.ledgers.create(
            vendor,
            ledger_items,
            source_files=[entry["path"].name for entry in loaded],
            exclude=merged["exclude"],
        )
        for entry in loaded:
            self.archive_input(entry["path"])
        return path
