"""
extractor/output_manager.py

Vendor output files.

Layout:
    output/<vendor>/<base>.output.json          extraction results
    output/<vendor>/<base>.output_<N>.json      rotated siblings
    output/<vendor>/updates/<base>.update.json  update-mode results

Features:
- Rotation once a file would exceed MAX_ITEMS_PER_FILE items
- Price normalization on append (price_value/price_currency/price_is_range)
- Items with an empty price that claim to be in stock are dropped and counted
  in filtered_invalid_count
- Appends are serialized per file path
"""

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from apps.services.extractor.error_log import get_event_log
from apps.services.extractor.file_lock import FileLockRegistry, get_file_locks
from apps.services.extractor.persistence import read_json, utc_now_iso, write_json
from apps.services.extractor.pricing import normalize_price_fields

logger = logging.getLogger(__name__)

OUTPUT_KIND = "output"
UPDATE_KIND = "update"
UPDATES_DIR = "updates"
IN_STOCK = "In stock"

_UNSAFE_VENDOR_CHARS = re.compile(r"[^a-zA-Z0-9\-_]")
_FILE_NAME = re.compile(r"^(?P<base>.+)\.(?P<kind>output|update)(?:_(?P<index>\d+))?\.json$")


def sanitize_vendor(vendor: str) -> str:
    return _UNSAFE_VENDOR_CHARS.sub("_", (vendor or "unknown").lower())


def base_name(file_name: str) -> str:
    """Strip directories, extension and any .output/.update suffix."""
    name = Path(file_name).name
    match = _FILE_NAME.match(name)
    if match:
        return match.group("base")
    return Path(name).stem


def output_file_name(base: str, index: Optional[int] = None, kind: str = OUTPUT_KIND) -> str:
    if index:
        return f"{base}.{kind}_{index}.json"
    return f"{base}.{kind}.json"


def is_invalid_item(item: Dict[str, Any]) -> bool:
    """An in-stock product without a price is an extraction failure, not a product."""
    return item.get("price") == "" and item.get("stock_status") == IN_STOCK


def base_document(vendor: str, source_file: str) -> Dict[str, Any]:
    now = utc_now_iso()
    return {
        "vendor": vendor,
        "source_file": source_file,
        "created_at": now,
        "updated_at": now,
        "total_items": 0,
        "filtered_invalid_count": 0,
        "items": [],
    }


class OutputManager:
    """Creates, appends to and summarizes vendor output files."""

    def __init__(
        self,
        output_dir: Path,
        max_items_per_file: int = 10000,
        file_locks: Optional[FileLockRegistry] = None,
    ):
        self.output_dir = Path(output_dir)
        self.max_items_per_file = max_items_per_file
        self._locks = file_locks or get_file_locks()

    def vendor_dir(self, vendor: str) -> Path:
        directory = self.output_dir / sanitize_vendor(vendor)
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def updates_dir(self, vendor: str) -> Path:
        directory = self.vendor_dir(vendor) / UPDATES_DIR
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def find_current_file(self, directory: Path, base: str, kind: str = OUTPUT_KIND) -> Optional[Dict[str, Any]]:
        """Highest-index file for base in directory: {path, index, item_count}."""
        current = None
        if not directory.exists():
            return None
        for path in directory.glob(f"{base}.{kind}*.json"):
            match = _FILE_NAME.match(path.name)
            if not match or match.group("base") != base or match.group("kind") != kind:
                continue
            index = int(match.group("index") or 0)
            if current is None or index > current["index"]:
                current = {"path": path, "index": index}
        if current is None:
            return None
        try:
            data = read_json(current["path"], default={}) or {}
            current["item_count"] = int(data.get("total_items") or 0)
        except (OSError, ValueError):
            current["item_count"] = 0
        return current

    def _create(self, directory: Path, vendor: str, source_file: str, input_file_name: str, kind: str) -> Path:
        base = base_name(input_file_name)
        current = self.find_current_file(directory, base, kind)
        if current is not None:
            logger.info(
                f"[Output] Using existing {kind} file: {current['path'].name} ({current['item_count']} items)"
            )
            return current["path"]

        path = directory / output_file_name(base, kind=kind)
        write_json(path, base_document(vendor, source_file))
        logger.info(f"[Output] Created {kind} file: {path.name} in {directory}")
        return path

    def create_output_file(self, vendor: str, source_file: str, input_file_name: str) -> Path:
        """Existing (highest index) or new <base>.output.json for this input."""
        return self._create(self.vendor_dir(vendor), vendor, source_file, input_file_name, OUTPUT_KIND)

    def create_update_output_file(self, vendor: str, source_file: str, input_file_name: str) -> Path:
        return self._create(self.updates_dir(vendor), vendor, source_file, input_file_name, UPDATE_KIND)

    async def _append(self, path: Path, items: List[Dict[str, Any]], meta: Dict[str, Any], kind: str) -> Dict[str, Any]:
        path = Path(path)
        if not items:
            return {"appended": 0, "filtered": 0, "total": 0, "path": path, "rotated": False}

        normalized = [normalize_price_fields(item) for item in items]
        valid = [item for item in normalized if not is_invalid_item(item)]
        filtered = len(normalized) - len(valid)
        if filtered:
            logger.info(f"[Output] Filtered {filtered} in-stock items without a price")

        async with self._locks.hold(path):
            directory = path.parent
            base = base_name(path.name)
            target = path
            current = self.find_current_file(directory, base, kind)
            if current is not None:
                if current["item_count"] + len(valid) > self.max_items_per_file:
                    target = directory / output_file_name(base, current["index"] + 1, kind)
                    logger.info(
                        f"[Output] File rotation: {current['path'].name} ({current['item_count']} items) -> {target.name}"
                    )
                else:
                    target = current["path"]

            try:
                document = read_json(target, default=None)
            except (OSError, ValueError) as e:
                logger.warning(f"[Output] Failed to read existing output file {target.name}: {e}")
                document = None
            if not isinstance(document, dict):
                document = base_document(meta.get("vendor") or directory.name, meta.get("source_file") or "unknown")
            if not isinstance(document.get("items"), list):
                document["items"] = []

            document["items"].extend(valid)
            document["total_items"] = len(document["items"])
            document["filtered_invalid_count"] = int(document.get("filtered_invalid_count") or 0) + filtered
            document["updated_at"] = utc_now_iso()
            try:
                write_json(target, document)
            except OSError as e:
                logger.error(f"[Output] Failed to write output file {target.name}: {e}")
                get_event_log().error_with_details("output_file_write_failed", e, file=target.name)
                raise

        logger.info(f"[Output] Appended {len(valid)} items to {target.name} ({document['total_items']} total)")
        return {
            "appended": len(valid),
            "filtered": filtered,
            "total": document["total_items"],
            "path": target,
            "rotated": target != path,
        }

    async def append_items(self, path: Path, items: List[Dict[str, Any]], meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Append success records to an output file, rotating when full."""
        return await self._append(path, items, meta or {}, OUTPUT_KIND)

    async def append_items_to_update_file(self, path: Path, items: List[Dict[str, Any]], meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self._append(path, items, meta or {}, UPDATE_KIND)

    def get_vendor_summary(self, vendor: str) -> Dict[str, Any]:
        """Per-file item counts of a vendor's output files."""
        directory = self.output_dir / sanitize_vendor(vendor)
        summary: Dict[str, Any] = {"vendor": vendor, "total_files": 0, "total_items": 0, "files": []}
        if not directory.exists():
            return summary

        files = []
        for path in directory.glob("*.json"):
            match = _FILE_NAME.match(path.name)
            if not match or match.group("kind") != OUTPUT_KIND:
                continue
            try:
                data = read_json(path, default={}) or {}
            except (OSError, ValueError) as e:
                logger.warning(f"[Output] Failed to read {path.name} for summary: {e}")
                continue
            files.append({
                "file_name": path.name,
                "index": int(match.group("index") or 0),
                "total_items": int(data.get("total_items") or 0),
                "filtered_invalid_count": int(data.get("filtered_invalid_count") or 0),
                "updated_at": data.get("updated_at"),
            })

        files.sort(key=lambda entry: (entry["file_name"].split(".")[0], entry["index"]))
        summary["files"] = files
        summary["total_files"] = len(files)
        summary["total_items"] = sum(entry["total_items"] for entry in files)
        return summary
