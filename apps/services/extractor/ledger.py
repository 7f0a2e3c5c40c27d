"""
extractor/ledger.py

Processing ledgers - the resumable work list of one ingestion batch.

Ledger document (processing/<vendor>_<timestamp>.json):
    {active, vendor, total_count, processed_count, exclude[], source_files[],
     items: [{url, vendor, image_url, sku, variants[]}]}

Successful URLs are removed as they are flushed; failed URLs stay with
error/error_timestamp/retry_count so the next run retries them. A drained
ledger is deactivated and moved to processing/archived/.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from apps.services.extractor.error_log import get_event_log
from apps.services.extractor.errors import LedgerError
from apps.services.extractor.file_lock import FileLockRegistry, get_file_locks
from apps.services.extractor.persistence import read_json, utc_now, utc_now_iso, write_json

logger = logging.getLogger(__name__)


def ledger_file_name(vendor: str) -> str:
    """<vendor>_<iso timestamp with : and . replaced by ->.json"""
    timestamp = utc_now_iso().replace(":", "-").replace(".", "-")
    return f"{vendor}_{timestamp}.json"


def validate_ledger_structure(data: Any) -> bool:
    """Check the ledger shape; variants must carry a url, everything else on items is optional."""
    if not isinstance(data, dict):
        return False
    if not isinstance(data.get("active"), bool):
        return False
    if not isinstance(data.get("vendor"), str):
        return False
    for key in ("total_count", "processed_count"):
        value = data.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
    if not isinstance(data.get("items"), list):
        return False
    for key in ("exclude", "source_files"):
        if key in data and not isinstance(data[key], list):
            return False

    for item in data["items"]:
        if not isinstance(item, dict):
            return False
        if not item.get("url") or not isinstance(item["url"], str):
            return False
        if not item.get("vendor") or not isinstance(item["vendor"], str):
            return False
        variants = item.get("variants")
        if variants is None:
            continue
        if not isinstance(variants, list):
            return False
        for variant in variants:
            if not isinstance(variant, dict) or not variant.get("url") or not isinstance(variant["url"], str):
                return False
    return True


class LedgerManager:
    """Reads, mutates and archives ledgers under processing/."""

    def __init__(self, processing_dir: Path, file_locks: Optional[FileLockRegistry] = None):
        self.processing_dir = Path(processing_dir)
        self.archived_dir = self.processing_dir / "archived"
        self._locks = file_locks or get_file_locks()

    def ensure_directory(self):
        self.processing_dir.mkdir(parents=True, exist_ok=True)

    def list_ledgers(self) -> List[Dict[str, Any]]:
        """Ledger summaries, most recently modified first."""
        self.ensure_directory()
        ledgers = []
        for path in self.processing_dir.glob("*.json"):
            try:
                data = read_json(path, default={}) or {}
                ledgers.append({
                    "name": path.name,
                    "path": path,
                    "active": data.get("active") is True,
                    "vendor": data.get("vendor") or "unknown",
                    "total_count": data.get("total_count") or 0,
                    "processed_count": data.get("processed_count") or 0,
                    "remaining_count": len(data.get("items") or []),
                    "modified": path.stat().st_mtime,
                })
            except (OSError, ValueError) as e:
                logger.warning(f"[Ledger] Failed to read processing file {path.name}: {e}")
                get_event_log().warning("pending_file_read_failed", file=path.name, error=str(e))
        ledgers.sort(key=lambda ledger: ledger["modified"], reverse=True)
        return ledgers

    def find_active(self, vendors: Optional[Iterable[str]] = None) -> Optional[Dict[str, Any]]:
        """
        Newest active ledger (optionally restricted to some vendors).

        Older active ledgers in the same selection are deactivated.
        """
        wanted = set(vendors or [])
        active = [
            ledger for ledger in self.list_ledgers()
            if ledger["active"] and (not wanted or ledger["vendor"] in wanted)
        ]
        if not active:
            return None
        if len(active) > 1:
            logger.warning(f"[Ledger] Multiple active processing files found ({len(active)}), using most recent")
            get_event_log().warning("pending_multiple_active_files", count=len(active))
            for ledger in active[1:]:
                logger.info(f"[Ledger] Deactivating older file: {ledger['name']}")
                self.deactivate(ledger["path"])
        return active[0]

    def deactivate(self, path: Path):
        try:
            data = read_json(path, default=None)
            if data is None:
                return
            data["active"] = False
            write_json(path, data)
            logger.info(f"[Ledger] Deactivated processing file: {Path(path).name}")
        except (OSError, ValueError) as e:
            logger.warning(f"[Ledger] Failed to deactivate processing file {path}: {e}")
            get_event_log().warning("pending_deactivate_failed", file_path=str(path), error=str(e))

    def read(self, path: Path) -> Dict[str, Any]:
        """
        Load and validate a ledger.

        Raises:
            LedgerError: missing, unreadable or malformed ledger
        """
        try:
            data = read_json(path, default=None)
        except (OSError, ValueError) as e:
            raise LedgerError(f"Failed to read processing file {Path(path).name}: {e}") from e
        if data is None:
            raise LedgerError(f"Processing file not found: {path}")
        if not validate_ledger_structure(data):
            raise LedgerError(f"Invalid processing file structure: {Path(path).name}")
        return data

    def create(
        self,
        vendor: str,
        items: List[Dict[str, Any]],
        extra_meta: Optional[Dict[str, Any]] = None,
        source_files: Optional[List[str]] = None,
        exclude: Optional[List[str]] = None,
    ) -> Path:
        """Write a new active ledger and return its path."""
        self.ensure_directory()
        data: Dict[str, Any] = {
            "active": True,
            "vendor": vendor,
            "total_count": len(items),
            "processed_count": 0,
            "exclude": list(exclude or []),
            "source_files": list(source_files or []),
        }
        data.update(extra_meta or {})
        data["items"] = items
        path = self.processing_dir / ledger_file_name(vendor)
        write_json(path, data)
        logger.info(f"[Ledger] Created processing file: {path.name}")
        return path

    # Mutations

    async def remove_urls(self, path: Path, urls: Iterable[str]) -> int:
        """Remove flushed URLs; returns how many ledger items were removed."""
        to_remove = {url for url in urls if url}
        path = Path(path)
        if not to_remove or not path.exists():
            return 0

        drained = False
        async with self._locks.hold(path):
            try:
                data = read_json(path, default=None)
            except (OSError, ValueError) as e:
                logger.warning(f"[Ledger] Failed to batch-remove URLs from processing file: {e}")
                get_event_log().warning("processing_file_batch_remove_failed", error=str(e))
                return 0
            if not isinstance(data, dict) or not isinstance(data.get("items"), list):
                logger.warning("[Ledger] Processing file format not recognized, expected { items: [...] }")
                get_event_log().warning("processing_file_format_unrecognized_remove_urls")
                return 0

            remaining = [item for item in data["items"] if item.get("url") not in to_remove]
            removed = len(data["items"]) - len(remaining)
            if not remaining:
                data["active"] = False
                data["items"] = []
                data["processed_count"] = data.get("total_count") or 0
                write_json(path, data)
                logger.info("[Ledger] Processing file completed and deactivated - all URLs processed")
                drained = True
            elif removed:
                data["items"] = remaining
                data["processed_count"] = (data.get("processed_count") or 0) + removed
                write_json(path, data)
                total = data.get("total_count") or 0
                percent = (data["processed_count"] / total * 100) if total else 0.0
                logger.info(
                    f"[Ledger] {len(remaining)} URLs remaining ({data['processed_count']}/{total} processed, "
                    f"{percent:.1f}%) - batch removed {removed}"
                )

        if drained:
            self.archive(path)
        return removed

    async def update_errors(self, path: Path, error_items: List[Dict[str, Any]]) -> int:
        """Stamp error/error_timestamp/retry_count onto the ledger items that failed."""
        path = Path(path)
        errors = {
            item["source_url"]: item["error"]
            for item in error_items
            if item and item.get("source_url") and item.get("error")
        }
        if not errors or not path.exists():
            return 0

        async with self._locks.hold(path):
            try:
                data = read_json(path, default=None)
            except (OSError, ValueError) as e:
                logger.warning(f"[Ledger] Failed to update errors in processing file: {e}")
                get_event_log().warning("processing_file_error_update_failed", error=str(e))
                return 0
            if not isinstance(data, dict) or not isinstance(data.get("items"), list):
                get_event_log().warning("processing_file_format_unrecognized_update_errors")
                return 0

            now = utc_now_iso()
            updated = 0
            for item in data["items"]:
                message = errors.get(item.get("url"))
                if message is None:
                    continue
                item["error"] = message
                item["error_timestamp"] = now
                item["retry_count"] = int(item.get("retry_count") or 0) + 1
                updated += 1
            if updated:
                write_json(path, data)
                logger.info(f"[Ledger] Updated {updated} items with error information in processing file")
        return updated

    def archive(self, path: Path) -> Optional[Path]:
        """Move a ledger to archived/YYYY-MM-DD_<name>."""
        path = Path(path)
        if not path.exists():
            logger.warning(f"[Ledger] Processing file not found for archiving: {path}")
            return None
        try:
            self.archived_dir.mkdir(parents=True, exist_ok=True)
            target = self.archived_dir / f"{utc_now().strftime('%Y-%m-%d')}_{path.name}"
            path.replace(target)
            logger.info(f"[Ledger] Archived completed processing file: {path.name} -> archived/{target.name}")
            return target
        except OSError as e:
            logger.warning(f"[Ledger] Failed to archive processing file {path}: {e}")
            get_event_log().warning("processing_file_archive_failed", file_path=str(path), error=str(e))
            return None

    def cleanup(self, path: Path) -> bool:
        """Archive the ledger if it is drained; returns True when it was."""
        path = Path(path)
        if not path.exists():
            return True
        try:
            data = read_json(path, default={}) or {}
        except (OSError, ValueError) as e:
            logger.warning(f"[Ledger] Could not check processing file status: {e}")
            get_event_log().warning("processing_file_cleanup_status_check_failed", error=str(e))
            return False
        items = data.get("items")
        if not isinstance(items, list):
            get_event_log().warning("processing_file_format_unrecognized_cleanup")
            return False

        if not items:
            data["active"] = False
            write_json(path, data)
            logger.info("[Ledger] Processing file completed and deactivated")
            self.archive(path)
            return True

        logger.info(
            f"[Ledger] {len(items)} items remain ({data.get('processed_count', 0)}/{data.get('total_count', 0)} processed)"
        )
        logger.info(f"[Ledger] To retry failed URLs, run the extractor again - it will resume from {path.name}")
        return False
