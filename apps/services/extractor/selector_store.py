"""
extractor/selector_store.py

Selector Store - per-vendor, per-field ranked element locators.

Document layout (cache/vendor-selectors.json):
    {
      "<vendor>": {
        "selectors": {"<field>": [SelectorEntry, ...]},
        "last_llm_extraction": {"timestamp", "attempted_fields", "results"}
      }
    }

Features:
- One-time migration of the legacy {field: "selector"} shape at load time
- Success promotes a selector to the front (success_count capped at 10)
- Failure lowers confidence and re-ranks the list
- Bounded list per field, tail evicted on insert
- Extraction snapshot used as a "confirmed absent" freshness cache
- Document cached by file mtime; every read-modify-write under a per-path lock
- Best-effort writes: a failed save is logged and the in-memory state is kept
"""

from __future__ import annotations

import copy
import logging
from dataclasses import asdict, dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from apps.services.extractor.error_log import log_error_with_details
from apps.services.extractor.file_lock import FileLockRegistry, get_file_locks
from apps.services.extractor.persistence import coerce_datetime, read_json, utc_now, utc_now_iso, write_json

logger = logging.getLogger(__name__)

MAX_SUCCESS_COUNT = 10
SNAPSHOT_KEY = "last_llm_extraction"


def compute_confidence(success_count: int, failure_count: int) -> float:
    """Laplace-smoothed success ratio."""
    return round((success_count + 1) / (success_count + failure_count + 2), 3)


@dataclass
class SelectorEntry:
    """A learned locator and its track record."""
    selector: str
    learned_at: str
    success_count: int = 1
    failure_count: int = 0
    last_success: Optional[str] = None
    last_failure: Optional[str] = None
    confidence_score: float = 0.667

    @classmethod
    def new(cls, selector: str) -> "SelectorEntry":
        now = utc_now_iso()
        return cls(
            selector=selector,
            learned_at=now,
            success_count=1,
            last_success=now,
            confidence_score=compute_confidence(1, 0),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SelectorEntry":
        now = utc_now_iso()
        success = min(int(data.get("success_count") or 1), MAX_SUCCESS_COUNT)
        failure = int(data.get("failure_count") or 0)
        return cls(
            selector=data["selector"],
            learned_at=data.get("learned_at") or now,
            success_count=success,
            failure_count=failure,
            last_success=data.get("last_success"),
            last_failure=data.get("last_failure"),
            confidence_score=compute_confidence(success, failure),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _snapshot_value_type(value: Any) -> str:
    if isinstance(value, list):
        return "array"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if value is None:
        return "undefined"
    return "object"


def _is_found(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip() != ""
    return bool(value)


def migrate_vendor_entry(entry: Any, max_selectors: Optional[int] = None) -> Dict[str, Any]:
    """Normalize one vendor entry into the canonical {selectors: {field: [entry]}} shape."""
    if not isinstance(entry, dict):
        return {"selectors": {}}

    if "selectors" not in entry:
        now = utc_now_iso()
        migrated: Dict[str, Any] = {"selectors": {}}
        for field_name, selector in entry.items():
            if field_name == SNAPSHOT_KEY:
                continue
            if isinstance(selector, str) and selector.strip():
                migrated["selectors"][field_name] = [{
                    "selector": selector,
                    "learned_at": now,
                    "success_count": 1,
                    "last_success": now,
                }]
        if entry.get(SNAPSHOT_KEY):
            migrated[SNAPSHOT_KEY] = entry[SNAPSHOT_KEY]
        entry = migrated

    selectors = entry.get("selectors") or {}
    normalized = {}
    for field_name, entries in selectors.items():
        if isinstance(entries, str):
            entries = [{"selector": entries}]
        if not isinstance(entries, list):
            continue
        normalized[field_name] = [
            SelectorEntry.from_dict(item).to_dict()
            for item in entries
            if isinstance(item, dict) and item.get("selector")
        ][:max_selectors]
    entry["selectors"] = normalized
    return entry


class SelectorStore:
    """
    Shared selector document for all vendors.

    All mutating methods are coroutines because they serialize through
    the per-path lock; lookups are synchronous and served from the
    mtime-validated in-memory copy.
    """

    def __init__(
        self,
        path: Path,
        max_selectors_per_field: int = 5,
        file_locks: Optional[FileLockRegistry] = None,
    ):
        self.path = Path(path)
        self.max_selectors_per_field = max_selectors_per_field
        self._locks = file_locks or get_file_locks()
        self._doc: Optional[Dict[str, Any]] = None
        self._doc_mtime: Optional[float] = None

    def _current_mtime(self) -> Optional[float]:
        try:
            return self.path.stat().st_mtime
        except OSError:
            return None

    def load(self) -> Dict[str, Any]:
        """Load (and migrate) the document, reusing the cached copy if the file is unchanged."""
        mtime = self._current_mtime()
        if self._doc is not None and mtime == self._doc_mtime:
            return self._doc

        try:
            raw = read_json(self.path, default={}) or {}
        except (OSError, ValueError) as e:
            logger.warning(f"[SelectorStore] Failed to load {self.path}: {e}")
            log_error_with_details("selector_load_failed", e, path=str(self.path))
            if self._doc is None:
                self._doc = {}
            return self._doc

        self._doc = {vendor: migrate_vendor_entry(entry, self.max_selectors_per_field) for vendor, entry in raw.items()}
        self._doc_mtime = mtime
        return self._doc

    def _save(self, doc: Dict[str, Any], vendor: str, fields: Iterable[str]):
        self._doc = doc
        try:
            write_json(self.path, doc)
            self._doc_mtime = self._current_mtime()
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"[SelectorStore] Failed to save selectors for {vendor}: {e}")
            log_error_with_details("selector_save_failed", e, vendor=vendor, selector_fields=list(fields))

    def _vendor_entry(self, doc: Dict[str, Any], vendor: str) -> Dict[str, Any]:
        entry = doc.get(vendor)
        if entry is None:
            entry = {"selectors": {}}
            doc[vendor] = entry
        entry.setdefault("selectors", {})
        return entry

    # Lookup

    def get_vendor_entry(self, vendor: str) -> Dict[str, Any]:
        return copy.deepcopy(self.load().get(vendor) or {"selectors": {}})

    def get_selectors(self, vendor: str, field_name: str) -> List[SelectorEntry]:
        """Selector entries for a field, most reliable first."""
        entries = ((self.load().get(vendor) or {}).get("selectors") or {}).get(field_name) or []
        return [SelectorEntry.from_dict(item) for item in entries]

    def has_selectors(self, vendor: str, field_name: str) -> bool:
        return bool(self.get_selectors(vendor, field_name))

    def needs_success_update(self, vendor: str, field_name: str, selector: str) -> bool:
        """False once a selector has reached the success cap (no write needed)."""
        for entry in self.get_selectors(vendor, field_name):
            if entry.selector == selector:
                return entry.success_count < MAX_SUCCESS_COUNT
        return True

    # Mutation

    def _apply_success(self, entries: List[Dict[str, Any]], selector: str) -> bool:
        """Promote or insert; returns False when nothing changed."""
        now = utc_now_iso()
        for index, item in enumerate(entries):
            if item["selector"] != selector:
                continue
            if item.get("success_count", 0) >= MAX_SUCCESS_COUNT:
                return False
            item["success_count"] = item.get("success_count", 0) + 1
            item["last_success"] = now
            item["confidence_score"] = compute_confidence(item["success_count"], item.get("failure_count", 0))
            entries.insert(0, entries.pop(index))
            del entries[self.max_selectors_per_field:]
            return True

        entries.insert(0, SelectorEntry.new(selector).to_dict())
        del entries[self.max_selectors_per_field:]
        return True

    async def record_success(self, vendor: str, field_name: str, selector: str):
        await self.save_selectors(vendor, {field_name: selector})

    async def save_selectors(self, vendor: str, learned: Dict[str, str]):
        """Commit successful selectors (promote-if-exists else insert-at-front)."""
        async with self._locks.hold(self.path):
            doc = copy.deepcopy(self.load())
            vendor_entry = self._vendor_entry(doc, vendor)
            changed = False
            for field_name, selector in learned.items():
                if not isinstance(selector, str) or not selector.strip():
                    continue
                entries = vendor_entry["selectors"].setdefault(field_name, [])
                changed = self._apply_success(entries, selector) or changed
            if changed:
                self._save(doc, vendor, learned.keys())

    async def record_failure(self, vendor: str, field_name: str, selector: str):
        """Count a miss against a selector and re-rank the field's list."""
        async with self._locks.hold(self.path):
            doc = copy.deepcopy(self.load())
            entries = self._vendor_entry(doc, vendor)["selectors"].get(field_name) or []
            target = next((item for item in entries if item["selector"] == selector), None)
            if target is None:
                return
            target["failure_count"] = target.get("failure_count", 0) + 1
            target["last_failure"] = utc_now_iso()
            target["confidence_score"] = compute_confidence(target.get("success_count", 0), target["failure_count"])
            entries.sort(key=lambda item: item.get("confidence_score", 0), reverse=True)
            del entries[self.max_selectors_per_field:]
            self._save(doc, vendor, [field_name])

    # Extraction snapshot

    def get_snapshot(self, vendor: str) -> Optional[Dict[str, Any]]:
        return copy.deepcopy((self.load().get(vendor) or {}).get(SNAPSHOT_KEY))

    async def update_snapshot(self, vendor: str, attempted_fields: Iterable[str], values: Dict[str, Any]):
        """Merge what the model was asked for and what it found into the vendor snapshot."""
        attempted = list(attempted_fields)
        async with self._locks.hold(self.path):
            doc = copy.deepcopy(self.load())
            vendor_entry = self._vendor_entry(doc, vendor)
            previous = vendor_entry.get(SNAPSHOT_KEY) or {"results": {}}

            results = dict(previous.get("results") or {})
            for field_name in attempted:
                value = values.get(field_name)
                results[field_name] = {
                    "found": _is_found(value),
                    "value_type": _snapshot_value_type(value),
                }

            merged_fields = list(previous.get("attempted_fields") or [])
            for field_name in attempted:
                if field_name not in merged_fields:
                    merged_fields.append(field_name)

            vendor_entry[SNAPSHOT_KEY] = {
                "timestamp": utc_now_iso(),
                "attempted_fields": merged_fields,
                "results": results,
            }
            self._save(doc, vendor, attempted)

    def fields_confirmed_absent(self, vendor: str, freshness_days: float) -> Set[str]:
        """Fields the model recently looked for and did not find."""
        snapshot = self.get_snapshot(vendor)
        if not snapshot:
            return set()
        taken_at = coerce_datetime(snapshot.get("timestamp"))
        if taken_at is None or utc_now() - taken_at >= timedelta(days=freshness_days):
            return set()
        results = snapshot.get("results") or {}
        return {
            field_name
            for field_name in snapshot.get("attempted_fields") or []
            if (results.get(field_name) or {}).get("found") is False
        }
