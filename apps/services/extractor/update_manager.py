"""
extractor/update_manager.py

Update mode: re-extract previously scraped products and merge selected fields
into their stored snapshots.

Features:
- Per-vendor update config (output/<vendor>/update.json) over registry defaults
- Update ledgers built from the baseline index, optionally limited to stale items
- price_history / stock_history entries when a stored value actually changes
- Resuming an unfinished update ledger
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from apps.services.extractor.baseline_index import BaselineIndex, identity_key
from apps.services.extractor.errors import ExtractorError, LedgerError
from apps.services.extractor.ledger import LedgerManager
from apps.services.extractor.output_manager import OutputManager
from apps.services.extractor.persistence import coerce_datetime, read_json, utc_now, utc_now_iso
from apps.services.extractor.pricing import prices_equal

logger = logging.getLogger(__name__)

DEFAULT_UPDATE_KEY = "sku"
PROTECTED_FIELDS = ("vendor", "product_id")

get_identity_key = identity_key


@dataclass
class UpdateContext:
    """Everything the flush path needs to merge fresh results into snapshots."""
    vendor: str
    update_key: str
    update_fields: List[str]
    baseline: BaselineIndex
    ledger_path: Path
    items_count: int = 0
    resumed: bool = False
    stale_before: Optional[str] = None
    source_files: List[str] = field(default_factory=list)


def _history(original: Dict[str, Any], name: str) -> List[Dict[str, Any]]:
    existing = original.get(name)
    return list(existing) if isinstance(existing, list) else []


def apply_field_updates(
    original: Dict[str, Any],
    fresh: Dict[str, Any],
    update_fields: Optional[List[str]] = None,
    now: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Copy the update fields from fresh onto a copy of original.

    History entries {old, new, changed_at} are appended only when a stored
    snapshot exists and the value changed; prices compare numerically to 2dp.
    Existing history arrays are carried forward untouched otherwise.
    """
    now = now or utc_now_iso()
    fresh = fresh or {}
    original = original or {}
    has_baseline = bool(original)
    updated = dict(original)
    fields = list(update_fields) if update_fields else list(fresh.keys())

    for name in fields:
        if name in PROTECTED_FIELDS or name not in fresh:
            continue
        value = fresh[name]
        updated[name] = list(value) if isinstance(value, list) else value

    if "price_history" in updated:
        updated["price_history"] = _history(original, "price_history")
    if "stock_history" in updated:
        updated["stock_history"] = _history(original, "stock_history")

    if has_baseline and "price" in fields and "price" in fresh:
        before = original.get("price")
        if not prices_equal(before, fresh["price"]):
            history = _history(original, "price_history")
            history.append({"old": before, "new": fresh["price"], "changed_at": now})
            updated["price_history"] = history

    before_stock = original.get("stock_status")
    after_stock = updated.get("stock_status")
    if has_baseline and before_stock != after_stock:
        history = _history(original, "stock_history")
        history.append({"old": before_stock, "new": after_stock, "changed_at": now})
        updated["stock_history"] = history

    updated["last_checked_at"] = now
    return updated


def merge_snapshots(
    items: List[Dict[str, Any]],
    update_key: Optional[str],
    update_fields: Optional[List[str]],
    baseline: Optional[BaselineIndex],
) -> List[Dict[str, Any]]:
    """Fresh results merged onto their stored snapshots; unknown products pass through."""
    merged = []
    now = utc_now_iso()
    for fresh in items:
        key = get_identity_key(fresh, update_key)
        original = baseline.get(key) if baseline is not None else None
        if not original:
            merged.append({**fresh, "last_checked_at": now})
            continue
        merged.append(apply_field_updates(original, fresh, update_fields, now=now))
    return merged


def baseline_item_to_work_item(vendor: str, snapshot: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "url": snapshot.get("product_url") or snapshot.get("source_url") or snapshot.get("url") or "",
        "vendor": vendor,
        "image_url": snapshot.get("main_image") or None,
        "sku": snapshot.get("product_id") or snapshot.get("sku") or None,
        "variants": [],
    }


def is_stale(snapshot: Dict[str, Any], stale_before) -> bool:
    if stale_before is None:
        return True
    checked = coerce_datetime(
        snapshot.get("last_checked_at") or snapshot.get("updated_at") or snapshot.get("created_at")
    )
    return checked is None or checked < stale_before


class UpdateManager:
    """Prepares update ledgers and holds the vendor's update defaults."""

    def __init__(
        self,
        output_manager: OutputManager,
        ledger_manager: LedgerManager,
        update_defaults: Optional[Dict[str, Any]] = None,
    ):
        self.outputs = output_manager
        self.ledgers = ledger_manager
        self.update_defaults = dict(update_defaults or {})

    def load_vendor_update_config(self, vendor: str) -> Dict[str, Any]:
        """output/<vendor>/update.json merged over the registry defaults."""
        config = dict(self.update_defaults)
        path = self.outputs.vendor_dir(vendor) / "update.json"
        try:
            loaded = read_json(path, default={})
        except (OSError, ValueError) as e:
            logger.warning(f"[Update] Ignoring unreadable {path}: {e}")
            loaded = {}
        if isinstance(loaded, dict):
            config.update(loaded)
        return config

    def find_active_update_ledger(self, vendor: str) -> Optional[Dict[str, Any]]:
        for ledger in self.ledgers.list_ledgers():
            if not ledger["active"] or ledger["vendor"].lower() != vendor.lower():
                continue
            try:
                data = self.ledgers.read(ledger["path"])
            except LedgerError as e:
                logger.warning(f"[Update] Skipping unreadable ledger {ledger['name']}: {e}")
                continue
            if data.get("mode") == "update" and data["items"]:
                return {"path": ledger["path"], "data": data}
        return None

    def open_baseline(self, vendor: str, update_key: Optional[str]) -> BaselineIndex:
        logger.info(f"[Update] Building baseline for vendor {vendor}...")
        baseline = BaselineIndex(self.outputs.vendor_dir(vendor), update_key).rebuild()
        logger.info(f"[Update] Baseline size: {baseline.size()}")
        return baseline

    def prepare_update_mode(
        self,
        vendor: Optional[str],
        update_key: Optional[str] = None,
        update_fields: Optional[List[str]] = None,
        stale_days: Optional[int] = None,
    ) -> UpdateContext:
        """
        Resume the vendor's active update ledger, or build a new one from the baseline.

        Raises:
            ExtractorError: no vendor was given
        """
        if not vendor:
            raise ExtractorError("--vendor is required for update mode")

        existing = self.find_active_update_ledger(vendor)
        if existing is not None:
            data = existing["data"]
            key = data.get("update_key") or update_key or DEFAULT_UPDATE_KEY
            fields = data.get("update_fields") if isinstance(data.get("update_fields"), list) else list(update_fields or [])
            logger.info(
                f"[Update] Resuming existing update job: {existing['path'].name} ({len(data['items'])} remaining)"
            )
            return UpdateContext(
                vendor=vendor,
                update_key=key,
                update_fields=fields,
                baseline=self.open_baseline(vendor, key),
                ledger_path=existing["path"],
                items_count=len(data["items"]),
                resumed=True,
                stale_before=data.get("stale_before"),
                source_files=list(data.get("source_files") or []),
            )

        active = self.ledgers.find_active()
        if active is not None:
            self.ledgers.deactivate(active["path"])

        config = self.load_vendor_update_config(vendor)
        key = update_key or config.get("update_key") or None
        fields = list(update_fields or []) or list(config.get("update_fields") or [])
        if stale_days is None and isinstance(config.get("stale_days"), (int, float)):
            stale_days = config["stale_days"]
        stale_before = None
        if stale_days is not None and stale_days >= 0:
            stale_before = utc_now() - timedelta(days=stale_days)

        baseline = self.open_baseline(vendor, key)
        items = []
        seen = set()
        for _, snapshot in baseline.iter_items():
            if not is_stale(snapshot, stale_before):
                continue
            work_item = baseline_item_to_work_item(vendor, snapshot)
            if not work_item["url"] or work_item["url"] in seen:
                continue
            seen.add(work_item["url"])
            items.append(work_item)

        stale_before_iso = stale_before.isoformat().replace("+00:00", "Z") if stale_before else None
        extra_meta: Dict[str, Any] = {
            "mode": "update",
            "update_key": key or DEFAULT_UPDATE_KEY,
            "update_fields": fields,
            "created_at": utc_now_iso(),
        }
        if stale_before_iso:
            extra_meta["stale_before"] = stale_before_iso
        source_files = [path.name for path in self.outputs.vendor_dir(vendor).glob("*.output*.json")]
        ledger_path = self.ledgers.create(vendor, items, extra_meta=extra_meta, source_files=sorted(source_files))
        logger.info(f"[Update] Created update processing file: {ledger_path.name} (items: {len(items)})")

        return UpdateContext(
            vendor=vendor,
            update_key=key or DEFAULT_UPDATE_KEY,
            update_fields=fields,
            baseline=baseline,
            ledger_path=ledger_path,
            items_count=len(items),
            resumed=False,
            stale_before=stale_before_iso,
            source_files=sorted(source_files),
        )
