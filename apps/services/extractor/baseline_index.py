"""
SQLite baseline index - a REBUILDABLE CACHE over a vendor's output files.

The output JSON files are the source of truth. The index stores only where
each product lives (file + item_index), never the product itself, so it can be
dropped and rebuilt at any time.

Location:
    output/<vendor>/updates/baseline.index.sqlite

Schema:
    - items(key PRIMARY KEY, file, item_index, updated_at, created_at)
    - meta(name PRIMARY KEY, value)   last_scan_mtime, version
"""

import logging
import re
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

from apps.services.extractor.persistence import read_json

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
DB_NAME = "baseline.index.sqlite"

_UPDATE_FILE = re.compile(r"\.update(_\d+)?\.json$")

UPSERT_SQL = """
    INSERT INTO items(key, file, item_index, updated_at, created_at)
    VALUES (:key, :file, :item_index, :updated_at, :created_at)
    ON CONFLICT(key) DO UPDATE SET
        file = CASE WHEN items.updated_at IS NULL OR excluded.updated_at > items.updated_at
                    THEN excluded.file ELSE items.file END,
        item_index = CASE WHEN items.updated_at IS NULL OR excluded.updated_at > items.updated_at
                    THEN excluded.item_index ELSE items.item_index END,
        created_at = CASE WHEN items.updated_at IS NULL OR excluded.updated_at > items.updated_at
                    THEN excluded.created_at ELSE items.created_at END,
        updated_at = CASE WHEN items.updated_at IS NULL OR excluded.updated_at > items.updated_at
                    THEN excluded.updated_at ELSE items.updated_at END
"""


def identity_key(item: Any, update_key: Optional[str] = None) -> Optional[str]:
    """Configured key first, then product_id, sku, product_url, source_url, url."""
    if not isinstance(item, dict):
        return None
    if update_key and item.get(update_key):
        return str(item[update_key])
    for key in ("product_id", "sku", "product_url", "source_url", "url"):
        if item.get(key):
            return str(item[key])
    return None


def is_baseline_source(path: Path) -> bool:
    """Extraction output files only; update files and update.json are excluded."""
    return (
        path.is_file()
        and path.suffix == ".json"
        and path.name != "update.json"
        and not _UPDATE_FILE.search(path.name)
    )


class BaselineIndex:
    """
    Identity-key index over output/<vendor>/*.json.

    get() and iter_items() load snapshots lazily from the indexed files.
    """

    def __init__(self, vendor_dir: Path, update_key: Optional[str] = None):
        self.vendor_dir = Path(vendor_dir)
        self.update_key = update_key
        self.db_path = self.vendor_dir / "updates" / DB_NAME
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._init_schema()
        self._file_cache: Dict[str, Any] = {}

    def _init_schema(self):
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS items (
                key TEXT PRIMARY KEY,
                file TEXT NOT NULL,
                item_index INTEGER,
                updated_at TEXT,
                created_at TEXT
            )
        """)
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_items_updated_at ON items(updated_at)")
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS meta (
                name TEXT PRIMARY KEY,
                value TEXT
            )
        """)
        self._conn.commit()

    def _source_files(self):
        if not self.vendor_dir.exists():
            return []
        return sorted(path for path in self.vendor_dir.glob("*.json") if is_baseline_source(path))

    def _latest_mtime(self) -> float:
        return max((path.stat().st_mtime for path in self._source_files()), default=0.0)

    def get_meta(self, name: str) -> Optional[str]:
        row = self._conn.execute("SELECT value FROM meta WHERE name = ?", (name,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, name: str, value: Any):
        self._conn.execute(
            "INSERT INTO meta(name, value) VALUES (?, ?) "
            "ON CONFLICT(name) DO UPDATE SET value = excluded.value",
            (name, str(value)),
        )

    def rebuild(self) -> "BaselineIndex":
        """Scan output files into the index; skipped when nothing changed since the last scan."""
        latest = self._latest_mtime()
        last_scan = float(self.get_meta("last_scan_mtime") or 0)
        if last_scan and latest and last_scan >= latest:
            logger.info(f"[Baseline] Reusing index for {self.vendor_dir.name} ({self.size()} items)")
            return self

        for path in self._source_files():
            try:
                data = read_json(path, default=None)
            except (OSError, ValueError) as e:
                logger.warning(f"[Baseline] Skipping unreadable output file {path.name}: {e}")
                continue
            if not isinstance(data, dict) or not isinstance(data.get("items"), list):
                continue
            file_ts = data.get("updated_at") or data.get("created_at")
            rows = []
            for index, item in enumerate(data["items"]):
                key = identity_key(item, self.update_key)
                if not key:
                    continue
                rows.append({
                    "key": key,
                    "file": str(path),
                    "item_index": index,
                    "updated_at": item.get("updated_at") or item.get("last_checked_at") or file_ts,
                    "created_at": data.get("created_at"),
                })
            with self._conn:
                self._conn.executemany(UPSERT_SQL, rows)

        with self._conn:
            self.set_meta("last_scan_mtime", latest)
            self.set_meta("version", SCHEMA_VERSION)
        self._file_cache.clear()
        logger.info(f"[Baseline] Indexed {self.size()} items for {self.vendor_dir.name}")
        return self

    def _load_file(self, file_path: str) -> Optional[Dict[str, Any]]:
        if file_path not in self._file_cache:
            try:
                self._file_cache[file_path] = read_json(file_path, default=None)
            except (OSError, ValueError) as e:
                logger.warning(f"[Baseline] Failed to load {file_path}: {e}")
                self._file_cache[file_path] = None
        return self._file_cache[file_path]

    def _snapshot(self, file_path: str, item_index: Optional[int]) -> Optional[Dict[str, Any]]:
        if not file_path or item_index is None:
            return None
        data = self._load_file(file_path)
        items = data.get("items") if isinstance(data, dict) else None
        if not isinstance(items, list) or item_index >= len(items):
            return None
        return items[item_index]

    def get(self, key: Optional[str]) -> Optional[Dict[str, Any]]:
        """Stored snapshot for an identity key, or None."""
        if not key:
            return None
        row = self._conn.execute("SELECT file, item_index FROM items WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return self._snapshot(row["file"], row["item_index"])

    def size(self) -> int:
        row = self._conn.execute("SELECT COUNT(1) AS c FROM items").fetchone()
        return int(row["c"]) if row else 0

    def iter_items(self) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """(key, snapshot) pairs, ordered by file so each file is parsed once."""
        rows = self._conn.execute("SELECT key, file, item_index FROM items ORDER BY file, item_index").fetchall()
        for row in rows:
            snapshot = self._snapshot(row["file"], row["item_index"])
            if snapshot:
                yield row["key"], snapshot

    def close(self):
        self._file_cache.clear()
        self._conn.close()
