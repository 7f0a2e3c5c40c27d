"""
extractor/error_log.py

Structured event log - one JSON object per line in logs/YYYY-MM-DD.log

Features:
- Append-only JSONL persistence
- Error detail extraction from exceptions
- Daily log statistics for the end-of-run summary
- Never raises: a failed write is reported through the regular logger
"""

import json
import logging
import threading
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from apps.services.extractor.persistence import utc_now_iso

logger = logging.getLogger(__name__)

LOG_LEVELS = ("error", "warn", "info", "debug")


def extract_error_details(error: Optional[BaseException]) -> Dict[str, Any]:
    """Safe, JSON-friendly summary of an exception."""
    if error is None:
        return {}
    details: Dict[str, Any] = {
        "error": str(error) or error.__class__.__name__,
        "name": error.__class__.__name__,
    }
    if error.__traceback__ is not None:
        details["stack"] = "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )[-4000:]
    code = getattr(error, "code", None)
    if code is not None:
        details["code"] = code
    return details


class EventLog:
    """Daily JSONL event log."""

    def __init__(self, log_dir: Path):
        self.log_dir = Path(log_dir)
        self._lock = threading.Lock()

    def log_file_path(self) -> Path:
        """Path of today's log file."""
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self.log_dir / f"{today}.log"

    def write(self, level: str, event: str, **details: Any):
        entry = {"ts": utc_now_iso(), "level": level, "event": event}
        entry.update(details)
        try:
            line = json.dumps(entry, default=str, ensure_ascii=False)
            with self._lock:
                self.log_dir.mkdir(parents=True, exist_ok=True)
                with open(self.log_file_path(), "a", encoding="utf-8") as f:
                    f.write(line + "\n")
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"[EventLog] Failed to write log entry '{event}': {e}")

    def error(self, event: str, **details: Any):
        self.write("error", event, **details)

    def warning(self, event: str, **details: Any):
        self.write("warn", event, **details)

    def info(self, event: str, **details: Any):
        self.write("info", event, **details)

    def error_with_details(self, event: str, error: BaseException, **details: Any):
        merged = extract_error_details(error)
        merged.update(details)
        self.write("error", event, **merged)

    def get_stats(self) -> Dict[str, Any]:
        """Size and entry count of today's log."""
        path = self.log_file_path()
        if not path.exists():
            return {"exists": False, "size": 0, "entries": 0}
        try:
            with open(path, "r", encoding="utf-8") as f:
                entries = sum(1 for line in f if line.strip())
            stat = path.stat()
            return {
                "exists": True,
                "size": stat.st_size,
                "entries": entries,
                "last_modified": datetime.fromtimestamp(stat.st_mtime).isoformat(),
                "path": str(path),
            }
        except OSError as e:
            return {"exists": False, "size": 0, "entries": 0, "error": str(e)}

    def get_recent_entries(self, max_entries: int = 50, level: Optional[str] = None) -> List[Dict[str, Any]]:
        path = self.log_file_path()
        if not path.exists():
            return []
        try:
            with open(path, "r", encoding="utf-8") as f:
                lines = [line for line in f if line.strip()]
        except OSError as e:
            logger.error(f"[EventLog] Failed to read {path}: {e}")
            return []

        entries = []
        for line in lines[-max_entries:]:
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        if level:
            entries = [entry for entry in entries if entry.get("level") == level]
        return entries


# Global instance with thread-safe initialization
_event_log: Optional[EventLog] = None
_event_log_lock = threading.Lock()


def configure_event_log(log_dir: Path) -> EventLog:
    """Point the global event log at a directory."""
    global _event_log
    with _event_log_lock:
        _event_log = EventLog(log_dir)
    return _event_log


def get_event_log() -> EventLog:
    """Get or create the global event log (defaults to ./logs)."""
    global _event_log
    if _event_log is None:
        with _event_log_lock:
            if _event_log is None:
                _event_log = EventLog(Path("logs"))
    return _event_log


def log_error(event: str, **details: Any):
    get_event_log().error(event, **details)


def log_error_with_details(event: str, error: BaseException, **details: Any):
    get_event_log().error_with_details(event, error, **details)


def get_log_stats() -> Dict[str, Any]:
    return get_event_log().get_stats()
