"""
CaseVault Event Log: structured JSONL audit trail with an async queue.

Implements:
- FileLogger: one file per object type, category and day
  (logs/{object_type}/{category}/{YYYY-MM-DD}.jsonl)
- AsyncLogQueue: bounded in-memory queue drained by a daemon thread
- Entry builders for document, version, backup, evidence, storage and
  system events
- LogRetentionManager: deletes expired files and gzips older ones

Custody events are written to the ``security`` category so they follow
the longest retention window.
"""

from __future__ import annotations

import gzip
import json
import logging
import shutil
import threading
from collections import defaultdict
from datetime import date, datetime, timezone
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Any, Dict, List, Optional

logger = logging.getLogger("casevault.engine.logging")

OBJECT_TYPE_CATEGORIES = {
    "documents": ["execution", "security"],
    "versions": ["execution"],
    "backups": ["execution", "performance"],
    "evidence": ["execution", "security"],
    "storage": ["execution", "performance"],
    "system": ["execution", "security"],
}

# Retention defaults (days)
DEFAULT_RETENTION = {
    "execution": 90,
    "performance": 30,
    "security": 365,
}


class LogEntry:
    """A structured event destined for one log file."""

    __slots__ = ("object_type", "category", "data")

    def __init__(self, object_type: str, category: str, data: Dict[str, Any]):
        if object_type not in OBJECT_TYPE_CATEGORIES:
            object_type = "system"
        if category not in OBJECT_TYPE_CATEGORIES[object_type]:
            category = "execution"
        self.object_type = object_type
        self.category = category
        self.data = data

    def to_json(self) -> str:
        return json.dumps(self.data, default=str, separators=(",", ":"))


class FileLogger:
    """
    Appends JSON lines to per-type, per-category daily files.

    Thread-safe: one lock per file path.
    """

    def __init__(self, log_dir: str = "logs"):
        self._log_dir = Path(log_dir)
        self._file_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        for obj_type, categories in OBJECT_TYPE_CATEGORIES.items():
            for cat in categories:
                (self._log_dir / obj_type / cat).mkdir(parents=True, exist_ok=True)

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    def path_for(self, object_type: str, category: str, day: Optional[date] = None) -> Path:
        day = day or date.today()
        return self._log_dir / object_type / category / f"{day.isoformat()}.jsonl"

    def write(self, entry: LogEntry) -> None:
        self.write_batch([entry])

    def write_batch(self, entries: List[LogEntry]) -> None:
        """Write entries grouped by destination file, one open per file."""
        grouped: Dict[str, List[LogEntry]] = defaultdict(list)
        for entry in entries:
            grouped[str(self.path_for(entry.object_type, entry.category))].append(entry)

        for file_path, batch in grouped.items():
            with self._file_locks[file_path]:
                with open(file_path, "a", encoding="utf-8") as f:
                    f.writelines(e.to_json() + "\n" for e in batch)

    def read(
        self,
        object_type: str,
        category: str,
        day: Optional[date] = None,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Read one day's entries (plain or gzipped), oldest first.

        ``filters`` keeps only entries whose top-level keys equal the given values.
        """
        path = self.path_for(object_type, category, day)
        gz_path = path.with_suffix(".jsonl.gz")
        if path.exists():
            opener = open(path, "r", encoding="utf-8")
        elif gz_path.exists():
            opener = gzip.open(gz_path, "rt", encoding="utf-8")
        else:
            return []

        entries: List[Dict[str, Any]] = []
        with opener as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(f"Skipping malformed log line in {path.name}")
                    continue
                if filters and not all(data.get(k) == v for k, v in filters.items()):
                    continue
                entries.append(data)
        return entries


class AsyncLogQueue:
    """
    Non-blocking front end for FileLogger.

    ``push`` never blocks the caller; a daemon thread writes batches of up
    to ``flush_batch_size`` entries every ``flush_interval_ms``. Entries are
    counted as dropped when the queue is full.
    """

    def __init__(
        self,
        file_logger: FileLogger,
        flush_interval_ms: int = 100,
        flush_batch_size: int = 50,
        max_queue_size: int = 10000,
    ):
        self._logger = file_logger
        self._flush_interval = flush_interval_ms / 1000.0
        self._flush_batch_size = flush_batch_size
        self._queue: Queue[LogEntry] = Queue(maxsize=max_queue_size)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._dropped_count = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="casevault-log-flush",
            daemon=True,
        )
        self._thread.start()
        logger.debug("Event log queue started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the flush thread, then write whatever is still queued."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        self.flush()
        logger.debug(f"Event log queue stopped (dropped: {self._dropped_count})")

    def push(self, entry: LogEntry) -> bool:
        try:
            self._queue.put_nowait(entry)
            return True
        except Full:
            self._dropped_count += 1
            return False

    def flush(self) -> int:
        """Synchronously write all queued entries. Returns the number written."""
        written = 0
        while True:
            batch = self._take(self._flush_batch_size)
            if not batch:
                return written
            self._write(batch)
            written += len(batch)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            batch = self._take(self._flush_batch_size)
            if batch:
                self._write(batch)
            else:
                self._stop_event.wait(self._flush_interval)

    def _take(self, limit: int) -> List[LogEntry]:
        batch: List[LogEntry] = []
        while len(batch) < limit:
            try:
                batch.append(self._queue.get_nowait())
            except Empty:
                break
        return batch

    def _write(self, batch: List[LogEntry]) -> None:
        try:
            self._logger.write_batch(batch)
        except OSError as e:
            logger.error(f"Event log write failed ({len(batch)} entries lost): {e}")

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    @property
    def dropped_count(self) -> int:
        return self._dropped_count


# ---------------------------------------------------------------------------
# Log Entry Builders
# ---------------------------------------------------------------------------

def _base_entry(
    event: str,
    level: str,
    object_ref: str,
    user_id: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "event": event,
        "object_ref": object_ref,
    }
    if user_id is not None:
        entry["user_id"] = user_id
    entry.update({k: v for k, v in extra.items() if v is not None})
    return entry


def _level_for(event: str, success: bool = True) -> str:
    return "ERROR" if (not success or "fail" in event) else "INFO"


def log_document_event(
    event: str,
    document_id: str,
    user_id: Optional[str] = None,
    success: bool = True,
    **details: Any,
) -> LogEntry:
    """Upload, update, delete and download events for a document."""
    data = _base_entry(
        event=event,
        level=_level_for(event, success),
        object_ref=f"documents.{document_id}",
        user_id=user_id,
        document_id=document_id,
        success=success,
        **details,
    )
    category = "security" if event in ("document_deleted", "document_purged") else "execution"
    return LogEntry("documents", category, data)


def log_version_event(
    event: str,
    document_id: str,
    version_number: Optional[int] = None,
    user_id: Optional[str] = None,
    success: bool = True,
    error: Optional[str] = None,
    **details: Any,
) -> LogEntry:
    """Version created, restored, pruned or rejected."""
    data = _base_entry(
        event=event,
        level=_level_for(event, success),
        object_ref=f"documents.{document_id}.v{version_number}" if version_number else f"documents.{document_id}",
        user_id=user_id,
        document_id=document_id,
        version_number=version_number,
        success=success,
        error=error,
        **details,
    )
    return LogEntry("versions", "execution", data)


def log_backup_event(
    event: str,
    backup_id: str,
    status: str,
    duration_ms: Optional[float] = None,
    size_bytes: Optional[int] = None,
    files_count: Optional[int] = None,
    error: Optional[str] = None,
    **details: Any,
) -> LogEntry:
    """Backup/restore lifecycle events; completed runs also go to performance."""
    data = _base_entry(
        event=event,
        level="ERROR" if status == "failed" or error else "INFO",
        object_ref=f"backups.{backup_id}",
        backup_id=backup_id,
        status=status,
        duration_ms=duration_ms,
        size_bytes=size_bytes,
        files_count=files_count,
        error=error,
        **details,
    )
    category = "performance" if event == "backup_completed" else "execution"
    return LogEntry("backups", category, data)


def log_evidence_event(
    event: str,
    evidence_id: str,
    performed_by: Optional[str] = None,
    action: Optional[str] = None,
    level: str = "INFO",
    **details: Any,
) -> LogEntry:
    """Custody changes and integrity verdicts for an evidence item."""
    data = _base_entry(
        event=event,
        level=level,
        object_ref=f"evidence.{evidence_id}",
        user_id=performed_by,
        evidence_id=evidence_id,
        action=action,
        **details,
    )
    return LogEntry("evidence", "security", data)


def log_storage_event(
    event: str,
    duration_ms: Optional[float] = None,
    level: str = "INFO",
    **details: Any,
) -> LogEntry:
    """Optimization runs and storage metrics snapshots."""
    data = _base_entry(
        event=event,
        level=level,
        object_ref="storage",
        duration_ms=duration_ms,
        **details,
    )
    category = "performance" if duration_ms is not None else "execution"
    return LogEntry("storage", category, data)


def log_system_event(
    event: str,
    level: str = "INFO",
    details: Optional[Dict[str, Any]] = None,
) -> LogEntry:
    """Startup, shutdown and configuration events."""
    data = _base_entry(event=event, level=level, object_ref="system")
    if details:
        data["details"] = details
    return LogEntry("system", "execution", data)


# ---------------------------------------------------------------------------
# Log Cleanup / Retention
# ---------------------------------------------------------------------------

class LogRetentionManager:
    """
    Deletes event log files past their category's retention and gzips
    plain files older than ``compress_after_days``.
    """

    def __init__(
        self,
        log_dir: str = "logs",
        retention_days: Optional[Dict[str, int]] = None,
        compress_after_days: int = 7,
    ):
        self._log_dir = Path(log_dir)
        self._retention = dict(DEFAULT_RETENTION)
        self._retention.update(retention_days or {})
        self._compress_after = compress_after_days

    def cleanup(self, today: Optional[date] = None) -> Dict[str, int]:
        """Returns {"deleted": N, "compressed": M}."""
        today = today or date.today()
        deleted = 0
        compressed = 0

        for obj_type, categories in OBJECT_TYPE_CATEGORIES.items():
            for cat in categories:
                cat_dir = self._log_dir / obj_type / cat
                if not cat_dir.is_dir():
                    continue
                retention = self._retention.get(cat, 90)

                for file_path in sorted(cat_dir.iterdir()):
                    file_date = self._parse_file_date(file_path)
                    if file_date is None:
                        continue
                    age_days = (today - file_date).days
                    if age_days > retention:
                        file_path.unlink()
                        deleted += 1
                    elif age_days > self._compress_after and file_path.name.endswith(".jsonl"):
                        if self._compress_file(file_path):
                            compressed += 1

        result = {"deleted": deleted, "compressed": compressed}
        logger.info(f"Log cleanup: {result}")
        return result

    @staticmethod
    def _parse_file_date(file_path: Path) -> Optional[date]:
        if not file_path.is_file():
            return None
        try:
            return date.fromisoformat(file_path.name.split(".")[0])
        except ValueError:
            return None

    @staticmethod
    def _compress_file(file_path: Path) -> bool:
        gz_path = file_path.with_name(file_path.name + ".gz")
        try:
            with open(file_path, "rb") as f_in, gzip.open(gz_path, "wb") as f_out:
                shutil.copyfileobj(f_in, f_out)
            file_path.unlink()
            return True
        except OSError as e:
            logger.error(f"Failed to compress {file_path}: {e}")
            gz_path.unlink(missing_ok=True)
            return False


# ---------------------------------------------------------------------------
# Global Log Queue Singleton
# ---------------------------------------------------------------------------

_global_queue: Optional[AsyncLogQueue] = None


def init_logging(
    log_dir: str = "logs",
    flush_interval_ms: int = 100,
    flush_batch_size: int = 50,
    max_queue_size: int = 10000,
) -> AsyncLogQueue:
    """Create and start the global event log queue (replacing any previous one)."""
    global _global_queue
    if _global_queue is not None:
        _global_queue.stop()
    _global_queue = AsyncLogQueue(
        file_logger=FileLogger(log_dir=log_dir),
        flush_interval_ms=flush_interval_ms,
        flush_batch_size=flush_batch_size,
        max_queue_size=max_queue_size,
    )
    _global_queue.start()
    return _global_queue


def get_log_queue() -> Optional[AsyncLogQueue]:
    return _global_queue


def log(entry: LogEntry) -> bool:
    """Push an entry to the global queue. Returns False when logging is off."""
    if _global_queue is None:
        logger.debug(f"Event log not initialized, dropping {entry.data.get('event')}")
        return False
    return _global_queue.push(entry)


def shutdown_logging() -> None:
    """Flush and stop the global queue."""
    global _global_queue
    if _global_queue is not None:
        _global_queue.stop()
        _global_queue = None


def configure_logging(level: str = "INFO") -> None:
    """Configure stdlib logging for the ``casevault`` logger tree (CLI use)."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )