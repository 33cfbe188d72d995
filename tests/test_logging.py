"""Unit tests for casevault.engine.logging: FileLogger, AsyncLogQueue, builders, retention."""

import gzip
import json
from datetime import date, timedelta

from casevault.engine.logging import (
    DEFAULT_RETENTION,
    OBJECT_TYPE_CATEGORIES,
    AsyncLogQueue,
    FileLogger,
    LogEntry,
    LogRetentionManager,
    get_log_queue,
    init_logging,
    log,
    log_backup_event,
    log_document_event,
    log_evidence_event,
    log_storage_event,
    log_system_event,
    log_version_event,
    shutdown_logging,
)


class TestLogEntry:
    def test_unknown_type_falls_back_to_system(self):
        entry = LogEntry("widgets", "execution", {})
        assert entry.object_type == "system"

    def test_unknown_category_falls_back_to_execution(self):
        entry = LogEntry("versions", "security", {})
        assert entry.category == "execution"

    def test_to_json(self):
        assert json.loads(LogEntry("system", "execution", {"k": 1}).to_json()) == {"k": 1}


class TestFileLogger:
    def test_creates_category_directories(self, tmp_path):
        FileLogger(log_dir=str(tmp_path))
        for obj_type, categories in OBJECT_TYPE_CATEGORIES.items():
            for cat in categories:
                assert (tmp_path / obj_type / cat).is_dir()

    def test_write_and_read(self, tmp_path):
        file_logger = FileLogger(log_dir=str(tmp_path))
        file_logger.write_batch([
            log_document_event("document_uploaded", "doc-1", user_id="jdoe"),
            log_document_event("document_uploaded", "doc-2", user_id="asmith"),
        ])
        entries = file_logger.read("documents", "execution")
        assert [e["document_id"] for e in entries] == ["doc-1", "doc-2"]
        assert file_logger.read("documents", "execution", filters={"user_id": "asmith"})[0]["document_id"] == "doc-2"

    def test_read_missing_day_is_empty(self, tmp_path):
        assert FileLogger(log_dir=str(tmp_path)).read("backups", "execution", date(2001, 1, 1)) == []

    def test_read_gzipped_day(self, tmp_path):
        file_logger = FileLogger(log_dir=str(tmp_path))
        day = date(2024, 5, 1)
        path = file_logger.path_for("system", "execution", day)
        with gzip.open(path.with_suffix(".jsonl.gz"), "wt", encoding="utf-8") as f:
            f.write(json.dumps({"event": "startup"}) + "\n")
        assert file_logger.read("system", "execution", day) == [{"event": "startup"}]


class TestAsyncLogQueue:
    def test_stop_flushes_pending(self, tmp_path):
        file_logger = FileLogger(log_dir=str(tmp_path))
        queue = AsyncLogQueue(file_logger, flush_interval_ms=10_000)
        for i in range(5):
            queue.push(log_system_event(f"event_{i}"))
        queue.stop()
        assert len(file_logger.read("system", "execution")) == 5

    def test_full_queue_drops(self, tmp_path):
        queue = AsyncLogQueue(FileLogger(log_dir=str(tmp_path)), max_queue_size=1)
        assert queue.push(log_system_event("a"))
        assert not queue.push(log_system_event("b"))
        assert queue.dropped_count == 1
        assert queue.pending_count == 1


class TestBuilders:
    def test_version_event(self):
        entry = log_version_event("version_created", "doc-1", 3, user_id="jdoe")
        assert entry.object_type == "versions"
        assert entry.data["object_ref"] == "documents.doc-1.v3"
        assert entry.data["level"] == "INFO"

    def test_failed_version_event_is_error(self):
        entry = log_version_event("version_rejected", "doc-1", success=False, error="dup")
        assert entry.data["level"] == "ERROR"
        assert entry.data["error"] == "dup"

    def test_backup_completed_goes_to_performance(self):
        entry = log_backup_event("backup_completed", "backup_1", "completed", duration_ms=12.0)
        assert entry.category == "performance"
        assert log_backup_event("backup_failed", "backup_1", "failed").data["level"] == "ERROR"

    def test_evidence_events_are_security(self):
        entry = log_evidence_event("custody_entry_added", "EVID_1", performed_by="clerk", action="SEALED")
        assert entry.category == "security"
        assert entry.data["user_id"] == "clerk"

    def test_storage_event_with_duration_is_performance(self):
        assert log_storage_event("optimization_completed", duration_ms=5.0).category == "performance"
        assert log_storage_event("metrics").category == "execution"

    def test_none_values_dropped(self):
        entry = log_document_event("document_deleted", "doc-1")
        assert "user_id" not in entry.data
        assert entry.category == "security"


class TestGlobalQueue:
    def test_log_without_init_is_noop(self):
        shutdown_logging()
        assert get_log_queue() is None
        assert log(log_system_event("startup")) is False

    def test_init_log_shutdown(self, tmp_path):
        init_logging(log_dir=str(tmp_path))
        assert log(log_system_event("startup", details={"pid": 1}))
        shutdown_logging()
        entries = FileLogger(log_dir=str(tmp_path)).read("system", "execution")
        assert entries[0]["details"] == {"pid": 1}


class TestLogRetentionManager:
    def test_deletes_expired_and_compresses_old(self, tmp_path):
        file_logger = FileLogger(log_dir=str(tmp_path))
        today = date(2025, 6, 30)
        expired = file_logger.path_for("backups", "performance", today - timedelta(days=DEFAULT_RETENTION["performance"] + 1))
        aging = file_logger.path_for("backups", "execution", today - timedelta(days=10))
        fresh = file_logger.path_for("backups", "execution", today - timedelta(days=1))
        for path in (expired, aging, fresh):
            path.write_text('{"event": "x"}\n', encoding="utf-8")

        result = LogRetentionManager(log_dir=str(tmp_path), compress_after_days=7).cleanup(today=today)

        assert result == {"deleted": 1, "compressed": 1}
        assert not expired.exists()
        assert not aging.exists()
        assert aging.with_name(aging.name + ".gz").exists()
        assert fresh.exists()
