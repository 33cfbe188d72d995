"""Tests for the DocumentManager facade: document lifecycle, versions, backups, evidence."""

from contextlib import contextmanager

import pytest
import yaml
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

import casevault.documents.service as service_mod
from casevault.db.models import AuditLog
from casevault.db.session import session_scope
from casevault.documents.service import DEFAULT_SCHEDULE_NAME, DocumentManager
from casevault.documents.versions import DUPLICATE_VERSION_ERROR
from casevault.engine.errors import VaultNotFoundError
from casevault.evidence import EvidenceUploadOptions


@pytest.fixture
def uploaded(manager):
    result = manager.upload_document(
        b"draft one",
        "motion.txt",
        uploaded_by="jdoe",
        case_id="CASE-7",
        category="pleadings",
        description="Motion to compel",
        tags=["discovery", "draft"],
    )
    assert result.success
    return result


def _audit_actions(session_factory, document_id):
    with session_scope(session_factory) as session:
        return [
            a.action for a in session.execute(
                select(AuditLog).where(AuditLog.entity_id == document_id).order_by(AuditLog.id)
            ).scalars()
        ]


class TestUpload:
    def test_primary_and_snapshot_written(self, manager, uploaded):
        assert uploaded.version_number == 1
        assert manager.storage.download(uploaded.file_path).data == b"draft one"

        version = manager.versions.get_version(uploaded.document_id, 1)
        assert version.is_latest
        assert version.change_description == "Initial version"
        assert version.checksum == uploaded.checksum
        assert manager.storage.download(version.file_path).data == b"draft one"

        doc = manager.get_document(uploaded.document_id)
        assert doc["version"] == 1
        assert doc["case_id"] == "CASE-7"
        assert doc["tags"] == ["discovery", "draft"]

    def test_rejected_upload_leaves_nothing(self, manager):
        result = manager.upload_document(b"MZ\x90", "tool.exe", uploaded_by="jdoe")
        assert not result.success
        assert "File extension '.exe' is not allowed" in result.errors
        assert manager.search_documents() == []
        assert list(manager.storage.iter_files(["documents"])) == []

    def test_database_failure_removes_files(self, manager, monkeypatch):
        @contextmanager
        def broken_scope(factory):
            raise SQLAlchemyError("database is locked")
            yield  # pragma: no cover

        monkeypatch.setattr(service_mod, "session_scope", broken_scope)
        result = manager.upload_document(b"will not stick", "memo.txt", uploaded_by="jdoe")

        assert not result.success
        assert result.error.startswith("Failed to record document")
        assert list(manager.storage.iter_files(["documents"])) == []

    def test_audit_row(self, manager, session_factory, uploaded):
        assert _audit_actions(session_factory, uploaded.document_id) == ["DOCUMENT_UPLOADED"]


class TestReadUpdateDelete:
    def test_search(self, manager, uploaded):
        manager.upload_document(b"other", "letter.txt", uploaded_by="asmith", case_id="CASE-8", tags=["draft"])

        assert [d["id"] for d in manager.search_documents(query="motion")] == [uploaded.document_id]
        assert [d["id"] for d in manager.search_documents(query="compel")] == [uploaded.document_id]
        assert len(manager.search_documents(tags=["draft"])) == 2
        assert len(manager.search_documents(tags=["draft", "discovery"])) == 1
        assert len(manager.search_documents(uploaded_by="asmith")) == 1
        assert manager.search_documents(case_id="CASE-9") == []
        assert len(manager.search_documents(limit=1)) == 1

    def test_update(self, manager, session_factory, uploaded):
        updated = manager.update_document(
            uploaded.document_id, updated_by="asmith", description="Renewed motion", tags=["filed"],
        )
        assert updated["description"] == "Renewed motion"
        assert updated["tags"] == ["filed"]
        assert updated["name"] == "motion.txt"
        assert _audit_actions(session_factory, uploaded.document_id)[-1] == "DOCUMENT_UPDATED"
        assert manager.update_document("missing", name="x") is None

    def test_soft_delete(self, manager, uploaded):
        assert manager.delete_document(uploaded.document_id, deleted_by="jdoe")

        assert manager.get_document(uploaded.document_id) is None
        doc = manager.get_document(uploaded.document_id, include_deleted=True)
        assert doc["status"] == "DELETED"
        assert doc["deleted_at"] is not None
        assert manager.storage.file_exists(uploaded.file_path)
        assert manager.search_documents() == []
        assert not manager.delete_document(uploaded.document_id)

    def test_permanent_delete(self, manager, session_factory, uploaded):
        version_path = manager.versions.get_version(uploaded.document_id, 1).file_path

        assert manager.delete_document(uploaded.document_id, deleted_by="jdoe", permanent=True)

        assert manager.get_document(uploaded.document_id, include_deleted=True) is None
        assert not manager.storage.file_exists(uploaded.file_path)
        assert not manager.storage.file_exists(version_path)
        assert manager.versions.get_versions(uploaded.document_id) == []
        assert _audit_actions(session_factory, uploaded.document_id)[-1] == "DOCUMENT_PURGED"


class TestDownload:
    def test_verified_download(self, manager, uploaded):
        result = manager.download_document(uploaded.document_id)
        assert result.success
        assert result.data == b"draft one"
        assert result.checksum_verified is True

    def test_tampered_primary(self, manager, uploaded):
        manager.storage.absolute_path(uploaded.file_path).write_bytes(b"draft 0ne")
        result = manager.download_document(uploaded.document_id)
        assert not result.success
        assert result.error == "Checksum verification failed"
        assert result.data is None

    def test_unknown(self, manager):
        assert manager.download_document("missing").error == "Document not found"


class TestVersions:
    def test_new_version_updates_primary(self, manager, uploaded):
        result = manager.create_document_version(uploaded.document_id, b"draft two", created_by="jdoe")

        assert result.success
        assert result.version_number == 2
        assert manager.download_document(uploaded.document_id).data == b"draft two"
        assert manager.download_document(uploaded.document_id, version_number=1).data == b"draft one"
        assert manager.get_document(uploaded.document_id)["version"] == 2

    def test_identical_content_rejected(self, manager, uploaded):
        result = manager.create_document_version(uploaded.document_id, b"draft one")
        assert not result.success
        assert result.error == DUPLICATE_VERSION_ERROR

    def test_restore_as_new(self, manager, uploaded):
        manager.create_document_version(uploaded.document_id, b"draft two", created_by="jdoe")

        result = manager.restore_document_version(uploaded.document_id, 1, restore_as_new=True, restored_by="jdoe")

        assert result.success
        assert result.version_number == 3
        assert manager.download_document(uploaded.document_id).data == b"draft one"
        latest = manager.versions.get_latest_version(uploaded.document_id)
        assert latest.version_number == 3

    def test_restore_in_place(self, manager, uploaded):
        manager.create_document_version(uploaded.document_id, b"draft two", created_by="jdoe")

        result = manager.restore_document_version(uploaded.document_id, 1, restored_by="jdoe")

        assert result.success
        doc = manager.get_document(uploaded.document_id)
        assert doc["version"] == 2
        assert doc["metadata"]["restored_from"] == 1
        assert manager.download_document(uploaded.document_id).data == b"draft one"

    def test_compare(self, manager, uploaded):
        manager.create_document_version(uploaded.document_id, b"draft one\nplus a paragraph")
        comparison = manager.compare_document_versions(uploaded.document_id, 1, 2)
        assert not comparison.is_binary
        assert comparison.added == ["Line 2: plus a paragraph"]

    def test_history(self, manager, uploaded):
        manager.create_document_version(uploaded.document_id, b"draft two", created_by="jdoe")

        history = manager.get_document_history(uploaded.document_id)

        assert [v["version_number"] for v in history["versions"]] == [2, 1]
        assert history["document"]["id"] == uploaded.document_id
        assert [a["action"] for a in history["audit"]] == ["DOCUMENT_UPLOADED", "VERSION_CREATED"]

    def test_history_unknown(self, manager):
        with pytest.raises(VaultNotFoundError):
            manager.get_document_history("missing")


class TestBackups:
    def test_backup_and_restore(self, manager, uploaded):
        backup = manager.perform_backup({"compression": False})
        assert backup.success
        assert manager.get_backup_info(backup.backup_id)["archive"]["filename"] == "archive.tar"
        assert manager.list_backups()[0]["backup_id"] == backup.backup_id

        manager.storage.delete_file(uploaded.file_path)
        restore = manager.restore_from_backup(backup.backup_id)

        assert restore.success
        assert restore.files_restored == 1
        assert manager.download_document(uploaded.document_id).data == b"draft one"

    def test_encrypted_backup_uses_configured_key(self, vault_config, session_factory):
        vault_config.security.secret_key = "firm-secret"
        mgr = DocumentManager(vault_config, session_factory)
        mgr.initialize()
        try:
            mgr.upload_document(b"privileged", "advice.txt", uploaded_by="jdoe")
            backup = mgr.perform_backup({"encryption": True})
            assert backup.archive_path.endswith(".enc")
            assert mgr.restore_from_backup(backup.backup_id, dry_run=True).success
        finally:
            mgr.dispose()

    def test_default_schedule_idempotent(self, manager):
        first = manager.setup_default_schedule()
        second = manager.setup_default_schedule()
        assert first.name == DEFAULT_SCHEDULE_NAME
        assert first.cron == "0 2 * * *"
        assert second.id == first.id
        assert len(manager.scheduler.get_backup_schedules()) == 1

    def test_default_schedule_disabled(self, vault_config, session_factory):
        vault_config.backup.enabled = False
        mgr = DocumentManager(vault_config, session_factory)
        try:
            assert mgr.setup_default_schedule() is None
        finally:
            mgr.dispose()


class TestMaintenanceAndEvidence:
    def test_metrics(self, manager, uploaded):
        metrics = manager.get_storage_metrics()
        assert metrics.total_files == 2
        assert metrics.by_category["documents"]["count"] == 2

    def test_evidence_pass_through(self, manager):
        result = manager.create_evidence(b"%PDF-1.4 statement", "statement.pdf", EvidenceUploadOptions(
            title="Witness statement", case_id="CASE-7", collected_by="jdoe",
        ))
        assert result.success
        assert manager.verify_evidence_integrity(result.evidence_id).is_valid


class TestFromConfig:
    def test_relative_paths_resolve_against_config(self, tmp_path):
        config_file = tmp_path / "casevault.yaml"
        config_file.write_text(yaml.safe_dump({
            "vault": {"name": "Firm Vault", "environment": "staging"},
            "database": {"url": f"sqlite:///{tmp_path / 'firm.db'}"},
            "storage": {"base_path": "vault-data"},
            "logging": {"directory": "logs", "structured": False},
        }))

        mgr = DocumentManager.from_config(str(config_file))
        try:
            mgr.initialize()
            assert mgr.config.name == "Firm Vault"
            assert mgr.storage.base_path == tmp_path / "vault-data"
            assert (tmp_path / "vault-data" / "documents" / "original").is_dir()
            assert mgr.backups.backup_root == tmp_path / "vault-data" / "backups"
            assert mgr.upload_document(b"hello", "hello.txt").success
        finally:
            mgr.dispose()
