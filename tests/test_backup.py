"""Unit tests for casevault.backup: job states, archives, backup/restore, retention."""

import io
import json
import tarfile
from datetime import datetime, timedelta, timezone

import pytest

from casevault.backup.archive import MANIFEST_NAME, extract_archive
from casevault.backup.models import BackupConfig, BackupJob, BackupStatus
from casevault.backup.service import BackupService, source_locations
from casevault.engine.encryption import ArchiveCipher
from casevault.engine.errors import VaultBackupError, VaultIntegrityError, VaultValidationError


class _Clock:
    """Deterministic clock that moves an hour per backup."""

    def __init__(self, start=datetime(2025, 3, 1, 2, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return _Clock()


@pytest.fixture
def backup_service(storage, backup_root, clock):
    return BackupService(storage, backup_root, clock=clock)


@pytest.fixture
def populated(storage):
    storage.upload(b"engagement letter", "letter.txt", filename="letter.txt")
    storage.upload(b"draft v1", "draft.txt", category="documents", subcategory="versions", filename="d_v1_draft.txt")
    storage.upload(b"template body", "tpl.txt", category="templates", subcategory="active", filename="tpl.txt")
    return storage


NO_RETENTION = dict(retention_days=None, max_backups=None)


class TestBackupJob:
    def test_happy_path(self):
        job = BackupJob(backup_id="backup_1", config=BackupConfig())
        assert job.is_active
        job.mark_running()
        job.mark_completed()
        assert job.status == BackupStatus.COMPLETED
        assert not job.is_active
        assert job.to_dict()["status"] == "completed"

    def test_pending_may_fail(self):
        job = BackupJob(backup_id="backup_1", config=BackupConfig())
        job.mark_failed("disk full")
        assert job.status == BackupStatus.FAILED
        assert job.error == "disk full"

    def test_invalid_transition(self):
        job = BackupJob(backup_id="backup_1", config=BackupConfig())
        with pytest.raises(VaultBackupError):
            job.mark_completed()


class TestSourceLocations:
    def test_all_included(self):
        locations = source_locations(BackupConfig())
        assert ("documents", "original") in locations
        assert ("documents", "versions") in locations
        assert ("evidence", "custody") in locations
        assert ("evidence", "thumbnails") in locations

    def test_minimal(self):
        config = BackupConfig(
            include_versions=False, include_templates=False,
            include_evidence=False, include_thumbnails=False,
        )
        assert source_locations(config) == [("documents", "original")]


class TestPerformBackup:
    def test_backup_writes_archive_and_manifest(self, populated, backup_service, backup_root):
        result = backup_service.perform_backup(BackupConfig(**NO_RETENTION))

        assert result.success
        assert result.status == BackupStatus.COMPLETED
        assert result.files_count == 3
        assert result.backup_id.startswith("backup_20250301T020000_")

        manifest = json.loads((backup_root / result.backup_id / MANIFEST_NAME).read_text())
        assert manifest["status"] == "completed"
        assert manifest["archive"]["filename"] == "archive.tar.gz"
        assert manifest["archive"]["checksum"] == result.checksum
        paths = {f["path"] for f in manifest["files"]}
        assert paths == {
            "documents/original/letter.txt",
            "documents/versions/d_v1_draft.txt",
            "templates/active/tpl.txt",
        }
        assert manifest["total_size"] == len(b"engagement letter") + len(b"draft v1") + len(b"template body")

    def test_uncompressed_without_versions(self, populated, backup_service):
        result = backup_service.perform_backup(
            BackupConfig(compression=False, include_versions=False, **NO_RETENTION)
        )
        info = backup_service.get_backup_info(result.backup_id)
        assert info["archive"]["filename"] == "archive.tar"
        assert info["archive_exists"]
        assert info["files_count"] == 2

    def test_missing_source_is_warning(self, storage, backup_service):
        result = backup_service.perform_backup(BackupConfig(**NO_RETENTION))
        assert result.success
        assert result.warnings == []

        storage.resolve_directory("templates", "archive").rmdir()
        result = backup_service.perform_backup(BackupConfig(**NO_RETENTION))
        assert result.success
        assert "Source directory missing: templates/archive" in result.warnings

    def test_failure_removes_partial_output(self, populated, backup_service, backup_root, monkeypatch):
        import casevault.backup.service as service_mod

        def broken(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(service_mod, "build_archive", broken)
        result = backup_service.perform_backup(BackupConfig(**NO_RETENTION))

        assert not result.success
        assert result.status == BackupStatus.FAILED
        assert result.error == "disk full"
        assert not (backup_root / result.backup_id).exists()
        assert backup_service.get_backup_stats()["runs_failed"] == 1

    def test_history_and_stats(self, populated, backup_service):
        result = backup_service.perform_backup(BackupConfig(**NO_RETENTION))
        history = backup_service.get_backup_history()
        assert history[0]["backup_id"] == result.backup_id
        stats = backup_service.get_backup_stats()
        assert stats["total_backups"] == 1
        assert stats["latest_backup"] == result.backup_id
        assert backup_service.get_active_backups() == []


class TestRestore:
    def test_restore_missing_files(self, populated, backup_service):
        result = backup_service.perform_backup(BackupConfig(**NO_RETENTION))
        populated.delete_file("documents/original/letter.txt")

        restore = backup_service.restore_from_backup(result.backup_id)

        assert restore.success
        assert restore.integrity_verified
        assert restore.files_restored == 1
        assert restore.files_skipped == 2
        assert "File exists, not overwritten: templates/active/tpl.txt" in restore.warnings
        assert populated.download("documents/original/letter.txt").data == b"engagement letter"

    def test_overwrite_replaces_changed_files(self, populated, backup_service):
        result = backup_service.perform_backup(BackupConfig(**NO_RETENTION))
        populated.absolute_path("documents/original/letter.txt").write_bytes(b"changed")

        restore = backup_service.restore_from_backup(result.backup_id, overwrite=True)

        assert restore.files_restored == 3
        assert populated.download("documents/original/letter.txt").data == b"engagement letter"

    def test_dry_run_changes_nothing(self, populated, backup_service):
        result = backup_service.perform_backup(BackupConfig(**NO_RETENTION))
        populated.delete_file("documents/original/letter.txt")

        restore = backup_service.restore_from_backup(result.backup_id, dry_run=True)

        assert restore.success and restore.dry_run
        assert restore.would_restore == ["documents/original/letter.txt"]
        assert restore.files_skipped == 2
        assert not populated.file_exists("documents/original/letter.txt")

    def test_tampered_archive_is_refused(self, populated, backup_service, backup_root):
        result = backup_service.perform_backup(BackupConfig(**NO_RETENTION))
        archive = backup_root / result.backup_id / "archive.tar.gz"
        archive.write_bytes(archive.read_bytes() + b"junk")
        populated.delete_file("documents/original/letter.txt")

        restore = backup_service.restore_from_backup(result.backup_id)

        assert not restore.success
        assert any("checksum mismatch" in e for e in restore.errors)
        assert not populated.file_exists("documents/original/letter.txt")
        assert not backup_service.verify_backup(result.backup_id)["valid"]

    def test_encrypted_round_trip(self, populated, backup_root, clock):
        service = BackupService(populated, backup_root, cipher=ArchiveCipher("firm-secret"), clock=clock)
        result = service.perform_backup(BackupConfig(encryption=True, **NO_RETENTION))
        assert result.archive_path.endswith("archive.tar.gz.enc")

        populated.delete_file("documents/original/letter.txt")
        restore = service.restore_from_backup(result.backup_id)
        assert restore.success
        assert populated.download("documents/original/letter.txt").data == b"engagement letter"

    def test_unknown_backup(self, backup_service):
        restore = backup_service.restore_from_backup("backup_missing")
        assert not restore.success
        assert "manifest not found" in restore.errors[0]

    def test_invalid_backup_id(self, backup_service):
        with pytest.raises(VaultValidationError):
            backup_service.get_backup_info("../etc")


class TestVerify:
    def test_deep_verify(self, populated, backup_service):
        result = backup_service.perform_backup(BackupConfig(**NO_RETENTION))
        report = backup_service.verify_backup(result.backup_id, deep=True)
        assert report["valid"]
        assert report["checked_files"] == 3

    def test_validate_batch(self, populated, backup_service, backup_root):
        good = backup_service.perform_backup(BackupConfig(**NO_RETENTION))
        report = backup_service.validate_backups([good.backup_id, "backup_gone"])
        assert report["valid"] == 1
        assert report["invalid"] == 1
        assert "backup_gone" in report["errors"]


class TestSafeExtraction:
    def _tar_with(self, path, name, payload=b"x"):
        with tarfile.open(path, "w") as tar:
            info = tarfile.TarInfo(name)
            info.size = len(payload)
            tar.addfile(info, io.BytesIO(payload))

    def test_parent_traversal_rejected(self, tmp_path):
        archive = tmp_path / "evil.tar"
        self._tar_with(archive, "../escape.txt")
        with pytest.raises(VaultIntegrityError):
            extract_archive(archive, tmp_path / "out")
        assert not (tmp_path / "escape.txt").exists()

    def test_absolute_path_rejected(self, tmp_path):
        archive = tmp_path / "evil.tar"
        self._tar_with(archive, "/tmp/abs.txt")
        with pytest.raises(VaultIntegrityError):
            extract_archive(archive, tmp_path / "out")

    def test_symlink_rejected(self, tmp_path):
        archive = tmp_path / "evil.tar"
        with tarfile.open(archive, "w") as tar:
            link = tarfile.TarInfo("documents/link")
            link.type = tarfile.SYMTYPE
            link.linkname = "/etc/passwd"
            tar.addfile(link)
        with pytest.raises(VaultIntegrityError):
            extract_archive(archive, tmp_path / "out")

    def test_encrypted_without_key(self, tmp_path):
        archive = tmp_path / "archive.tar.enc"
        archive.write_bytes(b"token")
        with pytest.raises(VaultIntegrityError):
            extract_archive(archive, tmp_path / "out")


class TestRetention:
    def _three_backups(self, service, clock):
        ids = []
        for _ in range(3):
            ids.append(service.perform_backup(BackupConfig(**NO_RETENTION)).backup_id)
            clock.advance(hours=1)
        return ids

    def test_max_backups_deletes_oldest(self, populated, backup_service, clock):
        oldest, middle, newest = self._three_backups(backup_service, clock)
        result = backup_service.cleanup_old_backups(max_backups=2)
        assert result["deleted"] == [oldest]
        assert result["kept"] == 2
        assert [b["backup_id"] for b in backup_service.list_backups()] == [newest, middle]

    def test_retention_applied_after_backup(self, populated, backup_service, clock):
        oldest, middle, newest = self._three_backups(backup_service, clock)
        latest = backup_service.perform_backup(BackupConfig(retention_days=None, max_backups=2))
        remaining = [b["backup_id"] for b in backup_service.list_backups()]
        assert remaining == [latest.backup_id, newest]

    def test_newest_completed_always_kept(self, populated, backup_service, clock):
        *_, newest = self._three_backups(backup_service, clock)
        result = backup_service.cleanup_old_backups(max_backups=0)
        assert len(result["deleted"]) == 2
        assert [b["backup_id"] for b in backup_service.list_backups()] == [newest]

    def test_age_based(self, populated, backup_service, clock):
        oldest, middle, newest = self._three_backups(backup_service, clock)
        result = backup_service.cleanup_old_backups(
            retention_days=1, now=clock.now + timedelta(days=1, minutes=90),
        )
        assert result["deleted"] == [oldest, middle]
