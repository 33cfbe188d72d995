"""
CaseVault Backup Service: full backups of the storage tree with
integrity-checked restore.

Handles:
- Archive creation from configured source locations (tar, optional gzip,
  optional Fernet layer) with a per-file sha256 manifest
- Job tracking (pending -> running -> completed | failed) and history
- Restore that verifies the archive before touching the filesystem,
  stages extraction and never clobbers files unless asked to
- Retention by age and count, never removing the newest completed backup
- Webhook notifications after each run
"""

from __future__ import annotations

import logging
import secrets
import shutil
import tarfile
import tempfile
import threading
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from casevault.backup.archive import FORMAT_VERSION, build_archive, extract_archive, read_manifest, write_manifest
from casevault.backup.models import BackupConfig, BackupJob, BackupResult, BackupStatus, RestoreResult
from casevault.backup.notifications import BackupNotifier
from casevault.documents.storage import StorageService
from casevault.engine.checksum import checksum_file
from casevault.engine.encryption import ArchiveCipher
from casevault.engine.errors import VaultBackupError, VaultError, VaultIntegrityError, VaultValidationError
from casevault.engine.logging import log, log_backup_event

logger = logging.getLogger("casevault.backup.service")

HISTORY_LIMIT = 100


def source_locations(config: BackupConfig) -> List[Tuple[str, str]]:
    """Storage (category, subcategory) pairs a backup with ``config`` covers."""
    locations = [("documents", "original")]
    if config.include_versions:
        locations.append(("documents", "versions"))
    if config.include_templates:
        locations += [("templates", "active"), ("templates", "archive")]
    if config.include_evidence:
        locations += [
            ("evidence", "original"),
            ("evidence", "processed"),
            ("evidence", "custody"),
            ("evidence", "disposed"),
        ]
    if config.include_thumbnails:
        locations.append(("evidence", "thumbnails"))
    return locations


class BackupService:
    """
    Usage:
        service = BackupService(storage, backup_root=config.backup_root())
        result = service.perform_backup(config.backup)
        service.restore_from_backup(result.backup_id, overwrite=True)
    """

    def __init__(
        self,
        storage: StorageService,
        backup_root: Path,
        cipher: Optional[ArchiveCipher] = None,
        notifier: Optional[BackupNotifier] = None,
        default_config: Optional[BackupConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._storage = storage
        self.backup_root = Path(backup_root)
        self._cipher = cipher
        self._notifier = notifier or BackupNotifier()
        self.default_config = default_config or BackupConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._active: Dict[str, BackupJob] = {}
        self._history: deque = deque(maxlen=HISTORY_LIMIT)

    # -------------------------------------------------------------------
    # Backup
    # -------------------------------------------------------------------

    def generate_backup_id(self) -> str:
        return f"backup_{self._clock():%Y%m%dT%H%M%S}_{secrets.token_hex(4)}"

    def perform_backup(self, config: Optional[BackupConfig] = None) -> BackupResult:
        """
        Run one full backup.

        Never raises for run failures: the result carries ``success=False``,
        the error, and any warnings (including failure to remove partial
        output). Retention and notification run after the job settles.
        """
        config = config or self.default_config
        started = self._clock()
        job = BackupJob(backup_id=self.generate_backup_id(), config=config, created_at=started)
        result = BackupResult(success=False, backup_id=job.backup_id, start_time=started)
        backup_dir = self.backup_root / job.backup_id
        perf_start = time.perf_counter()

        with self._lock:
            self._active[job.backup_id] = job

        try:
            job.mark_running()
            log(log_backup_event("backup_started", job.backup_id, "running"))

            sources, warnings = self._collect_sources(config)
            result.warnings.extend(warnings)
            job.progress["files_total"] = len(sources)

            archive = build_archive(
                sources,
                backup_dir,
                compression=config.compression,
                cipher=self._cipher_for() if config.encryption else None,
            )
            completed_at = self._clock()
            duration_ms = (time.perf_counter() - perf_start) * 1000
            write_manifest(backup_dir, {
                "backup_id": job.backup_id,
                "format_version": FORMAT_VERSION,
                "created_at": started.isoformat(),
                "completed_at": completed_at.isoformat(),
                "duration_ms": duration_ms,
                "status": BackupStatus.COMPLETED.value,
                "config": config.model_dump(mode="json"),
                "archive": {
                    "filename": archive.filename,
                    "checksum": archive.checksum,
                    "size": archive.size,
                    "compressed": archive.compressed,
                    "encrypted": archive.encrypted,
                },
                "files": archive.files,
                "files_count": len(archive.files),
                "total_size": archive.total_size,
                "warnings": result.warnings,
            })
            job.mark_completed()

            result.success = True
            result.size = archive.size
            result.files_count = len(archive.files)
            result.checksum = archive.checksum
            result.archive_path = str(archive.path)
        except (VaultError, OSError, tarfile.TarError) as e:
            message = e.message if isinstance(e, VaultError) else str(e)
            job.mark_failed(message)
            result.error = message
            logger.error(f"Backup {job.backup_id} failed: {message}")
            self._remove_partial(backup_dir, result)
        finally:
            result.status = job.status
            result.end_time = self._clock()
            result.duration_ms = (time.perf_counter() - perf_start) * 1000
            with self._lock:
                self._active.pop(job.backup_id, None)
                self._history.append(result)

        if result.success:
            log(log_backup_event(
                "backup_completed", result.backup_id, "completed",
                duration_ms=result.duration_ms, size_bytes=result.size,
                files_count=result.files_count,
            ))
            logger.info(
                f"Backup {result.backup_id} completed: {result.files_count} files, "
                f"{result.size} bytes in {result.duration_ms:.0f}ms"
            )
            self._apply_retention(config, result)
        else:
            log(log_backup_event("backup_failed", result.backup_id, "failed", error=result.error))

        self._notifier.notify(result, config.notifications)
        return result

    def _collect_sources(self, config: BackupConfig) -> Tuple[List[Tuple[Path, str]], List[str]]:
        sources: List[Tuple[Path, str]] = []
        warnings: List[str] = []
        for category, sub in source_locations(config):
            directory = self._storage.resolve_directory(category, sub)
            if not directory.is_dir():
                warnings.append(f"Source directory missing: {category}/{sub}")
                continue
            for path in sorted(directory.rglob("*")):
                if path.is_file() and not path.name.startswith("."):
                    sources.append((path, path.relative_to(self._storage.base_path).as_posix()))
        return sources, warnings

    def _cipher_for(self) -> ArchiveCipher:
        if self._cipher is None:
            self._cipher = ArchiveCipher()
        return self._cipher

    @staticmethod
    def _remove_partial(backup_dir: Path, result: BackupResult) -> None:
        if not backup_dir.exists():
            return
        try:
            shutil.rmtree(backup_dir)
        except OSError as e:
            result.warnings.append(f"Failed to remove partial backup at {backup_dir}: {e}")

    def _apply_retention(self, config: BackupConfig, result: BackupResult) -> None:
        if config.retention_days is None and config.max_backups is None:
            return
        try:
            cleanup = self.cleanup_old_backups(config.retention_days, config.max_backups)
        except OSError as e:
            result.warnings.append(f"Backup retention failed: {e}")
            return
        if cleanup["deleted"]:
            logger.info(f"Retention removed {len(cleanup['deleted'])} old backup(s)")

    # -------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------

    def restore_from_backup(
        self,
        backup_id: str,
        overwrite: bool = False,
        validate_integrity: bool = True,
        dry_run: bool = False,
    ) -> RestoreResult:
        """
        Restore a backup into the storage root.

        1. Verify the archive checksum against the manifest
        2. Extract into a staging directory (unsafe members abort the restore)
        3. Check each staged file against its manifest checksum
        4. Move files into place; existing files are skipped with a warning
           unless ``overwrite``

        ``dry_run`` stops after step 1 and reports what would be restored.
        """
        result = RestoreResult(
            success=False,
            restore_id=f"restore_{self._clock():%Y%m%dT%H%M%S}_{secrets.token_hex(4)}",
            backup_id=backup_id,
            dry_run=dry_run,
            start_time=self._clock(),
        )
        perf_start = time.perf_counter()
        try:
            backup_dir = self._backup_dir(backup_id)
            manifest = read_manifest(backup_dir)
            archive_meta = manifest.get("archive") or {}
            archive_path = backup_dir / archive_meta.get("filename", "")
            if not archive_meta.get("filename") or not archive_path.is_file():
                raise VaultBackupError(f"Backup archive missing for {backup_id}", backup_id=backup_id)

            if validate_integrity:
                if checksum_file(archive_path) != archive_meta.get("checksum"):
                    raise VaultIntegrityError(
                        f"Backup archive checksum mismatch for {backup_id}",
                        object_ref=f"backups.{backup_id}",
                    )
                result.integrity_verified = True

            expected = {f["path"]: f for f in manifest.get("files", [])}
            root = self._storage.base_path

            if dry_run:
                for rel in sorted(expected):
                    if (root / rel).exists() and not overwrite:
                        result.files_skipped += 1
                        result.warnings.append(f"Would skip existing file: {rel}")
                    else:
                        result.would_restore.append(rel)
                result.success = True
            else:
                self._restore_files(archive_path, expected, root, overwrite, validate_integrity, result)
                result.success = not result.errors
        except VaultError as e:
            result.errors.append(e.message)
        except OSError as e:
            result.errors.append(f"Restore failed: {e}")
        finally:
            result.end_time = self._clock()
            result.duration_ms = (time.perf_counter() - perf_start) * 1000

        log(log_backup_event(
            "restore_completed" if result.success else "restore_failed",
            backup_id,
            "completed" if result.success else "failed",
            duration_ms=result.duration_ms,
            files_count=result.files_restored,
            error="; ".join(result.errors) or None,
            restore_id=result.restore_id,
            dry_run=dry_run,
        ))
        logger.info(
            f"Restore {result.restore_id} from {backup_id}: restored={result.files_restored} "
            f"skipped={result.files_skipped} errors={len(result.errors)}"
        )
        return result

    def _restore_files(
        self,
        archive_path: Path,
        expected: Dict[str, Dict[str, Any]],
        root: Path,
        overwrite: bool,
        validate_integrity: bool,
        result: RestoreResult,
    ) -> None:
        cipher = self._cipher_for() if archive_path.suffix == ".enc" else None
        with tempfile.TemporaryDirectory(prefix="casevault_restore_") as staging:
            staged_root = Path(staging) / "files"
            extracted = extract_archive(archive_path, staged_root, cipher=cipher)

            for rel in extracted:
                entry = expected.get(rel)
                staged = staged_root / rel
                if entry is None:
                    result.errors.append(f"{rel}: not listed in manifest")
                    result.files_skipped += 1
                    continue
                if validate_integrity and checksum_file(staged) != entry.get("checksum"):
                    result.errors.append(f"{rel}: checksum mismatch")
                    result.files_skipped += 1
                    continue
                dest = root / rel
                if dest.exists() and not overwrite:
                    result.warnings.append(f"File exists, not overwritten: {rel}")
                    result.files_skipped += 1
                    continue
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(str(staged), str(dest))
                result.files_restored += 1

            for rel in sorted(set(expected) - set(extracted)):
                result.errors.append(f"{rel}: missing from archive")

    # -------------------------------------------------------------------
    # Listing / inspection
    # -------------------------------------------------------------------

    def _backup_dir(self, backup_id: str) -> Path:
        if not backup_id or "/" in backup_id or "\\" in backup_id or backup_id.startswith("."):
            raise VaultValidationError(f"Invalid backup id: {backup_id!r}", object_ref="backups")
        return self.backup_root / backup_id

    def list_backups(self) -> List[Dict[str, Any]]:
        """Summaries of every readable backup, newest first."""
        if not self.backup_root.is_dir():
            return []
        backups = []
        for d in self.backup_root.iterdir():
            if not d.is_dir() or not d.name.startswith("backup_"):
                continue
            try:
                manifest = read_manifest(d)
            except VaultBackupError as e:
                logger.warning(f"Skipping {d.name}: {e.message}")
                continue
            archive = manifest.get("archive") or {}
            backups.append({
                "backup_id": manifest.get("backup_id", d.name),
                "created_at": manifest.get("created_at"),
                "status": manifest.get("status"),
                "size": archive.get("size", 0),
                "checksum": archive.get("checksum"),
                "compressed": archive.get("compressed", False),
                "encrypted": archive.get("encrypted", False),
                "files_count": manifest.get("files_count", 0),
                "total_size": manifest.get("total_size", 0),
                "path": str(d),
            })
        backups.sort(key=lambda b: b["created_at"] or "", reverse=True)
        return backups

    def get_backup_info(self, backup_id: str) -> Optional[Dict[str, Any]]:
        """Full manifest plus on-disk status, or None when the backup does not exist."""
        backup_dir = self._backup_dir(backup_id)
        if not backup_dir.is_dir():
            return None
        manifest = read_manifest(backup_dir)
        archive_name = (manifest.get("archive") or {}).get("filename", "")
        manifest["path"] = str(backup_dir)
        manifest["archive_exists"] = bool(archive_name) and (backup_dir / archive_name).is_file()
        return manifest

    def verify_backup(self, backup_id: str, deep: bool = False) -> Dict[str, Any]:
        """
        Check a backup's archive checksum; ``deep`` also extracts to a
        temporary directory and checks every member against the manifest.
        """
        issues: List[str] = []
        checked = 0
        backup_dir = self._backup_dir(backup_id)
        manifest = read_manifest(backup_dir)
        archive = manifest.get("archive") or {}
        archive_path = backup_dir / archive.get("filename", "")

        if not archive.get("filename") or not archive_path.is_file():
            issues.append("Archive file missing")
        elif checksum_file(archive_path) != archive.get("checksum"):
            issues.append("Archive checksum mismatch")
        elif deep:
            expected = {f["path"]: f["checksum"] for f in manifest.get("files", [])}
            cipher = self._cipher_for() if archive.get("encrypted") else None
            with tempfile.TemporaryDirectory(prefix="casevault_verify_") as staging:
                staged_root = Path(staging) / "files"
                try:
                    extracted = extract_archive(archive_path, staged_root, cipher=cipher)
                except VaultError as e:
                    extracted = []
                    issues.append(e.message)
                for rel in extracted:
                    checked += 1
                    if expected.get(rel) != checksum_file(staged_root / rel):
                        issues.append(f"{rel}: checksum mismatch")
                if extracted:
                    for rel in sorted(set(expected) - set(extracted)):
                        issues.append(f"{rel}: missing from archive")

        return {
            "backup_id": backup_id,
            "valid": not issues,
            "issues": issues,
            "checked_files": checked,
            "verified_at": self._clock().isoformat(),
        }

    def validate_backups(self, backup_ids: Optional[Iterable[str]] = None, deep: bool = False) -> Dict[str, Any]:
        """Verify several backups; one unreadable backup does not stop the batch."""
        ids = list(backup_ids) if backup_ids is not None else [b["backup_id"] for b in self.list_backups()]
        results: Dict[str, Any] = {}
        errors: Dict[str, str] = {}
        for backup_id in ids:
            try:
                results[backup_id] = self.verify_backup(backup_id, deep=deep)
            except VaultError as e:
                errors[backup_id] = e.message
        return {
            "results": results,
            "errors": errors,
            "valid": sum(1 for r in results.values() if r["valid"]),
            "invalid": sum(1 for r in results.values() if not r["valid"]) + len(errors),
        }

    # -------------------------------------------------------------------
    # Delete / retention
    # -------------------------------------------------------------------

    def delete_backup(self, backup_id: str) -> bool:
        backup_dir = self._backup_dir(backup_id)
        with self._lock:
            if backup_id in self._active:
                logger.warning(f"Refusing to delete running backup {backup_id}")
                return False
        if not backup_dir.is_dir():
            return False
        shutil.rmtree(backup_dir)
        log(log_backup_event("backup_deleted", backup_id, "deleted"))
        logger.info(f"Deleted backup {backup_id}")
        return True

    def cleanup_old_backups(
        self,
        retention_days: Optional[int] = None,
        max_backups: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Delete backups older than ``retention_days`` and/or beyond the newest
        ``max_backups``, oldest first. The newest completed backup is kept
        whatever the limits say.
        """
        backups = self.list_backups()
        completed = [b for b in backups if b["status"] == BackupStatus.COMPLETED.value]
        protected = completed[0]["backup_id"] if completed else None

        doomed = set()
        if max_backups is not None:
            doomed.update(b["backup_id"] for b in backups[max_backups:])
        if retention_days is not None:
            cutoff = (now or self._clock()) - timedelta(days=retention_days)
            for b in backups:
                created = _parse_time(b["created_at"])
                if created is not None and created < cutoff:
                    doomed.add(b["backup_id"])
        doomed.discard(protected)

        deleted: List[str] = []
        freed = 0
        for b in reversed(backups):
            if b["backup_id"] in doomed and self.delete_backup(b["backup_id"]):
                deleted.append(b["backup_id"])
                freed += b["size"]
        return {"deleted": deleted, "freed_space": freed, "kept": len(backups) - len(deleted)}

    # -------------------------------------------------------------------
    # Stats / jobs
    # -------------------------------------------------------------------

    def get_backup_stats(self) -> Dict[str, Any]:
        backups = self.list_backups()
        total_size = sum(b["size"] for b in backups)
        with self._lock:
            history = list(self._history)
        return {
            "total_backups": len(backups),
            "total_size": total_size,
            "average_size": total_size / len(backups) if backups else 0,
            "latest_backup": backups[0]["backup_id"] if backups else None,
            "oldest_backup": backups[-1]["backup_id"] if backups else None,
            "runs_succeeded": sum(1 for r in history if r.success),
            "runs_failed": sum(1 for r in history if not r.success),
        }

    def get_active_backups(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [job.to_dict() for job in self._active.values()]

    def get_backup_history(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Results of runs in this process, newest first."""
        with self._lock:
            history = list(reversed(self._history))
        if limit:
            history = history[:limit]
        return [r.to_dict() for r in history]


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
