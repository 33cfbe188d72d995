"""
CaseVault Document Manager: one object wiring storage, versions, backups,
optimization and evidence together for callers (CLI, application code).

Handles:
- Document upload: primary file plus a version-1 snapshot, with the
  Document row, the first DocumentVersion and an AuditLog row written in
  one transaction (files are removed when that transaction fails)
- Metadata reads, search, updates and soft/permanent delete
- Version creation/restore that keeps the primary working copy in step
  with the latest content
- Pass-throughs for backup, optimization and evidence operations
- The default nightly backup schedule

Usage:
    manager = DocumentManager.from_config()
    manager.initialize()
    result = manager.upload_document(data, "brief.pdf", uploaded_by="jdoe", case_id="CASE-42")
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from casevault.backup.models import BackupConfig, BackupResult, BackupSchedule, RestoreResult
from casevault.backup.scheduler import BackupScheduler
from casevault.backup.service import BackupService
from casevault.db.models import AuditLog, Document, DocumentVersion, new_id
from casevault.db.session import close_db, init_db, session_scope
from casevault.documents.comparison import ComparisonOptions, ComparisonResult
from casevault.documents.storage import RetrievalResult, StorageService
from casevault.documents.versions import VersionResult, VersionService, version_filename
from casevault.engine.config import VaultConfig, load_config
from casevault.engine.encryption import ArchiveCipher
from casevault.engine.errors import VaultNotFoundError
from casevault.engine.logging import init_logging, log, log_document_event, shutdown_logging
from casevault.evidence.service import (
    EvidenceIntegrityResult,
    EvidenceService,
    EvidenceStorageResult,
    EvidenceUploadOptions,
)
from casevault.maintenance.optimization import OptimizationOptions, OptimizationResult, OptimizationService, StorageMetrics

logger = logging.getLogger("casevault.documents.service")

DEFAULT_SCHEDULE_NAME = "Daily Document Backup"


@dataclass
class DocumentResult:
    """Outcome of a document upload."""
    success: bool
    document_id: Optional[str] = None
    version_number: Optional[int] = None
    file_path: str = ""
    filename: str = ""
    size: int = 0
    mime_type: str = ""
    checksum: Optional[str] = None
    thumbnail_path: Optional[str] = None
    error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    processing_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def document_to_dict(doc: Document) -> Dict[str, Any]:
    return {
        "id": doc.id,
        "name": doc.name,
        "original_name": doc.original_name,
        "filename": doc.filename,
        "file_path": doc.file_path,
        "mime_type": doc.mime_type,
        "size": doc.size_bytes,
        "checksum": doc.checksum,
        "version": doc.version,
        "status": doc.status,
        "case_id": doc.case_id,
        "category": doc.category,
        "description": doc.description,
        "tags": list(doc.tags or []),
        "is_confidential": doc.is_confidential,
        "thumbnail_path": doc.thumbnail_path,
        "uploaded_by": doc.uploaded_by,
        "metadata": dict(doc.doc_metadata or {}),
        "created_at": doc.created_at.isoformat() if doc.created_at else None,
        "updated_at": doc.updated_at.isoformat() if doc.updated_at else None,
        "deleted_at": doc.deleted_at.isoformat() if doc.deleted_at else None,
    }


class DocumentManager:
    """Facade over every CaseVault service, built from a ``VaultConfig``."""

    def __init__(
        self,
        config: Optional[VaultConfig] = None,
        session_factory: Optional[Callable[[], Session]] = None,
    ):
        self.config = config or VaultConfig()
        self._owns_engine = session_factory is None
        if session_factory is None:
            db = self.config.database
            session_factory = init_db(
                db.url,
                create_tables=True,
                pool_size=db.pool_size,
                max_overflow=db.max_overflow,
                pool_timeout=db.pool_timeout,
                pool_recycle=db.pool_recycle,
                pool_pre_ping=db.pool_pre_ping,
            )
        self._session_factory = session_factory

        self.storage = StorageService(self.config.storage)
        max_versions = self.config.versioning.max_versions if self.config.versioning.enabled else None
        self.versions = VersionService(
            session_factory, self.storage,
            max_versions=max_versions,
            max_levenshtein_cells=self.config.versioning.max_levenshtein_cells,
        )
        cipher = ArchiveCipher(self.config.security.secret_key) if self.config.security.secret_key else None
        self.backups = BackupService(
            self.storage,
            backup_root=self.config.backup_root(),
            cipher=cipher,
            default_config=self.config.backup,
        )
        self.scheduler = BackupScheduler(
            session_factory,
            self.backups,
            poll_interval=self.config.scheduler.poll_interval_seconds,
            lease_seconds=self.config.scheduler.lease_seconds,
        )
        self.optimizer = OptimizationService(
            self.storage, self.config.optimization, self.versions, session_factory,
        )
        self.evidence = EvidenceService(self.storage, self.config.evidence)

    @classmethod
    def from_config(cls, config_path: Optional[str] = None, start_logging: bool = False) -> "DocumentManager":
        """Load casevault.yaml (or defaults) and build a manager with its own engine."""
        config = load_config(config_path)
        if start_logging and config.logging.structured:
            q = config.logging.async_queue
            init_logging(
                log_dir=config.logging.directory,
                flush_interval_ms=q.flush_interval_ms,
                flush_batch_size=q.flush_batch_size,
                max_queue_size=q.max_queue_size,
            )
        return cls(config)

    def initialize(self) -> None:
        """Create the storage tree and the backup root."""
        self.storage.create_directory_structure()
        self.backups.backup_root.mkdir(parents=True, exist_ok=True)

    def dispose(self) -> None:
        """Stop the scheduler and release resources this manager created."""
        if self.scheduler.running:
            self.scheduler.stop()
        if self._owns_engine:
            close_db()
        shutdown_logging()

    # -------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------

    def upload_document(
        self,
        data: bytes,
        filename: str,
        uploaded_by: str = "system",
        mime_type: Optional[str] = None,
        case_id: Optional[str] = None,
        category: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[List[str]] = None,
        is_confidential: bool = False,
        generate_thumbnail: bool = False,
        check_duplicates: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> DocumentResult:
        """
        Store a new document as version 1.

        1. Validate and write the primary file to documents/original
        2. Write the version-1 snapshot to documents/versions
        3. Insert Document, DocumentVersion 1 (latest) and an AuditLog row
           in one transaction
        4. Remove both files when step 2 or 3 fails
        """
        start = time.perf_counter()
        primary = self.storage.upload(
            data,
            filename,
            mime_type=mime_type,
            generate_thumbnail=generate_thumbnail,
            check_duplicates=check_duplicates,
        )
        if not primary.success:
            return DocumentResult(
                success=False,
                filename=filename,
                size=len(data),
                error=primary.error,
                errors=list(primary.errors),
                warnings=list(primary.warnings),
            )

        document_id = new_id()
        snapshot = self.storage.upload(
            data,
            filename,
            mime_type=primary.mime_type,
            category="documents",
            subcategory="versions",
            filename=version_filename(document_id, 1, filename),
            generate_checksum=False,
            validate=False,
        )
        if not snapshot.success:
            self.storage.delete_file(primary.file_path, delete_thumbnail=True)
            return DocumentResult(success=False, filename=filename, error=snapshot.error)

        try:
            with session_scope(self._session_factory) as session:
                session.add(Document(
                    id=document_id,
                    name=filename,
                    original_name=filename,
                    filename=primary.filename,
                    file_path=primary.file_path,
                    mime_type=primary.mime_type,
                    size_bytes=primary.size,
                    checksum=primary.checksum,
                    version=1,
                    is_latest=True,
                    status="ACTIVE",
                    case_id=case_id,
                    category=category,
                    description=description,
                    tags=list(tags or []),
                    is_confidential=is_confidential,
                    thumbnail_path=primary.thumbnail_path,
                    uploaded_by=uploaded_by,
                    doc_metadata=dict(metadata or {}),
                    created_by=uploaded_by,
                    updated_by=uploaded_by,
                ))
                session.flush()
                session.add(DocumentVersion(
                    document_id=document_id,
                    version_number=1,
                    filename=snapshot.filename,
                    file_path=snapshot.file_path,
                    size_bytes=primary.size,
                    checksum=primary.checksum,
                    mime_type=primary.mime_type,
                    change_description="Initial version",
                    created_by=uploaded_by,
                    is_latest=True,
                ))
                session.add(AuditLog(
                    action="DOCUMENT_UPLOADED",
                    entity_type="document",
                    entity_id=document_id,
                    performed_by=uploaded_by,
                    details={"filename": filename, "size": primary.size, "checksum": primary.checksum},
                ))
        except SQLAlchemyError as e:
            self.storage.delete_file(primary.file_path, delete_thumbnail=True)
            self.storage.delete_file(snapshot.file_path)
            logger.error(f"Upload of '{filename}' failed to record: {e}")
            return DocumentResult(success=False, filename=filename, error=f"Failed to record document: {e}")

        log(log_document_event(
            "document_uploaded", document_id, user_id=uploaded_by,
            size_bytes=primary.size, checksum=primary.checksum, case_id=case_id,
        ))
        logger.info(f"Uploaded document {document_id} ({filename}, {primary.size} bytes)")
        return DocumentResult(
            success=True,
            document_id=document_id,
            version_number=1,
            file_path=primary.file_path,
            filename=primary.filename,
            size=primary.size,
            mime_type=primary.mime_type,
            checksum=primary.checksum,
            thumbnail_path=primary.thumbnail_path,
            warnings=list(primary.warnings),
            processing_time_ms=(time.perf_counter() - start) * 1000,
        )

    def get_document(self, document_id: str, include_deleted: bool = False) -> Optional[Dict[str, Any]]:
        with session_scope(self._session_factory) as session:
            doc = session.get(Document, document_id)
            if doc is None or (doc.status != "ACTIVE" and not include_deleted):
                return None
            return document_to_dict(doc)

    def search_documents(
        self,
        query: Optional[str] = None,
        case_id: Optional[str] = None,
        category: Optional[str] = None,
        tags: Optional[List[str]] = None,
        uploaded_by: Optional[str] = None,
        include_deleted: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """
        Filter documents by name/description text, case, category, uploader
        and tags (a document must carry every requested tag).
        """
        stmt = select(Document).order_by(Document.created_at.desc())
        if not include_deleted:
            stmt = stmt.where(Document.status == "ACTIVE")
        if query:
            pattern = f"%{query}%"
            stmt = stmt.where(or_(Document.name.ilike(pattern), Document.description.ilike(pattern)))
        if case_id:
            stmt = stmt.where(Document.case_id == case_id)
        if category:
            stmt = stmt.where(Document.category == category)
        if uploaded_by:
            stmt = stmt.where(Document.uploaded_by == uploaded_by)

        with session_scope(self._session_factory) as session:
            docs = list(session.execute(stmt).scalars())
        if tags:
            wanted = set(tags)
            docs = [d for d in docs if wanted.issubset(d.tags or [])]
        return [document_to_dict(d) for d in docs[offset:offset + limit]]

    def update_document(
        self,
        document_id: str,
        updated_by: str = "system",
        name: Optional[str] = None,
        description: Optional[str] = None,
        case_id: Optional[str] = None,
        category: Optional[str] = None,
        tags: Optional[List[str]] = None,
        is_confidential: Optional[bool] = None,
    ) -> Optional[Dict[str, Any]]:
        """Update metadata fields that are not None. Returns None for unknown documents."""
        changes = {
            k: v for k, v in {
                "name": name,
                "description": description,
                "case_id": case_id,
                "category": category,
                "tags": list(tags) if tags is not None else None,
                "is_confidential": is_confidential,
            }.items() if v is not None
        }
        with session_scope(self._session_factory) as session:
            doc = session.get(Document, document_id)
            if doc is None or doc.status != "ACTIVE":
                return None
            for key, value in changes.items():
                setattr(doc, key, value)
            doc.updated_by = updated_by
            session.add(AuditLog(
                action="DOCUMENT_UPDATED",
                entity_type="document",
                entity_id=document_id,
                performed_by=updated_by,
                details={"fields": sorted(changes)},
            ))
            session.flush()
            updated = document_to_dict(doc)
        log(log_document_event("document_updated", document_id, user_id=updated_by, fields=sorted(changes)))
        return updated

    def delete_document(self, document_id: str, deleted_by: str = "system", permanent: bool = False) -> bool:
        """
        Soft delete marks the document DELETED and keeps every file.
        Permanent delete removes the rows (versions cascade) and then the
        primary file, thumbnail and version files.
        """
        files: List[str] = []
        with session_scope(self._session_factory) as session:
            doc = session.get(Document, document_id)
            if doc is None or (doc.status != "ACTIVE" and not permanent):
                return False
            if permanent:
                files = [doc.file_path] + [v.file_path for v in doc.versions]
                session.delete(doc)
            else:
                doc.status = "DELETED"
                doc.is_deleted = True
                doc.deleted_at = datetime.now(timezone.utc)
                doc.deleted_by = deleted_by
                doc.updated_by = deleted_by
            session.add(AuditLog(
                action="DOCUMENT_PURGED" if permanent else "DOCUMENT_DELETED",
                entity_type="document",
                entity_id=document_id,
                performed_by=deleted_by,
                details={"permanent": permanent},
            ))

        for index, path in enumerate(files):
            self.storage.delete_file(path, delete_thumbnail=index == 0)
        log(log_document_event(
            "document_purged" if permanent else "document_deleted",
            document_id, user_id=deleted_by, files_removed=len(files),
        ))
        return True

    def download_document(self, document_id: str, version_number: Optional[int] = None) -> RetrievalResult:
        """
        Read the primary file, or a specific version, verifying its checksum.
        A mismatch fails the download rather than returning altered bytes.
        """
        with session_scope(self._session_factory) as session:
            doc = session.get(Document, document_id)
            if doc is None or doc.status != "ACTIVE":
                return RetrievalResult(success=False, error="Document not found")
            path, checksum = doc.file_path, doc.checksum

        if version_number is not None:
            version = self.versions.get_version(document_id, version_number)
            if version is None:
                return RetrievalResult(success=False, error=f"Version {version_number} not found")
            path, checksum = version.file_path, version.checksum

        result = self.storage.download(path, expected_checksum=checksum)
        if result.success and result.checksum_verified is False:
            return RetrievalResult(
                success=False,
                file_path=path,
                checksum=result.checksum,
                checksum_verified=False,
                error="Checksum verification failed",
            )
        return result

    # -------------------------------------------------------------------
    # Versions
    # -------------------------------------------------------------------

    def create_document_version(
        self,
        document_id: str,
        data: bytes,
        created_by: str = "system",
        change_description: Optional[str] = None,
        is_major: bool = False,
        original_name: Optional[str] = None,
        mime_type: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> VersionResult:
        result = self.versions.create_version(
            document_id,
            data,
            original_name=original_name,
            mime_type=mime_type,
            change_description=change_description,
            created_by=created_by,
            is_major=is_major,
            tags=tags,
        )
        if result.success:
            self._sync_primary(document_id, data, created_by, result.warnings)
        return result

    def restore_document_version(
        self,
        document_id: str,
        version_number: int,
        restore_as_new: bool = False,
        restored_by: str = "system",
    ) -> VersionResult:
        result = self.versions.restore_version(
            document_id, version_number, restore_as_new=restore_as_new, restored_by=restored_by,
        )
        if result.success and restore_as_new:
            restored = self.storage.download(result.file_path)
            if restored.success:
                self._sync_primary(document_id, restored.data or b"", restored_by, result.warnings)
        return result

    def _sync_primary(self, document_id: str, data: bytes, user: str, warnings: List[str]) -> None:
        """Overwrite the primary working copy with the latest version's bytes."""
        with session_scope(self._session_factory) as session:
            doc = session.get(Document, document_id)
            if doc is None:
                return
            stored = self.storage.upload(
                data,
                doc.original_name,
                mime_type=doc.mime_type,
                filename=doc.filename,
                overwrite=True,
                validate=False,
            )
            if not stored.success:
                warnings.append(f"Primary copy not updated: {stored.error}")
                return
            doc.size_bytes = stored.size
            doc.checksum = stored.checksum
            doc.updated_by = user

    def compare_document_versions(
        self,
        document_id: str,
        version1: int,
        version2: int,
        options: Optional[ComparisonOptions] = None,
    ) -> ComparisonResult:
        return self.versions.compare_versions(document_id, version1, version2, options)

    def get_document_history(self, document_id: str) -> Dict[str, Any]:
        """
        Raises:
            VaultNotFoundError: unknown document.
        """
        with session_scope(self._session_factory) as session:
            doc = session.get(Document, document_id)
            if doc is None:
                raise VaultNotFoundError(
                    f"Document not found: {document_id}",
                    object_ref=f"documents.{document_id}",
                )
            audit = [
                {
                    "action": a.action,
                    "performed_by": a.performed_by,
                    "details": a.details,
                    "created_at": a.created_at.isoformat(),
                }
                for a in session.execute(
                    select(AuditLog)
                    .where(AuditLog.entity_type == "document", AuditLog.entity_id == document_id)
                    .order_by(AuditLog.created_at, AuditLog.id)
                ).scalars()
            ]
            document = document_to_dict(doc)

        history = self.versions.get_version_history(document_id)
        history["document"] = document
        history["audit"] = audit
        return history

    # -------------------------------------------------------------------
    # Backups
    # -------------------------------------------------------------------

    def perform_backup(self, overrides: Optional[Dict[str, Any]] = None) -> BackupResult:
        """Back up with the configured settings, optionally overriding some of them."""
        config = self.config.backup
        if overrides:
            config = BackupConfig.model_validate({**config.model_dump(), **overrides})
        return self.backups.perform_backup(config)

    def restore_from_backup(
        self,
        backup_id: str,
        overwrite: bool = False,
        validate_integrity: bool = True,
        dry_run: bool = False,
    ) -> RestoreResult:
        return self.backups.restore_from_backup(
            backup_id, overwrite=overwrite, validate_integrity=validate_integrity, dry_run=dry_run,
        )

    def get_backup_info(self, backup_id: str) -> Optional[Dict[str, Any]]:
        return self.backups.get_backup_info(backup_id)

    def list_backups(self) -> List[Dict[str, Any]]:
        return self.backups.list_backups()

    def setup_default_schedule(self, created_by: str = "system") -> Optional[BackupSchedule]:
        """Create the nightly schedule from ``backup.schedule`` unless it exists or backups are off."""
        if not self.config.backup.enabled:
            return None
        for schedule in self.scheduler.get_backup_schedules():
            if schedule.name == DEFAULT_SCHEDULE_NAME:
                return schedule
        return self.scheduler.create_backup_schedule(
            DEFAULT_SCHEDULE_NAME,
            self.config.backup.schedule,
            config=self.config.backup,
            created_by=created_by,
        )

    # -------------------------------------------------------------------
    # Optimization
    # -------------------------------------------------------------------

    def perform_optimization(self, options: Optional[OptimizationOptions] = None) -> OptimizationResult:
        return self.optimizer.perform_optimization(options)

    def get_storage_metrics(self) -> StorageMetrics:
        return self.optimizer.get_storage_metrics()

    # -------------------------------------------------------------------
    # Evidence
    # -------------------------------------------------------------------

    def create_evidence(
        self,
        data: bytes,
        filename: str,
        options: EvidenceUploadOptions,
        mime_type: Optional[str] = None,
    ) -> EvidenceStorageResult:
        return self.evidence.upload_evidence(data, filename, options, mime_type=mime_type)

    def verify_evidence_integrity(self, evidence_id: str) -> EvidenceIntegrityResult:
        return self.evidence.verify_evidence_integrity(evidence_id)

    def __repr__(self) -> str:
        return f"<DocumentManager storage={self.storage.base_path}>"
