"""
CaseVault Version Service: numbered, checksummed document versions.

Handles:
- Version creation with a duplicate-content guard and major (+10) jumps
- The "latest" flip done under a per-document lock and a row lock on the
  parent document, inside one transaction with the new row and ``Document.version``
- Restore as a new version or in place with provenance metadata
- Text/binary comparison between two versions
- Retention: per-document count limit and age-based pruning, never
  touching the latest version

Version files live in ``documents/versions`` as ``{document_id}_v{n}_{name}``.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from casevault.db.models import AuditLog, Document, DocumentVersion
from casevault.db.session import session_scope
from casevault.documents.comparison import (
    DEFAULT_MAX_LEVENSHTEIN_CELLS,
    ComparisonOptions,
    ComparisonResult,
    compare_content,
)
from casevault.documents.storage import StorageService
from casevault.engine.checksum import checksum_bytes
from casevault.engine.errors import VaultNotFoundError, VaultStorageError
from casevault.engine.logging import log, log_version_event

logger = logging.getLogger("casevault.documents.versions")

DUPLICATE_VERSION_ERROR = "This version is identical to the latest version"
MAJOR_VERSION_STEP = 10


def next_version_number(current: int, is_major: bool = False) -> int:
    """
    Plain increment, or the next multiple of ten for a major version.

    >>> next_version_number(3), next_version_number(3, True), next_version_number(10, True)
    (4, 10, 20)
    """
    if is_major:
        return (current // MAJOR_VERSION_STEP) * MAJOR_VERSION_STEP + MAJOR_VERSION_STEP
    return current + 1


def version_filename(document_id: str, version_number: int, original_name: str) -> str:
    return f"{document_id}_v{version_number}_{StorageService._safe_filename(original_name)}"


@dataclass
class VersionResult:
    success: bool
    document_id: str
    version_number: Optional[int] = None
    version_id: Optional[str] = None
    file_path: str = ""
    filename: str = ""
    size: int = 0
    checksum: Optional[str] = None
    mime_type: Optional[str] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    processing_time_ms: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class VersionService:
    """
    Version bookkeeping for documents.

    Usage:
        service = VersionService(session_factory, storage, max_versions=50)
        result = service.create_version(doc_id, data, "brief.txt", created_by="jdoe")
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]],
        storage: StorageService,
        max_versions: Optional[int] = 50,
        max_levenshtein_cells: int = DEFAULT_MAX_LEVENSHTEIN_CELLS,
    ):
        self._session_factory = session_factory
        self._storage = storage
        self.max_versions = max_versions
        self.max_levenshtein_cells = max_levenshtein_cells
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _lock_for(self, document_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[document_id]

    # -------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------

    def create_version(
        self,
        document_id: str,
        file_data: bytes,
        original_name: Optional[str] = None,
        mime_type: Optional[str] = None,
        change_description: Optional[str] = None,
        created_by: str = "system",
        is_major: bool = False,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        prune: bool = True,
    ) -> VersionResult:
        """
        Append a version to a document.

        1. Take the per-document lock, lock the document row and read the
           latest version
        2. Reject content identical to the latest version
        3. Store the bytes under the next version number
        4. Clear the old latest flag, insert the new latest row and
           update ``Document.version`` in the same transaction
        5. After commit, prune beyond ``max_versions``

        A failed transaction removes the file written in step 3.
        """
        start = time.perf_counter()
        if not file_data:
            return self._failure(document_id, "Version content is empty")

        checksum = checksum_bytes(file_data)
        with self._lock_for(document_id):
            stored = None
            try:
                with session_scope(self._session_factory) as session:
                    doc = self._lock_document(session, document_id)
                    if doc is None:
                        return self._failure(document_id, "Document not found")

                    latest = self._latest_row(session, document_id)
                    if latest is not None and latest.checksum == checksum:
                        log(log_version_event(
                            "version_rejected", document_id, latest.version_number,
                            user_id=created_by, success=False, error=DUPLICATE_VERSION_ERROR,
                        ))
                        return self._failure(document_id, DUPLICATE_VERSION_ERROR)

                    current = session.scalar(
                        select(func.max(DocumentVersion.version_number))
                        .where(DocumentVersion.document_id == document_id)
                    ) or 0
                    number = next_version_number(current, is_major)
                    name = original_name or doc.original_name

                    stored = self._storage.upload(
                        file_data,
                        name,
                        mime_type=mime_type or doc.mime_type,
                        category="documents",
                        subcategory="versions",
                        filename=version_filename(document_id, number, name),
                        generate_checksum=False,
                    )
                    if not stored.success:
                        return self._failure(
                            document_id, stored.error or "Failed to store version",
                            warnings=stored.warnings,
                        )

                    if latest is not None:
                        latest.is_latest = False
                        session.flush()

                    version = DocumentVersion(
                        document_id=document_id,
                        version_number=number,
                        filename=stored.filename,
                        file_path=stored.file_path,
                        size_bytes=len(file_data),
                        checksum=checksum,
                        mime_type=stored.mime_type,
                        change_description=change_description or f"Version {number}",
                        created_by=created_by,
                        is_latest=True,
                        is_major=is_major,
                        tags=list(tags or []),
                        version_metadata=dict(metadata or {}),
                    )
                    session.add(version)
                    doc.version = number
                    doc.is_latest = True
                    doc.updated_by = created_by
                    session.add(AuditLog(
                        action="VERSION_CREATED",
                        entity_type="document",
                        entity_id=document_id,
                        performed_by=created_by,
                        details={"version_number": number, "checksum": checksum, "is_major": is_major},
                    ))
                    session.flush()
                    version_id = version.id
            except SQLAlchemyError as e:
                if stored is not None and stored.success:
                    self._storage.delete_file(stored.file_path)
                logger.error(f"Version create failed for document {document_id}: {e}")
                return self._failure(document_id, f"Failed to record version: {e}")

        result = VersionResult(
            success=True,
            document_id=document_id,
            version_number=number,
            version_id=version_id,
            file_path=stored.file_path,
            filename=stored.filename,
            size=len(file_data),
            checksum=checksum,
            mime_type=stored.mime_type,
            warnings=list(stored.warnings),
            processing_time_ms=(time.perf_counter() - start) * 1000,
        )
        log(log_version_event(
            "version_created", document_id, number, user_id=created_by,
            checksum=checksum, size_bytes=len(file_data), is_major=is_major,
        ))
        logger.info(f"Created version {number} of document {document_id} ({len(file_data)} bytes)")

        if prune and self.max_versions is not None:
            pruned = self.cleanup_old_versions(document_id)
            if pruned["deleted_versions"]:
                result.metadata["pruned_versions"] = pruned["deleted_versions"]
        return result

    # -------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------

    def restore_version(
        self,
        document_id: str,
        version_number: int,
        restore_as_new: bool = False,
        restored_by: str = "system",
        change_description: Optional[str] = None,
    ) -> VersionResult:
        """
        Bring back the content of an earlier version.

        ``restore_as_new`` appends a new version with that content. Otherwise
        the document's primary file is overwritten and its metadata records
        ``restored_from``, ``restored_at`` and ``restored_by``.
        """
        target = self.get_version(document_id, version_number)
        if target is None:
            return self._failure(document_id, f"Version {version_number} not found")

        retrieved = self._storage.download(target.file_path, expected_checksum=target.checksum)
        if not retrieved.success:
            return self._failure(document_id, retrieved.error or "Version file unreadable")
        if retrieved.checksum_verified is False:
            return self._failure(
                document_id,
                f"Stored content for version {version_number} failed checksum verification",
            )

        if restore_as_new:
            result = self.create_version(
                document_id,
                retrieved.data or b"",
                mime_type=target.mime_type,
                change_description=change_description or f"Restored from version {version_number}",
                created_by=restored_by,
                metadata={"restored_from": version_number},
            )
            if result.success:
                log(log_version_event(
                    "version_restored", document_id, result.version_number,
                    user_id=restored_by, restored_from=version_number, mode="new_version",
                ))
            return result

        try:
            with session_scope(self._session_factory) as session:
                doc = self._lock_document(session, document_id)
                if doc is None:
                    return self._failure(document_id, "Document not found")

                stored = self._storage.upload(
                    retrieved.data or b"",
                    doc.original_name,
                    mime_type=doc.mime_type,
                    category="documents",
                    subcategory="original",
                    filename=doc.filename,
                    overwrite=True,
                    validate=False,
                )
                if not stored.success:
                    return self._failure(document_id, stored.error or "Failed to overwrite document")

                doc.file_path = stored.file_path
                doc.size_bytes = stored.size
                doc.checksum = stored.checksum
                doc.updated_by = restored_by
                doc.doc_metadata = dict(
                    doc.doc_metadata or {},
                    restored_from=version_number,
                    restored_at=datetime.now(timezone.utc).isoformat(),
                    restored_by=restored_by,
                )
                session.add(AuditLog(
                    action="VERSION_RESTORED",
                    entity_type="document",
                    entity_id=document_id,
                    performed_by=restored_by,
                    details={"restored_from": version_number, "mode": "in_place"},
                ))
                current_version = doc.version
        except SQLAlchemyError as e:
            logger.error(f"In-place restore failed for document {document_id}: {e}")
            return self._failure(document_id, f"Failed to record restore: {e}")

        log(log_version_event(
            "version_restored", document_id, version_number,
            user_id=restored_by, mode="in_place",
        ))
        return VersionResult(
            success=True,
            document_id=document_id,
            version_number=current_version,
            file_path=stored.file_path,
            filename=stored.filename,
            size=stored.size,
            checksum=stored.checksum,
            mime_type=stored.mime_type,
            metadata={"restored_from": version_number},
        )

    # -------------------------------------------------------------------
    # Compare
    # -------------------------------------------------------------------

    def compare_versions(
        self,
        document_id: str,
        version1: int,
        version2: int,
        options: Optional[ComparisonOptions] = None,
    ) -> ComparisonResult:
        """
        Diff two versions of a document.

        Raises:
            VaultNotFoundError: either version does not exist.
            VaultStorageError: a version file cannot be read.
        """
        first = self.get_version(document_id, version1)
        second = self.get_version(document_id, version2)
        missing = [n for n, v in ((version1, first), (version2, second)) if v is None]
        if missing:
            raise VaultNotFoundError(
                f"Version(s) {missing} not found for document {document_id}",
                object_ref=f"documents.{document_id}",
                operation="compare_versions",
            )

        payloads = []
        for v in (first, second):
            retrieved = self._storage.download(v.file_path)
            if not retrieved.success:
                raise VaultStorageError(
                    retrieved.error or "Version file unreadable",
                    path=v.file_path,
                    operation="compare_versions",
                )
            payloads.append(retrieved.data or b"")

        return compare_content(
            payloads[0],
            payloads[1],
            first.mime_type or second.mime_type,
            version1=version1,
            version2=version2,
            checksum1=first.checksum,
            checksum2=second.checksum,
            options=options or ComparisonOptions(max_levenshtein_cells=self.max_levenshtein_cells),
        )

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------

    def get_version(self, document_id: str, version_number: int) -> Optional[DocumentVersion]:
        with session_scope(self._session_factory) as session:
            return session.execute(
                select(DocumentVersion).where(
                    DocumentVersion.document_id == document_id,
                    DocumentVersion.version_number == version_number,
                )
            ).scalar_one_or_none()

    def get_versions(self, document_id: str, limit: Optional[int] = None) -> List[DocumentVersion]:
        """Versions newest first."""
        with session_scope(self._session_factory) as session:
            stmt = (
                select(DocumentVersion)
                .where(DocumentVersion.document_id == document_id)
                .order_by(DocumentVersion.version_number.desc())
            )
            if limit:
                stmt = stmt.limit(limit)
            return list(session.execute(stmt).scalars())

    def get_latest_version(self, document_id: str) -> Optional[DocumentVersion]:
        with session_scope(self._session_factory) as session:
            return self._latest_row(session, document_id)

    def get_version_stats(self, document_id: str) -> Dict[str, Any]:
        versions = self.get_versions(document_id)
        if not versions:
            return {
                "total_versions": 0,
                "total_size": 0,
                "average_size": 0,
                "latest_version": None,
                "major_versions": 0,
                "first_created": None,
                "last_created": None,
                "contributors": [],
            }
        total_size = sum(v.size_bytes for v in versions)
        created = sorted(v.created_at for v in versions)
        latest = next((v.version_number for v in versions if v.is_latest), None)
        return {
            "total_versions": len(versions),
            "total_size": total_size,
            "average_size": total_size / len(versions),
            "latest_version": latest,
            "major_versions": sum(1 for v in versions if v.is_major),
            "first_created": created[0].isoformat(),
            "last_created": created[-1].isoformat(),
            "contributors": sorted({v.created_by for v in versions if v.created_by}),
        }

    def get_version_history(self, document_id: str) -> Dict[str, Any]:
        return {
            "document_id": document_id,
            "versions": [self.version_to_dict(v) for v in self.get_versions(document_id)],
            "statistics": self.get_version_stats(document_id),
        }

    @staticmethod
    def version_to_dict(version: DocumentVersion) -> Dict[str, Any]:
        return {
            "id": version.id,
            "document_id": version.document_id,
            "version_number": version.version_number,
            "file_path": version.file_path,
            "size": version.size_bytes,
            "checksum": version.checksum,
            "mime_type": version.mime_type,
            "change_description": version.change_description,
            "created_by": version.created_by,
            "created_at": version.created_at.isoformat() if version.created_at else None,
            "is_latest": version.is_latest,
            "is_major": version.is_major,
            "tags": list(version.tags or []),
            "metadata": dict(version.version_metadata or {}),
        }

    # -------------------------------------------------------------------
    # Delete / retention
    # -------------------------------------------------------------------

    def delete_version(self, document_id: str, version_number: int) -> bool:
        """Delete one non-latest version and its file. The latest is refused."""
        with session_scope(self._session_factory) as session:
            version = session.execute(
                select(DocumentVersion).where(
                    DocumentVersion.document_id == document_id,
                    DocumentVersion.version_number == version_number,
                )
            ).scalar_one_or_none()
            if version is None:
                return False
            if version.is_latest:
                logger.warning(f"Refusing to delete latest version {version_number} of {document_id}")
                return False
            file_path = version.file_path
            session.delete(version)

        self._storage.delete_file(file_path)
        log(log_version_event("version_deleted", document_id, version_number))
        return True

    def cleanup_old_versions(self, document_id: str, keep: Optional[int] = None) -> Dict[str, Any]:
        """
        Keep at most ``keep`` versions (default ``max_versions``), deleting
        the oldest first. The latest version always survives and counts
        towards ``keep``, so ``keep=0`` leaves only the latest.
        """
        keep = self.max_versions if keep is None else keep
        if keep is None:
            return {"deleted_versions": [], "freed_space": 0}

        with session_scope(self._session_factory) as session:
            older = list(session.execute(
                select(DocumentVersion)
                .where(
                    DocumentVersion.document_id == document_id,
                    DocumentVersion.is_latest.is_(False),
                )
                .order_by(DocumentVersion.version_number.desc())
            ).scalars())
            doomed = older[max(keep - 1, 0):]
            doomed.reverse()
            removed = [(v.version_number, v.file_path, v.size_bytes) for v in doomed]
            for v in doomed:
                session.delete(v)

        freed = 0
        for number, path, size in removed:
            if self._storage.delete_file(path):
                freed += size
        if removed:
            numbers = [n for n, _, _ in removed]
            logger.info(f"Pruned versions {numbers} of document {document_id}")
            log(log_version_event("versions_pruned", document_id, pruned=numbers, freed_space=freed))
        return {"deleted_versions": [n for n, _, _ in removed], "freed_space": freed}

    def prune_versions_older_than(
        self,
        max_age_days: int,
        dry_run: bool = False,
        min_size_bytes: int = 0,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Delete non-latest versions created more than ``max_age_days`` ago
        (and at least ``min_size_bytes`` large) across all documents.
        """
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=max_age_days)
        with session_scope(self._session_factory) as session:
            candidates = list(session.execute(
                select(DocumentVersion).where(
                    DocumentVersion.is_latest.is_(False),
                    DocumentVersion.created_at < cutoff,
                    DocumentVersion.size_bytes >= min_size_bytes,
                ).order_by(DocumentVersion.created_at)
            ).scalars())
            removed = [(v.document_id, v.version_number, v.file_path, v.size_bytes) for v in candidates]
            if not dry_run:
                for v in candidates:
                    session.delete(v)

        freed = 0
        if not dry_run:
            for _, _, path, size in removed:
                if self._storage.delete_file(path):
                    freed += size
        else:
            freed = sum(size for _, _, _, size in removed)

        return {
            "versions_deleted": len(removed),
            "space_freed": freed,
            "documents_affected": len({doc_id for doc_id, _, _, _ in removed}),
            "dry_run": dry_run,
            "versions": [{"document_id": d, "version_number": n} for d, n, _, _ in removed],
        }

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    @staticmethod
    def _lock_document(session: Session, document_id: str) -> Optional[Document]:
        return session.execute(
            select(Document)
            .where(Document.id == document_id, Document.status == "ACTIVE")
            .with_for_update()
        ).scalar_one_or_none()

    @staticmethod
    def _latest_row(session: Session, document_id: str) -> Optional[DocumentVersion]:
        return session.execute(
            select(DocumentVersion).where(
                DocumentVersion.document_id == document_id,
                DocumentVersion.is_latest.is_(True),
            )
        ).scalar_one_or_none()

    @staticmethod
    def _failure(document_id: str, error: str, warnings: Optional[List[str]] = None) -> VersionResult:
        return VersionResult(success=False, document_id=document_id, error=error, warnings=list(warnings or []))
