"""
CaseVault Evidence Service: evidence files with a verifiable chain of custody.

Layout under the storage root:
    evidence/original/{evidence_id}{ext}      the collected file
    evidence/original/{evidence_id}.json      sidecar metadata incl. checksum
    evidence/custody/{evidence_id}_chain.json hash-chained custody ledger
    evidence/processed/{evidence_id}_sealed{ext}  read-only sealed copy
    evidence/disposed/{evidence_id}{ext}      file after disposal

Integrity checks fail closed: a missing or empty file, a checksum that
differs from the one recorded at collection, or a broken ledger chain all
make the evidence invalid. Custody gaps and suspicious action wording are
advisories.
"""

from __future__ import annotations

import json
import logging
import os
import re
import secrets
import stat
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from casevault.documents.storage import StorageService
from casevault.engine.checksum import checksum_file
from casevault.engine.config import EvidenceConfig
from casevault.engine.errors import VaultError, VaultIntegrityError, VaultNotFoundError
from casevault.engine.logging import log, log_evidence_event
from casevault.evidence.custody import ChainOfCustodyEntry, CustodyLedger

logger = logging.getLogger("casevault.evidence.service")

EVIDENCE_TYPES = (
    "PHYSICAL", "DIGITAL", "DOCUMENT", "PHOTO", "VIDEO", "AUDIO", "TESTIMONY", "EXPERT_REPORT",
)

# Soft per-type limits (MB); exceeding one is a warning, the storage limit still applies
TYPE_SIZE_LIMITS_MB = {"PHOTO": 50, "VIDEO": 1024, "AUDIO": 500, "DOCUMENT": 100}
DEFAULT_TYPE_SIZE_LIMIT_MB = 200

ACTION_COLLECTED = "COLLECTED"
ACTION_SEALED = "SEALED"


class EvidenceUploadOptions(BaseModel):
    title: str
    case_id: str
    collected_by: str
    evidence_type: str = "DOCUMENT"
    description: Optional[str] = None
    location: Optional[str] = None
    generate_thumbnail: bool = False
    overwrite: bool = False
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("evidence_type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        v = v.upper()
        if v not in EVIDENCE_TYPES:
            raise ValueError(f"evidence_type must be one of {', '.join(EVIDENCE_TYPES)}")
        return v


@dataclass
class EvidenceStorageResult:
    success: bool
    evidence_id: Optional[str] = None
    file_path: str = ""
    filename: str = ""
    size: int = 0
    mime_type: str = ""
    checksum: Optional[str] = None
    thumbnail_path: Optional[str] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    processing_time_ms: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EvidenceIntegrityResult:
    evidence_id: str
    is_valid: bool = False
    checksum_matches: bool = False
    chain_of_custody_complete: bool = False
    tampering_detected: bool = False
    issues: List[str] = field(default_factory=list)
    advisories: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    checked_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EvidenceService:
    """
    Usage:
        evidence = EvidenceService(storage, config.evidence)
        result = evidence.upload_evidence(data, "scene.jpg", EvidenceUploadOptions(
            title="Scene photo", case_id="CASE-42", collected_by="officer.k",
            evidence_type="PHOTO",
        ))
        evidence.verify_evidence_integrity(result.evidence_id)
    """

    def __init__(self, storage: StorageService, config: Optional[EvidenceConfig] = None):
        self._storage = storage
        self.config = config or EvidenceConfig()
        self.ledger = CustodyLedger(storage.resolve_directory("evidence", "custody"))

    # -------------------------------------------------------------------
    # Upload
    # -------------------------------------------------------------------

    @staticmethod
    def generate_evidence_id(case_id: str) -> str:
        case = re.sub(r"[^A-Za-z0-9-]", "-", case_id).strip("-") or "NOCASE"
        return f"EVID_{case}_{datetime.now(timezone.utc):%Y%m%d%H%M%S}_{secrets.token_hex(4)}"

    def upload_evidence(
        self,
        data: bytes,
        filename: str,
        options: EvidenceUploadOptions,
        mime_type: Optional[str] = None,
    ) -> EvidenceStorageResult:
        """
        Store an evidence file, record its checksum in a sidecar and open
        its custody ledger with a COLLECTED entry.
        """
        start = time.perf_counter()
        validation = self._storage.validate_file(data, filename, mime_type)
        if not validation.is_valid:
            return EvidenceStorageResult(
                success=False,
                filename=filename,
                size=len(data),
                error=f"Evidence validation failed: {', '.join(validation.errors)}",
                warnings=validation.warnings,
            )

        warnings = list(validation.warnings)
        limit_mb = TYPE_SIZE_LIMITS_MB.get(options.evidence_type, DEFAULT_TYPE_SIZE_LIMIT_MB)
        if len(data) > limit_mb * 1024 * 1024:
            warnings.append(
                f"File size ({len(data) / 1024 / 1024:.0f}MB) exceeds recommended limit "
                f"for {options.evidence_type} evidence ({limit_mb}MB)"
            )

        evidence_id = self.generate_evidence_id(options.case_id)
        stored = self._storage.upload(
            data,
            filename,
            mime_type=mime_type,
            category="evidence",
            subcategory="original",
            filename=f"{evidence_id}{Path(filename).suffix.lower()}",
            overwrite=options.overwrite,
            generate_thumbnail=options.generate_thumbnail,
            validate=False,
        )
        if not stored.success:
            return EvidenceStorageResult(
                success=False,
                filename=filename,
                size=len(data),
                error=f"Evidence upload failed: {stored.error}",
                warnings=warnings + stored.warnings,
            )
        warnings.extend(stored.warnings)

        collected_at = datetime.now(timezone.utc).isoformat()
        metadata = dict(
            options.metadata,
            evidence_id=evidence_id,
            title=options.title,
            description=options.description,
            type=options.evidence_type,
            case_id=options.case_id,
            collected_by=options.collected_by,
            collected_at=collected_at,
            location=options.location,
            original_filename=filename,
            file_path=stored.file_path,
            size=stored.size,
            mime_type=stored.mime_type,
            checksum=stored.checksum,
            thumbnail_path=stored.thumbnail_path,
            tags=list(options.tags),
            sealed=False,
            disposed=False,
            validation_warnings=warnings,
        )
        self._write_sidecar(evidence_id, metadata)
        self.ledger.append(
            evidence_id,
            ACTION_COLLECTED,
            options.collected_by,
            location=options.location,
            notes=f"Evidence collected: {options.title}",
        )

        log(log_evidence_event(
            "evidence_collected", evidence_id, performed_by=options.collected_by,
            action=ACTION_COLLECTED, case_id=options.case_id, checksum=stored.checksum,
        ))
        logger.info(f"Collected evidence {evidence_id} for case {options.case_id}")
        return EvidenceStorageResult(
            success=True,
            evidence_id=evidence_id,
            file_path=stored.file_path,
            filename=stored.filename,
            size=stored.size,
            mime_type=stored.mime_type,
            checksum=stored.checksum,
            thumbnail_path=stored.thumbnail_path,
            warnings=warnings,
            processing_time_ms=(time.perf_counter() - start) * 1000,
            metadata=metadata,
        )

    # -------------------------------------------------------------------
    # Metadata sidecar
    # -------------------------------------------------------------------

    def _sidecar_path(self, evidence_id: str) -> Path:
        self.ledger.path_for(evidence_id)  # same id rules as the ledger
        return self._storage.resolve_directory("evidence", "original") / f"{evidence_id}.json"

    def _write_sidecar(self, evidence_id: str, metadata: Dict[str, Any]) -> None:
        path = self._sidecar_path(evidence_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{secrets.token_hex(4)}.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(metadata, f, indent=2, default=str)
        os.replace(tmp, path)

    def get_evidence_metadata(self, evidence_id: str) -> Optional[Dict[str, Any]]:
        path = self._sidecar_path(evidence_id)
        if not path.is_file():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                metadata = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise VaultIntegrityError(
                f"Evidence metadata {path.name} is unreadable: {e}",
                object_ref=f"evidence.{evidence_id}",
            )
        if not isinstance(metadata, dict):
            raise VaultIntegrityError(
                f"Evidence metadata {path.name} is not an object",
                object_ref=f"evidence.{evidence_id}",
            )
        return metadata

    def _require_metadata(self, evidence_id: str) -> Dict[str, Any]:
        metadata = self.get_evidence_metadata(evidence_id)
        if metadata is None:
            raise VaultNotFoundError(
                f"Evidence not found: {evidence_id}",
                object_ref=f"evidence.{evidence_id}",
            )
        return metadata

    # -------------------------------------------------------------------
    # Chain of custody
    # -------------------------------------------------------------------

    def add_to_chain_of_custody(
        self,
        evidence_id: str,
        action: str,
        performed_by: str,
        location: Optional[str] = None,
        notes: Optional[str] = None,
        signature: Optional[str] = None,
        performed_at: Optional[datetime] = None,
    ) -> ChainOfCustodyEntry:
        """
        Raises:
            VaultNotFoundError: unknown evidence id.
        """
        self._require_metadata(evidence_id)
        entry = self.ledger.append(
            evidence_id, action, performed_by,
            location=location, notes=notes, signature=signature, performed_at=performed_at,
        )
        log(log_evidence_event(
            "custody_entry_added", evidence_id, performed_by=performed_by,
            action=action, location=location, entry_hash=entry.entry_hash,
        ))
        return entry

    def get_chain_of_custody(self, evidence_id: str) -> List[ChainOfCustodyEntry]:
        return self.ledger.read(evidence_id)

    def transfer_evidence(
        self,
        evidence_id: str,
        transfer_to: str,
        transferred_by: str,
        reason: str,
        location: Optional[str] = None,
    ) -> ChainOfCustodyEntry:
        return self.add_to_chain_of_custody(
            evidence_id,
            f"TRANSFERRED to {transfer_to}",
            transferred_by,
            location=location,
            notes=f"Reason: {reason}",
        )

    # -------------------------------------------------------------------
    # Integrity
    # -------------------------------------------------------------------

    def verify_evidence_integrity(self, evidence_id: str) -> EvidenceIntegrityResult:
        """
        Check the file against its collection checksum and walk the custody chain.

        Problems are reported on the result, never raised.
        """
        result = EvidenceIntegrityResult(evidence_id=evidence_id)
        try:
            metadata = self.get_evidence_metadata(evidence_id)
        except VaultError as e:
            result.issues.append(f"Integrity verification failed: {e.message}")
            result.recommendations.append("Address integrity issues immediately")
            self._log_verification(evidence_id, result)
            return result

        file_ok = False
        if metadata is None:
            result.issues.append("Evidence record not found")
        else:
            try:
                file_ok = self._check_file(metadata, result)
            except (VaultError, OSError) as e:
                message = e.message if isinstance(e, VaultError) else str(e)
                result.issues.append(f"Integrity verification failed: {message}")

        chain_ok = True
        entries: List[ChainOfCustodyEntry] = []
        try:
            entries = self.ledger.read(evidence_id)
            chain_issues = self.ledger.verify_chain(evidence_id)
        except VaultIntegrityError as e:
            chain_issues = [e.message]
        if chain_issues:
            chain_ok = False
            result.tampering_detected = True
            result.issues.extend(chain_issues)

        if not entries:
            result.advisories.append("No chain of custody records found")
            result.recommendations.append("Establish proper chain of custody procedures")
        else:
            result.chain_of_custody_complete = chain_ok
            gap = timedelta(hours=self.config.gap_threshold_hours)
            try:
                timeline = sorted(e.performed_at_dt for e in entries)
            except (TypeError, ValueError):
                timeline = []
                result.advisories.append("Custody entry timestamps could not be read")
            for previous, current in zip(timeline, timeline[1:]):
                delta = current - previous
                if delta > gap:
                    result.advisories.append(
                        f"Gap of {delta.total_seconds() / 3600:.0f} hours in chain of custody"
                    )
            last_action = entries[-1].action.lower()
            if any(word in last_action for word in self.config.tamper_keywords):
                result.tampering_detected = True
                result.advisories.append("Evidence may have been modified according to chain of custody")

        result.is_valid = file_ok and chain_ok
        if not result.is_valid:
            result.recommendations.append("Address integrity issues immediately")

        self._log_verification(evidence_id, result)
        return result

    def _check_file(self, metadata: Dict[str, Any], result: EvidenceIntegrityResult) -> bool:
        if not self._storage.file_exists(metadata.get("file_path", "")):
            result.issues.append("Evidence file not found")
            return False
        path = self._storage.absolute_path(metadata["file_path"])
        if path.stat().st_size == 0:
            result.issues.append("Evidence file is empty")
            return False
        if checksum_file(path) != metadata.get("checksum"):
            result.issues.append("Evidence file checksum does not match the value recorded at collection")
            result.tampering_detected = True
            return False
        result.checksum_matches = True
        return True

    @staticmethod
    def _log_verification(evidence_id: str, result: EvidenceIntegrityResult) -> None:
        log(log_evidence_event(
            "evidence_verified", evidence_id,
            level="INFO" if result.is_valid else "WARNING",
            is_valid=result.is_valid,
            tampering_detected=result.tampering_detected,
            issues=result.issues or None,
        ))

    # -------------------------------------------------------------------
    # Seal / dispose
    # -------------------------------------------------------------------

    def is_sealed(self, evidence_id: str) -> bool:
        return any(e.action == ACTION_SEALED for e in self.ledger.read(evidence_id))

    def seal_evidence(self, evidence_id: str, sealed_by: str) -> bool:
        """Write a read-only sealed copy and record SEALED. False if missing or already sealed."""
        metadata = self._require_metadata(evidence_id)
        if metadata.get("sealed") or metadata.get("disposed"):
            logger.warning(f"Evidence {evidence_id} cannot be sealed (sealed or disposed)")
            return False

        source = metadata.get("file_path", "")
        ext = Path(source).suffix
        copied = self._storage.copy_file(
            source, "evidence", "processed", filename=f"{evidence_id}_sealed{ext}",
        )
        if not copied.success:
            logger.warning(f"Sealing {evidence_id} failed: {copied.error}")
            return False
        os.chmod(self._storage.absolute_path(copied.file_path), stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH)

        self.add_to_chain_of_custody(
            evidence_id, ACTION_SEALED, sealed_by,
            notes="Evidence officially sealed and marked as read-only",
        )
        metadata.update(sealed=True, sealed_path=copied.file_path, sealed_by=sealed_by,
                        sealed_at=datetime.now(timezone.utc).isoformat())
        self._write_sidecar(evidence_id, metadata)
        return True

    def dispose_evidence(self, evidence_id: str, disposed_by: str, method: str) -> bool:
        """Move the file to evidence/disposed and record the disposal."""
        metadata = self._require_metadata(evidence_id)
        if metadata.get("disposed"):
            return False

        source = metadata.get("file_path", "")
        moved = self._storage.move_file(source, "evidence", "disposed")
        if not moved.success:
            logger.warning(f"Disposing {evidence_id} failed: {moved.error}")
            return False

        self.add_to_chain_of_custody(
            evidence_id, f"DISPOSED via {method}", disposed_by,
            notes="Evidence officially disposed of according to procedures",
        )
        metadata.update(disposed=True, file_path=moved.file_path, disposed_by=disposed_by,
                        disposal_method=method, disposed_at=datetime.now(timezone.utc).isoformat())
        self._write_sidecar(evidence_id, metadata)
        return True

    # -------------------------------------------------------------------
    # Report
    # -------------------------------------------------------------------

    def generate_evidence_report(self, evidence_id: str) -> Dict[str, Any]:
        metadata = self._require_metadata(evidence_id)
        chain = self.get_chain_of_custody(evidence_id)
        integrity = self.verify_evidence_integrity(evidence_id)

        file_info: Dict[str, Any] = {}
        if self._storage.file_exists(metadata.get("file_path", "")):
            path = self._storage.absolute_path(metadata["file_path"])
            st = path.stat()
            file_info = {
                "size": st.st_size,
                "modified": datetime.fromtimestamp(st.st_mtime, tz=timezone.utc).isoformat(),
                "checksum": checksum_file(path),
            }

        recommendations = list(integrity.recommendations)
        if not integrity.chain_of_custody_complete:
            recommendations.append("Complete chain of custody documentation")

        return {
            "evidence_info": {
                "evidence_id": evidence_id,
                "title": metadata.get("title"),
                "case_id": metadata.get("case_id"),
                "type": metadata.get("type"),
                "file_info": file_info,
                "chain_length": len(chain),
                "last_entry": chain[-1].to_dict() if chain else None,
                "is_sealed": any(e.action == ACTION_SEALED for e in chain),
                "is_disposed": any(e.action.startswith("DISPOSED") for e in chain),
            },
            "chain_of_custody": [e.to_dict() for e in chain],
            "integrity_status": integrity.to_dict(),
            "recommendations": recommendations,
        }
