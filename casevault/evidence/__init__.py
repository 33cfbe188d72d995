"""CaseVault Evidence: chain-of-custody ledgers and integrity verification."""

from casevault.evidence.custody import ChainOfCustodyEntry, CustodyLedger
from casevault.evidence.service import (
    EVIDENCE_TYPES,
    EvidenceIntegrityResult,
    EvidenceService,
    EvidenceStorageResult,
    EvidenceUploadOptions,
)

__all__ = [
    "ChainOfCustodyEntry",
    "CustodyLedger",
    "EVIDENCE_TYPES",
    "EvidenceIntegrityResult",
    "EvidenceService",
    "EvidenceStorageResult",
    "EvidenceUploadOptions",
]
