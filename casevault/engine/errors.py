"""
CaseVault Error Hierarchy: structured exceptions for storage, versioning,
backup and evidence operations.

Every error carries a serializable context so it can be written to the
structured event log or returned to a caller as JSON.

Hierarchy:
    VaultError
    ├── VaultValidationError   Input rejected (MIME, size, extension, ids)
    ├── VaultStorageError      Filesystem read/write failed
    ├── VaultVersionError      Version bookkeeping failed
    ├── VaultBackupError       Backup/restore run failed
    ├── VaultIntegrityError    Checksum or ledger verification failed
    ├── VaultNotFoundError     Document, version, backup or evidence missing
    ├── VaultConfigError       Invalid casevault.yaml
    └── VaultEncryptionError   Archive encryption/decryption failed
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class VaultError(Exception):
    """
    Base error for all CaseVault failures.

    Context keyword arguments are kept verbatim and rendered as strings
    by ``to_dict()``.
    """

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.object_ref: Optional[str] = context.get("object_ref")
        self.operation: Optional[str] = context.get("operation")
        self.error_type: str = self.__class__.__name__
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to a JSON-compatible dict for logging."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "object_ref": self.object_ref,
            "operation": self.operation,
            "timestamp": self.timestamp,
            "context": {
                k: str(v) for k, v in self.context.items()
                if k not in ("object_ref", "operation")
            },
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        parts = [f"{self.error_type}: {self.message}"]
        if self.object_ref:
            parts.append(f"object_ref={self.object_ref}")
        if self.operation:
            parts.append(f"operation={self.operation}")
        return " | ".join(parts)


class VaultValidationError(VaultError):
    """
    Input validation failed before any I/O took place.
    Includes the individual validation messages.
    """

    def __init__(self, message: str, **context: Any):
        self.validation_errors: List[str] = list(context.get("validation_errors") or [])
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["validation_errors"] = self.validation_errors
        return d


class VaultStorageError(VaultError):
    """Filesystem operation failed (disk full, permission denied, ...)."""

    def __init__(self, message: str, **context: Any):
        self.path: Optional[str] = context.get("path")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["path"] = self.path
        return d


class VaultVersionError(VaultError):
    """Version creation, restore or pruning failed."""

    def __init__(self, message: str, **context: Any):
        self.document_id: Optional[str] = context.get("document_id")
        self.version_number: Optional[int] = context.get("version_number")
        super().__init__(message, **context)


class VaultBackupError(VaultError):
    """Backup or restore run failed, or a job made an invalid state transition."""

    def __init__(self, message: str, **context: Any):
        self.backup_id: Optional[str] = context.get("backup_id")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["backup_id"] = self.backup_id
        return d


class VaultIntegrityError(VaultError):
    """Checksum mismatch or broken chain-of-custody ledger."""

    def __init__(self, message: str, **context: Any):
        self.issues: List[str] = list(context.get("issues") or [])
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["issues"] = self.issues
        return d


class VaultNotFoundError(VaultError):
    """Referenced document, version, backup or evidence item does not exist."""
    pass


class VaultConfigError(VaultError):
    """Configuration error: invalid casevault.yaml."""
    pass


class VaultEncryptionError(VaultError):
    """Archive could not be encrypted or decrypted (wrong key, corrupt data)."""
    pass
