"""
Backup data types: job state machine, run results and schedule views.

``BackupConfig`` lives with the rest of the configuration models and is
re-exported here for callers that only deal with backups.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from casevault.engine.config import BackupConfig, BackupDestination, BackupNotificationConfig
from casevault.engine.errors import VaultBackupError

__all__ = [
    "BackupConfig",
    "BackupDestination",
    "BackupNotificationConfig",
    "BackupStatus",
    "BackupJob",
    "BackupResult",
    "RestoreResult",
    "BackupSchedule",
]


class BackupStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS = {
    BackupStatus.PENDING: {BackupStatus.RUNNING, BackupStatus.FAILED},
    BackupStatus.RUNNING: {BackupStatus.COMPLETED, BackupStatus.FAILED},
    BackupStatus.COMPLETED: set(),
    BackupStatus.FAILED: set(),
}


@dataclass
class BackupJob:
    """
    In-memory record of one backup run.

    pending -> running -> completed | failed; a pending job may also fail
    before it starts. Anything else raises ``VaultBackupError``.
    """
    backup_id: str
    config: BackupConfig
    status: BackupStatus = BackupStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    progress: Dict[str, Any] = field(default_factory=dict)

    def _move(self, target: BackupStatus) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise VaultBackupError(
                f"Invalid backup state transition: {self.status.value} -> {target.value}",
                backup_id=self.backup_id,
                operation="transition",
            )
        self.status = target

    def mark_running(self) -> None:
        self._move(BackupStatus.RUNNING)
        self.started_at = datetime.now(timezone.utc)

    def mark_completed(self) -> None:
        self._move(BackupStatus.COMPLETED)
        self.completed_at = datetime.now(timezone.utc)

    def mark_failed(self, error: str) -> None:
        self._move(BackupStatus.FAILED)
        self.error = error
        self.completed_at = datetime.now(timezone.utc)

    @property
    def is_active(self) -> bool:
        return self.status in (BackupStatus.PENDING, BackupStatus.RUNNING)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "backup_id": self.backup_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
            "progress": dict(self.progress),
        }


@dataclass
class BackupResult:
    success: bool
    backup_id: str
    status: BackupStatus = BackupStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_ms: float = 0.0
    size: int = 0
    files_count: int = 0
    checksum: Optional[str] = None
    archive_path: Optional[str] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["start_time"] = self.start_time.isoformat() if self.start_time else None
        d["end_time"] = self.end_time.isoformat() if self.end_time else None
        return d


@dataclass
class RestoreResult:
    success: bool
    restore_id: str
    backup_id: str
    files_restored: int = 0
    files_skipped: int = 0
    would_restore: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    integrity_verified: bool = False
    dry_run: bool = False
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["start_time"] = self.start_time.isoformat() if self.start_time else None
        d["end_time"] = self.end_time.isoformat() if self.end_time else None
        return d


class BackupSchedule(BaseModel):
    """Read model for a ``backup_schedules`` row."""
    id: str
    name: str
    cron: str
    config: BackupConfig = Field(default_factory=BackupConfig)
    is_active: bool = True
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    last_status: Optional[str] = None
    last_backup_id: Optional[str] = None
    last_error: Optional[str] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Any) -> "BackupSchedule":
        return cls(
            id=record.id,
            name=record.name,
            cron=record.cron,
            config=BackupConfig(**(record.config or {})),
            is_active=record.is_active,
            last_run=record.last_run,
            next_run=record.next_run,
            last_status=record.last_status,
            last_backup_id=record.last_backup_id,
            last_error=record.last_error,
            lease_owner=record.lease_owner,
            lease_expires_at=record.lease_expires_at,
        )
