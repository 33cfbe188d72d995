"""CaseVault Backups: archives, integrity-checked restore, retention and cron scheduling."""

from casevault.backup.models import BackupJob, BackupResult, BackupSchedule, BackupStatus, RestoreResult
from casevault.backup.scheduler import BackupScheduler, calculate_next_run
from casevault.backup.service import BackupService

__all__ = [
    "BackupJob",
    "BackupResult",
    "BackupSchedule",
    "BackupStatus",
    "RestoreResult",
    "BackupScheduler",
    "calculate_next_run",
    "BackupService",
]
