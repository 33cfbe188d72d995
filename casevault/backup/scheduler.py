"""
CaseVault Backup Scheduler: cron schedules stored in the database.

Responsibilities:
1. Cron parsing and next-run calculation (Celery's ``crontab`` expands
   the five fields; we walk forward to the next matching UTC minute)
2. Schedule CRUD on the ``backup_schedules`` table
3. Due-schedule execution with a lease claimed by a conditional UPDATE,
   so two processes polling the same database never run a slot twice
4. A daemon polling thread (``start()`` / ``stop()``)
"""

from __future__ import annotations

import logging
import os
import secrets
import socket
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from celery.schedules import ParseException, crontab
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from casevault.backup.models import BackupConfig, BackupSchedule
from casevault.backup.service import BackupService
from casevault.db.models import BackupScheduleRecord
from casevault.db.session import session_scope
from casevault.engine.errors import VaultError, VaultNotFoundError, VaultValidationError
from casevault.engine.logging import log, log_backup_event

logger = logging.getLogger("casevault.backup.scheduler")

CRON_ALIASES = {
    "@hourly": "0 * * * *",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@weekly": "0 0 * * 0",
    "@monthly": "0 0 1 * *",
}

# Give up looking for a matching minute after this many days
MAX_LOOKAHEAD_DAYS = 366 * 5


def parse_cron(cron: str) -> crontab:
    """
    Parse ``minute hour day_of_month month_of_year day_of_week``.

    Raises:
        VaultValidationError: wrong field count or a field Celery rejects.
    """
    expr = CRON_ALIASES.get(cron.strip(), cron.strip())
    parts = expr.split()
    if len(parts) != 5:
        raise VaultValidationError(
            f"Invalid cron expression '{cron}': expected 5 fields, got {len(parts)}",
            object_ref="backup_schedules.cron",
        )
    try:
        return crontab(
            minute=parts[0],
            hour=parts[1],
            day_of_month=parts[2],
            month_of_year=parts[3],
            day_of_week=parts[4],
        )
    except (ValueError, ParseException) as e:
        raise VaultValidationError(
            f"Invalid cron expression '{cron}': {e}",
            object_ref="backup_schedules.cron",
        )


def calculate_next_run(cron: str, after: Optional[datetime] = None) -> datetime:
    """
    First UTC minute strictly after ``after`` matching ``cron``.

    Day-of-month and day-of-week must both match when both are restricted.

    Raises:
        VaultValidationError: invalid expression, or no match within five years.
    """
    spec = parse_cron(cron)
    after = after or datetime.now(timezone.utc)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    after = after.astimezone(timezone.utc)

    start = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
    minutes = sorted(spec.minute)
    hours = sorted(spec.hour)

    day = start.date()
    for _ in range(MAX_LOOKAHEAD_DAYS):
        if (
            day.month in spec.month_of_year
            and day.day in spec.day_of_month
            and day.isoweekday() % 7 in spec.day_of_week
        ):
            first_day = day == start.date()
            for hour in hours:
                if first_day and hour < start.hour:
                    continue
                floor = start.minute if first_day and hour == start.hour else 0
                for minute in minutes:
                    if minute >= floor:
                        return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)
        day += timedelta(days=1)

    raise VaultValidationError(
        f"Cron expression '{cron}' never fires",
        object_ref="backup_schedules.cron",
    )


def _default_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{secrets.token_hex(3)}"


class BackupScheduler:
    """
    Runs due backup schedules.

    Usage:
        scheduler = BackupScheduler(session_factory, backup_service)
        scheduler.create_backup_schedule("Daily Document Backup", "0 2 * * *")
        scheduler.start()
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]],
        backup_service: BackupService,
        poll_interval: float = 60,
        lease_seconds: int = 3600,
        owner_id: Optional[str] = None,
    ):
        self._session_factory = session_factory
        self._backup_service = backup_service
        self.poll_interval = poll_interval
        self.lease_seconds = lease_seconds
        self.owner_id = owner_id or _default_owner_id()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------

    def create_backup_schedule(
        self,
        name: str,
        cron: str,
        config: Optional[BackupConfig] = None,
        is_active: bool = True,
        created_by: str = "system",
        now: Optional[datetime] = None,
    ) -> BackupSchedule:
        """
        Raises:
            VaultValidationError: bad cron or a schedule with this name exists.
        """
        next_run = calculate_next_run(cron, now)
        record = BackupScheduleRecord(
            id=f"schedule_{datetime.now(timezone.utc):%Y%m%d%H%M%S}_{secrets.token_hex(4)}",
            name=name,
            cron=cron,
            config=(config or BackupConfig()).model_dump(mode="json"),
            is_active=is_active,
            next_run=next_run,
            created_by=created_by,
            updated_by=created_by,
        )
        try:
            with session_scope(self._session_factory) as session:
                session.add(record)
        except IntegrityError:
            raise VaultValidationError(
                f"Backup schedule '{name}' already exists",
                object_ref="backup_schedules.name",
            )
        logger.info(f"Created backup schedule '{name}' ({cron}), next run {next_run.isoformat()}")
        return BackupSchedule.from_record(record)

    def update_backup_schedule(
        self,
        schedule_id: str,
        name: Optional[str] = None,
        cron: Optional[str] = None,
        config: Optional[BackupConfig] = None,
        is_active: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> BackupSchedule:
        with session_scope(self._session_factory) as session:
            record = session.get(BackupScheduleRecord, schedule_id)
            if record is None:
                raise VaultNotFoundError(
                    f"Backup schedule not found: {schedule_id}",
                    object_ref=f"backup_schedules.{schedule_id}",
                )
            if name is not None:
                record.name = name
            if config is not None:
                record.config = config.model_dump(mode="json")
            if cron is not None:
                record.next_run = calculate_next_run(cron, now)
                record.cron = cron
            if is_active is not None:
                if is_active and not record.is_active:
                    record.next_run = calculate_next_run(record.cron, now)
                record.is_active = is_active
            return BackupSchedule.from_record(record)

    def delete_backup_schedule(self, schedule_id: str) -> bool:
        with session_scope(self._session_factory) as session:
            record = session.get(BackupScheduleRecord, schedule_id)
            if record is None:
                return False
            session.delete(record)
        logger.info(f"Deleted backup schedule {schedule_id}")
        return True

    def get_backup_schedule(self, schedule_id: str) -> Optional[BackupSchedule]:
        with session_scope(self._session_factory) as session:
            record = session.get(BackupScheduleRecord, schedule_id)
            return BackupSchedule.from_record(record) if record else None

    def get_backup_schedules(self, active_only: bool = False) -> List[BackupSchedule]:
        with session_scope(self._session_factory) as session:
            stmt = select(BackupScheduleRecord).order_by(BackupScheduleRecord.name)
            if active_only:
                stmt = stmt.where(BackupScheduleRecord.is_active.is_(True))
            return [BackupSchedule.from_record(r) for r in session.execute(stmt).scalars()]

    # -------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------

    def check_and_run_scheduled_backups(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Run every due schedule this process can claim.

        A schedule is due when it is active and ``next_run <= now``. Each
        one is claimed with a conditional UPDATE that only succeeds when no
        live lease exists; losing the race means another poller has it.
        Success or failure, the schedule moves to its next cron slot and
        the lease is released.
        """
        now = now or datetime.now(timezone.utc)
        with session_scope(self._session_factory) as session:
            due = list(session.execute(
                select(BackupScheduleRecord.id).where(
                    BackupScheduleRecord.is_active.is_(True),
                    BackupScheduleRecord.next_run <= now,
                ).order_by(BackupScheduleRecord.next_run)
            ).scalars())

        runs = []
        for schedule_id in due:
            if not self._claim(schedule_id, now):
                logger.debug(f"Schedule {schedule_id} claimed elsewhere")
                continue

            schedule = self.get_backup_schedule(schedule_id)
            if schedule is None:
                continue
            logger.info(f"Running scheduled backup '{schedule.name}'")
            result = self._backup_service.perform_backup(schedule.config)
            self._complete(schedule_id, schedule.cron, result.backup_id, result.success, result.error, now)
            log(log_backup_event(
                "scheduled_backup_run", result.backup_id,
                "completed" if result.success else "failed",
                error=result.error, schedule_id=schedule_id,
            ))
            runs.append({
                "schedule_id": schedule_id,
                "name": schedule.name,
                "backup_id": result.backup_id,
                "success": result.success,
                "error": result.error,
            })
        return runs

    def _claim(self, schedule_id: str, now: datetime) -> bool:
        with session_scope(self._session_factory) as session:
            claimed = session.execute(
                update(BackupScheduleRecord)
                .where(
                    BackupScheduleRecord.id == schedule_id,
                    BackupScheduleRecord.is_active.is_(True),
                    BackupScheduleRecord.next_run <= now,
                    or_(
                        BackupScheduleRecord.lease_expires_at.is_(None),
                        BackupScheduleRecord.lease_expires_at < now,
                    ),
                )
                .values(
                    lease_owner=self.owner_id,
                    lease_expires_at=now + timedelta(seconds=self.lease_seconds),
                )
                .execution_options(synchronize_session=False)
            )
            return claimed.rowcount == 1

    def _complete(
        self,
        schedule_id: str,
        cron: str,
        backup_id: str,
        success: bool,
        error: Optional[str],
        now: datetime,
    ) -> None:
        with session_scope(self._session_factory) as session:
            session.execute(
                update(BackupScheduleRecord)
                .where(
                    BackupScheduleRecord.id == schedule_id,
                    BackupScheduleRecord.lease_owner == self.owner_id,
                )
                .values(
                    last_run=now,
                    last_status="completed" if success else "failed",
                    last_backup_id=backup_id,
                    last_error=error,
                    next_run=calculate_next_run(cron, now),
                    lease_owner=None,
                    lease_expires_at=None,
                )
                .execution_options(synchronize_session=False)
            )

    # -------------------------------------------------------------------
    # Polling thread
    # -------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="casevault-backup-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Backup scheduler started (owner {self.owner_id}, every {self.poll_interval}s)")

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Backup scheduler stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.check_and_run_scheduled_backups()
            except (SQLAlchemyError, VaultError) as e:
                logger.error(f"Scheduled backup check failed: {e}")
            self._stop_event.wait(self.poll_interval)
