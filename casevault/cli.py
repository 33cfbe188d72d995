"""
CaseVault CLI: storage bootstrap, backups, maintenance and evidence checks.

Commands:
- casevault init             Create tables and the storage tree (optionally the default schedule)
- casevault backup           Run a backup now
- casevault restore          Restore files from a backup
- casevault list-backups     List backups, newest first
- casevault cleanup-backups  Apply backup retention
- casevault optimize         Run storage optimization
- casevault metrics          Show storage metrics and health
- casevault verify-evidence  Check an evidence item's integrity
- casevault schedule         Create, list or delete backup schedules
- casevault scheduler        Run due schedules once, or poll until interrupted
- casevault cleanup-logs     Apply event log retention

Results are printed as JSON; the exit code is 0 on success and 1 otherwise.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from typing import Any, Optional

from casevault.engine.errors import VaultError

logger = logging.getLogger("casevault.cli")


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="casevault",
        description="CaseVault - document backup, versioning and evidence integrity",
    )
    parser.add_argument("--config", help="Path to casevault.yaml (default: discovered from CWD)")
    parser.add_argument("--log-level", default=None, help="Console log level (default: from config)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # casevault init
    init_parser = subparsers.add_parser("init", help="Create tables and storage directories")
    init_parser.add_argument(
        "--with-schedule", action="store_true", help="Also create the default nightly backup schedule"
    )

    # casevault backup
    backup_parser = subparsers.add_parser("backup", help="Run a backup now")
    backup_parser.add_argument("--no-compression", action="store_true", help="Write a plain tar archive")
    backup_parser.add_argument("--encrypt", action="store_true", help="Encrypt the archive")
    backup_parser.add_argument("--no-versions", action="store_true", help="Skip version snapshots")

    # casevault restore
    restore_parser = subparsers.add_parser("restore", help="Restore files from a backup")
    restore_parser.add_argument("backup_id", help="Backup to restore (e.g., backup_20250101T020000_ab12cd34)")
    restore_parser.add_argument("--overwrite", action="store_true", help="Replace files that already exist")
    restore_parser.add_argument("--dry-run", action="store_true", help="Report what would be restored")
    restore_parser.add_argument(
        "--skip-integrity", action="store_true", help="Skip the archive checksum and per-file checksum checks"
    )

    # casevault list-backups
    list_parser = subparsers.add_parser("list-backups", help="List backups")
    list_parser.add_argument("--verify", action="store_true", help="Verify each archive checksum")

    # casevault cleanup-backups
    cleanup_parser = subparsers.add_parser("cleanup-backups", help="Apply backup retention")
    cleanup_parser.add_argument("--retention-days", type=int, help="Delete backups older than N days")
    cleanup_parser.add_argument("--max-backups", type=int, help="Keep at most N backups")

    # casevault optimize
    opt_parser = subparsers.add_parser("optimize", help="Run storage optimization")
    opt_parser.add_argument("--dry-run", action="store_true", help="Report without changing anything")
    opt_parser.add_argument("--orphans", action="store_true", help="Also remove unreferenced document files")
    opt_parser.add_argument("--compress", action="store_true", help="Gzip large compressible files")

    # casevault metrics
    subparsers.add_parser("metrics", help="Show storage metrics and health")

    # casevault verify-evidence
    evidence_parser = subparsers.add_parser("verify-evidence", help="Verify evidence integrity")
    evidence_parser.add_argument("evidence_id", help="Evidence identifier")
    evidence_parser.add_argument("--report", action="store_true", help="Print the full evidence report")

    # casevault schedule
    schedule_parser = subparsers.add_parser("schedule", help="Manage backup schedules")
    schedule_sub = schedule_parser.add_subparsers(dest="schedule_command")
    create_parser = schedule_sub.add_parser("create", help="Create a schedule")
    create_parser.add_argument("name", help="Unique schedule name")
    create_parser.add_argument("cron", help="Cron expression, e.g. '0 2 * * *'")
    create_parser.add_argument("--inactive", action="store_true", help="Create the schedule disabled")
    schedule_sub.add_parser("list", help="List schedules")
    delete_parser = schedule_sub.add_parser("delete", help="Delete a schedule")
    delete_parser.add_argument("schedule_id", help="Schedule identifier")

    # casevault scheduler
    scheduler_parser = subparsers.add_parser("scheduler", help="Run scheduled backups")
    scheduler_parser.add_argument("--once", action="store_true", help="Run due schedules once and exit")

    # casevault cleanup-logs
    subparsers.add_parser("cleanup-logs", help="Apply event log retention")

    args = parser.parse_args(argv)

    commands = {
        "init": cmd_init,
        "backup": cmd_backup,
        "restore": cmd_restore,
        "list-backups": cmd_list_backups,
        "cleanup-backups": cmd_cleanup_backups,
        "optimize": cmd_optimize,
        "metrics": cmd_metrics,
        "verify-evidence": cmd_verify_evidence,
        "schedule": cmd_schedule,
        "scheduler": cmd_scheduler,
        "cleanup-logs": cmd_cleanup_logs,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 0

    try:
        return handler(args)
    except VaultError as e:
        _emit({"success": False, "error": e.to_dict()})
        return 1


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _manager(args: argparse.Namespace):
    from casevault.documents.service import DocumentManager
    from casevault.engine.logging import configure_logging

    manager = DocumentManager.from_config(args.config, start_logging=True)
    configure_logging(args.log_level or manager.config.logging.level)
    return manager


def cmd_init(args: argparse.Namespace) -> int:
    """
    Bootstrap CaseVault:
    1. Load config and create tables
    2. Create the storage tree and backup root
    3. Optionally create the default backup schedule
    """
    manager = _manager(args)
    try:
        manager.initialize()
        payload = {
            "success": True,
            "storage": str(manager.storage.base_path),
            "backup_root": str(manager.backups.backup_root),
            "database": manager.config.database.url,
        }
        if args.with_schedule:
            schedule = manager.setup_default_schedule()
            payload["schedule"] = schedule.model_dump(mode="json") if schedule else None
        _emit(payload)
        return 0
    finally:
        manager.dispose()


def cmd_backup(args: argparse.Namespace) -> int:
    manager = _manager(args)
    try:
        overrides = {}
        if args.no_compression:
            overrides["compression"] = False
        if args.encrypt:
            overrides["encryption"] = True
        if args.no_versions:
            overrides["include_versions"] = False
        result = manager.perform_backup(overrides or None)
        _emit(result.to_dict())
        return 0 if result.success else 1
    finally:
        manager.dispose()


def cmd_restore(args: argparse.Namespace) -> int:
    manager = _manager(args)
    try:
        result = manager.restore_from_backup(
            args.backup_id,
            overwrite=args.overwrite,
            validate_integrity=not args.skip_integrity,
            dry_run=args.dry_run,
        )
        _emit(result.to_dict())
        return 0 if result.success else 1
    finally:
        manager.dispose()


def cmd_list_backups(args: argparse.Namespace) -> int:
    manager = _manager(args)
    try:
        backups = manager.list_backups()
        if args.verify:
            for backup in backups:
                check = manager.backups.verify_backup(backup["backup_id"])
                backup["valid"] = check["valid"]
                backup["issues"] = check["issues"]
        _emit(backups)
        return 0
    finally:
        manager.dispose()


def cmd_cleanup_backups(args: argparse.Namespace) -> int:
    manager = _manager(args)
    try:
        _emit(manager.backups.cleanup_old_backups(
            retention_days=args.retention_days,
            max_backups=args.max_backups,
        ))
        return 0
    finally:
        manager.dispose()


def cmd_optimize(args: argparse.Namespace) -> int:
    from casevault.maintenance.optimization import OptimizationOptions

    manager = _manager(args)
    try:
        result = manager.perform_optimization(OptimizationOptions(
            dry_run=args.dry_run,
            cleanup_orphans=args.orphans,
            compress_large_files=args.compress,
        ))
        _emit(result.to_dict())
        return 0 if result.success else 1
    finally:
        manager.dispose()


def cmd_metrics(args: argparse.Namespace) -> int:
    manager = _manager(args)
    try:
        _emit(manager.get_storage_metrics().to_dict())
        return 0
    finally:
        manager.dispose()


def cmd_verify_evidence(args: argparse.Namespace) -> int:
    manager = _manager(args)
    try:
        if args.report:
            report = manager.evidence.generate_evidence_report(args.evidence_id)
            _emit(report)
            return 0 if report["integrity_status"]["is_valid"] else 1
        result = manager.verify_evidence_integrity(args.evidence_id)
        _emit(result.to_dict())
        return 0 if result.is_valid else 1
    finally:
        manager.dispose()


def cmd_schedule(args: argparse.Namespace) -> int:
    manager = _manager(args)
    try:
        scheduler = manager.scheduler
        if args.schedule_command == "create":
            schedule = scheduler.create_backup_schedule(
                args.name, args.cron, config=manager.config.backup, is_active=not args.inactive,
            )
            _emit(schedule.model_dump(mode="json"))
            return 0
        if args.schedule_command == "delete":
            deleted = scheduler.delete_backup_schedule(args.schedule_id)
            _emit({"success": deleted, "schedule_id": args.schedule_id})
            return 0 if deleted else 1
        _emit([s.model_dump(mode="json") for s in scheduler.get_backup_schedules()])
        return 0
    finally:
        manager.dispose()


def cmd_scheduler(args: argparse.Namespace) -> int:
    manager = _manager(args)
    try:
        if args.once:
            runs = manager.scheduler.check_and_run_scheduled_backups()
            _emit(runs)
            return 0 if all(r["success"] for r in runs) else 1

        manager.scheduler.start()
        try:
            while manager.scheduler.running:
                time.sleep(1)
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping scheduler")
        return 0
    finally:
        manager.dispose()


def cmd_cleanup_logs(args: argparse.Namespace) -> int:
    from casevault.engine.config import load_config
    from casevault.engine.logging import LogRetentionManager

    config = load_config(args.config).logging
    retention = config.retention
    manager = LogRetentionManager(
        log_dir=config.directory,
        retention_days={
            "execution": retention.execution_days,
            "performance": retention.performance_days,
            "security": retention.security_days,
        },
        compress_after_days=config.compress_after_days,
    )
    _emit(manager.cleanup())
    return 0


if __name__ == "__main__":
    sys.exit(main())
