"""
CaseVault Optimization Service: storage cleanup and health metrics.

Steps (each optional, in this order):
1. Temp uploads older than ``temp_max_age_hours``
2. Non-latest versions older than ``version_max_age_days`` (via VersionService)
3. Duplicate content (same size + sha256); the referenced or newest copy stays
4. Corrupted files: zero bytes, or a PDF/JPEG/PNG header that does not match
5. Orphans in documents/original and documents/versions with no row
   pointing at them, older than the grace period
6. gzip of large compressible files in derived/archive locations

Files referenced by a document or version row are never deleted or
rewritten here; problems with them are reported instead. Protected
categories (evidence by default) are scanned and reported only.
"""

from __future__ import annotations

import gzip
import logging
import secrets
import shutil
import time
from collections import defaultdict, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from casevault.db.models import Document, DocumentVersion
from casevault.db.session import session_scope
from casevault.documents.storage import StoredFile, StorageService
from casevault.documents.versions import VersionService
from casevault.engine.checksum import checksum_file
from casevault.engine.config import OptimizationConfig
from casevault.engine.logging import log, log_storage_event

logger = logging.getLogger("casevault.maintenance.optimization")

MB = 1024 * 1024
HISTORY_LIMIT = 50

FILE_SIGNATURES = {
    ".pdf": b"%PDF",
    ".jpg": b"\xff\xd8\xff",
    ".jpeg": b"\xff\xd8\xff",
    ".png": b"\x89PNG\r\n\x1a\n",
}

# Locations whose files are derived or archival and may be gzipped in place
COMPRESSIBLE_LOCATIONS = {("documents", "processed"), ("templates", "archive")}
ORPHAN_LOCATIONS = {("documents", "original"), ("documents", "versions")}


class _CountingSink:
    """Write-only sink that only counts bytes (dry-run compression estimates)."""

    def __init__(self):
        self.count = 0

    def write(self, data: bytes) -> int:
        self.count += len(data)
        return len(data)

    def flush(self) -> None:
        pass


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class OptimizationOptions(BaseModel):
    cleanup_temp_files: bool = True
    cleanup_old_versions: bool = True
    cleanup_duplicates: bool = True
    cleanup_corrupted_files: bool = True
    cleanup_orphans: bool = False
    compress_large_files: bool = False
    dry_run: bool = False
    temp_max_age_hours: Optional[int] = None
    version_max_age_days: Optional[int] = None
    version_min_size_mb: float = 0


@dataclass
class StepReport:
    processed: int = 0
    affected: int = 0
    space_freed: int = 0
    files: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def record(self, path: str, size: int) -> None:
        self.affected += 1
        self.space_freed += size
        self.files.append(path)


@dataclass
class OptimizationResult:
    optimization_id: str
    success: bool = False
    dry_run: bool = False
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_ms: float = 0.0
    details: Dict[str, StepReport] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    @property
    def summary(self) -> Dict[str, int]:
        compressed = self.details.get("compressed", StepReport())
        removals = [r for k, r in self.details.items() if k != "compressed"]
        return {
            "files_processed": sum(r.processed for r in self.details.values()),
            "files_deleted": sum(r.affected for r in removals),
            "space_freed": sum(r.space_freed for r in removals),
            "files_compressed": compressed.affected,
            "space_saved": compressed.space_freed,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "optimization_id": self.optimization_id,
            "success": self.success,
            "dry_run": self.dry_run,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_ms": self.duration_ms,
            "summary": self.summary,
            "details": {k: asdict(v) for k, v in self.details.items()},
            "errors": self.errors,
            "warnings": self.warnings,
            "recommendations": self.recommendations,
        }


@dataclass
class HealthReport:
    score: int
    status: HealthStatus
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


@dataclass
class StorageMetrics:
    total_files: int = 0
    total_size: int = 0
    average_file_size: float = 0.0
    largest_files: List[Dict[str, Any]] = field(default_factory=list)
    by_category: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    by_type: Dict[str, Dict[str, int]] = field(default_factory=dict)
    usage_ratio: float = 0.0
    duplicate_ratio: float = 0.0
    corrupted_ratio: float = 0.0
    stale_version_ratio: float = 0.0
    health: HealthReport = field(default_factory=lambda: HealthReport(100, HealthStatus.HEALTHY))

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["health"]["status"] = self.health.status.value
        return d


def calculate_health_score(
    usage_ratio: float,
    duplicate_ratio: float,
    corrupted_ratio: float,
    stale_version_ratio: float,
) -> HealthReport:
    """Start at 100 and deduct for each threshold crossed."""
    score = 100
    issues: List[str] = []
    recommendations: List[str] = []

    if usage_ratio > 0.8:
        score -= 20
        issues.append(f"Storage usage at {usage_ratio:.0%} of capacity")
        recommendations.append("Storage usage is high - consider cleanup or expansion")
    elif usage_ratio > 0.6:
        score -= 10
        issues.append(f"Storage usage at {usage_ratio:.0%} of capacity")
    if duplicate_ratio > 0.1:
        score -= 15
        issues.append(f"{duplicate_ratio:.0%} of files are duplicates")
        recommendations.append("Many duplicate files found - run duplicate cleanup")
    if corrupted_ratio > 0.05:
        score -= 25
        issues.append(f"{corrupted_ratio:.0%} of files appear corrupted")
        recommendations.append("Corrupted files detected - restore them from a verified backup")
    if stale_version_ratio > 0.2:
        score -= 10
        issues.append(f"{stale_version_ratio:.0%} of version files are past the retention age")
        recommendations.append("Many stale versions - consider adjusting version retention")

    score = max(0, score)
    if score >= 80:
        status = HealthStatus.HEALTHY
    elif score >= 50:
        status = HealthStatus.DEGRADED
    else:
        status = HealthStatus.UNHEALTHY
    return HealthReport(score=score, status=status, issues=issues, recommendations=recommendations)


def is_corrupted(path: Path) -> bool:
    """Zero-byte files, unreadable files and known formats with a wrong header."""
    try:
        size = path.stat().st_size
        if size == 0:
            return True
        signature = FILE_SIGNATURES.get(path.suffix.lower())
        with open(path, "rb") as f:
            head = f.read(max(len(signature) if signature else 0, 16))
    except OSError:
        return True
    return signature is not None and not head.startswith(signature)


class OptimizationService:
    """
    Usage:
        optimizer = OptimizationService(storage, config.optimization, versions, session_factory)
        report = optimizer.perform_optimization(OptimizationOptions(dry_run=True))
    """

    def __init__(
        self,
        storage: StorageService,
        config: Optional[OptimizationConfig] = None,
        version_service: Optional[VersionService] = None,
        session_factory: Optional[Callable[[], Session]] = None,
    ):
        self._storage = storage
        self.config = config or OptimizationConfig()
        self._versions = version_service
        self._session_factory = session_factory
        self._protected = set(self.config.protected_categories)
        self._history: deque = deque(maxlen=HISTORY_LIMIT)

    # -------------------------------------------------------------------
    # Optimization run
    # -------------------------------------------------------------------

    def perform_optimization(
        self,
        options: Optional[OptimizationOptions] = None,
        now: Optional[datetime] = None,
    ) -> OptimizationResult:
        options = options or OptimizationOptions()
        now = now or datetime.now(timezone.utc)
        result = OptimizationResult(
            optimization_id=f"opt_{now:%Y%m%d%H%M%S}_{secrets.token_hex(4)}",
            dry_run=options.dry_run,
            start_time=datetime.now(timezone.utc),
        )
        perf_start = time.perf_counter()
        if options.dry_run:
            result.warnings.append("Running in dry-run mode - no changes will be made")

        referenced = self._referenced_paths(result)

        try:
            if options.cleanup_temp_files:
                result.details["temp_files"] = self._cleanup_temp_files(options, now)
            if options.cleanup_old_versions:
                result.details["old_versions"] = self._cleanup_old_versions(options, now, result)
            if options.cleanup_duplicates:
                result.details["duplicates"] = self._cleanup_duplicates(options, referenced, result)
            if options.cleanup_corrupted_files:
                result.details["corrupted"] = self._cleanup_corrupted(options, referenced, result)
            if options.cleanup_orphans:
                result.details["orphans"] = self._cleanup_orphans(options, referenced, now, result)
            if options.compress_large_files:
                result.details["compressed"] = self._compress_large_files(options, referenced, result)
        except OSError as e:
            result.errors.append(f"Optimization failed: {e}")
            logger.error(f"Optimization {result.optimization_id} failed: {e}")

        metrics = self.get_storage_metrics(now=now)
        result.recommendations = self._recommendations(metrics, result)
        result.success = not result.errors
        result.end_time = datetime.now(timezone.utc)
        result.duration_ms = (time.perf_counter() - perf_start) * 1000
        self._history.append(result)

        log(log_storage_event(
            "optimization_completed" if result.success else "optimization_failed",
            duration_ms=result.duration_ms,
            level="INFO" if result.success else "ERROR",
            optimization_id=result.optimization_id,
            dry_run=options.dry_run,
            **result.summary,
        ))
        logger.info(f"Optimization {result.optimization_id}: {result.summary}")
        return result

    def _cleanup_temp_files(self, options: OptimizationOptions, now: datetime) -> StepReport:
        report = StepReport()
        max_age = options.temp_max_age_hours or self.config.temp_max_age_hours
        cutoff = now - timedelta(hours=max_age)
        for f in self._storage.iter_files(["temp"]):
            report.processed += 1
            if f.modified_at < cutoff:
                self._remove(f, options.dry_run, report)
        return report

    def _cleanup_old_versions(
        self, options: OptimizationOptions, now: datetime, result: OptimizationResult,
    ) -> StepReport:
        report = StepReport()
        if self._versions is None:
            result.warnings.append("Version service unavailable - skipped")
            return report
        pruned = self._versions.prune_versions_older_than(
            options.version_max_age_days or self.config.version_max_age_days,
            dry_run=options.dry_run,
            min_size_bytes=int(options.version_min_size_mb * MB),
            now=now,
        )
        report.processed = pruned["versions_deleted"]
        report.affected = pruned["versions_deleted"]
        report.space_freed = pruned["space_freed"]
        report.files = [f"{v['document_id']}:v{v['version_number']}" for v in pruned["versions"]]
        return report

    def _cleanup_duplicates(
        self, options: OptimizationOptions, referenced: Optional[Set[str]], result: OptimizationResult,
    ) -> StepReport:
        report = StepReport()
        for group in self._duplicate_groups():
            report.processed += len(group)
            keeper = self._pick_keeper(group, referenced)
            for f in group:
                if f is keeper:
                    continue
                if f.category in self._protected:
                    report.skipped.append(f.relative_path)
                    result.warnings.append(f"Protected duplicate not removed: {f.relative_path}")
                elif referenced is None or f.relative_path in referenced:
                    report.skipped.append(f.relative_path)
                else:
                    self._remove(f, options.dry_run, report)
        return report

    def _cleanup_corrupted(
        self, options: OptimizationOptions, referenced: Optional[Set[str]], result: OptimizationResult,
    ) -> StepReport:
        report = StepReport()
        for f in self._storage.iter_files():
            report.processed += 1
            if not is_corrupted(f.path):
                continue
            if f.category in self._protected:
                report.skipped.append(f.relative_path)
                result.warnings.append(f"Protected file failed header check: {f.relative_path}")
            elif referenced is None or f.relative_path in referenced:
                report.skipped.append(f.relative_path)
                result.warnings.append(f"Referenced file failed header check: {f.relative_path}")
            else:
                self._remove(f, options.dry_run, report)
        return report

    def _cleanup_orphans(
        self,
        options: OptimizationOptions,
        referenced: Optional[Set[str]],
        now: datetime,
        result: OptimizationResult,
    ) -> StepReport:
        report = StepReport()
        if referenced is None:
            result.warnings.append("Database unavailable - orphan sweep skipped")
            return report
        cutoff = now - timedelta(minutes=self.config.orphan_grace_minutes)
        for f in self._storage.iter_files(["documents"]):
            if (f.category, f.subcategory) not in ORPHAN_LOCATIONS:
                continue
            report.processed += 1
            if f.relative_path not in referenced and f.modified_at < cutoff:
                self._remove(f, options.dry_run, report)
        return report

    def _compress_large_files(
        self, options: OptimizationOptions, referenced: Optional[Set[str]], result: OptimizationResult,
    ) -> StepReport:
        report = StepReport()
        threshold = self.config.large_file_threshold_mb * MB
        extensions = {e.lower() for e in self.config.compressible_extensions}
        for f in self._storage.iter_files():
            if (f.category, f.subcategory) not in COMPRESSIBLE_LOCATIONS or f.category in self._protected:
                continue
            if f.size <= threshold or f.extension not in extensions:
                continue
            report.processed += 1
            if referenced is not None and f.relative_path in referenced:
                report.skipped.append(f.relative_path)
                continue
            saved = self._gzip(f.path, options.dry_run)
            if saved > 0:
                report.record(f.relative_path, saved)
        return report

    # -------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------

    def get_storage_metrics(self, now: Optional[datetime] = None) -> StorageMetrics:
        now = now or datetime.now(timezone.utc)
        metrics = StorageMetrics()
        files = list(self._storage.iter_files())
        category_totals: Dict[str, Dict[str, Any]] = defaultdict(lambda: {"count": 0, "size": 0})
        type_totals: Dict[str, Dict[str, int]] = defaultdict(lambda: {"count": 0, "size": 0})

        for f in files:
            metrics.total_files += 1
            metrics.total_size += f.size
            category_totals[f.category]["count"] += 1
            category_totals[f.category]["size"] += f.size
            ext = f.extension or "(none)"
            type_totals[ext]["count"] += 1
            type_totals[ext]["size"] += f.size

        for stats in category_totals.values():
            stats["average_size"] = stats["size"] / stats["count"] if stats["count"] else 0
        metrics.by_category = dict(category_totals)
        metrics.by_type = dict(type_totals)
        metrics.average_file_size = metrics.total_size / metrics.total_files if files else 0.0
        metrics.largest_files = [
            {"path": f.relative_path, "size": f.size, "modified_at": f.modified_at.isoformat()}
            for f in sorted(files, key=lambda f: f.size, reverse=True)[:10]
        ]

        metrics.usage_ratio = metrics.total_size / self._storage.config.capacity_bytes
        if files:
            duplicates = sum(len(g) - 1 for g in self._duplicate_groups())
            metrics.duplicate_ratio = duplicates / metrics.total_files
            metrics.corrupted_ratio = sum(1 for f in files if is_corrupted(f.path)) / metrics.total_files

        version_files = [f for f in files if (f.category, f.subcategory) == ("documents", "versions")]
        if version_files:
            cutoff = now - timedelta(days=self.config.version_max_age_days)
            stale = sum(1 for f in version_files if f.modified_at < cutoff)
            metrics.stale_version_ratio = stale / len(version_files)

        metrics.health = calculate_health_score(
            metrics.usage_ratio,
            metrics.duplicate_ratio,
            metrics.corrupted_ratio,
            metrics.stale_version_ratio,
        )
        return metrics

    def get_optimization_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Most recent runs in this process, oldest first."""
        return [r.to_dict() for r in list(self._history)[-limit:]]

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    def _duplicate_groups(self) -> List[List[StoredFile]]:
        """
        Files with identical content, grouped. Version snapshots are
        expected copies of their document and are left out.
        """
        by_size: Dict[int, List[StoredFile]] = defaultdict(list)
        for f in self._storage.iter_files():
            if f.size == 0 or (f.category, f.subcategory) == ("documents", "versions"):
                continue
            by_size[f.size].append(f)

        groups: List[List[StoredFile]] = []
        for candidates in by_size.values():
            if len(candidates) < 2:
                continue
            by_hash: Dict[str, List[StoredFile]] = defaultdict(list)
            for f in candidates:
                by_hash[checksum_file(f.path)].append(f)
            groups.extend(g for g in by_hash.values() if len(g) > 1)
        return groups

    @staticmethod
    def _pick_keeper(group: List[StoredFile], referenced: Optional[Set[str]]) -> StoredFile:
        newest_first = sorted(group, key=lambda f: f.modified_at, reverse=True)
        if referenced:
            for f in newest_first:
                if f.relative_path in referenced:
                    return f
        return newest_first[0]

    def _referenced_paths(self, result: OptimizationResult) -> Optional[Set[str]]:
        """Storage paths referenced by any document or version row, or None without a database."""
        if self._session_factory is None:
            result.warnings.append("Database unavailable - referenced files cannot be identified")
            return None
        with session_scope(self._session_factory) as session:
            paths = set(session.execute(select(Document.file_path)).scalars())
            paths.update(p for p in session.execute(select(Document.thumbnail_path)).scalars() if p)
            paths.update(session.execute(select(DocumentVersion.file_path)).scalars())
        return paths

    def _remove(self, f: StoredFile, dry_run: bool, report: StepReport) -> None:
        if dry_run:
            report.record(f.relative_path, f.size)
            return
        if self._storage.delete_file(f.relative_path):
            report.record(f.relative_path, f.size)
        else:
            report.skipped.append(f.relative_path)

    @staticmethod
    def _gzip(path: Path, dry_run: bool) -> int:
        """Compress ``path`` to ``path.gz``; keep it only if smaller. Returns bytes saved."""
        original = path.stat().st_size
        if dry_run:
            sink = _CountingSink()
            with open(path, "rb") as f_in, gzip.GzipFile(fileobj=sink, mode="wb") as f_out:
                shutil.copyfileobj(f_in, f_out)
            return max(original - sink.count, 0)

        gz_path = path.with_name(path.name + ".gz")
        with open(path, "rb") as f_in, gzip.open(gz_path, "wb") as f_out:
            shutil.copyfileobj(f_in, f_out)
        saved = original - gz_path.stat().st_size
        if saved <= 0:
            gz_path.unlink()
            return 0
        path.unlink()
        return saved

    @staticmethod
    def _recommendations(metrics: StorageMetrics, result: OptimizationResult) -> List[str]:
        recs = list(metrics.health.recommendations)
        if metrics.health.score < 70:
            recs.append("Storage health score is low - consider immediate optimization")
        if metrics.largest_files and metrics.largest_files[0]["size"] > 500 * MB:
            recs.append("Very large files detected - consider compression or archival")
        old_versions = result.details.get("old_versions")
        if old_versions and old_versions.affected > 5:
            recs.append("Many old versions cleaned up - consider adjusting version retention policy")
        if metrics.average_file_size > 10 * MB:
            recs.append("Large average file size - consider enabling compression")
        return recs
