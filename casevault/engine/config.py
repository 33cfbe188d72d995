"""
CaseVault Configuration: load and validate casevault.yaml at startup.

Usage:
    from casevault.engine.config import load_config, get_config
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

CONFIG_FILENAME = "casevault.yaml"

MB = 1024 * 1024


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_ALLOWED_MIME_TYPES: List[str] = [
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/rtf",
    "application/vnd.oasis.opendocument.text",
    "application/vnd.oasis.opendocument.spreadsheet",
    "application/vnd.oasis.opendocument.presentation",
    "application/zip",
    "text/plain",
    "text/csv",
    "text/rtf",
    "image/jpeg",
    "image/png",
    "image/tiff",
    "audio/mpeg",
    "audio/wav",
    "audio/x-wav",
    "video/mp4",
    "video/x-msvideo",
]

DEFAULT_ALLOWED_EXTENSIONS: List[str] = [
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".txt", ".jpg", ".jpeg", ".png", ".tiff",
    ".mp3", ".wav", ".mp4", ".avi", ".zip",
    ".csv", ".rtf", ".odt", ".ods", ".odp",
]

DEFAULT_STORAGE_PATHS: Dict[str, Dict[str, str]] = {
    "documents": {
        "original": "documents/original",
        "processed": "documents/processed",
        "versions": "documents/versions",
    },
    "templates": {
        "active": "templates/active",
        "archive": "templates/archive",
    },
    "evidence": {
        "original": "evidence/original",
        "thumbnails": "evidence/thumbnails",
        "processed": "evidence/processed",
        "custody": "evidence/custody",
        "disposed": "evidence/disposed",
    },
    "temp": {
        "uploads": "temp/uploads",
    },
}


# ---------------------------------------------------------------------------
# Pydantic models for casevault.yaml
# ---------------------------------------------------------------------------

class DatabaseConfig(BaseModel):
    url: str = "sqlite:///casevault.db"
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 1800
    pool_pre_ping: bool = True


class StorageConfig(BaseModel):
    base_path: str = "storage"
    max_file_size_mb: int = 100
    capacity_gb: int = 1024
    thumbnail_size: int = 256
    allowed_mime_types: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_MIME_TYPES))
    allowed_extensions: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_EXTENSIONS))
    paths: Dict[str, Dict[str, str]] = Field(
        default_factory=lambda: {k: dict(v) for k, v in DEFAULT_STORAGE_PATHS.items()}
    )

    @field_validator("max_file_size_mb", "capacity_gb", "thumbnail_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("allowed_extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        return [e.lower() if e.startswith(".") else f".{e.lower()}" for e in v]

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * MB

    @property
    def capacity_bytes(self) -> int:
        return self.capacity_gb * 1024 * MB


class VersioningConfig(BaseModel):
    enabled: bool = True
    max_versions: int = Field(default=50, ge=0, description="Versions kept per document, latest always kept")
    max_levenshtein_cells: int = Field(
        default=4_000_000, ge=0, description="Exact edit-distance budget before similarity falls back to difflib",
    )


class BackupDestination(BaseModel):
    type: Literal["local"] = "local"
    path: Optional[str] = Field(default=None, description="Backup root; defaults to <base_path>/backups")


class BackupNotificationConfig(BaseModel):
    on_success: bool = False
    on_failure: bool = True
    recipients: List[str] = Field(default_factory=list)
    webhook_url: Optional[str] = None
    timeout_seconds: float = 10.0


class BackupConfig(BaseModel):
    """What a backup run includes and how it is retained."""
    enabled: bool = True
    schedule: str = Field(default="0 2 * * *", description="Cron expression for the default schedule")
    compression: bool = True
    encryption: bool = False
    include_versions: bool = True
    include_thumbnails: bool = True
    include_templates: bool = True
    include_evidence: bool = True
    retention_days: Optional[int] = Field(default=30, ge=0)
    max_backups: Optional[int] = Field(default=None, ge=0)
    destination: BackupDestination = BackupDestination()
    notifications: BackupNotificationConfig = BackupNotificationConfig()


class SchedulerConfig(BaseModel):
    poll_interval_seconds: int = 60
    lease_seconds: int = 3600


class OptimizationConfig(BaseModel):
    enabled: bool = True
    schedule: str = "0 3 * * 0"
    temp_max_age_hours: int = 24
    version_max_age_days: int = 90
    large_file_threshold_mb: int = 50
    orphan_grace_minutes: int = 60
    compressible_extensions: List[str] = Field(
        default_factory=lambda: [".txt", ".csv", ".json", ".xml", ".log"]
    )
    protected_categories: List[str] = Field(default_factory=lambda: ["evidence"])


class EvidenceConfig(BaseModel):
    gap_threshold_hours: int = 24
    tamper_keywords: List[str] = Field(default_factory=lambda: ["modified", "altered"])


class SecurityConfig(BaseModel):
    secret_key: Optional[str] = None


class LogRetentionConfig(BaseModel):
    execution_days: int = 90
    performance_days: int = 30
    security_days: int = 365


class LogAsyncQueueConfig(BaseModel):
    flush_interval_ms: int = 100
    flush_batch_size: int = 50
    max_queue_size: int = 10000


class LoggingConfig(BaseModel):
    level: str = "INFO"
    directory: str = ".casevault/logs"
    structured: bool = True
    compress_after_days: int = 7
    retention: LogRetentionConfig = LogRetentionConfig()
    async_queue: LogAsyncQueueConfig = LogAsyncQueueConfig()

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"invalid log level '{v}'")
        return level


class VaultConfig(BaseModel):
    """Root model for casevault.yaml."""
    name: str = "CaseVault"
    environment: str = "dev"

    database: DatabaseConfig = DatabaseConfig()
    storage: StorageConfig = StorageConfig()
    versioning: VersioningConfig = VersioningConfig()
    backup: BackupConfig = BackupConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    optimization: OptimizationConfig = OptimizationConfig()
    evidence: EvidenceConfig = EvidenceConfig()
    security: SecurityConfig = SecurityConfig()
    logging: LoggingConfig = LoggingConfig()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if v not in ("dev", "staging", "prod"):
            raise ValueError(f"environment must be dev/staging/prod, got '{v}'")
        return v

    def backup_root(self) -> Path:
        """Directory holding one sub-directory per backup."""
        if self.backup.destination.path:
            return Path(self.backup.destination.path)
        return Path(self.storage.base_path) / "backups"


# ---------------------------------------------------------------------------
# Config Loading Functions
# ---------------------------------------------------------------------------

_config: Optional[VaultConfig] = None


def _find_project_root() -> Path:
    """Find the project root by looking for casevault.yaml."""
    current = Path.cwd()
    for parent in [current, *current.parents]:
        if (parent / CONFIG_FILENAME).exists():
            return parent
    return current


def get_project_root() -> Path:
    """Return the project root directory."""
    return _find_project_root()


def load_config(config_path: Optional[str] = None) -> VaultConfig:
    """
    Load and validate casevault.yaml.

    Relative storage, backup and log paths in the file are resolved against
    the directory holding it.

    Args:
        config_path: Explicit path to casevault.yaml. If None, auto-discovers.

    Returns:
        Validated VaultConfig instance (defaults when the file is missing).

    Raises:
        VaultConfigError: the file exists but is not valid.
    """
    global _config

    if config_path is None:
        config_path = str(_find_project_root() / CONFIG_FILENAME)

    path = Path(config_path)
    if not path.exists():
        _config = VaultConfig()
        return _config

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        from casevault.engine.errors import VaultConfigError
        raise VaultConfigError(
            f"{path.name} must contain a mapping at the top level",
            object_ref=str(path),
        )

    # Optional "vault:" block for name/environment, everything else top-level
    vault_block = raw.pop("vault", {}) or {}
    raw.setdefault("name", vault_block.get("name", "CaseVault"))
    raw.setdefault("environment", vault_block.get("environment", "dev"))

    try:
        config = VaultConfig(**raw)
    except ValidationError as e:
        from casevault.engine.errors import VaultConfigError
        raise VaultConfigError(
            f"Invalid {path.name}: {e.error_count()} error(s)",
            object_ref=str(path),
            errors=e.errors(),
        )

    _resolve_relative_paths(config, path.parent)
    _config = config
    return _config


def _resolve_relative_paths(config: VaultConfig, root: Path) -> None:
    base = Path(config.storage.base_path)
    if not base.is_absolute():
        config.storage.base_path = str(root / base)
    dest = config.backup.destination.path
    if dest and not Path(dest).is_absolute():
        config.backup.destination.path = str(root / dest)
    log_dir = Path(config.logging.directory)
    if not log_dir.is_absolute():
        config.logging.directory = str(root / log_dir)


def get_config() -> VaultConfig:
    """Get the currently loaded config, loading if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def get_environment() -> str:
    """Get the current environment."""
    return get_config().environment
