"""
CaseVault Storage Service: byte-level persistence for documents, versions,
templates, evidence and temp uploads.

Handles:
- MIME type, extension and size validation against configured allow-lists
- Atomic writes under a category/subcategory directory tree
- Optional checksums and Pillow thumbnails for image uploads
- Download as bytes or stream, copy/move/delete, usage reports

Layout (relative to ``storage.base_path``):
    documents/{original,processed,versions}
    templates/{active,archive}
    evidence/{original,thumbnails,processed}
    temp/uploads

The service never touches database rows; callers record metadata.
Failures are returned as ``success=False`` results rather than raised.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import secrets
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterable, Iterator, List, Optional

from casevault.documents.thumbnails import generate_thumbnail, supports_thumbnail
from casevault.engine.checksum import checksum_bytes, checksum_file
from casevault.engine.config import StorageConfig
from casevault.engine.errors import VaultValidationError

logger = logging.getLogger("casevault.documents.storage")

MB = 1024 * 1024
PDF_SIGNATURE = b"%PDF"
OCTET_STREAM = "application/octet-stream"

# Deterministic MIME types for the allowed extensions; platform mime tables vary.
EXTENSION_MIME_TYPES: Dict[str, str] = {
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".ppt": "application/vnd.ms-powerpoint",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ".odt": "application/vnd.oasis.opendocument.text",
    ".ods": "application/vnd.oasis.opendocument.spreadsheet",
    ".odp": "application/vnd.oasis.opendocument.presentation",
    ".rtf": "application/rtf",
    ".txt": "text/plain",
    ".csv": "text/csv",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".tiff": "image/tiff",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".mp4": "video/mp4",
    ".avi": "video/x-msvideo",
    ".zip": "application/zip",
}

THUMBNAIL_CATEGORY = ("evidence", "thumbnails")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class ValidationResult:
    """Outcome of validating a buffer before any I/O."""
    is_valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    mime_type: str = OCTET_STREAM
    extension: str = ""
    size: int = 0
    checksum: Optional[str] = None

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.is_valid = False


@dataclass
class StorageResult:
    """Outcome of an upload, copy or move."""
    success: bool
    file_path: str = ""
    filename: str = ""
    size: int = 0
    mime_type: str = ""
    checksum: Optional[str] = None
    thumbnail_path: Optional[str] = None
    error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    processing_time_ms: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, error: str, **kwargs: Any) -> "StorageResult":
        return cls(success=False, error=error, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RetrievalResult:
    """Outcome of a download or stream request."""
    success: bool
    file_path: str = ""
    data: Optional[bytes] = None
    stream: Optional[BinaryIO] = None
    size: int = 0
    mime_type: str = ""
    checksum: Optional[str] = None
    checksum_verified: Optional[bool] = None
    error: Optional[str] = None


@dataclass
class StoredFile:
    """A file found while walking the storage tree."""
    category: str
    subcategory: str
    path: Path
    relative_path: str
    size: int
    modified_at: datetime

    @property
    def extension(self) -> str:
        return self.path.suffix.lower()


# ---------------------------------------------------------------------------
# Storage Service
# ---------------------------------------------------------------------------

class StorageService:
    """
    Filesystem storage rooted at ``config.base_path``.

    Paths handed to and returned from this service are POSIX strings
    relative to the root (``documents/original/brief.pdf``).
    """

    def __init__(self, config: Optional[StorageConfig] = None):
        self.config = config or StorageConfig()
        self.base_path = Path(self.config.base_path)
        self._allowed_mime = set(self.config.allowed_mime_types)
        self._allowed_ext = set(self.config.allowed_extensions)

    # -------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------

    def create_directory_structure(self) -> List[Path]:
        """Create every configured category directory. Idempotent."""
        created = []
        for category, subs in self.config.paths.items():
            for sub in subs:
                d = self.resolve_directory(category, sub)
                d.mkdir(parents=True, exist_ok=True)
                created.append(d)
        logger.info(f"Storage structure ready under {self.base_path}")
        return created

    def resolve_directory(self, category: str, subcategory: str = "original") -> Path:
        subs = self.config.paths.get(category)
        if subs is None or subcategory not in subs:
            raise VaultValidationError(
                f"Unknown storage location: {category}/{subcategory}",
                object_ref="storage.paths",
            )
        return self.base_path / subs[subcategory]

    def relative_directory(self, category: str, subcategory: str = "original") -> str:
        return self.config.paths[category][subcategory]

    def absolute_path(self, file_path: str) -> Path:
        """
        Map a storage-relative path to an absolute one.

        Raises:
            VaultValidationError: the path escapes the storage root.
        """
        base = self.base_path.resolve()
        candidate = (base / file_path).resolve()
        if candidate != base and base not in candidate.parents:
            raise VaultValidationError(
                f"Path escapes storage root: {file_path}",
                object_ref="storage.paths",
            )
        return candidate

    def relative_path(self, path: Path) -> str:
        return Path(path).resolve().relative_to(self.base_path.resolve()).as_posix()

    # -------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------

    @staticmethod
    def detect_mime_type(filename: str) -> str:
        ext = Path(filename).suffix.lower()
        if ext in EXTENSION_MIME_TYPES:
            return EXTENSION_MIME_TYPES[ext]
        mime, _ = mimetypes.guess_type(filename)
        return mime or OCTET_STREAM

    def validate_file(
        self,
        data: bytes,
        original_name: str,
        mime_type: Optional[str] = None,
        validate_mime: bool = True,
        validate_size: bool = True,
        validate_extension: bool = True,
        check_duplicates: bool = False,
    ) -> ValidationResult:
        """Check a buffer against the allow-lists and size ceiling."""
        ext = Path(original_name).suffix.lower()
        detected = self.detect_mime_type(original_name)
        declared = mime_type or detected
        result = ValidationResult(mime_type=declared, extension=ext, size=len(data))

        if not data:
            result.add_error("File is empty")

        if validate_extension:
            if not ext:
                result.add_error("File has no extension")
            elif ext not in self._allowed_ext:
                result.add_error(f"File extension '{ext}' is not allowed")

        if validate_mime and declared not in self._allowed_mime:
            result.add_error(f"File type '{declared}' is not allowed")

        if validate_size and len(data) > self.config.max_file_size_bytes:
            result.add_error(
                f"File size ({len(data) / MB:.1f} MB) exceeds limit "
                f"({self.config.max_file_size_mb} MB)"
            )

        if mime_type and detected != OCTET_STREAM and mime_type != detected:
            result.warnings.append(
                f"Declared MIME type '{mime_type}' does not match extension '{ext}' ({detected})"
            )

        if declared == "application/pdf" and data and not data.startswith(PDF_SIGNATURE):
            result.warnings.append("File does not have a valid PDF signature")

        if check_duplicates and data:
            result.checksum = checksum_bytes(data)
            matches = self.find_by_checksum(result.checksum, size=len(data))
            if matches:
                result.warnings.append(f"Identical content already stored at {matches[0]}")

        return result

    # -------------------------------------------------------------------
    # Upload
    # -------------------------------------------------------------------

    def upload(
        self,
        data: bytes,
        original_name: str,
        mime_type: Optional[str] = None,
        category: str = "documents",
        subcategory: str = "original",
        filename: Optional[str] = None,
        overwrite: bool = False,
        generate_checksum: bool = True,
        generate_thumbnail: bool = False,
        check_duplicates: bool = False,
        validate: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StorageResult:
        """
        Validate and store a buffer.

        1. Validate (nothing is written when this fails)
        2. Pick a filename: sanitised ``filename`` or a unique generated name
        3. Refuse to replace an existing file unless ``overwrite``
        4. Write atomically, then checksum and thumbnail
        """
        start = time.perf_counter()

        if validate:
            validation = self.validate_file(
                data, original_name, mime_type, check_duplicates=check_duplicates,
            )
        else:
            validation = ValidationResult(
                mime_type=mime_type or self.detect_mime_type(original_name),
                extension=Path(original_name).suffix.lower(),
                size=len(data),
            )
        if not validation.is_valid:
            logger.info(f"Upload rejected for '{original_name}': {validation.errors}")
            return StorageResult.failure(
                "; ".join(validation.errors),
                errors=validation.errors,
                warnings=validation.warnings,
            )

        warnings = list(validation.warnings)
        try:
            directory = self.resolve_directory(category, subcategory)
            name = self._safe_filename(filename) if filename else self.generate_filename(original_name)
            target = directory / name
            relative = f"{self.relative_directory(category, subcategory)}/{name}"

            if target.exists() and not overwrite:
                return StorageResult.failure(f"File already exists: {relative}", warnings=warnings)

            directory.mkdir(parents=True, exist_ok=True)
            self._atomic_write(target, data, overwrite=overwrite)

            checksum = validation.checksum or (checksum_bytes(data) if generate_checksum else None)

            thumbnail_path = None
            if generate_thumbnail and supports_thumbnail(validation.mime_type):
                thumbnail_path = self._store_thumbnail(name, data, warnings)

        except VaultValidationError as e:
            return StorageResult.failure(e.message, warnings=warnings)
        except FileExistsError:
            return StorageResult.failure(f"File already exists: {relative}", warnings=warnings)
        except OSError as e:
            logger.error(f"Failed to store '{original_name}': {e}")
            return StorageResult.failure(f"Failed to store file: {e}", warnings=warnings)

        elapsed = (time.perf_counter() - start) * 1000
        logger.info(
            f"Stored {relative} ({len(data)} bytes"
            f"{', sha256=' + checksum[:12] if checksum else ''})"
        )
        return StorageResult(
            success=True,
            file_path=relative,
            filename=name,
            size=len(data),
            mime_type=validation.mime_type,
            checksum=checksum,
            thumbnail_path=thumbnail_path,
            warnings=warnings,
            processing_time_ms=elapsed,
            metadata=dict(metadata or {}, original_name=original_name),
        )

    def _store_thumbnail(self, name: str, data: bytes, warnings: List[str]) -> Optional[str]:
        try:
            thumb = generate_thumbnail(data, self.config.thumbnail_size)
        except ValueError as e:
            warnings.append(f"Thumbnail generation failed: {e}")
            return None
        thumb_name = f"thumb_{Path(name).stem}.png"
        directory = self.resolve_directory(*THUMBNAIL_CATEGORY)
        directory.mkdir(parents=True, exist_ok=True)
        self._atomic_write(directory / thumb_name, thumb)
        return f"{self.relative_directory(*THUMBNAIL_CATEGORY)}/{thumb_name}"

    @staticmethod
    def _atomic_write(target: Path, data: bytes, overwrite: bool = True) -> None:
        """Write via a temp file; without ``overwrite`` the final link is exclusive."""
        tmp = target.with_name(f".{target.name}.{secrets.token_hex(4)}.tmp")
        try:
            with open(tmp, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            if overwrite:
                os.replace(tmp, target)
            else:
                os.link(tmp, target)
        finally:
            if tmp.exists():
                tmp.unlink()

    # -------------------------------------------------------------------
    # Retrieval
    # -------------------------------------------------------------------

    def download(self, file_path: str, expected_checksum: Optional[str] = None) -> RetrievalResult:
        """
        Read a stored file into memory.

        The content checksum is always returned; ``checksum_verified`` is set
        when ``expected_checksum`` is supplied.
        """
        try:
            path = self.absolute_path(file_path)
            if not path.is_file():
                return RetrievalResult(success=False, file_path=file_path, error=f"File not found: {file_path}")
            data = path.read_bytes()
        except VaultValidationError as e:
            return RetrievalResult(success=False, file_path=file_path, error=e.message)
        except OSError as e:
            logger.error(f"Failed to read {file_path}: {e}")
            return RetrievalResult(success=False, file_path=file_path, error=f"Failed to read file: {e}")

        checksum = checksum_bytes(data)
        return RetrievalResult(
            success=True,
            file_path=file_path,
            data=data,
            size=len(data),
            mime_type=self.detect_mime_type(path.name),
            checksum=checksum,
            checksum_verified=(checksum == expected_checksum) if expected_checksum else None,
        )

    def get_file_stream(self, file_path: str, with_checksum: bool = False) -> RetrievalResult:
        """Open a stored file for reading. The caller closes ``result.stream``."""
        try:
            path = self.absolute_path(file_path)
            if not path.is_file():
                return RetrievalResult(success=False, file_path=file_path, error=f"File not found: {file_path}")
            checksum = checksum_file(path) if with_checksum else None
            stream = open(path, "rb")
        except VaultValidationError as e:
            return RetrievalResult(success=False, file_path=file_path, error=e.message)
        except OSError as e:
            return RetrievalResult(success=False, file_path=file_path, error=f"Failed to open file: {e}")

        return RetrievalResult(
            success=True,
            file_path=file_path,
            stream=stream,
            size=path.stat().st_size,
            mime_type=self.detect_mime_type(path.name),
            checksum=checksum,
        )

    def file_exists(self, file_path: str) -> bool:
        try:
            return self.absolute_path(file_path).is_file()
        except VaultValidationError:
            return False

    def get_file_size(self, file_path: str) -> Optional[int]:
        try:
            return self.absolute_path(file_path).stat().st_size
        except (VaultValidationError, OSError):
            return None

    # -------------------------------------------------------------------
    # Delete / copy / move
    # -------------------------------------------------------------------

    def delete_file(self, file_path: str, delete_thumbnail: bool = False) -> bool:
        """Delete a stored file. Returns False when it does not exist or cannot be removed."""
        try:
            path = self.absolute_path(file_path)
            if not path.is_file():
                return False
            path.unlink()
            if delete_thumbnail:
                thumb = self.resolve_directory(*THUMBNAIL_CATEGORY) / f"thumb_{path.stem}.png"
                if thumb.exists():
                    thumb.unlink()
        except VaultValidationError:
            return False
        except OSError as e:
            logger.error(f"Failed to delete {file_path}: {e}")
            return False
        logger.info(f"Deleted {file_path}")
        return True

    def copy_file(
        self,
        file_path: str,
        category: str,
        subcategory: str,
        filename: Optional[str] = None,
        overwrite: bool = False,
    ) -> StorageResult:
        source = self.download(file_path)
        if not source.success:
            return StorageResult.failure(source.error or "Source file not readable")
        return self.upload(
            source.data or b"",
            Path(file_path).name,
            category=category,
            subcategory=subcategory,
            filename=filename or Path(file_path).name,
            overwrite=overwrite,
            validate=False,
        )

    def move_file(
        self,
        file_path: str,
        category: str,
        subcategory: str,
        filename: Optional[str] = None,
        overwrite: bool = False,
    ) -> StorageResult:
        result = self.copy_file(file_path, category, subcategory, filename, overwrite)
        if result.success:
            self.delete_file(file_path)
        return result

    # -------------------------------------------------------------------
    # Scanning
    # -------------------------------------------------------------------

    def iter_files(self, categories: Optional[Iterable[str]] = None) -> Iterator[StoredFile]:
        """Yield every stored file (temp/hidden files excluded) in the given categories."""
        wanted = set(categories) if categories else None
        for category, subs in self.config.paths.items():
            if wanted is not None and category not in wanted:
                continue
            for sub in subs:
                directory = self.resolve_directory(category, sub)
                if not directory.is_dir():
                    continue
                for path in sorted(directory.rglob("*")):
                    if not path.is_file() or path.name.startswith("."):
                        continue
                    st = path.stat()
                    yield StoredFile(
                        category=category,
                        subcategory=sub,
                        path=path,
                        relative_path=path.relative_to(self.base_path).as_posix(),
                        size=st.st_size,
                        modified_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
                    )

    def find_by_checksum(self, checksum: str, size: Optional[int] = None) -> List[str]:
        """Relative paths of stored files with the given content hash."""
        matches = []
        for f in self.iter_files():
            if size is not None and f.size != size:
                continue
            if checksum_file(f.path) == checksum:
                matches.append(f.relative_path)
        return matches

    def get_storage_usage(self) -> Dict[str, Any]:
        usage: Dict[str, Any] = {"total_files": 0, "total_size": 0, "categories": {}}
        for f in self.iter_files():
            cat = usage["categories"].setdefault(f.category, {"files": 0, "size": 0, "subcategories": {}})
            sub = cat["subcategories"].setdefault(f.subcategory, {"files": 0, "size": 0})
            for bucket in (usage, cat, sub):
                key_files = "total_files" if bucket is usage else "files"
                key_size = "total_size" if bucket is usage else "size"
                bucket[key_files] += 1
                bucket[key_size] += f.size
        usage["capacity_bytes"] = self.config.capacity_bytes
        usage["usage_ratio"] = usage["total_size"] / self.config.capacity_bytes
        return usage

    def validate_storage_health(self) -> Dict[str, Any]:
        """Check the root exists and is writable and every directory is present."""
        issues: List[str] = []
        if not self.base_path.is_dir():
            issues.append(f"Storage root does not exist: {self.base_path}")
        else:
            probe = self.base_path / f".health_{secrets.token_hex(4)}"
            try:
                probe.write_bytes(b"ok")
                probe.unlink()
            except OSError as e:
                issues.append(f"Storage root is not writable: {e}")
            for category, subs in self.config.paths.items():
                for sub in subs:
                    if not self.resolve_directory(category, sub).is_dir():
                        issues.append(f"Missing directory: {category}/{sub}")
        return {
            "healthy": not issues,
            "issues": issues,
            "checked_at": datetime.now(timezone.utc).isoformat(),
        }

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    @classmethod
    def generate_filename(cls, original_name: str) -> str:
        """``{stem}_{YYYYmmddHHMMSS}_{random}{ext}`` from a sanitised name."""
        safe = cls._safe_filename(original_name)
        stem, ext = os.path.splitext(safe)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        return f"{stem[:150]}_{stamp}_{secrets.token_hex(4)}{ext.lower()}"

    @staticmethod
    def _safe_filename(filename: str) -> str:
        """
        Sanitize a filename for safe filesystem storage.

        Removes path components, control and reserved characters and leading
        dots; keeps the extension; caps the length at 200.
        """
        name = os.path.basename(filename.replace("\\", "/"))
        name = "".join(c for c in name if c.isprintable() and c not in '<>:"/\\|?*')
        name = name.strip().replace(" ", "_").lstrip(".")
        if not name:
            name = "unnamed_document"
        if len(name) > 200:
            base, ext = os.path.splitext(name)
            name = base[:200 - len(ext)] + ext
        return name

    def __repr__(self) -> str:
        return f"<StorageService root='{self.base_path}'>"
