"""
Backup archive format: tarball + manifest.

A backup directory holds exactly two entries:

    backups/{backup_id}/
        archive.tar[.gz][.enc]
        manifest.json

Archive members are named by their storage-relative path
(``documents/original/brief.pdf``), so extraction into the storage root
restores files in place. The manifest records every member's size and
sha256 plus the checksum of the final archive file as written to disk.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import tarfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, BinaryIO, Dict, Iterable, List, Optional, Tuple

from casevault.engine.checksum import checksum_file
from casevault.engine.encryption import ENCRYPTED_SUFFIX, ArchiveCipher
from casevault.engine.errors import VaultBackupError, VaultIntegrityError

logger = logging.getLogger("casevault.backup.archive")

MANIFEST_NAME = "manifest.json"
ARCHIVE_STEM = "archive.tar"
FORMAT_VERSION = 1


@dataclass
class ArchiveInfo:
    """What ``build_archive`` wrote."""
    path: Path
    checksum: str
    size: int
    compressed: bool
    encrypted: bool
    files: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def filename(self) -> str:
        return self.path.name

    @property
    def total_size(self) -> int:
        return sum(f["size"] for f in self.files)


class _HashingReader:
    """File wrapper that hashes whatever tarfile reads through it."""

    def __init__(self, raw: BinaryIO):
        self._raw = raw
        self._hash = hashlib.sha256()

    def read(self, size: int = -1) -> bytes:
        chunk = self._raw.read(size)
        self._hash.update(chunk)
        return chunk

    def hexdigest(self) -> str:
        return self._hash.hexdigest()


def archive_filename(compressed: bool, encrypted: bool) -> str:
    name = ARCHIVE_STEM + (".gz" if compressed else "")
    return name + (ENCRYPTED_SUFFIX if encrypted else "")


def build_archive(
    sources: Iterable[Tuple[Path, str]],
    backup_dir: Path,
    compression: bool = True,
    cipher: Optional[ArchiveCipher] = None,
) -> ArchiveInfo:
    """
    Write ``sources`` (absolute path, archive name) into a tarball in
    ``backup_dir`` and return its description.

    Each member is hashed as it is streamed into the tar so the recorded
    checksum matches the archived bytes even if the source changes later.
    """
    backup_dir.mkdir(parents=True, exist_ok=True)
    tar_path = backup_dir / archive_filename(compression, encrypted=False)
    files: List[Dict[str, Any]] = []

    with tarfile.open(tar_path, "w:gz" if compression else "w") as tar:
        for path, arcname in sources:
            with open(path, "rb") as raw:
                info = tar.gettarinfo(fileobj=raw, arcname=arcname)
                reader = _HashingReader(raw)
                tar.addfile(info, reader)
            files.append({"path": arcname, "size": info.size, "checksum": reader.hexdigest()})

    final_path = tar_path
    if cipher is not None:
        final_path = cipher.encrypt_file(tar_path, remove_plain=True)

    info = ArchiveInfo(
        path=final_path,
        checksum=checksum_file(final_path),
        size=final_path.stat().st_size,
        compressed=compression,
        encrypted=cipher is not None,
        files=files,
    )
    logger.debug(f"Wrote {info.filename}: {len(files)} files, {info.size} bytes")
    return info


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------

def write_manifest(backup_dir: Path, manifest: Dict[str, Any]) -> Path:
    path = backup_dir / MANIFEST_NAME
    tmp = path.with_suffix(".json.tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, default=str)
    os.replace(tmp, path)
    return path


def read_manifest(backup_dir: Path) -> Dict[str, Any]:
    """
    Raises:
        VaultBackupError: the manifest is missing or unreadable.
    """
    path = backup_dir / MANIFEST_NAME
    try:
        with open(path, "r", encoding="utf-8") as f:
            manifest = json.load(f)
    except FileNotFoundError:
        raise VaultBackupError(f"Backup manifest not found: {path}", backup_id=backup_dir.name)
    except (OSError, json.JSONDecodeError) as e:
        raise VaultBackupError(f"Backup manifest unreadable: {e}", backup_id=backup_dir.name)
    if not isinstance(manifest, dict):
        raise VaultBackupError("Backup manifest is not an object", backup_id=backup_dir.name)
    return manifest


# ---------------------------------------------------------------------------
# Safe extraction
# ---------------------------------------------------------------------------

def _validate_member_path(member_name: str) -> Path:
    normalized = member_name.replace("\\", "/")
    relative = PurePosixPath(normalized)
    if relative.is_absolute():
        raise VaultIntegrityError(f"Unsafe absolute path in archive: {member_name}")
    if not relative.parts or any(part in ("", ".", "..") for part in relative.parts):
        raise VaultIntegrityError(f"Unsafe path in archive: {member_name}")
    return Path(*relative.parts)


def extract_archive(
    archive_path: Path,
    destination: Path,
    cipher: Optional[ArchiveCipher] = None,
) -> List[str]:
    """
    Extract a backup archive into ``destination`` and return the member
    names written.

    Absolute paths, ``..`` components, links and special files are
    rejected before anything is written.

    Raises:
        VaultIntegrityError: unsafe member or unreadable tarball.
        VaultEncryptionError: wrong key for an encrypted archive.
    """
    destination.mkdir(parents=True, exist_ok=True)
    tar_path = archive_path
    if archive_path.name.endswith(ENCRYPTED_SUFFIX):
        if cipher is None:
            raise VaultIntegrityError(f"Archive {archive_path.name} is encrypted and no key was given")
        tar_path = destination.parent / f".{archive_path.name[:-len(ENCRYPTED_SUFFIX)]}"
        cipher.decrypt_file(archive_path, tar_path)

    extracted: List[str] = []
    try:
        with tarfile.open(tar_path, mode="r:*") as archive:
            safe: List[Tuple[tarfile.TarInfo, Path]] = []
            for member in archive.getmembers():
                member_path = _validate_member_path(member.name)
                if member.isdir():
                    continue
                if member.islnk() or member.issym():
                    raise VaultIntegrityError(f"Unsafe link in archive: {member.name}")
                if not member.isfile():
                    raise VaultIntegrityError(f"Unsupported archive member: {member.name}")
                safe.append((member, member_path))

            for member, member_path in safe:
                target = destination / member_path
                target.parent.mkdir(parents=True, exist_ok=True)
                source = archive.extractfile(member)
                if source is None:
                    raise VaultIntegrityError(f"Failed to extract member: {member.name}")
                with source, open(target, "wb") as out:
                    shutil.copyfileobj(source, out)
                extracted.append(member_path.as_posix())
    except tarfile.TarError as e:
        raise VaultIntegrityError(f"Failed to read archive {archive_path.name}: {e}") from e
    finally:
        if tar_path != archive_path and tar_path.exists():
            tar_path.unlink()
    return extracted
