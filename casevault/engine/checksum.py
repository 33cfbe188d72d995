"""
CaseVault checksum helpers.

Content hashes are used for duplicate detection, version idempotence,
backup manifests and evidence integrity. Files are always hashed in
chunks so large media never has to fit in memory.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import BinaryIO, Tuple, Union

from casevault.engine.errors import VaultValidationError

DEFAULT_ALGORITHM = "sha256"
CHUNK_SIZE = 8192


def _new_hash(algorithm: str):
    try:
        return hashlib.new(algorithm)
    except ValueError:
        raise VaultValidationError(
            f"Unsupported checksum algorithm: {algorithm}",
            object_ref="engine.checksum",
        )


def checksum_bytes(data: bytes, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Return the hex digest of an in-memory buffer."""
    h = _new_hash(algorithm)
    h.update(data)
    return h.hexdigest()


def checksum_stream(
    stream: BinaryIO,
    algorithm: str = DEFAULT_ALGORITHM,
) -> Tuple[str, int]:
    """
    Hash a readable binary stream until EOF.

    Returns (hex_digest, bytes_read).
    """
    h = _new_hash(algorithm)
    size = 0
    while True:
        chunk = stream.read(CHUNK_SIZE)
        if not chunk:
            break
        h.update(chunk)
        size += len(chunk)
    return h.hexdigest(), size


def checksum_file(path: Union[str, Path], algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Return the hex digest of a file, read in chunks."""
    with open(path, "rb") as f:
        digest, _ = checksum_stream(f, algorithm)
    return digest


def verify_checksum(
    path: Union[str, Path],
    expected: str,
    algorithm: str = DEFAULT_ALGORITHM,
) -> bool:
    """True when the file's digest equals ``expected`` (case-insensitive)."""
    return checksum_file(path, algorithm) == expected.lower()
