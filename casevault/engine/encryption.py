"""
CaseVault archive encryption using Fernet symmetric encryption.

Backup archives are encrypted at rest when ``backup.encryption`` is on.
The Fernet key is derived from a secret:

    CASEVAULT_SECRET_KEY env var  >  security.secret_key in casevault.yaml  >  dev default

Fernet works on whole buffers, so an archive is read into memory once
for encryption or decryption.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
from pathlib import Path
from typing import Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from casevault.engine.errors import VaultEncryptionError

logger = logging.getLogger("casevault.engine.encryption")

SECRET_ENV_VAR = "CASEVAULT_SECRET_KEY"
_DEFAULT_SECRET_KEY = "casevault-dev-key-change-in-production"

ENCRYPTED_SUFFIX = ".enc"


def derive_fernet_key(secret: str) -> bytes:
    """SHA-256 the secret and URL-safe base64 encode it for Fernet."""
    derived = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(derived)


class ArchiveCipher:
    """
    Encrypts and decrypts backup archives.

    Usage:
        cipher = ArchiveCipher(secret_key=config.security.secret_key)
        enc_path = cipher.encrypt_file(Path("archive.tar.gz"))
        plain = cipher.decrypt_bytes(enc_path.read_bytes())
    """

    def __init__(self, secret_key: Optional[str] = None):
        key_source = os.environ.get(SECRET_ENV_VAR) or secret_key or _DEFAULT_SECRET_KEY
        if key_source == _DEFAULT_SECRET_KEY:
            logger.warning("Using the default archive key; set CASEVAULT_SECRET_KEY in production")
        self._fernet = Fernet(derive_fernet_key(key_source))

    def encrypt_bytes(self, data: bytes) -> bytes:
        return self._fernet.encrypt(data)

    def decrypt_bytes(self, token: bytes) -> bytes:
        """
        Decrypt a Fernet token.

        Raises:
            VaultEncryptionError: wrong key or corrupted data.
        """
        try:
            return self._fernet.decrypt(token)
        except InvalidToken:
            raise VaultEncryptionError(
                "Failed to decrypt archive: encryption key may have changed or data is corrupt",
                object_ref="engine.encryption",
            )

    def encrypt_file(self, path: Union[str, Path], remove_plain: bool = True) -> Path:
        """Write ``<path>.enc`` next to ``path`` and optionally delete the plain file."""
        source = Path(path)
        target = source.with_name(source.name + ENCRYPTED_SUFFIX)
        target.write_bytes(self.encrypt_bytes(source.read_bytes()))
        if remove_plain:
            source.unlink()
        logger.debug(f"Encrypted {source.name} -> {target.name}")
        return target

    def decrypt_file(self, path: Union[str, Path], target: Union[str, Path]) -> Path:
        """Decrypt ``path`` into ``target`` and return the target path."""
        out = Path(target)
        out.write_bytes(self.decrypt_bytes(Path(path).read_bytes()))
        return out
