"""Unit tests for casevault.engine.errors: hierarchy and serialization."""

import json

import pytest

from casevault.engine.errors import (
    VaultBackupError,
    VaultConfigError,
    VaultEncryptionError,
    VaultError,
    VaultIntegrityError,
    VaultNotFoundError,
    VaultStorageError,
    VaultValidationError,
    VaultVersionError,
)


class TestVaultError:
    def test_basic_creation(self):
        err = VaultError("something broke")
        assert err.message == "something broke"
        assert str(err) == "something broke"
        assert err.error_type == "VaultError"
        assert err.object_ref is None

    def test_to_dict_stringifies_context(self):
        err = VaultError("fail", object_ref="documents.1", operation="upload", attempt=3)
        d = err.to_dict()
        assert d["error_type"] == "VaultError"
        assert d["object_ref"] == "documents.1"
        assert d["operation"] == "upload"
        assert d["context"] == {"attempt": "3"}
        assert "timestamp" in d

    def test_to_json(self):
        parsed = json.loads(VaultError("fail").to_json())
        assert parsed["message"] == "fail"

    def test_repr(self):
        err = VaultError("fail", object_ref="backups.x")
        assert repr(err) == "VaultError: fail | object_ref=backups.x"


class TestSubclasses:
    @pytest.mark.parametrize("cls", [
        VaultValidationError, VaultStorageError, VaultVersionError, VaultBackupError,
        VaultIntegrityError, VaultNotFoundError, VaultConfigError, VaultEncryptionError,
    ])
    def test_all_inherit_from_vault_error(self, cls):
        err = cls("x")
        assert isinstance(err, VaultError)
        assert err.error_type == cls.__name__

    def test_validation_errors_carried(self):
        err = VaultValidationError("bad input", validation_errors=["too big", "wrong type"])
        assert err.validation_errors == ["too big", "wrong type"]
        assert err.to_dict()["validation_errors"] == ["too big", "wrong type"]

    def test_integrity_issues_carried(self):
        err = VaultIntegrityError("broken", issues=["hash mismatch"])
        assert err.to_dict()["issues"] == ["hash mismatch"]

    def test_backup_id_carried(self):
        err = VaultBackupError("failed", backup_id="backup_1")
        assert err.backup_id == "backup_1"
        assert err.to_dict()["backup_id"] == "backup_1"

    def test_storage_path_carried(self):
        assert VaultStorageError("disk", path="/tmp/x").to_dict()["path"] == "/tmp/x"
