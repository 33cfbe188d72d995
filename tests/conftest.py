"""
CaseVault Test Suite: shared fixtures.

Every test gets its own storage tree and file-backed SQLite database
under ``tmp_path``.

Run:  pytest tests/ -v
"""

from __future__ import annotations

from pathlib import Path

import pytest

from casevault.db.session import close_db, init_db
from casevault.documents.storage import StorageService
from casevault.documents.versions import VersionService
from casevault.engine.config import DatabaseConfig, LoggingConfig, StorageConfig, VaultConfig


@pytest.fixture(autouse=True)
def _isolate_config(monkeypatch):
    """Reset global singletons between tests."""
    import casevault.engine.config as cfg_mod
    from casevault.engine.logging import shutdown_logging

    monkeypatch.delenv("CASEVAULT_SECRET_KEY", raising=False)
    cfg_mod._config = None
    yield
    shutdown_logging()
    cfg_mod._config = None


@pytest.fixture
def vault_config(tmp_path) -> VaultConfig:
    return VaultConfig(
        database=DatabaseConfig(url=f"sqlite:///{tmp_path / 'vault.db'}"),
        storage=StorageConfig(base_path=str(tmp_path / "storage")),
        logging=LoggingConfig(directory=str(tmp_path / "logs")),
    )


@pytest.fixture
def session_factory(vault_config):
    factory = init_db(vault_config.database.url, create_tables=True)
    yield factory
    close_db()


@pytest.fixture
def storage(vault_config) -> StorageService:
    service = StorageService(vault_config.storage)
    service.create_directory_structure()
    return service


@pytest.fixture
def version_service(session_factory, storage) -> VersionService:
    return VersionService(session_factory, storage, max_versions=50)


@pytest.fixture
def manager(vault_config, session_factory):
    from casevault.documents.service import DocumentManager

    mgr = DocumentManager(vault_config, session_factory)
    mgr.initialize()
    yield mgr
    mgr.dispose()


@pytest.fixture
def backup_root(tmp_path) -> Path:
    return tmp_path / "backups"
