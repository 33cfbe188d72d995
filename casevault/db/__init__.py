"""CaseVault Database: models, engine registry and session management."""

from casevault.db.base import Base, EngineRegistry, engine_registry
from casevault.db.models import AuditLog, BackupScheduleRecord, Document, DocumentVersion
from casevault.db.session import close_db, get_session, init_db, session_scope

__all__ = [
    "Base",
    "EngineRegistry",
    "engine_registry",
    "AuditLog",
    "BackupScheduleRecord",
    "Document",
    "DocumentVersion",
    "close_db",
    "get_session",
    "init_db",
    "session_scope",
]
