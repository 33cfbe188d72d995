"""
CaseVault Models: SQLAlchemy tables for document metadata, version
history, backup schedules and the audit trail.

Tables:
1. documents           Document metadata and current version pointer
2. document_versions   Immutable version snapshots (one latest per document)
3. backup_schedules    Cron schedules with lease columns for claiming runs
4. audit_log           Who did what to which entity
"""

from __future__ import annotations

import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from casevault.db.base import AuditMixin, Base, SoftDeleteMixin, UTCDateTime, utcnow


def new_id() -> str:
    return str(uuid.uuid4())


DOCUMENT_STATUSES = ("ACTIVE", "DELETED")


# ---------------------------------------------------------------------------
# 1. Documents
# ---------------------------------------------------------------------------

class Document(Base, AuditMixin, SoftDeleteMixin):
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    original_name = Column(String(255), nullable=False)
    filename = Column(String(255), nullable=False)
    file_path = Column(String(500), nullable=False)
    mime_type = Column(String(150), nullable=False)
    size_bytes = Column(Integer, default=0, nullable=False)
    checksum = Column(String(128), nullable=True, index=True)
    version = Column(Integer, default=1, nullable=False)
    is_latest = Column(Boolean, default=True, nullable=False)
    status = Column(String(20), default="ACTIVE", nullable=False, index=True)
    case_id = Column(String(100), nullable=True, index=True)
    category = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    tags = Column(JSON, default=list, nullable=False)
    is_confidential = Column(Boolean, default=False, nullable=False)
    thumbnail_path = Column(String(500), nullable=True)
    uploaded_by = Column(String(100), nullable=True)
    # "metadata" is reserved on declarative classes
    doc_metadata = Column("metadata", JSON, default=dict, nullable=False)

    versions = relationship(
        "DocumentVersion",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DocumentVersion.version_number",
    )

    __table_args__ = (
        CheckConstraint("status IN ('ACTIVE', 'DELETED')", name="ck_documents_status"),
        CheckConstraint("version >= 1", name="ck_documents_version"),
    )

    def __repr__(self) -> str:
        return f"<Document {self.id} '{self.name}' v{self.version} {self.status}>"


# ---------------------------------------------------------------------------
# 2. Document versions
# ---------------------------------------------------------------------------

class DocumentVersion(Base):
    __tablename__ = "document_versions"

    id = Column(String(36), primary_key=True, default=new_id)
    document_id = Column(
        String(36),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    version_number = Column(Integer, nullable=False)
    filename = Column(String(255), nullable=False)
    file_path = Column(String(500), nullable=False)
    size_bytes = Column(Integer, default=0, nullable=False)
    checksum = Column(String(128), nullable=False)
    mime_type = Column(String(150), nullable=True)
    change_description = Column(Text, nullable=True)
    created_by = Column(String(100), nullable=True)
    created_at = Column(UTCDateTime(), default=utcnow, nullable=False)
    is_latest = Column(Boolean, default=False, nullable=False)
    is_major = Column(Boolean, default=False, nullable=False)
    tags = Column(JSON, default=list, nullable=False)
    version_metadata = Column("metadata", JSON, default=dict, nullable=False)

    document = relationship("Document", back_populates="versions")

    __table_args__ = (
        UniqueConstraint("document_id", "version_number", name="uq_document_versions_number"),
        # At most one latest row per document
        Index(
            "uq_document_versions_latest",
            "document_id",
            unique=True,
            sqlite_where=text("is_latest = 1"),
            postgresql_where=text("is_latest"),
        ),
        CheckConstraint("version_number >= 1", name="ck_document_versions_number"),
    )

    def __repr__(self) -> str:
        flag = " latest" if self.is_latest else ""
        return f"<DocumentVersion {self.document_id} v{self.version_number}{flag}>"


# ---------------------------------------------------------------------------
# 3. Backup schedules
# ---------------------------------------------------------------------------

class BackupScheduleRecord(Base, AuditMixin):
    __tablename__ = "backup_schedules"

    id = Column(String(64), primary_key=True)
    name = Column(String(200), nullable=False, unique=True)
    cron = Column(String(100), nullable=False)
    config = Column(JSON, default=dict, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    last_run = Column(UTCDateTime(), nullable=True)
    next_run = Column(UTCDateTime(), nullable=True, index=True)
    last_status = Column(String(20), nullable=True)
    last_backup_id = Column(String(64), nullable=True)
    last_error = Column(Text, nullable=True)
    lease_owner = Column(String(100), nullable=True)
    lease_expires_at = Column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<BackupScheduleRecord {self.id} '{self.name}' next={self.next_run}>"


# ---------------------------------------------------------------------------
# 4. Audit log
# ---------------------------------------------------------------------------

class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(50), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False, index=True)
    performed_by = Column(String(100), nullable=True)
    details = Column(JSON, default=dict, nullable=False)
    created_at = Column(UTCDateTime(), default=utcnow, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<AuditLog {self.action} {self.entity_type}:{self.entity_id}>"
