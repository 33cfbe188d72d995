"""Unit tests for casevault.db: models, constraints and session handling."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from casevault.db.base import EngineRegistry
from casevault.db.models import AuditLog, BackupScheduleRecord, Document, DocumentVersion
from casevault.db.session import session_scope


def _document(**overrides):
    values = dict(
        name="brief.txt",
        original_name="brief.txt",
        filename="brief_1.txt",
        file_path="documents/original/brief_1.txt",
        mime_type="text/plain",
        size_bytes=5,
        checksum="abc",
    )
    values.update(overrides)
    return Document(**values)


def _version(document_id, number, latest=False):
    return DocumentVersion(
        document_id=document_id,
        version_number=number,
        filename=f"v{number}.txt",
        file_path=f"documents/versions/v{number}.txt",
        size_bytes=5,
        checksum=f"sum{number}",
        is_latest=latest,
    )


class TestDocumentModels:
    def test_defaults(self, session_factory):
        with session_scope(session_factory) as session:
            doc = _document()
            session.add(doc)
            session.flush()
            assert doc.id
            assert doc.version == 1
            assert doc.status == "ACTIVE"
            assert doc.tags == []
            assert doc.created_at.tzinfo is not None

    def test_only_one_latest_version(self, session_factory):
        with session_scope(session_factory) as session:
            doc = _document()
            session.add(doc)
            session.flush()
            doc_id = doc.id
            session.add(_version(doc_id, 1, latest=True))

        with pytest.raises(IntegrityError):
            with session_scope(session_factory) as session:
                session.add(_version(doc_id, 2, latest=True))

    def test_version_numbers_unique_per_document(self, session_factory):
        with session_scope(session_factory) as session:
            doc = _document()
            session.add(doc)
            session.flush()
            doc_id = doc.id
            session.add(_version(doc_id, 1))

        with pytest.raises(IntegrityError):
            with session_scope(session_factory) as session:
                session.add(_version(doc_id, 1))

    def test_invalid_status_rejected(self, session_factory):
        with pytest.raises(IntegrityError):
            with session_scope(session_factory) as session:
                session.add(_document(status="ARCHIVED"))

    def test_delete_cascades_to_versions(self, session_factory):
        with session_scope(session_factory) as session:
            doc = _document()
            session.add(doc)
            session.flush()
            doc_id = doc.id
            session.add(_version(doc_id, 1, latest=True))

        with session_scope(session_factory) as session:
            session.delete(session.get(Document, doc_id))

        with session_scope(session_factory) as session:
            assert session.execute(select(DocumentVersion)).scalars().all() == []


class TestSessionScope:
    def test_rollback_on_error(self, session_factory):
        with pytest.raises(RuntimeError):
            with session_scope(session_factory) as session:
                session.add(AuditLog(action="X", entity_type="document", entity_id="1"))
                session.flush()
                raise RuntimeError("boom")

        with session_scope(session_factory) as session:
            assert session.execute(select(AuditLog)).scalars().all() == []

    def test_rows_readable_after_commit(self, session_factory):
        with session_scope(session_factory) as session:
            record = BackupScheduleRecord(
                id="schedule_1",
                name="Nightly",
                cron="0 2 * * *",
                next_run=datetime(2025, 1, 1, 2, 0, tzinfo=timezone.utc),
            )
            session.add(record)
        assert record.name == "Nightly"

        with session_scope(session_factory) as session:
            loaded = session.get(BackupScheduleRecord, "schedule_1")
            assert loaded.next_run == datetime(2025, 1, 1, 2, 0, tzinfo=timezone.utc)


class TestEngineRegistry:
    def test_register_and_health_check(self, tmp_path):
        registry = EngineRegistry()
        registry.register("test", f"sqlite:///{tmp_path / 'r.db'}")
        assert registry.registered_names == ["test"]
        assert registry.health_check("test")
        registry.dispose("test")
        assert registry.registered_names == []

    def test_unknown_engine(self):
        registry = EngineRegistry()
        with pytest.raises(KeyError):
            registry.get("missing")
        assert not registry.health_check("missing")
