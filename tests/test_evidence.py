"""Tests for evidence storage, the custody ledger and integrity verification."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

import casevault.evidence.service as evidence_mod
from casevault.engine.errors import VaultIntegrityError, VaultNotFoundError, VaultValidationError
from casevault.evidence import CustodyLedger, EvidenceService, EvidenceUploadOptions
from casevault.evidence.custody import GENESIS_HASH

PHOTO = b"\xff\xd8\xff\xe0" + b"scene" * 40


@pytest.fixture
def evidence(storage):
    return EvidenceService(storage)


@pytest.fixture
def collected(evidence):
    result = evidence.upload_evidence(PHOTO, "scene.jpg", EvidenceUploadOptions(
        title="Scene photo",
        case_id="CASE-42",
        collected_by="officer.k",
        evidence_type="photo",
        location="Warehouse 3",
    ))
    assert result.success
    return result


class TestCustodyLedger:
    def test_chain_links(self, tmp_path):
        ledger = CustodyLedger(tmp_path)
        first = ledger.append("EVID_1", "COLLECTED", "officer.k")
        second = ledger.append("EVID_1", "TRANSFERRED to lab", "officer.k", notes="Reason: analysis")

        assert first.previous_hash == GENESIS_HASH
        assert second.previous_hash == first.entry_hash
        assert [e.action for e in ledger.read("EVID_1")] == ["COLLECTED", "TRANSFERRED to lab"]
        assert ledger.verify_chain("EVID_1") == []

    def test_edit_detected(self, tmp_path):
        ledger = CustodyLedger(tmp_path)
        ledger.append("EVID_1", "COLLECTED", "officer.k", notes="bagged")
        ledger.append("EVID_1", "TRANSFERRED to lab", "officer.k")

        path = ledger.path_for("EVID_1")
        entries = json.loads(path.read_text())
        entries[0]["notes"] = "never bagged"
        path.write_text(json.dumps(entries))

        assert ledger.verify_chain("EVID_1") == ["Custody entry 1 hash mismatch"]

    def test_removal_detected(self, tmp_path):
        ledger = CustodyLedger(tmp_path)
        for action in ("COLLECTED", "TRANSFERRED to lab", "RETURNED"):
            ledger.append("EVID_1", action, "officer.k")

        path = ledger.path_for("EVID_1")
        entries = json.loads(path.read_text())
        del entries[1]
        path.write_text(json.dumps(entries))

        assert ledger.verify_chain("EVID_1") == ["Custody entry 2 does not link to the previous entry"]

    def test_missing_ledger_is_empty(self, tmp_path):
        ledger = CustodyLedger(tmp_path)
        assert ledger.read("EVID_none") == []
        assert not ledger.exists("EVID_none")

    def test_unreadable_ledger(self, tmp_path):
        ledger = CustodyLedger(tmp_path)
        ledger.path_for("EVID_1").write_text("{not json")
        with pytest.raises(VaultIntegrityError):
            ledger.read("EVID_1")

    def test_invalid_id(self, tmp_path):
        with pytest.raises(VaultValidationError):
            CustodyLedger(tmp_path).path_for("../EVID_1")


class TestUpload:
    def test_collect(self, evidence, collected, storage):
        assert collected.evidence_id.startswith("EVID_CASE-42_")
        assert collected.file_path == f"evidence/original/{collected.evidence_id}.jpg"
        assert storage.file_exists(collected.file_path)

        metadata = evidence.get_evidence_metadata(collected.evidence_id)
        assert metadata["type"] == "PHOTO"
        assert metadata["checksum"] == collected.checksum
        assert metadata["sealed"] is False

        chain = evidence.get_chain_of_custody(collected.evidence_id)
        assert len(chain) == 1
        assert chain[0].action == "COLLECTED"
        assert chain[0].notes == "Evidence collected: Scene photo"
        assert chain[0].location == "Warehouse 3"

    def test_rejected_file(self, evidence):
        result = evidence.upload_evidence(b"MZ\x90", "dropper.exe", EvidenceUploadOptions(
            title="Binary", case_id="CASE-42", collected_by="officer.k",
        ))
        assert not result.success
        assert result.error.startswith("Evidence validation failed:")
        assert "File extension '.exe' is not allowed" in result.error

    def test_unknown_type(self):
        with pytest.raises(ValidationError):
            EvidenceUploadOptions(title="x", case_id="c", collected_by="u", evidence_type="RUMOUR")

    def test_type_size_warning(self, evidence, monkeypatch):
        monkeypatch.setitem(evidence_mod.TYPE_SIZE_LIMITS_MB, "PHOTO", 0)
        result = evidence.upload_evidence(PHOTO, "scene.jpg", EvidenceUploadOptions(
            title="Scene", case_id="CASE-42", collected_by="officer.k", evidence_type="PHOTO",
        ))
        assert result.success
        assert any("exceeds recommended limit for PHOTO evidence" in w for w in result.warnings)

    def test_generated_ids_are_safe(self):
        evidence_id = EvidenceService.generate_evidence_id("CASE 42/A")
        assert evidence_id.startswith("EVID_CASE-42-A_")


class TestCustodyOperations:
    def test_transfer(self, evidence, collected):
        entry = evidence.transfer_evidence(
            collected.evidence_id, "Forensics Lab", "officer.k", "fingerprint analysis", location="Lab 2",
        )
        assert entry.action == "TRANSFERRED to Forensics Lab"
        assert entry.notes == "Reason: fingerprint analysis"
        assert len(evidence.get_chain_of_custody(collected.evidence_id)) == 2

    def test_unknown_evidence(self, evidence):
        with pytest.raises(VaultNotFoundError):
            evidence.add_to_chain_of_custody("EVID_missing", "INSPECTED", "clerk")


class TestIntegrity:
    def test_intact(self, evidence, collected):
        result = evidence.verify_evidence_integrity(collected.evidence_id)
        assert result.is_valid
        assert result.checksum_matches
        assert result.chain_of_custody_complete
        assert not result.tampering_detected
        assert result.issues == []

    def test_file_modified(self, evidence, collected, storage):
        storage.absolute_path(collected.file_path).write_bytes(PHOTO + b"edit")

        result = evidence.verify_evidence_integrity(collected.evidence_id)

        assert not result.is_valid
        assert result.tampering_detected
        assert "Evidence file checksum does not match the value recorded at collection" in result.issues
        assert "Address integrity issues immediately" in result.recommendations

    def test_file_missing(self, evidence, collected, storage):
        storage.delete_file(collected.file_path)
        result = evidence.verify_evidence_integrity(collected.evidence_id)
        assert not result.is_valid
        assert "Evidence file not found" in result.issues

    def test_empty_file(self, evidence, collected, storage):
        storage.absolute_path(collected.file_path).write_bytes(b"")
        result = evidence.verify_evidence_integrity(collected.evidence_id)
        assert not result.is_valid
        assert "Evidence file is empty" in result.issues
        assert not result.checksum_matches

    def test_ledger_tampering(self, evidence, collected):
        path = evidence.ledger.path_for(collected.evidence_id)
        entries = json.loads(path.read_text())
        entries[0]["performed_by"] = "someone.else"
        path.write_text(json.dumps(entries))

        result = evidence.verify_evidence_integrity(collected.evidence_id)

        assert not result.is_valid
        assert result.tampering_detected
        assert not result.chain_of_custody_complete

    def test_unknown_record(self, evidence):
        result = evidence.verify_evidence_integrity("EVID_missing")
        assert not result.is_valid
        assert "Evidence record not found" in result.issues
        assert "No chain of custody records found" in result.advisories
        assert "Establish proper chain of custody procedures" in result.recommendations

    def test_gap_is_advisory(self, evidence, collected):
        evidence.add_to_chain_of_custody(
            collected.evidence_id, "INSPECTED", "clerk",
            performed_at=datetime.now(timezone.utc) + timedelta(hours=30),
        )
        result = evidence.verify_evidence_integrity(collected.evidence_id)
        assert result.is_valid
        assert "Gap of 30 hours in chain of custody" in result.advisories

    def test_naive_timestamp_treated_as_utc(self, evidence, collected):
        naive = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(hours=30)
        entry = evidence.add_to_chain_of_custody(collected.evidence_id, "INSPECTED", "clerk", performed_at=naive)

        assert entry.performed_at.endswith("+00:00")
        result = evidence.verify_evidence_integrity(collected.evidence_id)
        assert result.is_valid
        assert "Gap of 30 hours in chain of custody" in result.advisories

    def test_backdated_entry_gap_found(self, evidence, collected):
        evidence.add_to_chain_of_custody(
            collected.evidence_id, "INSPECTED", "clerk",
            performed_at=datetime.now(timezone.utc) - timedelta(hours=40),
        )
        result = evidence.verify_evidence_integrity(collected.evidence_id)
        assert "Gap of 40 hours in chain of custody" in result.advisories

    def test_corrupt_metadata_reported(self, evidence, collected):
        evidence._sidecar_path(collected.evidence_id).write_text("{not json")

        with pytest.raises(VaultIntegrityError):
            evidence.get_evidence_metadata(collected.evidence_id)
        result = evidence.verify_evidence_integrity(collected.evidence_id)
        assert not result.is_valid
        assert result.issues[0].startswith("Integrity verification failed: Evidence metadata")

    @pytest.mark.parametrize("evidence_id", ["../etc", ".hidden", ""])
    def test_invalid_id_reported(self, evidence, evidence_id):
        result = evidence.verify_evidence_integrity(evidence_id)
        assert not result.is_valid
        assert result.issues[0].startswith("Integrity verification failed: Invalid evidence id")

    def test_tamper_keyword_in_last_action(self, evidence, collected):
        evidence.add_to_chain_of_custody(collected.evidence_id, "ALTERED for enhancement", "tech")
        result = evidence.verify_evidence_integrity(collected.evidence_id)
        assert result.is_valid
        assert result.tampering_detected
        assert "Evidence may have been modified according to chain of custody" in result.advisories


class TestSealAndDispose:
    def test_seal(self, evidence, collected, storage):
        assert evidence.seal_evidence(collected.evidence_id, "clerk")
        assert evidence.is_sealed(collected.evidence_id)

        metadata = evidence.get_evidence_metadata(collected.evidence_id)
        sealed = storage.absolute_path(metadata["sealed_path"])
        assert sealed.read_bytes() == PHOTO
        assert sealed.stat().st_mode & 0o222 == 0

        assert not evidence.seal_evidence(collected.evidence_id, "clerk")

    def test_dispose(self, evidence, collected, storage):
        assert evidence.dispose_evidence(collected.evidence_id, "clerk", "secure shredding")

        metadata = evidence.get_evidence_metadata(collected.evidence_id)
        assert metadata["disposed"] is True
        assert metadata["file_path"].startswith("evidence/disposed/")
        assert not storage.file_exists(collected.file_path)
        assert evidence.get_chain_of_custody(collected.evidence_id)[-1].action == "DISPOSED via secure shredding"

        assert evidence.verify_evidence_integrity(collected.evidence_id).checksum_matches
        assert not evidence.dispose_evidence(collected.evidence_id, "clerk", "again")
        assert not evidence.seal_evidence(collected.evidence_id, "clerk")

    def test_report(self, evidence, collected):
        evidence.seal_evidence(collected.evidence_id, "clerk")
        report = evidence.generate_evidence_report(collected.evidence_id)

        info = report["evidence_info"]
        assert info["title"] == "Scene photo"
        assert info["chain_length"] == 2
        assert info["is_sealed"] and not info["is_disposed"]
        assert info["file_info"]["checksum"] == collected.checksum
        assert report["integrity_status"]["is_valid"]

    def test_report_unknown(self, evidence):
        with pytest.raises(VaultNotFoundError):
            evidence.generate_evidence_report("EVID_missing")
