"""
CLI tests: each command runs against a casevault.yaml in tmp_path and
prints JSON to stdout.
"""

import json

import pytest
import yaml

from casevault.cli import main


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "casevault.yaml"
    path.write_text(yaml.safe_dump({
        "database": {"url": f"sqlite:///{tmp_path / 'cli.db'}"},
        "storage": {"base_path": "storage"},
        "logging": {"directory": "logs", "structured": False},
    }))
    return str(path)


@pytest.fixture
def run(config_path, capsys):
    def _run(*args):
        code = main(["--config", config_path, *args])
        out = capsys.readouterr().out
        return code, json.loads(out) if out.strip() else None
    return _run


@pytest.fixture
def initialized(run, tmp_path):
    code, _ = run("init")
    assert code == 0
    (tmp_path / "storage" / "documents" / "original" / "brief.txt").write_bytes(b"brief body")
    return tmp_path


class TestInit:
    def test_init(self, run, tmp_path):
        code, payload = run("init", "--with-schedule")
        assert code == 0
        assert payload["success"]
        assert payload["storage"] == str(tmp_path / "storage")
        assert payload["schedule"]["name"] == "Daily Document Backup"
        assert (tmp_path / "storage" / "evidence" / "custody").is_dir()
        assert (tmp_path / "storage" / "backups").is_dir()

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "usage: casevault" in capsys.readouterr().out

    def test_restore_help_describes_skip_integrity(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["restore", "--help"])
        assert exc.value.code == 0
        assert "archive checksum" in " ".join(capsys.readouterr().out.split())


class TestBackupCommands:
    def test_backup_list_restore(self, run, initialized):
        code, backup = run("backup", "--no-compression")
        assert code == 0
        assert backup["archive_path"].endswith("archive.tar")

        code, backups = run("list-backups", "--verify")
        assert code == 0
        assert backups[0]["backup_id"] == backup["backup_id"]
        assert backups[0]["valid"] is True

        (initialized / "storage" / "documents" / "original" / "brief.txt").unlink()
        code, dry = run("restore", backup["backup_id"], "--dry-run")
        assert code == 0
        assert dry["would_restore"] == ["documents/original/brief.txt"]

        code, restored = run("restore", backup["backup_id"])
        assert code == 0
        assert restored["files_restored"] == 1
        assert (initialized / "storage" / "documents" / "original" / "brief.txt").read_bytes() == b"brief body"

    def test_restore_unknown(self, run, initialized):
        code, payload = run("restore", "backup_nope")
        assert code == 1
        assert payload["success"] is False
        assert payload["errors"]

    def test_cleanup(self, run, initialized):
        first = run("backup")[1]["backup_id"]
        run("backup")
        code, payload = run("cleanup-backups", "--max-backups", "1")
        assert code == 0
        assert payload["deleted"] == [first]


class TestScheduleCommands:
    def test_create_list_delete(self, run, initialized):
        code, created = run("schedule", "create", "Weekly", "0 4 * * 0")
        assert code == 0
        assert created["cron"] == "0 4 * * 0"

        code, listed = run("schedule", "list")
        assert [s["name"] for s in listed] == ["Weekly"]

        code, deleted = run("schedule", "delete", created["id"])
        assert code == 0 and deleted["success"]

        code, _ = run("schedule", "delete", created["id"])
        assert code == 1

    def test_invalid_cron(self, run, initialized):
        code, payload = run("schedule", "create", "Broken", "whenever")
        assert code == 1
        assert payload["success"] is False
        assert payload["error"]["error_type"] == "VaultValidationError"

    def test_scheduler_once_without_schedules(self, run, initialized):
        assert run("scheduler", "--once") == (0, [])


class TestMaintenanceCommands:
    def test_metrics(self, run, initialized):
        code, payload = run("metrics")
        assert code == 0
        assert payload["total_files"] == 1
        assert payload["health"]["status"] == "healthy"

    def test_optimize_dry_run(self, run, initialized):
        code, payload = run("optimize", "--dry-run", "--orphans")
        assert code == 0
        assert payload["dry_run"] is True
        assert "orphans" in payload["details"]
        assert (initialized / "storage" / "documents" / "original" / "brief.txt").exists()

    def test_cleanup_logs(self, run, tmp_path):
        old = tmp_path / "logs" / "backups" / "performance" / "2000-01-01.jsonl"
        old.parent.mkdir(parents=True)
        old.write_text("{}\n")

        code, payload = run("cleanup-logs")

        assert code == 0
        assert payload["deleted"] == 1
        assert not old.exists()


class TestEvidenceCommands:
    def test_unknown_evidence(self, run, initialized):
        code, payload = run("verify-evidence", "EVID_missing")
        assert code == 1
        assert payload["is_valid"] is False

    def test_unknown_evidence_report(self, run, initialized):
        code, payload = run("verify-evidence", "EVID_missing", "--report")
        assert code == 1
        assert payload["error"]["error_type"] == "VaultNotFoundError"
