"""
Tests for the filkollen command line entry point.
"""

import json
from unittest.mock import patch

import pytest

from conftest import write_file
from filkollen.__main__ import main


@pytest.fixture(autouse=True)
def _cli_env(tmp_path, monkeypatch, _isolate_audit_logs):
    monkeypatch.setenv("FILKOLLEN_QUARANTINE_DIR", str(tmp_path / "quarantine"))
    monkeypatch.setenv("FILKOLLEN_AUDIT_LOG_DIR", str(tmp_path / "audit_logs"))
    monkeypatch.delenv("FILKOLLEN_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)
    # Keep the per-test audit logger instead of a second file handler
    with patch("filkollen.__main__.AuditLogger", return_value=_isolate_audit_logs):
        yield


def _quarantine_one(tmp_path):
    from filkollen.quarantine import QuarantineStore

    victim = write_file(tmp_path / "victim", "evil.exe", b"MZ")
    result = QuarantineStore(tmp_path / "quarantine").quarantine(str(victim), "test")
    return victim, result.quarantine_id


class TestScanCommand:
    def test_findings_exit_nonzero(self, tmp_path, capsys):
        write_file(tmp_path / "scan", "invoice.pdf.exe")
        assert main(["scan", str(tmp_path / "scan")]) == 1
        out = capsys.readouterr().out
        assert "invoice.pdf.exe" in out
        assert "Double file extension" in out

    def test_clean_directory_exits_zero(self, tmp_path, capsys):
        write_file(tmp_path / "scan", "notes.txt")
        assert main(["scan", str(tmp_path / "scan")]) == 0
        assert "0 finding(s)" in capsys.readouterr().out

    def test_recursive_flag(self, tmp_path):
        write_file(tmp_path / "scan" / "sub", "tool.exe")
        assert main(["scan", str(tmp_path / "scan")]) == 0
        assert main(["scan", "-r", str(tmp_path / "scan")]) == 1


class TestQuarantineCommand:
    def test_list(self, tmp_path, capsys):
        victim, item_id = _quarantine_one(tmp_path)
        assert main(["quarantine", "list"]) == 0
        out = capsys.readouterr().out
        assert item_id in out
        assert "1 item(s)" in out

    def test_restore(self, tmp_path):
        victim, item_id = _quarantine_one(tmp_path)
        assert main(["quarantine", "restore", item_id]) == 0
        assert victim.read_bytes() == b"MZ"

    def test_restore_unknown_id(self, capsys):
        assert main(["quarantine", "restore", "missing"]) == 1
        assert "No quarantined item" in capsys.readouterr().out

    def test_delete_and_cleanup(self, tmp_path, capsys):
        victim, item_id = _quarantine_one(tmp_path)
        assert main(["quarantine", "delete", item_id]) == 0
        assert main(["quarantine", "cleanup", "--days", "0"]) == 0
        assert "Removed 0 expired item(s)" in capsys.readouterr().out


class TestConfigHandling:
    def test_invalid_config_exits_2(self, tmp_path, capsys):
        bad = tmp_path / "bad.json"
        bad.write_text("{ nope", encoding="utf-8")
        assert main(["--config", str(bad), "quarantine", "list"]) == 2
        assert "Configuration error" in capsys.readouterr().err

    def test_config_file_is_used(self, tmp_path, capsys):
        config = tmp_path / "filkollen.json"
        config.write_text(json.dumps({"suspicious_extensions": [".bin"]}), encoding="utf-8")
        write_file(tmp_path / "scan", "blob.bin")
        assert main(["--config", str(config), "scan", str(tmp_path / "scan")]) == 1

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main(["--version"])
        assert excinfo.value.code == 0
        assert "FilKollen v" in capsys.readouterr().out
