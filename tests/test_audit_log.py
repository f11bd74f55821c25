"""
Tests for AuditLogger — structured JSON audit records via structlog.
"""

import json

from filkollen.core.audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    get_audit_logger,
)


def _records(audit_logger):
    lines = audit_logger.log_file.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines if line.strip()]


class TestAuditLogger:
    def test_event_is_written_as_json(self, _isolate_audit_logs):
        event_id = _isolate_audit_logs.log_event(
            EventType.FILE_QUARANTINED,
            EventSeverity.ALERT,
            "Quarantined dropper",
            details={"path": "/tmp/x.exe"},
            source="quarantine",
        )

        record = _records(_isolate_audit_logs)[-1]
        assert record["event"] == "security_event"
        assert record["event_id"] == event_id
        assert record["event_type"] == "file.quarantined"
        assert record["severity"] == "alert"
        assert record["details"] == {"path": "/tmp/x.exe"}
        assert "hostname" in record["context"]

    def test_guardian_event_adds_target_and_action(self, _isolate_audit_logs):
        _isolate_audit_logs.log_guardian_event(
            EventType.PROCESS_KILLED, "xmrig (PID: 4242)", action="terminated",
            severity=EventSeverity.ALERT,
        )
        record = _records(_isolate_audit_logs)[-1]
        assert record["message"] == "Guardian: process.killed - xmrig (PID: 4242) (action: terminated)"
        assert record["details"]["target"] == "xmrig (PID: 4242)"
        assert record["details"]["action"] == "terminated"

    def test_repeats_are_throttled_but_critical_is_not(self, _isolate_audit_logs):
        for _ in range(3):
            _isolate_audit_logs.log_event(EventType.SECURITY_ALERT, EventSeverity.INFO, "same")
        for _ in range(2):
            _isolate_audit_logs.log_event(EventType.SECURITY_ALERT, EventSeverity.CRITICAL, "urgent")

        messages = [r["message"] for r in _records(_isolate_audit_logs)]
        assert messages.count("same") == 1
        assert messages.count("urgent") == 2

    def test_singleton_accessor(self, _isolate_audit_logs):
        assert get_audit_logger() is _isolate_audit_logs

    def test_separate_directory(self, tmp_path):
        other = AuditLogger(tmp_path / "other")
        try:
            assert other.log_file.parent == tmp_path / "other"
            assert other.log_file.name.startswith("audit_")
        finally:
            other.close()
