"""
Tests for ProtectionOrchestrator — state machine, auto-clean policy,
notifications and statistics.
"""

import os
from unittest.mock import patch

import pytest

from conftest import wait_for, write_file
from filkollen.guardian.extensions import HardeningResult, SystemHardening
from filkollen.guardian.models import SecurityEvent, SecurityEventType, ThreatLevel
from filkollen.guardian.monitor import Monitor
from filkollen.protection import (
    NotificationHub,
    ProtectionOrchestrator,
    ProtectionState,
    ProtectionStatusChanged,
    SecurityAlert,
    ThreatDetected,
)
from filkollen.quarantine import DeleteFailed, ErrorCode


class RecordingHardening(SystemHardening):
    def __init__(self):
        self.calls = 0

    def apply_system_hardening(self):
        self.calls += 1
        return HardeningResult(success=True, message="ok", applied=["policy"])


@pytest.fixture
def monitor(config):
    return Monitor(config, enable_process_monitor=False, process_iter=lambda attrs: iter(()))


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def orchestrator(config, monitor, notifications):
    orch = ProtectionOrchestrator(config, monitor=monitor)
    orch.subscribe("*", notifications.append)
    yield orch
    orch.stop_protection()


def _of(notifications, kind):
    return [n for n in notifications if isinstance(n, kind)]


def _scan(orchestrator, path):
    return orchestrator.monitor.classifier.classify_path(str(path))


# ===================================================================
# State machine
# ===================================================================

class TestState:
    def test_start_and_stop(self, orchestrator, notifications):
        assert orchestrator.state == ProtectionState.STOPPED

        orchestrator.start_protection()
        assert orchestrator.is_active
        assert orchestrator.monitor.is_running

        orchestrator.stop_protection()
        assert orchestrator.state == ProtectionState.STOPPED
        assert not orchestrator.monitor.is_running

        changes = _of(notifications, ProtectionStatusChanged)
        assert [c.is_active for c in changes] == [True, False]

    def test_start_and_stop_are_idempotent(self, orchestrator, notifications):
        orchestrator.start_protection()
        orchestrator.start_protection()
        orchestrator.stop_protection()
        orchestrator.stop_protection()
        assert len(_of(notifications, ProtectionStatusChanged)) == 2

    def test_context_manager(self, config, monitor):
        with ProtectionOrchestrator(config, monitor=monitor) as orch:
            assert orch.is_active
        assert orch.state == ProtectionState.STOPPED

    def test_failed_start_reverts(self, orchestrator, notifications):
        with patch.object(orchestrator.monitor, "start", side_effect=RuntimeError("no watcher")):
            orchestrator.start_protection()
        assert orchestrator.state == ProtectionState.STOPPED
        assert _of(notifications, ProtectionStatusChanged) == []

    def test_auto_clean_toggle(self, orchestrator, _isolate_audit_logs):
        assert orchestrator.auto_clean_mode is False
        orchestrator.set_auto_clean_mode(True)
        assert orchestrator.get_protection_stats().auto_clean_mode is True
        assert "settings.changed" in _isolate_audit_logs.log_file.read_text(encoding="utf-8")


# ===================================================================
# Auto-clean policy
# ===================================================================

class TestAutoClean:
    def test_high_threat_is_quarantined(self, orchestrator, notifications, scan_dir):
        orchestrator.set_auto_clean_mode(True)
        path = write_file(scan_dir, "invoice.pdf.exe")

        orchestrator._on_scan_result(_scan(orchestrator, path))

        detected = _of(notifications, ThreatDetected)
        assert len(detected) == 1
        assert detected[0].was_auto_handled is True
        assert detected[0].quarantine_id
        assert not path.exists()
        stats = orchestrator.get_protection_stats()
        assert (stats.total_threats_found, stats.total_threats_handled) == (1, 1)
        assert stats.threat_handling_rate == 100.0

    def test_without_auto_clean_threat_is_only_surfaced(self, orchestrator, notifications, scan_dir):
        path = write_file(scan_dir, "invoice.pdf.exe")

        orchestrator._on_scan_result(_scan(orchestrator, path))

        assert _of(notifications, ThreatDetected)[0].was_auto_handled is False
        assert path.exists()
        assert orchestrator.store.list_items() == []

    def test_medium_threat_is_never_auto_quarantined(self, orchestrator, notifications, scan_dir):
        orchestrator.set_auto_clean_mode(True)
        path = write_file(scan_dir, "setup.exe")

        orchestrator._on_scan_result(_scan(orchestrator, path))

        assert _of(notifications, ThreatDetected)[0].was_auto_handled is False
        assert path.exists()

    def test_failed_quarantine_is_surfaced(self, orchestrator, notifications, scan_dir):
        orchestrator.set_auto_clean_mode(True)
        path = write_file(scan_dir, "invoice.pdf.exe")
        with patch("filkollen.quarantine.store.shutil.copyfile", side_effect=PermissionError("locked")):
            orchestrator._on_scan_result(_scan(orchestrator, path))

        detected = _of(notifications, ThreatDetected)[0]
        assert detected.was_auto_handled is False
        assert path.exists()
        assert orchestrator.get_protection_stats().total_threats_handled == 0

    def test_already_remediated_file_is_skipped(self, orchestrator, notifications, scan_dir):
        path = write_file(scan_dir, "invoice.pdf.exe")
        result = _scan(orchestrator, path)
        os.remove(path)

        orchestrator._on_scan_result(result)

        assert _of(notifications, ThreatDetected) == []
        assert orchestrator.get_protection_stats().total_threats_found == 0

    def test_repeat_detection_of_quarantined_file_is_not_counted(self, orchestrator, notifications,
                                                                  scan_dir):
        orchestrator.set_auto_clean_mode(True)
        path = write_file(scan_dir, "invoice.pdf.exe")
        result = _scan(orchestrator, path)
        with patch("filkollen.quarantine.store.secure_delete", side_effect=DeleteFailed("in use")):
            orchestrator._on_scan_result(result)
        assert path.exists()

        orchestrator._on_scan_result(result)

        detected = _of(notifications, ThreatDetected)
        assert len(detected) == 1
        assert detected[0].was_auto_handled is True
        assert not path.exists()
        stats = orchestrator.get_protection_stats()
        assert (stats.total_threats_found, stats.total_threats_handled) == (1, 1)
        assert len(orchestrator.store.list_items()) == 1

    def test_hardening_runs_after_confirmed_quarantine(self, config, monitor, scan_dir):
        hardening = RecordingHardening()
        orch = ProtectionOrchestrator(config, monitor=monitor, hardening=hardening)
        orch.set_auto_clean_mode(True)

        orch._on_scan_result(_scan(orch, write_file(scan_dir, "invoice.pdf.exe")))
        orch._on_scan_result(_scan(orch, write_file(scan_dir, "setup.exe")))

        assert hardening.calls == 1

    def test_manual_scan_uses_the_pipeline(self, orchestrator, notifications, scan_dir):
        orchestrator.set_auto_clean_mode(True)
        path = write_file(scan_dir, "invoice.pdf.exe")

        results = orchestrator.trigger_manual_scan()

        assert len(results) == 1
        assert not path.exists()
        assert len(orchestrator.store.list_items()) == 1
        assert orchestrator.get_protection_stats().last_scan_time is not None

    def test_scan_now_does_not_remediate(self, orchestrator, notifications, scan_dir):
        orchestrator.set_auto_clean_mode(True)
        path = write_file(scan_dir, "invoice.pdf.exe")

        results = orchestrator.scan_now()

        assert [r.file_name for r in results] == ["invoice.pdf.exe"]
        assert path.exists()
        assert _of(notifications, ThreatDetected) == []

    def test_live_detection_end_to_end(self, orchestrator, notifications, scan_dir):
        orchestrator.set_auto_clean_mode(True)
        orchestrator.start_protection()
        path = write_file(scan_dir, "dropper.pdf.exe")

        assert wait_for(lambda: any(n.was_auto_handled for n in _of(notifications, ThreatDetected)))
        assert not path.exists()
        assert wait_for(lambda: _of(notifications, SecurityAlert))


# ===================================================================
# Alerts and process remediation
# ===================================================================

def _malware_event(exe=None):
    return SecurityEvent(
        event_type=SecurityEventType.KNOWN_MALWARE_PROCESS,
        severity=ThreatLevel.CRITICAL,
        description="xmrig.exe (PID 4242): Known malware process (xmrig)",
        subject_path=exe,
        subject_process="xmrig.exe",
        process_id=4242,
    )


class TestAlerts:
    def test_alert_is_published_and_counted(self, orchestrator, notifications):
        orchestrator._on_alert(_malware_event())

        alerts = _of(notifications, SecurityAlert)
        assert len(alerts) == 1
        assert alerts[0].event.process_id == 4242
        assert orchestrator.get_protection_stats().total_threats_found == 1

    def test_file_alerts_are_not_double_counted(self, orchestrator, scan_dir):
        result = _scan(orchestrator, write_file(scan_dir, "invoice.pdf.exe"))
        orchestrator._on_alert(SecurityEvent.from_scan_result(result))
        assert orchestrator.get_protection_stats().total_threats_found == 0

    def test_process_is_killed_when_enabled(self, orchestrator, scan_dir):
        orchestrator.config.terminate_malicious_processes = True
        orchestrator.set_auto_clean_mode(True)
        exe = write_file(scan_dir, "xmrig.bin", b"\x7fELF")

        with patch.object(orchestrator.monitor, "kill_process", return_value=True) as kill:
            orchestrator._on_alert(_malware_event(str(exe)))

        kill.assert_called_once_with(4242, _malware_event().description)
        assert not exe.exists()
        assert len(orchestrator.store.list_items()) == 1
        assert orchestrator.get_protection_stats().total_threats_handled == 1

    def test_process_is_left_alone_by_default(self, orchestrator):
        orchestrator.set_auto_clean_mode(True)
        with patch.object(orchestrator.monitor, "kill_process") as kill:
            orchestrator._on_alert(_malware_event())
        kill.assert_not_called()


# ===================================================================
# Delegation
# ===================================================================

class TestQuarantineDelegation:
    def test_manual_quarantine_restore_delete(self, orchestrator, scan_dir):
        path = write_file(scan_dir, "suspect.exe", b"abc")

        result = orchestrator.quarantine(str(path), "Manual quarantine")
        assert result
        assert orchestrator.get_protection_stats().total_threats_handled == 1

        assert orchestrator.restore(result.quarantine_id)
        assert path.read_bytes() == b"abc"

        again = orchestrator.quarantine(str(path), "Manual quarantine")
        assert orchestrator.delete_quarantined(again.quarantine_id)
        assert orchestrator.store.list_items() == []
        assert orchestrator.cleanup_expired() == 0

    def test_manual_quarantine_of_missing_file(self, orchestrator, scan_dir):
        result = orchestrator.quarantine(str(scan_dir / "gone.exe"), "x")
        assert result.error_code == ErrorCode.NOT_FOUND
        assert orchestrator.get_protection_stats().total_threats_handled == 0

    def test_monitored_paths(self, orchestrator, scan_dir):
        assert orchestrator.get_monitored_paths() == [str(scan_dir)]
        assert orchestrator.get_protection_stats().monitored_path_count == 1


class TestNotificationHub:
    def test_kind_and_wildcard_listeners(self):
        hub = NotificationHub()
        specific, everything = [], []
        hub.subscribe(ProtectionStatusChanged.kind, specific.append)
        hub.subscribe("*", everything.append)

        assert hub.publish(ProtectionStatusChanged(is_active=True)) == 2
        hub.unsubscribe(ProtectionStatusChanged.kind, specific.append)
        hub.publish(ProtectionStatusChanged(is_active=False))

        assert len(specific) == 1
        assert len(everything) == 2

    def test_failing_listener_does_not_block_delivery(self):
        hub = NotificationHub()
        received = []

        def broken(notification):
            raise RuntimeError("ui gone")

        hub.subscribe("*", broken)
        hub.subscribe("*", received.append)
        hub.publish(ProtectionStatusChanged(is_active=True))
        assert len(received) == 1
