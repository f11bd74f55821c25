"""
Tests for ProcessMonitor — psutil-based process heuristics.

Covers:
- Per-name rate limiting (cooldown window, case-insensitive)
- Individual heuristics (known malware, remote access, command line,
  parent spawn, temp location, unsigned binary, high CPU)
- Activity escalation to CRITICAL
- Pass bounds: max_processes, pass timeout, per-process deadline,
  cancellation
- kill_process terminate/kill ladder
"""

import logging
import os
import threading
import time
from unittest.mock import MagicMock, patch

import psutil
import pytest

from filkollen.core.cancellation import CancellationToken
from filkollen.guardian.extensions import SignatureChecker
from filkollen.guardian.models import SecurityEventType, ThreatLevel
from filkollen.guardian.process_monitor import (
    ProcessInfo,
    ProcessMonitor,
    ProcessRateLimiter,
    SuspiciousProcessPatterns,
)


class FakeProcess:
    """Stand-in for the objects psutil.process_iter(attrs) yields."""

    def __init__(self, pid, name, exe="", cmdline=None, ppid=None):
        self.info = {"pid": pid, "name": name, "exe": exe,
                     "cmdline": cmdline or [], "ppid": ppid}


class UnsignedChecker(SignatureChecker):
    def is_signed(self, path):
        return False


def _monitor(processes=(), **kwargs):
    events = []
    kwargs.setdefault("process_iter", lambda attrs: iter(processes))
    monitor = ProcessMonitor(events.append, **kwargs)
    return monitor, events


@pytest.fixture(autouse=True)
def _no_cpu_sampling():
    with patch.object(ProcessMonitor, "_sample_cpu", return_value=0.0) as sample:
        yield sample


@pytest.fixture(autouse=True)
def _no_parent_lookup():
    with patch.object(ProcessMonitor, "_parent_name", return_value="") as parent:
        yield parent


# ===================================================================
# Rate limiting
# ===================================================================

class TestProcessRateLimiter:
    def test_cooldown_window(self):
        limiter = ProcessRateLimiter(cooldown_seconds=30)
        with patch("filkollen.guardian.process_monitor.time.monotonic") as mono:
            mono.return_value = 0.0
            assert limiter.should_analyze("chrome.exe") is True
            mono.return_value = 10.0
            assert limiter.should_analyze("chrome.exe") is False
            mono.return_value = 31.0
            assert limiter.should_analyze("chrome.exe") is True

    def test_names_are_case_insensitive(self):
        limiter = ProcessRateLimiter(cooldown_seconds=30)
        assert limiter.should_analyze("Chrome.exe")
        assert not limiter.should_analyze("CHROME.EXE")

    def test_distinct_names_are_independent(self):
        limiter = ProcessRateLimiter(cooldown_seconds=30)
        assert limiter.should_analyze("a")
        assert limiter.should_analyze("b")
        assert len(limiter) == 2

    def test_prune_drops_expired(self):
        limiter = ProcessRateLimiter(cooldown_seconds=30)
        with patch("filkollen.guardian.process_monitor.time.monotonic") as mono:
            mono.return_value = 0.0
            limiter.should_analyze("a")
            mono.return_value = 100.0
            assert limiter.prune() == 1
        assert len(limiter) == 0


# ===================================================================
# Heuristics
# ===================================================================

class TestPatterns:
    def test_known_malware_keyword(self):
        assert SuspiciousProcessPatterns.known_malware_keyword("XMRig.exe") == "xmrig"
        assert SuspiciousProcessPatterns.known_malware_keyword("notepad.exe") is None

    def test_suspicious_spawn(self):
        assert SuspiciousProcessPatterns.is_suspicious_spawn("WINWORD.EXE", "powershell.exe")
        assert not SuspiciousProcessPatterns.is_suspicious_spawn("explorer.exe", "notepad.exe")

    def test_suspicious_location_normalizes_separators(self):
        assert SuspiciousProcessPatterns.is_suspicious_location(
            "C:\\Users\\Public\\run.exe")
        assert not SuspiciousProcessPatterns.is_suspicious_location(
            "C:\\Program Files\\App\\app.exe")


class TestAnalyze:
    def test_known_malware_is_critical(self):
        monitor, events = _monitor()
        event = monitor.analyze(ProcessInfo(pid=42, name="xmrig.exe", exe="/opt/xmrig.exe"))
        assert event.event_type == SecurityEventType.KNOWN_MALWARE_PROCESS
        assert event.severity == ThreatLevel.CRITICAL
        assert event.process_id == 42
        assert event.subject_path == "/opt/xmrig.exe"
        assert events == [event]

    def test_clean_process_yields_nothing(self):
        monitor, events = _monitor()
        assert monitor.analyze(ProcessInfo(pid=42, name="notepad.exe")) is None
        assert events == []

    def test_remote_access_tool_is_suspicious_not_malware(self):
        monitor, _ = _monitor()
        event = monitor.analyze(ProcessInfo(pid=7, name="AnyDesk.exe"))
        assert event.event_type == SecurityEventType.SUSPICIOUS_PROCESS
        assert event.severity == ThreatLevel.HIGH
        assert "Remote access tool" in event.description

    def test_suspicious_command_line(self):
        monitor, _ = _monitor()
        info = ProcessInfo(pid=7, name="powershell.exe",
                           cmdline="powershell.exe -enc SQBFAFgA")
        event = monitor.analyze(info)
        assert "Suspicious command line" in event.description

    def test_office_spawning_shell(self, _no_parent_lookup):
        _no_parent_lookup.return_value = "WINWORD.EXE"
        monitor, _ = _monitor()
        event = monitor.analyze(ProcessInfo(pid=7, name="cmd.exe", ppid=3))
        assert "Suspicious spawn: WINWORD.EXE -> cmd.exe" in event.description

    def test_running_from_temp(self, tmp_path):
        monitor, _ = _monitor(temp_paths=[str(tmp_path)])
        event = monitor.analyze(ProcessInfo(pid=7, name="svc.exe", exe=str(tmp_path / "svc.exe")))
        assert event.event_type == SecurityEventType.PROCESS_FROM_TEMP

    def test_unsigned_in_suspicious_location(self):
        monitor, _ = _monitor(signature_checker=UnsignedChecker())
        event = monitor.analyze(ProcessInfo(pid=7, name="upd.exe", exe="C:\\ProgramData\\upd.exe"))
        assert event.event_type == SecurityEventType.UNSIGNED_PROCESS

    def test_unknown_signature_is_not_reported(self):
        monitor, _ = _monitor()
        assert monitor.analyze(ProcessInfo(pid=7, name="upd.exe", exe="C:\\ProgramData\\upd.exe")) is None

    def test_high_cpu(self, _no_cpu_sampling):
        _no_cpu_sampling.return_value = 97.0
        monitor, _ = _monitor()
        event = monitor.analyze(ProcessInfo(pid=7, name="worker"))
        assert event.event_type == SecurityEventType.CRYPTO_MINING
        assert "97%" in event.description

    def test_system_process_cpu_is_not_sampled(self, _no_cpu_sampling):
        _no_cpu_sampling.return_value = 99.0
        monitor, _ = _monitor()
        assert monitor.analyze(ProcessInfo(pid=7, name="svchost.exe")) is None
        _no_cpu_sampling.assert_not_called()

    def test_repeated_activity_escalates(self):
        monitor, _ = _monitor()
        info = ProcessInfo(pid=7, name="anydesk.exe")
        severities = [monitor.analyze(info).severity for _ in range(4)]
        assert severities == [ThreatLevel.HIGH] * 3 + [ThreatLevel.CRITICAL]
        assert monitor.activity_counts() == {"anydesk.exe": 4}

    def test_detection_is_audited(self, _isolate_audit_logs):
        monitor, _ = _monitor()
        monitor.analyze(ProcessInfo(pid=42, name="xmrig.exe"))
        assert "process.suspicious" in _isolate_audit_logs.log_file.read_text(encoding="utf-8")


# ===================================================================
# Passes
# ===================================================================

class TestRunPass:
    def test_pass_reports_and_rate_limits(self):
        procs = [FakeProcess(10, "xmrig.exe"), FakeProcess(11, "notepad.exe")]
        monitor, events = _monitor(procs)

        first = monitor.run_pass()
        second = monitor.run_pass()

        assert [e.process_id for e in first] == [10]
        assert second == []
        assert len(events) == 1
        monitor.close()

    def test_skips_idle_and_own_process(self):
        procs = [FakeProcess(0, "xmrig idle"), FakeProcess(os.getpid(), "xmrig-self")]
        monitor, _ = _monitor(procs)
        assert monitor.run_pass() == []
        monitor.close()

    def test_max_processes_cap(self):
        procs = [FakeProcess(100 + i, f"xmrig{i}") for i in range(10)]
        monitor, _ = _monitor(procs, max_processes=3)
        assert len(monitor.run_pass()) == 3
        monitor.close()

    def test_pass_timeout_abandons_work(self, _no_cpu_sampling, caplog):
        def slow_sample(pid, deadline):
            time.sleep(0.5)
            return 0.0

        _no_cpu_sampling.side_effect = slow_sample
        procs = [FakeProcess(100 + i, f"proc{i}") for i in range(3)]
        monitor, _ = _monitor(procs, worker_count=1, pass_timeout=0.1)

        with caplog.at_level(logging.WARNING, logger="filkollen.guardian.process_monitor"):
            assert monitor.run_pass() == []

        assert monitor.skipped_count >= 1
        assert "some processes were skipped" in caplog.text
        monitor.close()

    def test_hung_step_is_abandoned_at_its_own_deadline(self):
        release = threading.Event()

        class HangingChecker(SignatureChecker):
            def is_signed(self, path):
                release.wait(5)
                return False

        procs = [FakeProcess(100 + i, f"upd{i}.exe", exe=f"C:\\ProgramData\\upd{i}.exe")
                 for i in range(2)]
        procs.append(FakeProcess(200, "xmrig.exe"))
        monitor, _ = _monitor(procs, worker_count=1, analysis_timeout=0.2, pass_timeout=10,
                              signature_checker=HangingChecker())

        started = time.monotonic()
        try:
            events = monitor.run_pass()
            elapsed = time.monotonic() - started
        finally:
            release.set()
            monitor.close()

        # Both hung analyses gave up after 0.2s each; the single worker was
        # then free for the last process
        assert elapsed < 3
        assert [e.process_id for e in events] == [200]
        assert monitor.skipped_count == 0

    def test_per_process_deadline(self):
        procs = [FakeProcess(100, "powershell.exe", cmdline=["powershell.exe", "-enc", "AAAA"])]
        monitor, events = _monitor(procs, analysis_timeout=0)
        assert monitor.run_pass() == []
        assert events == []
        monitor.close()

    def test_cancelled_token_stops_enumeration(self):
        token = CancellationToken()
        token.cancel()
        monitor, _ = _monitor([FakeProcess(10, "xmrig.exe")], token=token)
        assert monitor.run_pass() == []

    def test_vanished_processes_are_skipped(self):
        class Vanishing:
            @property
            def info(self):
                raise psutil.NoSuchProcess(99)

        monitor, _ = _monitor([Vanishing(), FakeProcess(10, "xmrig.exe")])
        assert len(monitor.run_pass()) == 1
        monitor.close()


# ===================================================================
# Remediation
# ===================================================================

class TestKillProcess:
    def test_terminate(self):
        proc = MagicMock()
        proc.name.return_value = "xmrig.exe"
        with patch("filkollen.guardian.process_monitor.psutil.Process", return_value=proc):
            monitor, _ = _monitor()
            assert monitor.kill_process(42) is True
        proc.terminate.assert_called_once()
        proc.kill.assert_not_called()

    def test_kill_after_timeout(self):
        proc = MagicMock()
        proc.wait.side_effect = [psutil.TimeoutExpired(3), None]
        with patch("filkollen.guardian.process_monitor.psutil.Process", return_value=proc):
            monitor, _ = _monitor()
            assert monitor.kill_process(42) is True
        proc.kill.assert_called_once()

    def test_already_gone(self):
        with patch("filkollen.guardian.process_monitor.psutil.Process",
                   side_effect=psutil.NoSuchProcess(42)):
            monitor, _ = _monitor()
            assert monitor.kill_process(42) is True

    def test_access_denied(self):
        proc = MagicMock()
        proc.terminate.side_effect = psutil.AccessDenied(42)
        with patch("filkollen.guardian.process_monitor.psutil.Process", return_value=proc):
            monitor, _ = _monitor()
            assert monitor.kill_process(42) is False
