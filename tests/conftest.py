"""
Shared pytest fixtures for the FilKollen test suite.

Autouse fixtures below isolate tests from the live agent data:
  - Audit logger  -> temp directory  (prevents test events in the audit trail)
  - Log throttler -> reset per test  (suppression state never leaks between tests)
"""

import time
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _isolate_audit_logs(tmp_path_factory):
    """Point the global AuditLogger at a temp directory for every test."""
    import filkollen.core.audit_log as audit_mod

    old_logger = audit_mod._audit_logger
    audit_logger = audit_mod.AuditLogger(log_dir=tmp_path_factory.mktemp("audit_logs"))
    audit_mod.set_audit_logger(audit_logger)

    yield audit_logger

    audit_logger.close()
    audit_mod.set_audit_logger(old_logger)


@pytest.fixture(autouse=True)
def _reset_log_throttler():
    from filkollen.core.log_throttle import get_log_throttler

    get_log_throttler().reset()
    yield
    get_log_throttler().reset()


@pytest.fixture
def temp_dir(tmp_path) -> Path:
    """A directory the classifier treats as a temp path."""
    path = tmp_path / "temp"
    path.mkdir()
    return path


@pytest.fixture
def rules(temp_dir):
    """Default rule tables, ``temp_dir`` as the only temp path, freshness off."""
    from filkollen.guardian.classifier import RuleConfig

    return RuleConfig(temp_paths=(str(temp_dir),), fresh_window_seconds=0)


def write_file(directory: Path, name: str, content: bytes = b"data") -> Path:
    path = directory / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def scan_dir(tmp_path) -> Path:
    """A directory the monitor scans and watches."""
    path = tmp_path / "downloads"
    path.mkdir()
    return path


@pytest.fixture
def config(tmp_path, scan_dir, temp_dir):
    """ProtectionConfig confined to tmp_path with fast timers."""
    from filkollen.core.config import ProtectionConfig

    return ProtectionConfig(
        scan_paths=[str(scan_dir)],
        temp_paths=[str(temp_dir)],
        quarantine_dir=str(tmp_path / "quarantine"),
        audit_log_dir=str(tmp_path / "audit_logs"),
        fresh_window_seconds=0,
        copy_backoff_seconds=0,
        scan_interval_seconds=3600,
        process_interval_seconds=0.05,
        event_batch_interval=0.02,
        watcher_settle_seconds=0.05,
        worker_count=2,
    )
