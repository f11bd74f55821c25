# Protection - Orchestrator
#
# Top of the agent. Wires the Monitor's callbacks to the quarantine store,
# holds the runtime mode and aggregate statistics and publishes
# notifications to collaborators.
#
#   Stopped -> Starting -> Active -> Stopping -> Stopped
#
# Auto-clean mode: HIGH and CRITICAL file threats are quarantined as soon
# as they are detected. Without it, or when quarantine fails, the threat
# is only surfaced (ThreatDetected with was_auto_handled=False) so that a
# human can act on it.

import logging
import os
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from ..core.audit_log import EventSeverity, EventType, get_audit_logger
from ..core.cancellation import CancellationToken
from ..core.config import ProtectionConfig
from ..guardian.extensions import SystemHardening
from ..guardian.models import (
    ProtectionStats,
    ScanResult,
    SecurityEvent,
    SecurityEventType,
    ThreatLevel,
)
from ..guardian.monitor import Monitor
from ..quarantine.models import OperationResult
from ..quarantine.store import QuarantineStore
from .notifications import (
    NotificationHub,
    ProtectionStatusChanged,
    SecurityAlert,
    ThreatDetected,
)

logger = logging.getLogger(__name__)

AUTO_CLEAN_THRESHOLD = ThreatLevel.HIGH


class ProtectionState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"


class ProtectionOrchestrator:
    """
    Real-time protection service.

    Args:
        config: Agent configuration (defaults if omitted)
        store: Quarantine store (built from config if omitted)
        monitor: Detection loop (built from config if omitted)
        hub: Notification hub collaborators subscribe to
        hardening: Optional policy collaborator called after a confirmed
            auto-quarantine
    """

    def __init__(
        self,
        config: Optional[ProtectionConfig] = None,
        store: Optional[QuarantineStore] = None,
        monitor: Optional[Monitor] = None,
        hub: Optional[NotificationHub] = None,
        hardening: Optional[SystemHardening] = None,
    ):
        self.config = config or ProtectionConfig()
        self.store = store or QuarantineStore.from_config(self.config)
        self.monitor = monitor or Monitor(self.config)
        self.monitor.on_scan_result = self._on_scan_result
        self.monitor.on_alert = self._on_alert
        self.hub = hub or NotificationHub()
        self.hardening = hardening

        self._state = ProtectionState.STOPPED
        self._state_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._auto_clean_mode = self.config.auto_clean_mode
        self._total_threats_found = 0
        self._total_threats_handled = 0
        self._last_scan_time: Optional[datetime] = None
        self.audit_logger = get_audit_logger()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ProtectionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state == ProtectionState.ACTIVE

    @property
    def auto_clean_mode(self) -> bool:
        return self._auto_clean_mode

    def subscribe(self, kind: str, listener: Callable[[object], None]) -> None:
        """Shortcut for ``hub.subscribe``."""
        self.hub.subscribe(kind, listener)

    def start_protection(self) -> None:
        """Start the detection loop. Idempotent."""
        with self._state_lock:
            if self._state != ProtectionState.STOPPED:
                return
            self._state = ProtectionState.STARTING
            try:
                self.monitor.start()
            except Exception as exc:
                self._state = ProtectionState.STOPPED
                logger.error("Failed to start protection: %s", exc)
                self.audit_logger.log_event(
                    event_type=EventType.SYSTEM_START,
                    severity=EventSeverity.CRITICAL,
                    message=f"Real-time protection failed to start: {exc}",
                    source="orchestrator",
                )
                return
            self._state = ProtectionState.ACTIVE

        self.audit_logger.log_event(
            event_type=EventType.SYSTEM_START,
            severity=EventSeverity.INFO,
            message="Real-time protection started",
            details={
                "auto_clean_mode": self._auto_clean_mode,
                "monitored_paths": self.get_monitored_paths(),
            },
            source="orchestrator",
        )
        logger.info("Real-time protection active (auto-clean: %s)", self._auto_clean_mode)
        self.hub.publish(ProtectionStatusChanged(is_active=True, state=ProtectionState.ACTIVE.value))

    def stop_protection(self) -> None:
        """Stop the loop and flush pending events. Idempotent."""
        with self._state_lock:
            if self._state != ProtectionState.ACTIVE:
                return
            self._state = ProtectionState.STOPPING
            try:
                self.monitor.stop()
            except Exception as exc:
                logger.error("Error while stopping protection: %s", exc)
            finally:
                self._state = ProtectionState.STOPPED

        self.audit_logger.log_event(
            event_type=EventType.SYSTEM_STOP,
            severity=EventSeverity.INFO,
            message="Real-time protection stopped",
            source="orchestrator",
        )
        logger.info("Real-time protection stopped")
        self.hub.publish(ProtectionStatusChanged(is_active=False, state=ProtectionState.STOPPED.value))

    def __enter__(self) -> "ProtectionOrchestrator":
        self.start_protection()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop_protection()

    def set_auto_clean_mode(self, enabled: bool) -> None:
        if enabled == self._auto_clean_mode:
            return
        self._auto_clean_mode = enabled
        self.audit_logger.log_event(
            event_type=EventType.SETTINGS_CHANGED,
            severity=EventSeverity.INFO,
            message=f"Auto-clean mode {'enabled' if enabled else 'disabled'}",
            details={"auto_clean_mode": enabled},
            source="orchestrator",
        )
        logger.info("Auto-clean mode set to %s", enabled)

    def get_protection_stats(self) -> ProtectionStats:
        """Consistent point-in-time snapshot."""
        with self._stats_lock:
            last_scan = self._last_scan_time
            if self.monitor.last_scan_time and (last_scan is None or self.monitor.last_scan_time > last_scan):
                last_scan = self.monitor.last_scan_time
            return ProtectionStats(
                is_active=self.is_active,
                auto_clean_mode=self._auto_clean_mode,
                total_threats_found=self._total_threats_found,
                total_threats_handled=self._total_threats_handled,
                monitored_path_count=len(self.get_monitored_paths()),
                last_scan_time=last_scan,
            )

    def get_monitored_paths(self) -> List[str]:
        return self.monitor.get_monitored_paths()

    def recent_events(self, limit: Optional[int] = None) -> List[SecurityEvent]:
        return self.monitor.recent_events(limit)

    # ------------------------------------------------------------------
    # Detection callbacks
    # ------------------------------------------------------------------

    def _on_scan_result(self, result: ScanResult) -> None:
        """Called by the Monitor for every actionable file result."""
        if not os.path.exists(result.path):
            # Already remediated through the other detection path
            return

        outcome = None
        if self._auto_clean_mode and result.threat_level >= AUTO_CLEAN_THRESHOLD:
            outcome = self.store.quarantine(result.path, result.reason, result.threat_level)
            if outcome.already_quarantined:
                # An earlier detection already moved this file away
                logger.debug("%s was already quarantined as %s", result.path, outcome.quarantine_id)
                return

        with self._stats_lock:
            self._total_threats_found += 1

        self.audit_logger.log_guardian_event(
            event_type=EventType.FILE_THREAT,
            target=result.path,
            severity=EventSeverity.ALERT if result.threat_level >= ThreatLevel.HIGH
            else EventSeverity.INVESTIGATE,
            details=result.to_dict(),
            source="orchestrator",
        )

        handled = False
        quarantine_id = None
        if outcome is not None:
            if outcome:
                handled = True
                quarantine_id = outcome.quarantine_id
                self._record_handled()
                self._apply_hardening()
            else:
                logger.warning("Auto-quarantine of %s failed: %s", result.path, outcome.message)

        self.hub.publish(ThreatDetected(
            scan_result=result, was_auto_handled=handled, quarantine_id=quarantine_id,
        ))

    def _on_alert(self, event: SecurityEvent) -> None:
        """Called from the event drain for HIGH+ events, once per subject."""
        self.audit_logger.log_event(
            event_type=EventType.SECURITY_ALERT,
            severity=EventSeverity.CRITICAL if event.severity == ThreatLevel.CRITICAL
            else EventSeverity.ALERT,
            message=event.description,
            details=event.to_dict(),
            source="orchestrator",
        )
        if event.event_type != SecurityEventType.FILE_THREAT:
            with self._stats_lock:
                self._total_threats_found += 1
            self._maybe_remediate_process(event)
        self.hub.publish(SecurityAlert(event=event))

    def _maybe_remediate_process(self, event: SecurityEvent) -> None:
        if not (self._auto_clean_mode and self.config.terminate_malicious_processes):
            return
        if event.event_type != SecurityEventType.KNOWN_MALWARE_PROCESS or event.process_id is None:
            return

        killed = self.monitor.kill_process(event.process_id, event.description)
        if event.subject_path and os.path.isfile(event.subject_path):
            outcome = self.store.quarantine(
                event.subject_path,
                f"Automatic quarantine - {event.event_type.value}",
                event.severity,
            )
            if not outcome:
                logger.warning("Could not quarantine %s: %s", event.subject_path, outcome.message)
        if killed:
            self._record_handled()

    def _record_handled(self) -> None:
        with self._stats_lock:
            self._total_threats_handled += 1

    def _apply_hardening(self) -> None:
        if self.hardening is None:
            return
        try:
            result = self.hardening.apply_system_hardening()
        except Exception as exc:
            logger.warning("System hardening failed: %s", exc)
            return
        if not result.success:
            logger.warning("System hardening reported failure: %s", result.message)

    # ------------------------------------------------------------------
    # Manual operations
    # ------------------------------------------------------------------

    def scan_now(self, paths: Optional[List[str]] = None) -> List[ScanResult]:
        """Synchronous manual scan; results are returned, not remediated."""
        results = self.monitor.scan_now(paths)
        with self._stats_lock:
            self._last_scan_time = datetime.now(timezone.utc)
        return results

    def trigger_manual_scan(self) -> List[ScanResult]:
        """Run a full pass now through the normal pipeline (auto-clean applies)."""
        results = self.monitor.run_scan_pass(token=None if self.is_active else CancellationToken())
        with self._stats_lock:
            self._last_scan_time = datetime.now(timezone.utc)
        return results

    def quarantine(self, path: str, reason: str,
                   threat_level: ThreatLevel = ThreatLevel.HIGH) -> OperationResult:
        result = self.store.quarantine(path, reason, threat_level)
        if result and not result.already_quarantined:
            self._record_handled()
        return result

    def restore(self, quarantine_id: str) -> OperationResult:
        return self.store.restore(quarantine_id)

    def delete_quarantined(self, quarantine_id: str) -> OperationResult:
        return self.store.delete_quarantined(quarantine_id)

    def cleanup_expired(self, retention_days: Optional[int] = None) -> int:
        return self.store.cleanup_expired(retention_days)
