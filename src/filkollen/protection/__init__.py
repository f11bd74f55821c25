# Protection - Orchestration
#
# Runtime mode, aggregate statistics and push notifications on top of the
# detection loop and the quarantine store.

from .notifications import (
    NotificationHub,
    ProtectionStatusChanged,
    SecurityAlert,
    ThreatDetected,
)
from .orchestrator import ProtectionOrchestrator, ProtectionState

__all__ = [
    "NotificationHub",
    "ProtectionStatusChanged",
    "SecurityAlert",
    "ThreatDetected",
    "ProtectionOrchestrator",
    "ProtectionState",
]
