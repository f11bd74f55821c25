# Protection - Notifications
#
# Push notifications for collaborators (UI, tray, scheduler). Values are
# immutable and delivered synchronously on the publishing thread; a
# collaborator that owns a UI thread marshals to it itself.

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, ClassVar, Dict, List, Optional

from ..guardian.models import ScanResult, SecurityEvent

logger = logging.getLogger(__name__)

ALL = "*"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ProtectionStatusChanged:
    kind: ClassVar[str] = "protection_status_changed"
    is_active: bool
    state: str = ""
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class ThreatDetected:
    kind: ClassVar[str] = "threat_detected"
    scan_result: ScanResult
    was_auto_handled: bool
    quarantine_id: Optional[str] = None
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class SecurityAlert:
    kind: ClassVar[str] = "security_alert"
    event: SecurityEvent
    timestamp: datetime = field(default_factory=_now)


Listener = Callable[[object], None]


class NotificationHub:
    """Observer registry keyed by notification kind (or ``"*"`` for all)."""

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}
        self._lock = threading.Lock()

    def subscribe(self, kind: str, listener: Listener) -> None:
        """Subscribe to one notification kind, or ``"*"`` for every kind."""
        with self._lock:
            self._listeners.setdefault(kind, []).append(listener)

    def unsubscribe(self, kind: str, listener: Listener) -> None:
        with self._lock:
            listeners = self._listeners.get(kind, [])
            if listener in listeners:
                listeners.remove(listener)

    def publish(self, notification) -> int:
        """Deliver to matching listeners. Returns how many were called.

        A failing listener is logged and does not stop delivery to the rest.
        """
        with self._lock:
            listeners = list(self._listeners.get(notification.kind, []))
            listeners += self._listeners.get(ALL, [])
        for listener in listeners:
            try:
                listener(notification)
            except Exception as exc:
                logger.error("Notification listener failed for %s: %s", notification.kind, exc)
        return len(listeners)
