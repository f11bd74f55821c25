# Core - Audit Logging
#
# Append-only audit trail for every security-relevant decision the agent
# makes: threats detected, files quarantined/restored/erased, protection
# started/stopped, alerts raised, ledger resets.
#
# Records are structured JSON (structlog) written to a daily file so they
# can be replayed for forensics independently of the operational log.

import logging
import os
import socket
import sys
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog

from .log_throttle import get_log_throttler


class EventType(str, Enum):
    """Types of security events recorded in the audit trail."""

    # Detection
    FILE_THREAT = "file.threat"
    FILE_CREATED = "file.created"
    FILE_MODIFIED = "file.modified"
    FILE_RENAMED = "file.renamed"

    # Remediation
    FILE_QUARANTINED = "file.quarantined"
    FILE_RESTORED = "file.restored"
    FILE_ERASED = "file.erased"
    QUARANTINE_FAILED = "quarantine.failed"
    QUARANTINE_EXPIRED = "quarantine.expired"
    LEDGER_RESET = "quarantine.ledger_reset"

    # Processes
    PROCESS_SUSPICIOUS = "process.suspicious"
    PROCESS_KILLED = "process.killed"

    # Alerts / system
    SECURITY_ALERT = "security.alert"
    SYSTEM_START = "system.start"
    SYSTEM_STOP = "system.stop"
    SETTINGS_CHANGED = "settings.changed"


class EventSeverity(str, Enum):
    """
    Severity of an audit record.

    - INFO: normal activity, logged only
    - INVESTIGATE: something unusual is being looked at
    - ALERT: the agent took an action (quarantine, termination)
    - CRITICAL: human attention required
    """
    INFO = "info"
    INVESTIGATE = "investigate"
    ALERT = "alert"
    CRITICAL = "critical"


class AuditLogger:
    """
    Append-only audit logger for security events.

    Features:
    - Structured JSON records (structlog)
    - Automatic event id and UTC timestamp
    - Host/user context on every record
    - Throttling of repeated non-critical messages
    """

    def __init__(self, log_dir: Optional[Path] = None):
        """
        Initialize audit logger.

        Args:
            log_dir: Directory for audit logs (default: ./audit_logs)
        """
        self.log_dir = Path(log_dir) if log_dir else Path("./audit_logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)

        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer()
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        self._file_handler = self._setup_file_handler()
        self.logger = structlog.get_logger("filkollen.audit")

    def _setup_file_handler(self) -> logging.Handler:
        """Attach a daily audit file to the dedicated audit logger."""
        today = datetime.now().strftime("%Y-%m-%d")
        log_file = self.log_dir / f"audit_{today}.log"

        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter('%(message)s'))

        audit_logger = logging.getLogger("filkollen.audit")
        audit_logger.addHandler(file_handler)
        audit_logger.setLevel(logging.INFO)
        return file_handler

    @property
    def log_file(self) -> Path:
        return Path(self._file_handler.baseFilename)

    def close(self) -> None:
        """Detach and close the audit file handler."""
        logging.getLogger("filkollen.audit").removeHandler(self._file_handler)
        self._file_handler.close()

    def log_event(
        self,
        event_type: EventType,
        severity: EventSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        source: str = "system",
    ) -> str:
        """
        Record a security event.

        Args:
            event_type: Type of event
            severity: Severity level
            message: Human-readable description
            details: Additional structured details
            source: Logical source used as the throttling key

        Returns:
            str: Event ID (UUID) for reference
        """
        event_id = str(uuid4())

        should_log, summary_msg = get_log_throttler().should_log(
            agent_id=source,
            message=message,
            severity=severity.value,
        )
        if not should_log:
            if summary_msg:
                self.logger.info("throttle_summary", message=summary_msg)
            return event_id

        event_data = {
            "event_id": event_id,
            "event_type": event_type.value,
            "severity": severity.value,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "details": details or {},
            "context": self._get_default_context(),
        }
        if summary_msg:
            event_data["throttle_note"] = summary_msg

        self.logger.info("security_event", **event_data)
        return event_id

    def log_guardian_event(
        self,
        event_type: EventType,
        target: str,
        action: Optional[str] = None,
        severity: EventSeverity = EventSeverity.INFO,
        details: Optional[Dict[str, Any]] = None,
        source: str = "guardian",
    ) -> str:
        """
        Record a detection or remediation event about a file or process.

        Args:
            event_type: Type of event
            target: File path or process description
            action: Action taken (if any)
            severity: Event severity
            details: Additional details

        Returns:
            str: Event ID
        """
        message = f"Guardian: {event_type.value} - {target}"
        if action:
            message += f" (action: {action})"

        event_details = dict(details or {})
        event_details["target"] = target
        if action:
            event_details["action"] = action

        return self.log_event(
            event_type=event_type,
            severity=severity,
            message=message,
            details=event_details,
            source=source,
        )

    def _get_default_context(self) -> Dict[str, Any]:
        return {
            "os_user": os.getenv("USERNAME") or os.getenv("USER"),
            "hostname": socket.gethostname(),
            "platform": sys.platform,
        }


# Global logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get global audit logger (singleton pattern)."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def set_audit_logger(instance: Optional[AuditLogger]) -> None:
    """Replace the singleton (configuration and tests)."""
    global _audit_logger
    _audit_logger = instance
