# FilKollen - Host Threat Detection and Quarantine Agent
#
# Inspects files on disk and running processes for indicators of
# compromise, assigns a severity and moves confirmed threats into a
# transactional, reversible quarantine.

__version__ = "2.0.0"
__description__ = "Host threat detection and quarantine agent"

from .core import EventSeverity, EventType, ProtectionConfig, get_audit_logger, load_config
from .guardian import ScanResult, SecurityEvent, ThreatClassifier, ThreatLevel
from .protection import ProtectionOrchestrator
from .quarantine import OperationResult, QuarantineItem, QuarantineStore

__all__ = [
    "__version__",
    "EventSeverity",
    "EventType",
    "ProtectionConfig",
    "get_audit_logger",
    "load_config",
    "ScanResult",
    "SecurityEvent",
    "ThreatClassifier",
    "ThreatLevel",
    "ProtectionOrchestrator",
    "OperationResult",
    "QuarantineItem",
    "QuarantineStore",
]
