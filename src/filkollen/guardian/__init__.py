# Guardian - Detection
#
# Heuristic file classification, directory scans, filesystem watchers,
# process monitoring and the event pipeline they all feed.

from .classifier import RuleConfig, ThreatClassifier, classify, file_sha256
from .event_pipeline import EventPipeline, EventQueue
from .extensions import (
    HardeningResult,
    NetworkInspector,
    NullNetworkInspector,
    NullRegistryInspector,
    NullSignatureChecker,
    NullSystemHardening,
    RegistryInspector,
    SignatureChecker,
    SystemHardening,
)
from .file_monitor import FileMonitor
from .models import (
    ProtectionStats,
    ScanResult,
    ScanTarget,
    SecurityEvent,
    SecurityEventType,
    ThreatLevel,
    format_file_size,
)
from .monitor import Monitor
from .process_monitor import ProcessMonitor, ProcessRateLimiter, SuspiciousProcessPatterns
from .scanner import DirectoryScanner

__all__ = [
    "RuleConfig",
    "ThreatClassifier",
    "classify",
    "file_sha256",
    "EventPipeline",
    "EventQueue",
    "HardeningResult",
    "NetworkInspector",
    "NullNetworkInspector",
    "NullRegistryInspector",
    "NullSignatureChecker",
    "NullSystemHardening",
    "RegistryInspector",
    "SignatureChecker",
    "SystemHardening",
    "FileMonitor",
    "ProtectionStats",
    "ScanResult",
    "ScanTarget",
    "SecurityEvent",
    "SecurityEventType",
    "ThreatLevel",
    "format_file_size",
    "Monitor",
    "ProcessMonitor",
    "ProcessRateLimiter",
    "SuspiciousProcessPatterns",
    "DirectoryScanner",
]
