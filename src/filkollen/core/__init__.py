# Core Module - Shared Utilities
#
# Core provides functionality shared by every part of the agent:
# - Audit logging (structlog) and log throttling
# - Configuration loading
# - Cooperative cancellation

from .audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    get_audit_logger,
    set_audit_logger,
)
from .cancellation import (
    AnalysisCancelled,
    AnalysisTimeout,
    CancellationToken,
    Deadline,
)
from .config import ConfigError, ProtectionConfig, load_config, save_config
from .log_throttle import LogThrottler, get_log_throttler

__all__ = [
    # Audit Logging
    "AuditLogger",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
    "set_audit_logger",
    "LogThrottler",
    "get_log_throttler",
    # Configuration
    "ConfigError",
    "ProtectionConfig",
    "load_config",
    "save_config",
    # Cancellation
    "AnalysisCancelled",
    "AnalysisTimeout",
    "CancellationToken",
    "Deadline",
]
