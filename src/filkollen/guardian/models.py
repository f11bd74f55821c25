# Guardian - Detection Data Model
#
# Value types shared by the classifier, the monitor and the orchestrator.
# Everything produced by a scan pass is immutable: a ScanResult or a
# SecurityEvent is created once and handed downstream as-is.

import os
import stat as stat_mod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, Optional, Tuple

MAGIC_BYTES_LEN = 4


class ThreatLevel(IntEnum):
    """Ordered severity: LOW < MEDIUM < HIGH < CRITICAL."""
    LOW = 0
    MEDIUM = 1
    HIGH = 2
    CRITICAL = 3

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @property
    def is_actionable(self) -> bool:
        """Only MEDIUM and above are acted upon."""
        return self >= ThreatLevel.MEDIUM

    def escalate(self) -> "ThreatLevel":
        """One step up, capped at CRITICAL."""
        return ThreatLevel(min(self + 1, ThreatLevel.CRITICAL))

    @classmethod
    def from_string(cls, value: Any) -> "ThreatLevel":
        """Accept a level name (any case) or its integer value."""
        if isinstance(value, ThreatLevel):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(value)
        if not isinstance(value, str):
            raise TypeError(f"not a threat level: {value!r}")
        text = value.strip()
        if text.isdigit():
            return cls(int(text))
        return cls[text.upper()]

    def __str__(self) -> str:
        return self.label


class SecurityEventType(str, Enum):
    """What a SecurityEvent is about."""
    FILE_THREAT = "file_threat"
    KNOWN_MALWARE_PROCESS = "known_malware_process"
    SUSPICIOUS_PROCESS = "suspicious_process"
    PROCESS_FROM_TEMP = "process_running_from_temp"
    UNSIGNED_PROCESS = "unsigned_process_suspicious_location"
    CRYPTO_MINING = "crypto_mining_detected"
    NETWORK_ANOMALY = "network_anomaly"
    REGISTRY_CHANGE = "registry_change"


def format_file_size(size: int) -> str:
    """Human readable size: 0 B, 1.5 KB, 12 MB, 3.02 GB."""
    units = ["B", "KB", "MB", "GB"]
    value = float(size)
    order = 0
    while value >= 1024 and order < len(units) - 1:
        order += 1
        value /= 1024
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {units[order]}"


def _birth_time(st: os.stat_result) -> float:
    return getattr(st, "st_birthtime", None) or st.st_ctime


@dataclass(frozen=True)
class ScanTarget:
    """Metadata snapshot of one file, taken per scan pass."""

    path: str
    size: int
    created_at: float
    modified_at: float
    extension: str
    magic: bytes = b""

    @property
    def file_name(self) -> str:
        return os.path.basename(self.path)

    @classmethod
    def from_path(cls, path: str) -> "ScanTarget":
        """Stat the file and read its first bytes.

        Raises:
            OSError: the file vanished or cannot be read
        """
        st = os.stat(path)
        if not stat_mod.S_ISREG(st.st_mode):
            raise IsADirectoryError(path)
        magic = b""
        if st.st_size > 0:
            with open(path, "rb") as fh:
                magic = fh.read(MAGIC_BYTES_LEN)
        return cls(
            path=path,
            size=st.st_size,
            created_at=_birth_time(st),
            modified_at=st.st_mtime,
            extension=os.path.splitext(path)[1].lower(),
            magic=magic,
        )


@dataclass(frozen=True)
class ScanResult:
    """A classified file. Never created for files with no rule hits."""

    path: str
    size: int
    created_at: datetime
    modified_at: datetime
    extension: str
    threat_level: ThreatLevel
    reasons: Tuple[str, ...]
    content_hash: Optional[str] = None

    @property
    def reason(self) -> str:
        return ", ".join(self.reasons)

    @property
    def file_name(self) -> str:
        return os.path.basename(self.path)

    @property
    def formatted_size(self) -> str:
        return format_file_size(self.size)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "file_name": self.file_name,
            "size": self.size,
            "created_at": self.created_at.isoformat(),
            "modified_at": self.modified_at.isoformat(),
            "extension": self.extension,
            "threat_level": self.threat_level.label,
            "reasons": list(self.reasons),
            "content_hash": self.content_hash,
        }


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SecurityEvent:
    """A detection travelling through the event pipeline."""

    event_type: SecurityEventType
    severity: ThreatLevel
    description: str
    subject_path: Optional[str] = None
    subject_process: Optional[str] = None
    process_id: Optional[int] = None
    scan_result: Optional[ScanResult] = None
    timestamp: datetime = field(default_factory=_now)

    @property
    def dedup_key(self) -> str:
        """Key under which repeated alerts for the same subject collapse."""
        subject = self.subject_path or self.subject_process or self.description
        return f"{self.event_type.value}:{subject}".lower()

    @classmethod
    def from_scan_result(cls, result: ScanResult) -> "SecurityEvent":
        return cls(
            event_type=SecurityEventType.FILE_THREAT,
            severity=result.threat_level,
            description=f"{result.file_name}: {result.reason}",
            subject_path=result.path,
            scan_result=result,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "severity": self.severity.label,
            "description": self.description,
            "subject_path": self.subject_path,
            "subject_process": self.subject_process,
            "process_id": self.process_id,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ProtectionStats:
    """Point-in-time snapshot of the orchestrator's counters."""

    is_active: bool = False
    auto_clean_mode: bool = False
    total_threats_found: int = 0
    total_threats_handled: int = 0
    monitored_path_count: int = 0
    last_scan_time: Optional[datetime] = None

    @property
    def threat_handling_rate(self) -> float:
        """Percentage of found threats that were remediated."""
        if self.total_threats_found == 0:
            return 0.0
        return self.total_threats_handled / self.total_threats_found * 100
