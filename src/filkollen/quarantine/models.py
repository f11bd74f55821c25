"""
Quarantine Store Data Models
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from ..guardian.models import ThreatLevel


class ErrorCode(str, Enum):
    """Expected failure modes, reported in OperationResult rather than raised."""
    NOT_FOUND = "not_found"
    COPY_FAILED = "copy_failed"
    VERIFICATION_FAILED = "verification_failed"
    LEDGER_CORRUPT = "ledger_corrupt"
    LEDGER_WRITE_FAILED = "ledger_write_failed"
    DELETE_FAILED = "delete_failed"
    ALREADY_QUARANTINED = "already_quarantined"
    INVALID_ARGUMENT = "invalid_argument"


@dataclass
class QuarantineItem:
    """One ledger entry. Replaced as a whole, never edited in place."""
    id: str
    original_path: str
    quarantined_path: str
    reason: str
    threat_level: ThreatLevel
    quarantined_at: datetime
    file_size: int = 0
    content_hash: Optional[str] = None

    @property
    def file_name(self) -> str:
        return self.original_path.replace("\\", "/").rsplit("/", 1)[-1]

    def age_days(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.quarantined_at).total_seconds() / 86400

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "original_path": self.original_path,
            "quarantined_path": self.quarantined_path,
            "reason": self.reason,
            "threat_level": self.threat_level.name,
            "quarantined_at": self.quarantined_at.isoformat(),
            "file_size": self.file_size,
            "content_hash": self.content_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuarantineItem":
        quarantined_at = datetime.fromisoformat(data["quarantined_at"])
        if quarantined_at.tzinfo is None:
            quarantined_at = quarantined_at.replace(tzinfo=timezone.utc)
        return cls(
            id=data["id"],
            original_path=data["original_path"],
            quarantined_path=data["quarantined_path"],
            reason=data.get("reason", ""),
            threat_level=ThreatLevel.from_string(data.get("threat_level", "MEDIUM")),
            quarantined_at=quarantined_at,
            file_size=int(data.get("file_size", 0)),
            content_hash=data.get("content_hash"),
        )


@dataclass
class OperationResult:
    """Outcome of a store operation. Truthy iff it succeeded."""
    success: bool
    quarantine_id: Optional[str] = None
    quarantined_path: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    message: str = ""
    already_quarantined: bool = False

    def __bool__(self) -> bool:
        return self.success

    @classmethod
    def ok(cls, quarantine_id: Optional[str] = None, quarantined_path: Optional[str] = None,
           message: str = "", already_quarantined: bool = False) -> "OperationResult":
        return cls(True, quarantine_id, quarantined_path, None, message, already_quarantined)

    @classmethod
    def fail(cls, error_code: ErrorCode, message: str) -> "OperationResult":
        return cls(False, error_code=error_code, message=message)


@dataclass
class QuarantineStats:
    total_files: int = 0
    total_size_bytes: int = 0
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None
