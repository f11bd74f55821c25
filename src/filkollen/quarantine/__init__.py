# Quarantine - Transactional Threat Store
#
# Copy-verify-delete quarantine with an atomically replaced ledger,
# secure erase and retention cleanup.

from .exceptions import (
    CopyFailed,
    DeleteFailed,
    ItemNotFound,
    LedgerCorrupt,
    LedgerWriteFailed,
    QuarantineError,
    SourceNotFound,
    TransientIOError,
    VerificationFailed,
)
from .ledger import Ledger
from .models import ErrorCode, OperationResult, QuarantineItem, QuarantineStats
from .wipe import secure_delete
from .store import QuarantineStore

__all__ = [
    "CopyFailed",
    "DeleteFailed",
    "ItemNotFound",
    "LedgerCorrupt",
    "LedgerWriteFailed",
    "QuarantineError",
    "SourceNotFound",
    "TransientIOError",
    "VerificationFailed",
    "Ledger",
    "ErrorCode",
    "OperationResult",
    "QuarantineItem",
    "QuarantineStats",
    "secure_delete",
    "QuarantineStore",
]
