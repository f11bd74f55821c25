"""
Quarantine Store Exception Classes
"""


class QuarantineError(Exception):
    """Base exception for quarantine store operations"""
    pass


class TransientIOError(QuarantineError):
    """Raised when a locked or shared file defeats every retry"""
    pass


class SourceNotFound(QuarantineError):
    """Raised when the file to quarantine does not exist"""
    pass


class ItemNotFound(QuarantineError):
    """Raised when a quarantine id or its stored file is missing"""
    pass


class CopyFailed(QuarantineError):
    """Raised when the source cannot be copied into quarantine"""
    pass


class VerificationFailed(QuarantineError):
    """Raised when the quarantined copy does not match the source"""
    pass


class LedgerCorrupt(QuarantineError):
    """Raised when the ledger file cannot be parsed"""
    pass


class LedgerWriteFailed(QuarantineError):
    """Raised when the ledger cannot be atomically replaced"""
    pass


class DeleteFailed(QuarantineError):
    """Raised when a file could not be removed, even by plain delete"""
    pass
