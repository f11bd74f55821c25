# Quarantine - Store
#
# Owns a private directory of copied threat files (named by opaque id)
# and the ledger describing them. Every mutating operation runs its whole
# pipeline under one lock (single writer):
#
#   quarantine: validate -> backup ledger -> copy (retried) -> verify
#               -> atomic ledger write -> secure delete source -> commit
#
# Any failure before the ledger write commits removes the partial copy
# and puts the pre-operation ledger backup back, so callers never observe
# partial state. After the ledger commits the operation cannot roll back:
# the source delete is retried like the copy, then logged, and the operation
# still succeeds (the next quarantine of the same path self-heals by retrying
# the delete).
#
# Public operations never raise for expected failures; they return an
# OperationResult carrying an ErrorCode.

import filecmp
import logging
import os
import shutil
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from ..core.audit_log import EventSeverity, EventType, get_audit_logger
from ..core.config import MB, ProtectionConfig
from ..guardian.classifier import file_sha256
from ..guardian.models import ThreatLevel
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

logger = logging.getLogger(__name__)

QUARANTINE_SUFFIX = ".quarantine"

_ERROR_CODES = {
    SourceNotFound: ErrorCode.NOT_FOUND,
    ItemNotFound: ErrorCode.NOT_FOUND,
    TransientIOError: ErrorCode.COPY_FAILED,
    CopyFailed: ErrorCode.COPY_FAILED,
    VerificationFailed: ErrorCode.VERIFICATION_FAILED,
    LedgerCorrupt: ErrorCode.LEDGER_CORRUPT,
    LedgerWriteFailed: ErrorCode.LEDGER_WRITE_FAILED,
    DeleteFailed: ErrorCode.DELETE_FAILED,
}


def _error_code(exc: QuarantineError) -> ErrorCode:
    for exc_type, code in _ERROR_CODES.items():
        if isinstance(exc, exc_type):
            return code
    return ErrorCode.COPY_FAILED


class QuarantineStore:
    """
    Transactional quarantine directory + ledger.

    Args:
        directory: Private quarantine directory (created if missing)
        retention_days: Default age limit for cleanup_expired()
        copy_attempts: Copy tries before giving up on a locked file
        copy_backoff: Base backoff in seconds (grows linearly per attempt)
        verify_byte_compare_cap: Files up to this size are compared byte
            for byte after copying; larger ones by size only
        secure_delete_passes: Random overwrite passes before unlinking
    """

    def __init__(
        self,
        directory,
        retention_days: int = 30,
        copy_attempts: int = 3,
        copy_backoff: float = 0.2,
        verify_byte_compare_cap: int = 10 * MB,
        secure_delete_passes: int = 3,
    ):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.ledger = Ledger(self.directory)
        self.retention_days = retention_days
        self.copy_attempts = max(1, copy_attempts)
        self.copy_backoff = copy_backoff
        self.verify_byte_compare_cap = verify_byte_compare_cap
        self.secure_delete_passes = secure_delete_passes
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, config: ProtectionConfig) -> "QuarantineStore":
        return cls(
            config.quarantine_dir,
            retention_days=config.retention_days,
            copy_attempts=config.copy_attempts,
            copy_backoff=config.copy_backoff_seconds,
            verify_byte_compare_cap=config.verify_byte_compare_cap,
            secure_delete_passes=config.secure_delete_passes,
        )

    # ------------------------------------------------------------------
    # Quarantine
    # ------------------------------------------------------------------

    def quarantine(
        self,
        path: str,
        reason: str,
        threat_level: ThreatLevel = ThreatLevel.HIGH,
    ) -> OperationResult:
        """Move a file into quarantine. Never raises for expected failures."""
        if not path:
            return OperationResult.fail(ErrorCode.INVALID_ARGUMENT, "No path given")

        source = os.path.abspath(path)
        with self._lock:
            try:
                result = self._quarantine_locked(source, reason, threat_level)
            except QuarantineError as exc:
                logger.warning("Quarantine of %s failed: %s", source, exc)
                self._audit_failure(source, reason, exc)
                return OperationResult.fail(_error_code(exc), str(exc))
        return result

    def _quarantine_locked(self, source: str, reason: str, threat_level: ThreatLevel) -> OperationResult:
        items = self.ledger.load()
        existing = self._find_by_original(items, source)

        if not os.path.isfile(source):
            # A second detection of a file another caller already moved away
            if existing is not None and os.path.isfile(existing.quarantined_path):
                logger.info("%s already quarantined as %s", source, existing.id)
                return OperationResult.ok(
                    existing.id, existing.quarantined_path, "Already quarantined",
                    already_quarantined=True,
                )
            raise SourceNotFound(f"File not found: {source}")

        if existing is not None and self._same_content(source, existing.quarantined_path):
            return self._finish_already_quarantined(source, existing)

        backup = self.ledger.backup()
        item_id = uuid.uuid4().hex
        dest = self.directory / f"{item_id}{QUARANTINE_SUFFIX}"

        try:
            self._copy_with_retry(source, dest)
            size = self._verify_copy(source, dest)
            content_hash = file_sha256(str(dest)) if size <= self.verify_byte_compare_cap else None
            items[item_id] = QuarantineItem(
                id=item_id,
                original_path=source,
                quarantined_path=str(dest),
                reason=reason,
                threat_level=ThreatLevel(threat_level),
                quarantined_at=datetime.now(timezone.utc),
                file_size=size,
                content_hash=content_hash,
            )
            self.ledger.save(items)
        except (QuarantineError, OSError) as exc:
            self._rollback(dest, backup)
            if isinstance(exc, QuarantineError):
                raise
            raise CopyFailed(f"Could not quarantine {source}: {exc}") from exc

        # Committed: from here on there is no rollback
        message = "Quarantined"
        try:
            self._delete_source(source)
        except DeleteFailed as exc:
            logger.warning("Quarantined %s but could not delete the original: %s", source, exc)
            message = "Quarantined; original could not be deleted and will be retried"
        self.ledger.discard_backup(backup)

        get_audit_logger().log_guardian_event(
            event_type=EventType.FILE_QUARANTINED,
            target=source,
            action="quarantined",
            severity=EventSeverity.ALERT,
            details={
                "quarantine_id": item_id,
                "reason": reason,
                "threat_level": ThreatLevel(threat_level).label,
                "size": size,
            },
            source="quarantine",
        )
        logger.info("Quarantined %s as %s", source, item_id)
        return OperationResult.ok(item_id, str(dest), message)

    def _finish_already_quarantined(self, source: str, item: QuarantineItem) -> OperationResult:
        """The ledger already holds this file; only the source delete was missing."""
        logger.info("%s already quarantined as %s, retrying source delete", source, item.id)
        try:
            self._delete_source(source)
        except DeleteFailed as exc:
            logger.warning("Original of %s still cannot be deleted: %s", item.id, exc)
        return OperationResult.ok(
            item.id, item.quarantined_path, "Already quarantined", already_quarantined=True,
        )

    def _delete_source(self, source: str) -> None:
        """secure_delete with the copy retry policy; raises the last DeleteFailed."""
        for attempt in range(1, self.copy_attempts + 1):
            try:
                secure_delete(source, self.secure_delete_passes)
                return
            except DeleteFailed as exc:
                if attempt == self.copy_attempts:
                    raise
                logger.debug("Delete attempt %d/%d of %s failed: %s",
                             attempt, self.copy_attempts, source, exc)
                time.sleep(self.copy_backoff * attempt)

    @staticmethod
    def _find_by_original(items: Dict[str, QuarantineItem], source: str) -> Optional[QuarantineItem]:
        key = os.path.normcase(source)
        for item in items.values():
            if os.path.normcase(item.original_path) == key:
                return item
        return None

    @staticmethod
    def _same_content(source: str, stored: str) -> bool:
        try:
            return filecmp.cmp(source, stored, shallow=False)
        except OSError:
            return False

    def _copy_with_retry(self, source: str, dest: Path) -> None:
        last_error: Optional[OSError] = None
        for attempt in range(1, self.copy_attempts + 1):
            try:
                shutil.copyfile(source, str(dest))
                return
            except FileNotFoundError as exc:
                self._remove_quietly(dest)
                raise SourceNotFound(f"File disappeared while copying: {source}") from exc
            except OSError as exc:
                last_error = exc
                self._remove_quietly(dest)
                logger.debug("Copy attempt %d/%d of %s failed: %s",
                             attempt, self.copy_attempts, source, exc)
                if attempt < self.copy_attempts:
                    time.sleep(self.copy_backoff * attempt)

        transient = TransientIOError(f"{source}: {last_error}")
        raise CopyFailed(
            f"Could not copy {source} after {self.copy_attempts} attempts: {last_error}"
        ) from transient

    def _verify_copy(self, source: str, dest: Path) -> int:
        """Size check always; byte comparison up to the cap. Returns the size."""
        source_size = os.path.getsize(source)
        dest_size = os.path.getsize(dest)
        if source_size != dest_size:
            raise VerificationFailed(
                f"Size mismatch for {source}: {source_size} != {dest_size}")
        if source_size <= self.verify_byte_compare_cap:
            if not filecmp.cmp(source, str(dest), shallow=False):
                raise VerificationFailed(f"Content mismatch for {source}")
        return source_size

    def _rollback(self, dest: Path, backup: Optional[Path]) -> None:
        self._remove_quietly(dest)
        try:
            self.ledger.restore_backup(backup)
        except OSError as exc:
            logger.error("Ledger rollback from %s failed: %s", backup, exc)

    @staticmethod
    def _remove_quietly(path: Path) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove partial copy %s: %s", path, exc)

    def _audit_failure(self, source: str, reason: str, exc: QuarantineError) -> None:
        get_audit_logger().log_event(
            event_type=EventType.QUARANTINE_FAILED,
            severity=EventSeverity.ALERT,
            message=f"Failed to quarantine {source}: {exc}",
            details={"path": source, "reason": reason, "error": type(exc).__name__},
            source="quarantine",
        )

    # ------------------------------------------------------------------
    # Restore / delete / cleanup
    # ------------------------------------------------------------------

    def restore(self, quarantine_id: str) -> OperationResult:
        """Put a quarantined file back at its original path."""
        with self._lock:
            try:
                return self._restore_locked(quarantine_id)
            except QuarantineError as exc:
                logger.warning("Restore of %s failed: %s", quarantine_id, exc)
                return OperationResult.fail(_error_code(exc), str(exc))

    def _restore_locked(self, quarantine_id: str) -> OperationResult:
        items = self.ledger.load()
        item = items.get(quarantine_id)
        if item is None:
            raise ItemNotFound(f"No quarantined item {quarantine_id}")
        if not os.path.isfile(item.quarantined_path):
            raise ItemNotFound(f"Quarantined file for {quarantine_id} is missing")

        backup = self.ledger.backup()
        original = item.original_path
        try:
            os.makedirs(os.path.dirname(original) or ".", exist_ok=True)
            shutil.copyfile(item.quarantined_path, original)
        except OSError as exc:
            self.ledger.discard_backup(backup)
            raise CopyFailed(f"Could not restore {quarantine_id} to {original}: {exc}") from exc

        del items[quarantine_id]
        try:
            self.ledger.save(items)
        except LedgerWriteFailed:
            # The quarantined copy is untouched; undo the restored file
            self._remove_quietly(Path(original))
            try:
                self.ledger.restore_backup(backup)
            except OSError as exc:
                logger.error("Ledger rollback from %s failed: %s", backup, exc)
            raise

        self._remove_quietly(Path(item.quarantined_path))
        self.ledger.discard_backup(backup)

        get_audit_logger().log_guardian_event(
            event_type=EventType.FILE_RESTORED,
            target=original,
            action="restored",
            severity=EventSeverity.INVESTIGATE,
            details={"quarantine_id": quarantine_id},
            source="quarantine",
        )
        logger.info("Restored %s to %s", quarantine_id, original)
        return OperationResult.ok(quarantine_id, message=f"Restored to {original}")

    def delete_quarantined(self, quarantine_id: str) -> OperationResult:
        """Erase a quarantined file for good and drop its ledger entry."""
        with self._lock:
            try:
                items = self.ledger.load()
                item = items.pop(quarantine_id, None)
                if item is None:
                    raise ItemNotFound(f"No quarantined item {quarantine_id}")
                self.ledger.save(items)
            except QuarantineError as exc:
                logger.warning("Delete of %s failed: %s", quarantine_id, exc)
                return OperationResult.fail(_error_code(exc), str(exc))

            message = "Deleted"
            if not self._erase(item):
                message = "Ledger entry removed; file could not be deleted"

        get_audit_logger().log_guardian_event(
            event_type=EventType.FILE_ERASED,
            target=item.original_path,
            action="erased",
            severity=EventSeverity.INFO,
            details={"quarantine_id": quarantine_id},
            source="quarantine",
        )
        return OperationResult.ok(quarantine_id, message=message)

    def _erase(self, item: QuarantineItem) -> bool:
        try:
            secure_delete(item.quarantined_path, self.secure_delete_passes)
            return True
        except DeleteFailed as exc:
            logger.warning("Could not erase quarantined file %s: %s", item.quarantined_path, exc)
            return False

    def cleanup_expired(self, retention_days: Optional[int] = None) -> int:
        """
        Erase items older than the retention window.

        Individual erase failures are logged and do not abort the batch.

        Returns:
            Number of ledger entries removed
        """
        days = self.retention_days if retention_days is None else retention_days
        now = datetime.now(timezone.utc)
        with self._lock:
            try:
                items = self.ledger.load()
                expired = [item for item in items.values() if item.age_days(now) > days]
                if not expired:
                    return 0
                remaining = {k: v for k, v in items.items() if v.age_days(now) <= days}
                self.ledger.save(remaining)
            except QuarantineError as exc:
                logger.warning("Quarantine cleanup failed: %s", exc)
                return 0

            for item in expired:
                self._erase(item)

        get_audit_logger().log_event(
            event_type=EventType.QUARANTINE_EXPIRED,
            severity=EventSeverity.INFO,
            message=f"Removed {len(expired)} expired quarantine item(s)",
            details={"retention_days": days, "ids": [item.id for item in expired]},
            source="quarantine",
        )
        logger.info("Quarantine cleanup removed %d item(s) older than %d days", len(expired), days)
        return len(expired)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _load_for_read(self) -> Dict[str, QuarantineItem]:
        with self._lock:
            try:
                return self.ledger.load()
            except QuarantineError as exc:
                logger.warning("Quarantine ledger unavailable: %s", exc)
                return {}

    def list_items(self) -> List[QuarantineItem]:
        """Items whose quarantined file still exists, newest first."""
        items = []
        for item in self._load_for_read().values():
            if os.path.isfile(item.quarantined_path):
                items.append(item)
            else:
                logger.warning("Quarantined file missing for %s: %s", item.id, item.quarantined_path)
        items.sort(key=lambda i: i.quarantined_at, reverse=True)
        return items

    def get_item(self, quarantine_id: str) -> Optional[QuarantineItem]:
        return self._load_for_read().get(quarantine_id)

    def stats(self) -> QuarantineStats:
        items = self.list_items()
        if not items:
            return QuarantineStats()
        sizes = 0
        for item in items:
            try:
                sizes += os.path.getsize(item.quarantined_path)
            except OSError:
                sizes += item.file_size
        dates = [item.quarantined_at for item in items]
        return QuarantineStats(
            total_files=len(items),
            total_size_bytes=sizes,
            oldest=min(dates),
            newest=max(dates),
        )
