# Quarantine - Ledger
#
# The id -> QuarantineItem mapping is the source of truth for what is
# quarantined. It is a single JSON file that is never edited in place:
# every mutation writes a temp file in the same directory and atomically
# replaces the ledger with os.replace, so readers always see either the
# old or the new version.
#
# A ledger that fails to parse is moved aside to ``.backup.<ns>`` and
# replaced with an empty one; this is logged and audited, never fatal.

import json
import logging
import os
import shutil
import tempfile
import time
from pathlib import Path
from typing import Dict, Optional

from ..core.audit_log import EventSeverity, EventType, get_audit_logger
from .exceptions import LedgerCorrupt, LedgerWriteFailed
from .models import QuarantineItem

logger = logging.getLogger(__name__)

LEDGER_FILE_NAME = "ledger.json"
LEDGER_VERSION = 1


class Ledger:
    """Atomic JSON ledger stored next to the quarantined files."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.path = self.directory / LEDGER_FILE_NAME

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def _parse(self) -> Dict[str, QuarantineItem]:
        try:
            data = self.path.read_bytes()
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise LedgerCorrupt(f"Ledger {self.path} cannot be read: {exc}") from exc
        try:
            raw = json.loads(data.decode("utf-8"))
            entries = raw["items"] if isinstance(raw, dict) and "items" in raw else raw
            if not isinstance(entries, dict):
                raise ValueError("ledger root is not a mapping")
            return {key: QuarantineItem.from_dict(value) for key, value in entries.items()}
        except (UnicodeDecodeError, ValueError, KeyError, TypeError, AttributeError) as exc:
            raise LedgerCorrupt(f"Ledger {self.path} is unreadable: {exc}") from exc

    def load(self) -> Dict[str, QuarantineItem]:
        """
        Read the ledger, resetting it if it is corrupt or unreadable.

        Raises:
            LedgerWriteFailed: the reset itself could not be written
        """
        try:
            return self._parse()
        except LedgerCorrupt as exc:
            self.reset_corrupt(str(exc))
            return {}

    def reset_corrupt(self, reason: str) -> Optional[Path]:
        """Move the bad ledger aside and start empty. Returns the backup path."""
        backup = self.directory / f"{LEDGER_FILE_NAME}.backup.{time.time_ns()}"
        try:
            shutil.move(str(self.path), str(backup))
        except OSError as exc:
            logger.warning("Could not back up corrupt ledger %s: %s", self.path, exc)
            backup = None
        logger.warning("Quarantine ledger corrupt, reset to empty (backup: %s): %s", backup, reason)
        get_audit_logger().log_event(
            event_type=EventType.LEDGER_RESET,
            severity=EventSeverity.INVESTIGATE,
            message="Quarantine ledger was corrupt and has been reset",
            details={"backup": str(backup) if backup else None, "reason": reason},
            source="quarantine",
        )
        self.save({})
        return backup

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def save(self, items: Dict[str, QuarantineItem]) -> None:
        """
        Atomically replace the ledger with ``items``.

        Raises:
            LedgerWriteFailed: the temp write or the replace failed
        """
        payload = json.dumps(
            {"version": LEDGER_VERSION, "items": {k: v.to_dict() for k, v in items.items()}},
            indent=2,
        )
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".ledger.", suffix=".tmp", dir=str(self.directory))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise LedgerWriteFailed(f"Could not write ledger {self.path}: {exc}") from exc
        finally:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)

    # ------------------------------------------------------------------
    # Pre-operation backups
    # ------------------------------------------------------------------

    def backup(self) -> Optional[Path]:
        """Snapshot the current ledger before a mutation. None if there is none yet."""
        if not self.path.exists():
            return None
        target = self.directory / f"{LEDGER_FILE_NAME}.backup.{time.time_ns()}"
        shutil.copy2(str(self.path), str(target))
        return target

    def restore_backup(self, backup: Optional[Path]) -> None:
        """Put a pre-operation snapshot back in place of the ledger."""
        if backup is None:
            if self.path.exists():
                self.path.unlink()
            return
        os.replace(str(backup), str(self.path))

    @staticmethod
    def discard_backup(backup: Optional[Path]) -> None:
        if backup is not None and backup.exists():
            try:
                backup.unlink()
            except OSError as exc:
                logger.debug("Could not remove ledger backup %s: %s", backup, exc)
