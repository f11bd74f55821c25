# Guardian - File Monitoring
#
# Near-real-time triggers for newly created / modified / renamed files in
# the scanned paths, using the watchdog library.
#
# Watchdog callbacks run on the observer's notification thread and must
# not block: they only debounce and enqueue. A single worker thread waits
# out the settle delay (so writers can finish), re-checks the file and
# hands it to the classifier.
#
# Filters:
# - debounce per (path, action) for 30 seconds
# - modification events count only for files created in the last 5 minutes
# - the quarantine directory itself is never watched for threats

import logging
import os
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..core.audit_log import EventSeverity, EventType, get_audit_logger
from ..core.cancellation import CancellationToken
from .classifier import ThreatClassifier, is_under
from .models import ScanResult

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 30.0
FRESH_CHANGE_WINDOW = 300.0
MAX_PENDING = 10000

ACTION_CREATED = "created"
ACTION_MODIFIED = "modified"
ACTION_RENAMED = "renamed"

_AUDIT_EVENT_TYPES = {
    ACTION_CREATED: EventType.FILE_CREATED,
    ACTION_MODIFIED: EventType.FILE_MODIFIED,
    ACTION_RENAMED: EventType.FILE_RENAMED,
}


@dataclass(frozen=True)
class PendingFile:
    """A watcher trigger waiting for its settle delay."""
    path: str
    action: str
    ready_at: float


class WatcherEventHandler(FileSystemEventHandler):
    """Watchdog handler: filter, debounce and enqueue. Never classifies."""

    def __init__(self, monitor: "FileMonitor"):
        super().__init__()
        self.monitor = monitor

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory:
            self.monitor.submit(event.src_path, ACTION_CREATED)

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self.monitor.submit(event.src_path, ACTION_MODIFIED)

    def on_moved(self, event: FileSystemEvent):
        if not event.is_directory:
            self.monitor.submit(event.dest_path, ACTION_RENAMED)


class FileMonitor:
    """
    Filesystem watcher feeding the classifier.

    Args:
        classifier: Classifier for triggered files
        on_result: Called (on the worker thread) with every ScanResult
        settle_seconds: Delay between the trigger and classification
        debounce_seconds: Window in which a repeated (path, action) is dropped
        recursive: Watch subdirectories too
        exclude_paths: Roots whose events are ignored (the quarantine dir)
        token: Shared cancellation token
    """

    def __init__(
        self,
        classifier: ThreatClassifier,
        on_result: Callable[[ScanResult], None],
        settle_seconds: float = 1.0,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        recursive: bool = False,
        exclude_paths: Sequence[str] = (),
        token: Optional[CancellationToken] = None,
    ):
        self.classifier = classifier
        self.on_result = on_result
        self.settle_seconds = settle_seconds
        self.debounce_seconds = debounce_seconds
        self.recursive = recursive
        self.exclude_paths = tuple(exclude_paths)
        self.token = token or CancellationToken()

        self.observer = None
        self.event_handler = WatcherEventHandler(self)
        self.monitored_paths: Set[str] = set()
        self.is_running = False

        self._pending: "queue.Queue[PendingFile]" = queue.Queue(maxsize=MAX_PENDING)
        self._recent: Dict[Tuple[str, str], float] = {}
        self._lock = threading.Lock()
        self._worker: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, paths: List[str]):
        """Start watching ``paths`` (missing ones are skipped)."""
        if self.is_running:
            return

        self.observer = Observer()
        for path in paths:
            self._schedule(path)

        self.is_running = True
        self.observer.start()
        self._worker = threading.Thread(
            target=self._worker_loop, name="filkollen-watch-worker", daemon=True,
        )
        self._worker.start()
        logger.info("File watcher started on %d path(s)", len(self.monitored_paths))

    def stop(self, timeout: float = 5.0):
        """Stop the observer and the worker thread."""
        if not self.is_running:
            return
        self.is_running = False
        if self.observer is not None:
            self.observer.stop()
            self.observer.join(timeout=timeout)
        if self._worker is not None:
            self._worker.join(timeout=timeout)
        self.monitored_paths.clear()
        logger.info("File watcher stopped")

    def _schedule(self, path: str):
        if not os.path.isdir(path):
            logger.warning("Cannot watch missing directory: %s", path)
            return
        if path in self.monitored_paths:
            return
        self.observer.schedule(self.event_handler, path, recursive=self.recursive)
        self.monitored_paths.add(path)

    def get_monitored_paths(self) -> List[str]:
        return sorted(self.monitored_paths)

    @property
    def pending_count(self) -> int:
        return self._pending.qsize()

    # ------------------------------------------------------------------
    # Producer side (observer thread)
    # ------------------------------------------------------------------

    def submit(self, path: str, action: str) -> bool:
        """
        Debounce and enqueue a trigger. Never blocks.

        Returns:
            True if the trigger was queued
        """
        if self.token.is_cancelled:
            return False
        if self.exclude_paths and is_under(path, self.exclude_paths):
            return False

        now = time.monotonic()
        key = (os.path.normcase(path), action)
        with self._lock:
            last = self._recent.get(key)
            if last is not None and now - last < self.debounce_seconds:
                return False
            self._recent[key] = now
            if len(self._recent) > MAX_PENDING:
                self._prune_recent(now)

        try:
            self._pending.put_nowait(PendingFile(path, action, now + self.settle_seconds))
        except queue.Full:
            logger.warning("Watcher queue full, dropping trigger for %s", path)
            return False
        return True

    def _prune_recent(self, now: float):
        """Drop expired debounce keys. Caller holds the lock."""
        expired = [k for k, t in self._recent.items() if now - t >= self.debounce_seconds]
        for key in expired:
            del self._recent[key]

    # ------------------------------------------------------------------
    # Consumer side (worker thread)
    # ------------------------------------------------------------------

    def _worker_loop(self):
        while self.is_running and not self.token.is_cancelled:
            try:
                item = self._pending.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                delay = item.ready_at - time.monotonic()
                if delay > 0 and self.token.wait(delay):
                    break
                self.process(item.path, item.action)
            except Exception as exc:
                logger.error("Watcher failed to process %s: %s", item.path, exc)

    def process(self, path: str, action: str) -> Optional[ScanResult]:
        """Classify one settled trigger and forward any result."""
        if not os.path.isfile(path):
            return None
        if action == ACTION_MODIFIED and not self._recently_created(path):
            return None

        result = self.classifier.classify_path(path)
        if result is None:
            return None

        get_audit_logger().log_guardian_event(
            event_type=_AUDIT_EVENT_TYPES[action],
            target=path,
            severity=EventSeverity.INVESTIGATE,
            details={
                "threat_level": result.threat_level.label,
                "reasons": list(result.reasons),
            },
        )
        self.on_result(result)
        return result

    @staticmethod
    def _recently_created(path: str) -> bool:
        try:
            st = os.stat(path)
        except OSError:
            return False
        created = getattr(st, "st_birthtime", None) or st.st_ctime
        return time.time() - created <= FRESH_CHANGE_WINDOW
