# Guardian - Event Pipeline
#
# Decouples burst detection from notification cost. Producers (directory
# scans, the file watcher, process passes) push SecurityEvents onto a
# bounded queue that never blocks: when full, the oldest event is dropped.
# A single drain thread ticks at a fixed rate, moves up to ``batch_size``
# events per tick into the recent-events ring buffer and raises an alert
# for every event at HIGH or above.
#
# Alerts are at-most-once per subject: an event whose dedup_key already
# alerted within the dedup window is recorded but not re-alerted.

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from ..core.cancellation import CancellationToken
from .models import SecurityEvent, ThreatLevel

logger = logging.getLogger(__name__)

ALERT_THRESHOLD = ThreatLevel.HIGH


class EventQueue:
    """Bounded multi-producer / single-consumer queue, drop-oldest on overflow.

    Args:
        maxsize: Soft cap; ``put()`` evicts the oldest event when reached.
    """

    def __init__(self, maxsize: int = 1000):
        self._maxsize = maxsize
        self._items: Deque[SecurityEvent] = deque()
        self._lock = threading.Lock()

        self._total_enqueued = 0
        self._total_dropped = 0

    def put(self, event: SecurityEvent) -> bool:
        """Enqueue. Returns False if an older event had to be dropped."""
        with self._lock:
            dropped = False
            if len(self._items) >= self._maxsize:
                self._items.popleft()
                self._total_dropped += 1
                dropped = True
            self._items.append(event)
            self._total_enqueued += 1
        if dropped:
            logger.debug("Event queue full (%d), dropped oldest event", self._maxsize)
        return not dropped

    def get_batch(self, batch_size: int) -> List[SecurityEvent]:
        """Remove and return up to ``batch_size`` events (FIFO)."""
        with self._lock:
            count = min(batch_size, len(self._items))
            return [self._items.popleft() for _ in range(count)]

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._items)

    def __len__(self) -> int:
        return self.size

    def clear(self) -> int:
        with self._lock:
            count = len(self._items)
            self._items.clear()
            return count

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "size": len(self._items),
                "maxsize": self._maxsize,
                "total_enqueued": self._total_enqueued,
                "total_dropped": self._total_dropped,
            }


class EventPipeline:
    """
    Queue + fixed-rate batch drain + recent-events ring + alert emission.

    Args:
        on_alert: Called once per alerting event (severity >= HIGH)
        queue_cap: Event queue soft cap
        batch_size: Events drained per tick
        interval: Seconds between drain ticks
        recent_cap: Size of the recent-events ring buffer
        dedup_window: Seconds during which a repeated dedup_key is not re-alerted
        token: Shared cancellation token
    """

    def __init__(
        self,
        on_alert: Optional[Callable[[SecurityEvent], None]] = None,
        queue_cap: int = 1000,
        batch_size: int = 10,
        interval: float = 1.0,
        recent_cap: int = 100,
        dedup_window: float = 30.0,
        token: Optional[CancellationToken] = None,
    ):
        self.queue = EventQueue(queue_cap)
        self.batch_size = batch_size
        self.interval = interval
        self.dedup_window = dedup_window
        self.token = token or CancellationToken()
        self._subscribers: List[Callable[[SecurityEvent], None]] = []
        if on_alert is not None:
            self._subscribers.append(on_alert)

        self._recent: Deque[SecurityEvent] = deque(maxlen=recent_cap)
        self._recent_lock = threading.Lock()
        self._alerted: Dict[str, float] = {}
        self._drain_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

        self.total_processed = 0
        self.total_alerts = 0
        self.total_suppressed = 0

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def push(self, event: SecurityEvent) -> None:
        """Enqueue an event. Never blocks."""
        self.queue.put(event)

    def subscribe(self, callback: Callable[[SecurityEvent], None]) -> None:
        """Register an alert callback."""
        self._subscribers.append(callback)

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(
            target=self._drain_loop, name="filkollen-event-drain", daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Wait for the drain thread (the token must already be cancelled)."""
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _drain_loop(self) -> None:
        while not self.token.wait(self.interval):
            try:
                self.drain_once()
            except Exception as exc:
                logger.error("Event drain tick failed: %s", exc)

    def drain_once(self, batch_size: Optional[int] = None) -> List[SecurityEvent]:
        """Process one batch. Returns the events that raised an alert."""
        with self._drain_lock:
            batch = self.queue.get_batch(batch_size or self.batch_size)
            alerted: List[SecurityEvent] = []
            now = time.monotonic()
            for event in batch:
                with self._recent_lock:
                    self._recent.append(event)
                self.total_processed += 1
                if event.severity >= ALERT_THRESHOLD and self._claim_alert(event, now):
                    alerted.append(event)

            for event in alerted:
                self._emit(event)
            self._prune_alerted(now)
            return alerted

    def flush(self) -> int:
        """Drain everything still queued. Returns how many events were processed."""
        processed = 0
        while True:
            with self._drain_lock:
                pending = self.queue.size
            if pending == 0:
                return processed
            before = self.total_processed
            self.drain_once(pending)
            processed += self.total_processed - before

    def _claim_alert(self, event: SecurityEvent, now: float) -> bool:
        key = event.dedup_key
        last = self._alerted.get(key)
        if last is not None and now - last < self.dedup_window:
            self.total_suppressed += 1
            return False
        self._alerted[key] = now
        return True

    def _prune_alerted(self, now: float) -> None:
        expired = [k for k, t in self._alerted.items() if now - t >= self.dedup_window]
        for key in expired:
            del self._alerted[key]

    def _emit(self, event: SecurityEvent) -> None:
        self.total_alerts += 1
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as exc:
                logger.error("Alert subscriber failed: %s", exc)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def recent_events(self, limit: Optional[int] = None) -> List[SecurityEvent]:
        """Most recent events, newest first."""
        with self._recent_lock:
            events = list(reversed(self._recent))
        return events[:limit] if limit else events

    def stats(self) -> Dict[str, int]:
        stats = self.queue.stats()
        stats.update({
            "total_processed": self.total_processed,
            "total_alerts": self.total_alerts,
            "total_suppressed": self.total_suppressed,
        })
        return stats
