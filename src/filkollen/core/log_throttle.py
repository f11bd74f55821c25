"""
Log throttling for the detection engine.

A burst of identical detections (a temp directory full of copies of one
dropper, the same offensive tool name matched on every pass) would
otherwise flood both the audit trail and the operational log. The
throttler provides:

1. Per-source rate limiting of identical messages
2. Normalisation so messages differing only in numbers/hashes collapse
3. Exponential backoff for persistent repeaters
4. Periodic summaries of what was suppressed
"""

import hashlib
import re
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

# Variable fragments stripped before hashing a message
_VARIABLE_PARTS = [
    re.compile(r"[a-f0-9]{8,}"),
    re.compile(r"\d+"),
]


@dataclass
class ThrottleState:
    """Throttling state for one source/message combination."""
    last_logged: float
    suppressed_count: int
    message_hash: str
    backoff_multiplier: float = 1.0


class LogThrottler:
    """
    Rate limit and de-duplicate log messages.

    Critical messages are never throttled.
    """

    def __init__(
        self,
        min_interval_seconds: float = 60.0,
        max_backoff_multiplier: float = 10.0,
        summary_interval_seconds: float = 300.0,
    ):
        self.min_interval = min_interval_seconds
        self.max_backoff = max_backoff_multiplier
        self.summary_interval = summary_interval_seconds

        self._lock = threading.Lock()
        self.throttle_states: Dict[str, ThrottleState] = {}
        self.last_summary_time = time.monotonic()
        self.total_suppressed = 0

    @staticmethod
    def _get_message_hash(message: str) -> str:
        normalized = message.lower()
        for pattern in _VARIABLE_PARTS:
            normalized = pattern.sub("X", normalized)
        return hashlib.md5(normalized.encode()).hexdigest()[:8]

    def should_log(
        self,
        agent_id: str,
        message: str,
        severity: str = "info"
    ) -> Tuple[bool, Optional[str]]:
        """
        Decide whether a message should be emitted.

        Args:
            agent_id: Identifier of the logging source
            message: The log message
            severity: Severity name; "critical"/"error" always pass

        Returns:
            (should_log, summary_message)
        """
        if severity.lower() in ("critical", "error"):
            return True, None

        now = time.monotonic()
        message_hash = self._get_message_hash(message)
        key = f"{agent_id}:{message_hash}"

        with self._lock:
            state = self.throttle_states.get(key)
            if state is None:
                self.throttle_states[key] = ThrottleState(
                    last_logged=now,
                    suppressed_count=0,
                    message_hash=message_hash,
                )
                return True, None

            required_interval = self.min_interval * state.backoff_multiplier
            if now - state.last_logged < required_interval:
                state.suppressed_count += 1
                self.total_suppressed += 1
                if state.suppressed_count % 10 == 0:
                    state.backoff_multiplier = min(
                        state.backoff_multiplier * 1.5, self.max_backoff
                    )
                return False, self._check_summary(now)

            suppressed_msg = None
            if state.suppressed_count > 0:
                suppressed_msg = (
                    f"[Previously suppressed {state.suppressed_count} "
                    f"similar messages from {agent_id}]"
                )
            state.last_logged = now
            state.suppressed_count = 0
            if state.backoff_multiplier > 1.0:
                state.backoff_multiplier = max(1.0, state.backoff_multiplier * 0.9)
            return True, suppressed_msg

    def allow(self, key: str, interval_seconds: Optional[float] = None) -> bool:
        """Plain keyed cooldown: True at most once per interval for ``key``."""
        interval = self.min_interval if interval_seconds is None else interval_seconds
        now = time.monotonic()
        with self._lock:
            state = self.throttle_states.get(f"key:{key}")
            if state is not None and now - state.last_logged < interval:
                state.suppressed_count += 1
                self.total_suppressed += 1
                return False
            self.throttle_states[f"key:{key}"] = ThrottleState(
                last_logged=now, suppressed_count=0, message_hash=key,
            )
            return True

    def _check_summary(self, now: float) -> Optional[str]:
        """Build a summary of suppressed messages once per summary interval.

        Caller holds the lock.
        """
        if now - self.last_summary_time < self.summary_interval:
            return None
        if self.total_suppressed == 0:
            return None

        top_offenders = sorted(
            [(k, v.suppressed_count) for k, v in self.throttle_states.items()
             if v.suppressed_count > 0],
            key=lambda x: x[1],
            reverse=True,
        )[:5]

        parts = [f"LOG THROTTLE SUMMARY: Suppressed {self.total_suppressed} messages"]
        if top_offenders:
            parts.append("Top sources:")
            for key, count in top_offenders:
                parts.append(f"  - {key.split(':')[0]}: {count} messages")

        self.last_summary_time = now
        self.total_suppressed = 0
        for state in self.throttle_states.values():
            state.suppressed_count = 0
        return " | ".join(parts)

    def reset(self) -> None:
        with self._lock:
            self.throttle_states.clear()
            self.total_suppressed = 0


_log_throttler: Optional[LogThrottler] = None


def get_log_throttler() -> LogThrottler:
    """Get global log throttler (singleton pattern)."""
    global _log_throttler
    if _log_throttler is None:
        _log_throttler = LogThrottler()
    return _log_throttler
