# Guardian - Monitor
#
# The continuous detection loop. Owns:
# - a periodic full re-scan of the configured paths (DirectoryScanner)
# - filesystem watchers on the same paths (FileMonitor)
# - a periodic process pass (ProcessMonitor) plus the network / registry
#   inspector extension points
# - the event pipeline all detections flow through
#
# Everything shares one CancellationToken. stop() cancels it, waits for
# the timer threads (in-flight items finish within their own deadlines)
# and flushes whatever is left in the event queue.
#
# Nothing inside a timer tick may end the loop: every tick is wrapped,
# logged and the loop proceeds to the next one.

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, List, Optional

import psutil

from ..core.config import ProtectionConfig
from ..core.cancellation import CancellationToken
from .classifier import ThreatClassifier
from .event_pipeline import EventPipeline
from .extensions import (
    NetworkInspector,
    NullNetworkInspector,
    NullRegistryInspector,
    RegistryInspector,
    SignatureChecker,
)
from .file_monitor import FileMonitor
from .models import ScanResult, SecurityEvent
from .process_monitor import ProcessMonitor
from .scanner import DirectoryScanner

logger = logging.getLogger(__name__)


class Monitor:
    """
    Continuous detection loop feeding the classifier and event pipeline.

    Actionable ScanResults (MEDIUM and above) are pushed into the pipeline
    as SecurityEvents and handed to ``on_scan_result``; alerting events
    (HIGH and above, de-duplicated) go to ``on_alert`` from the drain
    thread.
    """

    def __init__(
        self,
        config: ProtectionConfig,
        on_scan_result: Optional[Callable[[ScanResult], None]] = None,
        on_alert: Optional[Callable[[SecurityEvent], None]] = None,
        classifier: Optional[ThreatClassifier] = None,
        signature_checker: Optional[SignatureChecker] = None,
        network_inspector: Optional[NetworkInspector] = None,
        registry_inspector: Optional[RegistryInspector] = None,
        enable_watchers: bool = True,
        enable_process_monitor: bool = True,
        process_iter: Callable = psutil.process_iter,
    ):
        self.config = config
        self.on_scan_result = on_scan_result
        self.on_alert = on_alert
        self.classifier = classifier or ThreatClassifier(config.rule_config())
        self.signature_checker = signature_checker
        self.network_inspector = network_inspector or NullNetworkInspector()
        self.registry_inspector = registry_inspector or NullRegistryInspector()
        self.enable_watchers = enable_watchers
        self.enable_process_monitor = enable_process_monitor
        self._process_iter = process_iter

        self.token = CancellationToken()
        self.token.cancel()
        self.pipeline = self._make_pipeline(self.token)
        self.file_monitor: Optional[FileMonitor] = None
        self.process_monitor: Optional[ProcessMonitor] = None
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()
        self.last_scan_time = None

    @property
    def is_running(self) -> bool:
        return not self.token.is_cancelled

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _make_pipeline(self, token: CancellationToken) -> EventPipeline:
        cfg = self.config
        return EventPipeline(
            on_alert=self._dispatch_alert,
            queue_cap=cfg.event_queue_cap,
            batch_size=cfg.event_batch_size,
            interval=cfg.event_batch_interval,
            recent_cap=cfg.recent_events_cap,
            dedup_window=cfg.alert_dedup_window_seconds,
            token=token,
        )

    def _make_scanner(self, token: CancellationToken) -> DirectoryScanner:
        return DirectoryScanner(
            self.classifier,
            worker_count=self.config.worker_count,
            pass_timeout=self.config.directory_pass_timeout,
            exclude_paths=[self.config.quarantine_dir],
            token=token,
        )

    def _dispatch_alert(self, event: SecurityEvent) -> None:
        if self.on_alert is not None:
            self.on_alert(event)

    def handle_scan_result(self, result: ScanResult) -> None:
        """Route one classifier result. Results below MEDIUM are dropped here."""
        if not result.threat_level.is_actionable:
            return
        self.pipeline.push(SecurityEvent.from_scan_result(result))
        if self.on_scan_result is not None:
            self.on_scan_result(result)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start timers, watchers and the event drain. Idempotent."""
        with self._lock:
            if self.is_running:
                return
            token = CancellationToken()
            self.token = token
            self.pipeline = self._make_pipeline(token)
            self.pipeline.start()

            if self.enable_watchers:
                self.file_monitor = FileMonitor(
                    self.classifier,
                    on_result=self.handle_scan_result,
                    settle_seconds=self.config.watcher_settle_seconds,
                    recursive=self.config.recursive,
                    exclude_paths=[self.config.quarantine_dir],
                    token=token,
                )
                self.file_monitor.start(list(self.config.scan_paths))

            if self.enable_process_monitor:
                self.process_monitor = ProcessMonitor(
                    emit=self.pipeline.push,
                    temp_paths=self.config.temp_paths,
                    cooldown_seconds=self.config.process_cooldown_seconds,
                    max_processes=self.config.max_processes_per_pass,
                    worker_count=self.config.worker_count,
                    analysis_timeout=self.config.process_analysis_timeout,
                    pass_timeout=self.config.process_pass_timeout,
                    signature_checker=self.signature_checker,
                    token=token,
                    process_iter=self._process_iter,
                )

            self._threads = [
                self._spawn("filkollen-scan-timer", self._scan_loop, token),
            ]
            if self.enable_process_monitor:
                self._threads.append(
                    self._spawn("filkollen-process-timer", self._process_loop, token))

        logger.info("Monitor started on %d path(s)", len(self.config.scan_paths))

    def stop(self, timeout: float = 10.0) -> None:
        """Cancel everything and flush pending events. Idempotent."""
        with self._lock:
            if not self.is_running:
                return
            self.token.cancel()

            if self.file_monitor is not None:
                self.file_monitor.stop(timeout=timeout)
                self.file_monitor = None
            for thread in self._threads:
                thread.join(timeout=timeout)
            self._threads = []
            if self.process_monitor is not None:
                self.process_monitor.close()
                self.process_monitor = None

            self.pipeline.stop(timeout=timeout)
            flushed = self.pipeline.flush()
        if flushed:
            logger.info("Flushed %d pending event(s) on stop", flushed)
        logger.info("Monitor stopped")

    @staticmethod
    def _spawn(name: str, target: Callable, token: CancellationToken) -> threading.Thread:
        thread = threading.Thread(target=target, args=(token,), name=name, daemon=True)
        thread.start()
        return thread

    # ------------------------------------------------------------------
    # Timer loops
    # ------------------------------------------------------------------

    def _scan_loop(self, token: CancellationToken) -> None:
        while not token.is_cancelled:
            try:
                self.run_scan_pass(token)
            except Exception as exc:
                logger.error("Directory pass failed: %s", exc)
            if token.wait(self.config.scan_interval_seconds):
                break

    def _process_loop(self, token: CancellationToken) -> None:
        while not token.wait(self.config.process_interval_seconds):
            try:
                self.run_process_pass()
            except Exception as exc:
                logger.error("Process pass failed: %s", exc)
            for inspector in (self.network_inspector, self.registry_inspector):
                try:
                    for event in inspector.inspect():
                        self.pipeline.push(event)
                except Exception as exc:
                    logger.warning("%s failed: %s", type(inspector).__name__, exc)

    def run_scan_pass(self, token: Optional[CancellationToken] = None) -> List[ScanResult]:
        """One full pass over the configured paths, results routed as usual."""
        scanner = self._make_scanner(token or self.token)
        results = scanner.scan(self.config.scan_paths, recursive=self.config.recursive)
        for result in results:
            if (token or self.token).is_cancelled:
                break
            self.handle_scan_result(result)
        self._mark_scanned()
        logger.debug("Directory pass finished: %d finding(s)", len(results))
        return results

    def run_process_pass(self) -> List[SecurityEvent]:
        if self.process_monitor is None:
            return []
        return self.process_monitor.run_pass()

    def _mark_scanned(self) -> None:
        self.last_scan_time = datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # Manual operations
    # ------------------------------------------------------------------

    def scan_now(self, paths: Optional[List[str]] = None) -> List[ScanResult]:
        """
        Synchronous scan with the same classifier and rules as the loop.

        Results are returned, not routed: the caller decides what to do.
        """
        scanner = self._make_scanner(CancellationToken())
        results = scanner.scan(paths or self.config.scan_paths, recursive=self.config.recursive)
        self._mark_scanned()
        return results

    def kill_process(self, pid: int, reason: str) -> bool:
        monitor = self.process_monitor or ProcessMonitor(emit=lambda event: None)
        return monitor.kill_process(pid, reason)

    def get_monitored_paths(self) -> List[str]:
        if self.file_monitor is not None and self.file_monitor.monitored_paths:
            return self.file_monitor.get_monitored_paths()
        return list(self.config.scan_paths)

    def recent_events(self, limit: Optional[int] = None) -> List[SecurityEvent]:
        return self.pipeline.recent_events(limit)
