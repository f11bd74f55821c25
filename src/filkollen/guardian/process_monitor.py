# Guardian - Process Monitoring
#
# Periodic process enumeration via psutil, scored by name, command line,
# parent/child relationship, executable location, signature and CPU use.
#
# Cost is bounded three ways:
# - each process name is analysed at most once per cooldown window
# - at most ``max_processes`` are considered per pass, analysed on a fixed
#   pool of ``worker_count`` threads
# - each analysis has its own deadline and the pass an outer timeout; work
#   still pending at the outer timeout is abandoned with a warning
#
# Steps that call out (parent lookup, signature check, CPU sampling) run on
# a helper thread, so a hung call is abandoned at the analysis deadline and
# never holds a pool worker past it.
#
# Repeated suspicious activity from the same process name escalates the
# event severity to CRITICAL.

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from itertools import islice
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import psutil

from ..core.audit_log import EventSeverity, EventType, get_audit_logger
from ..core.cancellation import AnalysisCancelled, AnalysisTimeout, CancellationToken, Deadline
from .extensions import NullSignatureChecker, SignatureChecker
from .models import SecurityEvent, SecurityEventType, ThreatLevel

logger = logging.getLogger(__name__)

PROCESS_ATTRS = ["pid", "name", "exe", "cmdline", "ppid"]

# Forget activity counters for names not seen as suspicious for this long
ACTIVITY_RESET_SECONDS = 30 * 60
ACTIVITY_ESCALATION_THRESHOLD = 3


class SuspiciousProcessPatterns:
    """Known suspicious process indicators."""

    # Miners and malware families: a name hit is a confirmed threat
    KNOWN_MALWARE_KEYWORDS = [
        "cryptonight", "xmrig", "nicehash", "cgminer", "bfgminer",
        "ethminer", "claymore", "t-rex", "gminer", "nbminer",
        "teamredminer", "lolminer", "miniz", "excavator", "ccminer",
        "cpuminer", "winminer", "honeyminer", "coinminer", "minergate",
        "backdoor", "trojan", "keylogger", "spyware", "rootkit",
        "ransomware", "cryptolocker", "wannacry", "emotet", "trickbot",
        "mimikatz", "meterpreter",
    ]

    # Remote access tools: legitimate in many setups, suspicious elsewhere
    REMOTE_ACCESS_KEYWORDS = [
        "anydesk", "teamviewer", "vnc", "logmein", "supremo",
        "ammyy", "luminance", "gotomypc", "bomgar",
    ]

    SUSPICIOUS_CMDLINE_PATTERNS = [
        "powershell.exe -enc",
        "powershell -w hidden",
        "-nop -w hidden -c",
        "rundll32.exe javascript:",
        "regsvr32.exe /s /u /i:",
        "mshta.exe http",
        "certutil -decode",
        "bitsadmin /transfer",
        "invoke-webrequest",
        "downloadstring",
        "api.telegram.org",
        "stratum+tcp://",
        "curl -s http",
        "| sh",
        "| bash",
    ]

    SUSPICIOUS_SPAWNS = [
        # Office documents spawning shells (macro malware)
        (("winword", "excel", "powerpnt"), ("powershell", "cmd", "wscript", "cscript")),
        # Browsers spawning shells (exploits)
        (("chrome", "firefox", "msedge", "iexplore"), ("cmd", "powershell")),
        (("explorer",), ("regsvr32", "rundll32", "mshta")),
    ]

    # Substrings of executable paths (lower-case, forward slashes)
    SUSPICIOUS_LOCATIONS = [
        "/appdata/roaming/",
        "/appdata/local/temp/",
        "/users/public/",
        "/windows/temp/",
        "/programdata/",
        "/tmp/",
        "/var/tmp/",
        "/dev/shm/",
    ]

    # Never reported for high CPU
    SYSTEM_PROCESSES = [
        "svchost", "dwm", "csrss", "winlogon", "explorer", "taskhostw",
        "services", "lsass", "smss", "system", "kworker", "systemd",
        "kthreadd", "xorg",
    ]

    HIGH_CPU_THRESHOLD = 80.0
    CPU_SAMPLE_SECONDS = 1.0

    @classmethod
    def known_malware_keyword(cls, name: str) -> Optional[str]:
        name = name.lower()
        for keyword in cls.KNOWN_MALWARE_KEYWORDS:
            if keyword in name:
                return keyword
        return None

    @classmethod
    def is_remote_access_tool(cls, name: str) -> bool:
        name = name.lower()
        return any(k in name for k in cls.REMOTE_ACCESS_KEYWORDS)

    @classmethod
    def has_suspicious_cmdline(cls, cmdline: str) -> bool:
        if not cmdline:
            return False
        cmdline = cmdline.lower()
        return any(pattern in cmdline for pattern in cls.SUSPICIOUS_CMDLINE_PATTERNS)

    @classmethod
    def is_suspicious_spawn(cls, parent_name: str, child_name: str) -> bool:
        parent = parent_name.lower()
        child = child_name.lower()
        for parents, children in cls.SUSPICIOUS_SPAWNS:
            if any(p in parent for p in parents) and any(c in child for c in children):
                return True
        return False

    @classmethod
    def is_suspicious_location(cls, exe_path: str) -> bool:
        path = exe_path.lower().replace("\\", "/")
        return any(loc in path for loc in cls.SUSPICIOUS_LOCATIONS)

    @classmethod
    def is_system_process(cls, name: str) -> bool:
        name = name.lower()
        return any(sys_name in name for sys_name in cls.SYSTEM_PROCESSES)


class ProcessRateLimiter:
    """
    Per-name cooldown: a process name is analysed at most once per window.

    Guarded by its own lock, independent of any quarantine locking.
    """

    def __init__(self, cooldown_seconds: float = 30.0):
        self.cooldown_seconds = cooldown_seconds
        self._last_analyzed: Dict[str, float] = {}
        self._lock = threading.Lock()

    def should_analyze(self, name: str) -> bool:
        """True (and the slot is taken) if ``name`` is outside its cooldown."""
        key = name.lower()
        now = time.monotonic()
        with self._lock:
            last = self._last_analyzed.get(key)
            if last is not None and now - last < self.cooldown_seconds:
                return False
            self._last_analyzed[key] = now
            return True

    def prune(self) -> int:
        """Drop names whose cooldown has expired. Returns how many."""
        now = time.monotonic()
        with self._lock:
            expired = [k for k, t in self._last_analyzed.items()
                       if now - t >= self.cooldown_seconds]
            for key in expired:
                del self._last_analyzed[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._last_analyzed)


@dataclass(frozen=True)
class ProcessInfo:
    """What the heuristics look at for one process."""
    pid: int
    name: str
    exe: str = ""
    cmdline: str = ""
    ppid: Optional[int] = None

    @classmethod
    def from_psutil(cls, proc) -> "ProcessInfo":
        info = proc.info
        cmdline = info.get("cmdline") or []
        return cls(
            pid=info["pid"],
            name=info.get("name") or "",
            exe=info.get("exe") or "",
            cmdline=" ".join(cmdline) if isinstance(cmdline, (list, tuple)) else str(cmdline),
            ppid=info.get("ppid"),
        )


class ProcessMonitor:
    """
    Guardian process monitoring.

    ``run_pass()`` is driven by the Monitor's process timer. Detections are
    handed to ``emit`` (normally the event pipeline's ``push``).

    Args:
        emit: Callback for each SecurityEvent
        temp_paths: Directories counted as temp/public execution locations
        cooldown_seconds: Per-name analysis cooldown
        max_processes: Processes considered per pass
        worker_count: Concurrent analyses
        analysis_timeout: Per-process deadline in seconds
        pass_timeout: Whole-pass timeout in seconds
        signature_checker: Code-signature collaborator
        token: Shared cancellation token
        process_iter: psutil.process_iter or a stand-in
    """

    def __init__(
        self,
        emit: Callable[[SecurityEvent], None],
        temp_paths: Sequence[str] = (),
        cooldown_seconds: float = 30.0,
        max_processes: int = 500,
        worker_count: int = 1,
        analysis_timeout: float = 5.0,
        pass_timeout: float = 30.0,
        signature_checker: Optional[SignatureChecker] = None,
        token: Optional[CancellationToken] = None,
        process_iter: Callable = psutil.process_iter,
    ):
        self.emit = emit
        self.temp_paths = [p.lower().replace("\\", "/").rstrip("/") for p in temp_paths if p]
        self.rate_limiter = ProcessRateLimiter(cooldown_seconds)
        self.max_processes = max_processes
        self.worker_count = max(1, worker_count)
        self.analysis_timeout = analysis_timeout
        self.pass_timeout = pass_timeout
        self.signature_checker = signature_checker or NullSignatureChecker()
        self.token = token or CancellationToken()
        self._process_iter = process_iter

        self._executor: Optional[ThreadPoolExecutor] = None
        self._activity: Dict[str, Tuple[int, float]] = {}
        self._activity_lock = threading.Lock()
        self.skipped_count = 0
        self.audit_logger = get_audit_logger()

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.worker_count, thread_name_prefix="filkollen-proc",
            )
        return self._executor

    def close(self):
        """Release the worker pool; in-flight analyses are not awaited."""
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def _candidates(self) -> List[ProcessInfo]:
        own_pid = os.getpid()
        candidates = []
        for proc in islice(self._process_iter(PROCESS_ATTRS), self.max_processes):
            if self.token.is_cancelled:
                break
            try:
                info = ProcessInfo.from_psutil(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
            if not info.name or info.pid in (0, own_pid):
                continue
            if not self.rate_limiter.should_analyze(info.name):
                continue
            candidates.append(info)
        return candidates

    def run_pass(self) -> List[SecurityEvent]:
        """
        Enumerate and analyse processes once.

        Returns:
            The events emitted during this pass
        """
        self.rate_limiter.prune()
        self._prune_activity()

        candidates = self._candidates()
        if not candidates:
            return []

        executor = self._get_executor()
        futures = [executor.submit(self._analyze_safely, info) for info in candidates]
        done, not_done = wait(futures, timeout=self.pass_timeout)

        if not_done:
            for future in not_done:
                future.cancel()
            self.skipped_count += len(not_done)
            logger.warning(
                "Process pass exceeded %.0fs, some processes were skipped (%d of %d)",
                self.pass_timeout, len(not_done), len(candidates),
            )

        events: List[SecurityEvent] = []
        for future in futures:
            if future in done and not future.cancelled():
                event = future.result()
                if event is not None:
                    events.append(event)
        return events

    def _analyze_safely(self, info: ProcessInfo) -> Optional[SecurityEvent]:
        deadline = Deadline(self.analysis_timeout, self.token)
        try:
            return self.analyze(info, deadline)
        except AnalysisCancelled:
            return None
        except AnalysisTimeout:
            logger.debug("Analysis of %s (PID %d) timed out, abandoned", info.name, info.pid)
            return None
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None
        except Exception as exc:
            logger.debug("Process check error for %d: %s", info.pid, exc)
            return None

    # ------------------------------------------------------------------
    # Heuristics
    # ------------------------------------------------------------------

    def analyze(self, info: ProcessInfo, deadline: Optional[Deadline] = None) -> Optional[SecurityEvent]:
        """
        Score one process. Emits and returns an event if anything fired.

        Raises:
            AnalysisTimeout / AnalysisCancelled: between heuristic steps, or
                when a blocking step outlives the deadline
        """
        deadline = deadline or Deadline(self.analysis_timeout, self.token)
        findings: List[Tuple[SecurityEventType, str]] = []

        keyword = SuspiciousProcessPatterns.known_malware_keyword(info.name)
        if keyword:
            findings.append((SecurityEventType.KNOWN_MALWARE_PROCESS,
                             f"Known malware process ({keyword})"))
            return self._report(info, findings)

        if SuspiciousProcessPatterns.is_remote_access_tool(info.name):
            findings.append((SecurityEventType.SUSPICIOUS_PROCESS, "Remote access tool running"))

        if SuspiciousProcessPatterns.has_suspicious_cmdline(info.cmdline):
            findings.append((SecurityEventType.SUSPICIOUS_PROCESS, "Suspicious command line"))
        deadline.check()

        if info.ppid:
            parent_name = self._run_step(deadline, self._parent_name, info.ppid)
            if parent_name and SuspiciousProcessPatterns.is_suspicious_spawn(parent_name, info.name):
                findings.append((SecurityEventType.SUSPICIOUS_PROCESS,
                                 f"Suspicious spawn: {parent_name} -> {info.name}"))
            deadline.check()

        if info.exe:
            if self._is_temp_location(info.exe):
                findings.append((SecurityEventType.PROCESS_FROM_TEMP,
                                 "Running from a temp/public directory"))
            if SuspiciousProcessPatterns.is_suspicious_location(info.exe):
                signed = self._run_step(deadline, self.signature_checker.is_signed, info.exe)
                if signed is False:
                    findings.append((SecurityEventType.UNSIGNED_PROCESS,
                                     "Unsigned binary in a suspicious location"))
            deadline.check()

        if not SuspiciousProcessPatterns.is_system_process(info.name):
            cpu = self._run_step(deadline, self._sample_cpu, info.pid, deadline)
            if cpu >= SuspiciousProcessPatterns.HIGH_CPU_THRESHOLD:
                findings.append((SecurityEventType.CRYPTO_MINING,
                                 f"Sustained high CPU usage ({cpu:.0f}%)"))
            deadline.check()

        if not findings:
            return None
        return self._report(info, findings)

    @staticmethod
    def _run_step(deadline: Deadline, func: Callable, *args):
        """Run one blocking step, giving up when ``deadline`` passes."""
        deadline.check()
        outcome: Dict[str, object] = {}
        finished = threading.Event()

        def target():
            try:
                outcome["value"] = func(*args)
            except Exception as exc:
                outcome["error"] = exc
            finally:
                finished.set()

        threading.Thread(target=target, name="filkollen-proc-step", daemon=True).start()
        if not finished.wait(deadline.remaining):
            raise AnalysisTimeout()
        if "error" in outcome:
            raise outcome["error"]
        return outcome["value"]

    def _is_temp_location(self, exe: str) -> bool:
        path = exe.lower().replace("\\", "/")
        return any(path.startswith(temp + "/") for temp in self.temp_paths)

    @staticmethod
    def _parent_name(ppid: int) -> str:
        try:
            return psutil.Process(ppid).name()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return ""

    @staticmethod
    def _sample_cpu(pid: int, deadline: Deadline) -> float:
        # Half the remaining time at most, so the sample ends before the deadline
        interval = min(SuspiciousProcessPatterns.CPU_SAMPLE_SECONDS, deadline.remaining / 2)
        if interval <= 0:
            return 0.0
        try:
            return psutil.Process(pid).cpu_percent(interval=interval)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return 0.0

    def _record_activity(self, name: str) -> int:
        key = name.lower()
        now = time.monotonic()
        with self._activity_lock:
            count, _ = self._activity.get(key, (0, now))
            count += 1
            self._activity[key] = (count, now)
            return count

    def _prune_activity(self):
        now = time.monotonic()
        with self._activity_lock:
            stale = [k for k, (_, seen) in self._activity.items()
                     if now - seen > ACTIVITY_RESET_SECONDS]
            for key in stale:
                del self._activity[key]

    def activity_counts(self) -> Dict[str, int]:
        with self._activity_lock:
            return {k: count for k, (count, _) in self._activity.items()}

    def _report(self, info: ProcessInfo, findings: List[Tuple[SecurityEventType, str]]) -> SecurityEvent:
        event_type = findings[0][0]
        count = self._record_activity(info.name)
        if event_type == SecurityEventType.KNOWN_MALWARE_PROCESS or count > ACTIVITY_ESCALATION_THRESHOLD:
            severity = ThreatLevel.CRITICAL
        else:
            severity = ThreatLevel.HIGH

        reasons = "; ".join(reason for _, reason in findings)
        event = SecurityEvent(
            event_type=event_type,
            severity=severity,
            description=f"{info.name} (PID {info.pid}): {reasons} (activity #{count})",
            subject_path=info.exe or None,
            subject_process=info.name,
            process_id=info.pid,
        )

        self.audit_logger.log_guardian_event(
            event_type=EventType.PROCESS_SUSPICIOUS,
            target=f"{info.name} (PID: {info.pid})",
            severity=EventSeverity.ALERT,
            details={
                "pid": info.pid,
                "exe": info.exe,
                "cmdline": info.cmdline,
                "reasons": [reason for _, reason in findings],
                "activity_count": count,
            },
        )
        self.emit(event)
        return event

    # ------------------------------------------------------------------
    # Remediation
    # ------------------------------------------------------------------

    def kill_process(self, pid: int, reason: str = "Malicious process") -> bool:
        """
        Terminate a process: terminate, wait up to 3s, then kill.

        Returns:
            True if the process is gone
        """
        try:
            proc = psutil.Process(pid)
            name = proc.name()
            proc.terminate()
            try:
                proc.wait(timeout=3)
            except psutil.TimeoutExpired:
                proc.kill()
                proc.wait(timeout=3)
        except psutil.NoSuchProcess:
            return True
        except (psutil.AccessDenied, psutil.TimeoutExpired) as exc:
            logger.warning("Could not terminate PID %d: %s", pid, exc)
            self.audit_logger.log_event(
                event_type=EventType.SECURITY_ALERT,
                severity=EventSeverity.CRITICAL,
                message=f"Failed to terminate process {pid}: {exc}",
                details={"pid": pid, "reason": reason},
            )
            return False

        self.audit_logger.log_guardian_event(
            event_type=EventType.PROCESS_KILLED,
            target=f"{name} (PID: {pid})",
            action="terminated",
            severity=EventSeverity.ALERT,
            details={"pid": pid, "reason": reason},
        )
        return True
