# Guardian - Heuristic Threat Classifier
#
# Turns a file metadata snapshot into a severity plus the list of rules
# that fired. Rules are independent and additive: each one abstains or
# contributes (level, reason); the highest level wins and reasons are
# kept most-severe-first, ties broken by rule order.
#
# Rules:
#   1. suspicious extension                         -> MEDIUM
#   2. extensionless file with executable magic     -> HIGH
#   3. known offensive tool name                    -> CRITICAL
#   4. double extension ending in a suspicious one  -> HIGH
#   5. zero-byte file in a temp path                -> LOW
#   6. file over the large-file threshold in temp   -> MEDIUM
#   7. freshly created + any other hit              -> escalate one step
#   8. content hash in the known-malicious table    -> CRITICAL
#
# Hashing is the only expensive step; it runs after the metadata rules
# and is skipped for files that are already CRITICAL or over the cap.

import hashlib
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, FrozenSet, List, Mapping, Optional, Tuple

from ..core.config import (
    DEFAULT_IGNORED_FILE_NAMES,
    DEFAULT_KNOWN_MALICIOUS_HASHES,
    DEFAULT_OFFENSIVE_TOOL_NAMES,
    DEFAULT_SUSPICIOUS_EXTENSIONS,
    MB,
)
from ..core.log_throttle import get_log_throttler
from .models import ScanResult, ScanTarget, ThreatLevel

logger = logging.getLogger(__name__)

# Leading bytes of things that execute
EXECUTABLE_MAGIC: Tuple[Tuple[bytes, str], ...] = (
    (b"MZ", "Windows PE executable"),
    (b"\x7fELF", "ELF executable"),
    (b"#!", "script with interpreter line"),
)

# Rule priorities (lower sorts first among equal levels)
PRIORITY_HASH = 0
PRIORITY_EXTENSION = 1
PRIORITY_MAGIC = 2
PRIORITY_OFFENSIVE_TOOL = 3
PRIORITY_DOUBLE_EXTENSION = 4
PRIORITY_EMPTY_FILE = 5
PRIORITY_LARGE_FILE = 6
PRIORITY_FRESH = 7

# Minimum seconds between warnings about the same offensive tool name
OFFENSIVE_TOOL_WARN_INTERVAL = 60.0

HASH_CHUNK_SIZE = 1024 * 1024


def _tool_name_matches(tool: str, file_name: str) -> bool:
    # Entries with an extension ("nc.exe") name a whole file; bare names
    # ("mimikatz") match anywhere in the file name
    if "." in tool:
        return file_name == tool
    return tool in file_name


@dataclass(frozen=True)
class RuleConfig:
    """Static rule tables and thresholds used by the classifier."""

    suspicious_extensions: FrozenSet[str] = frozenset(DEFAULT_SUSPICIOUS_EXTENSIONS)
    offensive_tool_names: Tuple[str, ...] = tuple(DEFAULT_OFFENSIVE_TOOL_NAMES)
    ignored_file_names: FrozenSet[str] = frozenset(DEFAULT_IGNORED_FILE_NAMES)
    known_malicious_hashes: Mapping[str, str] = field(
        default_factory=lambda: dict(DEFAULT_KNOWN_MALICIOUS_HASHES))
    temp_paths: Tuple[str, ...] = ()
    whitelist_paths: Tuple[str, ...] = ()
    large_file_threshold: int = 100 * MB
    hash_size_cap: int = 50 * MB
    fresh_window_seconds: float = 3600.0


@dataclass(frozen=True)
class RuleHit:
    """One rule's contribution."""
    level: ThreatLevel
    priority: int
    reason: str


def file_sha256(path: str) -> str:
    """Lower-case hex SHA-256 of a file, streamed in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _normalize(path: str) -> str:
    return os.path.normcase(os.path.abspath(os.path.expandvars(path)))


def is_under(path: str, roots) -> bool:
    """True if ``path`` is one of ``roots`` or lies beneath one of them."""
    norm = _normalize(path)
    for root in roots:
        if not root:
            continue
        root_norm = _normalize(root).rstrip("\\/")
        if norm == root_norm or norm.startswith(root_norm + os.sep):
            return True
    return False


class ThreatClassifier:
    """
    Heuristic file classifier.

    ``classify`` is side-effect free apart from reading the file for the
    hash rule; it never raises for unreadable files (they get no opinion).

    Args:
        config: Rule tables and thresholds
        clock: Wall-clock source in epoch seconds (freshness rule)
        hasher: Content hash function (path -> hex digest)
    """

    def __init__(
        self,
        config: Optional[RuleConfig] = None,
        clock: Callable[[], float] = time.time,
        hasher: Callable[[str], str] = file_sha256,
    ):
        self.config = config or RuleConfig()
        self._clock = clock
        self._hasher = hasher

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def classify_path(self, path: str) -> Optional[ScanResult]:
        """Snapshot ``path`` and classify it. Unreadable files yield None."""
        try:
            target = ScanTarget.from_path(path)
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.debug("Skipping unreadable file %s: %s", path, exc)
            return None
        return self.classify(target)

    def classify(self, target: ScanTarget) -> Optional[ScanResult]:
        """Classify a snapshot. Returns None when no rule fires."""
        cfg = self.config
        file_name = target.file_name.lower()

        if file_name in cfg.ignored_file_names:
            return None
        if cfg.whitelist_paths and is_under(target.path, cfg.whitelist_paths):
            return None

        in_temp = bool(cfg.temp_paths) and is_under(target.path, cfg.temp_paths)

        hits: List[RuleHit] = []
        for rule in (
            self._rule_suspicious_extension,
            self._rule_extensionless_executable,
            self._rule_offensive_tool,
            self._rule_double_extension,
        ):
            hit = rule(target, file_name)
            if hit is not None:
                hits.append(hit)

        if in_temp:
            hit = self._rule_temp_size(target)
            if hit is not None:
                hits.append(hit)

        content_hash: Optional[str] = None
        current_max = max((h.level for h in hits), default=None)
        if current_max != ThreatLevel.CRITICAL and target.size < cfg.hash_size_cap:
            try:
                content_hash = self._hasher(target.path)
            except OSError as exc:
                logger.debug("Unreadable file excluded from results %s: %s", target.path, exc)
                return None
            signature = cfg.known_malicious_hashes.get(content_hash.lower())
            if signature:
                hits.append(RuleHit(
                    ThreatLevel.CRITICAL, PRIORITY_HASH,
                    f"Known malware signature: {signature}",
                ))

        if not hits:
            return None

        hits.sort(key=lambda h: (-h.level, h.priority))
        level = hits[0].level
        reasons = [h.reason for h in hits]

        if self._is_fresh(target):
            level = level.escalate()
            reasons.append("Recently created suspicious file")

        return ScanResult(
            path=target.path,
            size=target.size,
            created_at=datetime.fromtimestamp(target.created_at, timezone.utc),
            modified_at=datetime.fromtimestamp(target.modified_at, timezone.utc),
            extension=target.extension,
            threat_level=level,
            reasons=tuple(reasons),
            content_hash=content_hash,
        )

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _rule_suspicious_extension(self, target: ScanTarget, file_name: str) -> Optional[RuleHit]:
        if target.extension and target.extension in self.config.suspicious_extensions:
            return RuleHit(
                ThreatLevel.MEDIUM, PRIORITY_EXTENSION,
                f"Suspicious file type: {target.extension}",
            )
        return None

    def _rule_extensionless_executable(self, target: ScanTarget, file_name: str) -> Optional[RuleHit]:
        if target.extension or not target.magic:
            return None
        for magic, description in EXECUTABLE_MAGIC:
            if target.magic.startswith(magic):
                return RuleHit(
                    ThreatLevel.HIGH, PRIORITY_MAGIC,
                    f"Extensionless executable ({description})",
                )
        return None

    def _rule_offensive_tool(self, target: ScanTarget, file_name: str) -> Optional[RuleHit]:
        for tool in self.config.offensive_tool_names:
            if tool and _tool_name_matches(tool.lower(), file_name):
                if get_log_throttler().allow(f"offensive-tool:{tool}", OFFENSIVE_TOOL_WARN_INTERVAL):
                    logger.warning("Known offensive tool name '%s' matched: %s", tool, target.path)
                return RuleHit(
                    ThreatLevel.CRITICAL, PRIORITY_OFFENSIVE_TOOL,
                    f"Known offensive tool: {tool}",
                )
        return None

    def _rule_double_extension(self, target: ScanTarget, file_name: str) -> Optional[RuleHit]:
        parts = file_name.lstrip(".").split(".")
        if len(parts) < 3 or not parts[-2]:
            return None
        last_ext = f".{parts[-1]}"
        if last_ext in self.config.suspicious_extensions:
            return RuleHit(
                ThreatLevel.HIGH, PRIORITY_DOUBLE_EXTENSION,
                f"Double file extension (.{parts[-2]}{last_ext} masquerade)",
            )
        return None

    def _rule_temp_size(self, target: ScanTarget) -> Optional[RuleHit]:
        if target.size == 0:
            return RuleHit(
                ThreatLevel.LOW, PRIORITY_EMPTY_FILE,
                "Empty file in temp directory (placeholder/dropper artifact)",
            )
        if target.size > self.config.large_file_threshold:
            return RuleHit(
                ThreatLevel.MEDIUM, PRIORITY_LARGE_FILE,
                "Very large file in temp directory",
            )
        return None

    def _is_fresh(self, target: ScanTarget) -> bool:
        window = self.config.fresh_window_seconds
        if window <= 0:
            return False
        return self._clock() - target.created_at <= window


def classify(target: ScanTarget, config: Optional[RuleConfig] = None) -> Optional[ScanResult]:
    """Functional form of ``ThreatClassifier(config).classify(target)``."""
    return ThreatClassifier(config).classify(target)
