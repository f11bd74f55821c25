# Core - Configuration
#
# A single ProtectionConfig carries every tunable of the agent: which
# paths are scanned, the classifier rule tables, quarantine policy and
# monitor timings. It is loaded from a JSON file (path given explicitly or
# via $FILKOLLEN_CONFIG) and then overridden by FILKOLLEN_* environment
# variables, which may themselves come from a .env file.

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from dotenv import find_dotenv, load_dotenv

if TYPE_CHECKING:
    from ..guardian.classifier import RuleConfig

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "FILKOLLEN_CONFIG"
MB = 1024 * 1024

DEFAULT_SUSPICIOUS_EXTENSIONS = [
    ".exe", ".bat", ".cmd", ".ps1", ".vbs", ".scr", ".com", ".pif",
    ".msi", ".jar", ".js", ".wsf", ".wsh",
]

# Offensive tooling commonly dropped into temp folders by intruders
DEFAULT_OFFENSIVE_TOOL_NAMES = [
    "nircmd", "mimikatz", "psexec", "netcat", "nc.exe", "procdump",
    "pwdump", "lazagne", "rubeus", "sharphound", "meterpreter",
]

# System artefacts never worth flagging
DEFAULT_IGNORED_FILE_NAMES = [
    "desktop.ini", "thumbs.db", ".ds_store", "autorun.inf",
]

# sha256 -> signature name
DEFAULT_KNOWN_MALICIOUS_HASHES = {
    "275a021bbfb6489e54d471899f7db9d1663fc695ec2fe2a2c4538aabf651fd0f":
        "EICAR-Test-File",
}


class ConfigError(Exception):
    """Raised when a configuration file cannot be parsed."""
    pass


def _default_temp_paths() -> List[str]:
    candidates = [
        tempfile.gettempdir(),
        os.environ.get("TEMP", ""),
        os.environ.get("TMP", ""),
        "/tmp",
        "/var/tmp",
        "C:\\Windows\\Temp",
    ]
    paths: List[str] = []
    for candidate in candidates:
        if candidate and os.path.isdir(candidate) and candidate not in paths:
            paths.append(candidate)
    return paths


def _default_home() -> Path:
    return Path(os.path.expanduser("~")) / ".filkollen"


@dataclass
class ProtectionConfig:
    """All runtime settings of the protection agent."""

    # Scan targets
    scan_paths: List[str] = field(default_factory=lambda: [tempfile.gettempdir()])
    temp_paths: List[str] = field(default_factory=_default_temp_paths)
    whitelist_paths: List[str] = field(default_factory=list)
    recursive: bool = False

    # Classifier rule tables
    suspicious_extensions: List[str] = field(
        default_factory=lambda: list(DEFAULT_SUSPICIOUS_EXTENSIONS))
    offensive_tool_names: List[str] = field(
        default_factory=lambda: list(DEFAULT_OFFENSIVE_TOOL_NAMES))
    ignored_file_names: List[str] = field(
        default_factory=lambda: list(DEFAULT_IGNORED_FILE_NAMES))
    known_malicious_hashes: Dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_KNOWN_MALICIOUS_HASHES))
    large_file_threshold: int = 100 * MB
    hash_size_cap: int = 50 * MB
    fresh_window_seconds: float = 3600.0

    # Quarantine
    quarantine_dir: str = field(default_factory=lambda: str(_default_home() / "quarantine"))
    retention_days: int = 30
    copy_attempts: int = 3
    copy_backoff_seconds: float = 0.2
    verify_byte_compare_cap: int = 10 * MB
    secure_delete_passes: int = 3

    # Orchestrator
    auto_clean_mode: bool = False
    terminate_malicious_processes: bool = False

    # Monitor timings
    scan_interval_seconds: float = 120.0
    directory_pass_timeout: float = 120.0
    process_interval_seconds: float = 5.0
    process_cooldown_seconds: float = 30.0
    max_processes_per_pass: int = 500
    process_analysis_timeout: float = 5.0
    process_pass_timeout: float = 30.0
    worker_count: int = field(default_factory=lambda: os.cpu_count() or 1)
    watcher_settle_seconds: float = 1.0

    # Event pipeline
    event_queue_cap: int = 1000
    event_batch_size: int = 10
    event_batch_interval: float = 1.0
    recent_events_cap: int = 100
    alert_dedup_window_seconds: float = 30.0

    # Logging
    audit_log_dir: str = field(default_factory=lambda: str(_default_home() / "audit_logs"))

    def rule_config(self) -> "RuleConfig":
        """Build the classifier's rule configuration from these settings."""
        from ..guardian.classifier import RuleConfig

        return RuleConfig(
            suspicious_extensions=frozenset(e.lower() for e in self.suspicious_extensions),
            offensive_tool_names=tuple(n.lower() for n in self.offensive_tool_names),
            ignored_file_names=frozenset(n.lower() for n in self.ignored_file_names),
            known_malicious_hashes={k.lower(): v for k, v in self.known_malicious_hashes.items()},
            temp_paths=tuple(self.temp_paths),
            whitelist_paths=tuple(self.whitelist_paths),
            large_file_threshold=self.large_file_threshold,
            hash_size_cap=self.hash_size_cap,
            fresh_window_seconds=self.fresh_window_seconds,
        )

    def add_to_whitelist(self, path: str) -> bool:
        """Whitelist a path prefix. Returns False if already present."""
        if path in self.whitelist_paths:
            return False
        self.whitelist_paths.append(path)
        logger.info("Added to whitelist: %s", path)
        return True

    def remove_from_whitelist(self, path: str) -> bool:
        """Remove a whitelisted prefix. Returns True if it was present."""
        if path not in self.whitelist_paths:
            return False
        self.whitelist_paths.remove(path)
        logger.info("Removed from whitelist: %s", path)
        return True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProtectionConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
        return cls(**{k: v for k, v in data.items() if k in known})


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_env_overrides(config: ProtectionConfig) -> None:
    env = os.environ
    if "FILKOLLEN_AUTO_CLEAN" in env:
        config.auto_clean_mode = _env_bool(env["FILKOLLEN_AUTO_CLEAN"])
    if env.get("FILKOLLEN_QUARANTINE_DIR"):
        config.quarantine_dir = env["FILKOLLEN_QUARANTINE_DIR"]
    if env.get("FILKOLLEN_RETENTION_DAYS"):
        try:
            config.retention_days = int(env["FILKOLLEN_RETENTION_DAYS"])
        except ValueError:
            logger.warning(
                "Invalid FILKOLLEN_RETENTION_DAYS=%r, keeping %d",
                env["FILKOLLEN_RETENTION_DAYS"], config.retention_days,
            )
    if env.get("FILKOLLEN_SCAN_PATHS"):
        config.scan_paths = [p for p in env["FILKOLLEN_SCAN_PATHS"].split(os.pathsep) if p]
    if env.get("FILKOLLEN_AUDIT_LOG_DIR"):
        config.audit_log_dir = env["FILKOLLEN_AUDIT_LOG_DIR"]


def load_config(path: Optional[str] = None) -> ProtectionConfig:
    """
    Load configuration.

    Order of precedence (lowest first): built-in defaults, JSON file,
    FILKOLLEN_* environment variables (a .env file is honoured).

    Raises:
        ConfigError: the config file exists but is not valid JSON
    """
    load_dotenv(find_dotenv(usecwd=True))

    config_path = path or os.environ.get(CONFIG_ENV_VAR)
    if config_path and Path(config_path).exists():
        try:
            data = json.loads(Path(config_path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Failed to read config {config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Config {config_path} must contain a JSON object")
        config = ProtectionConfig.from_dict(data)
    else:
        if config_path:
            logger.info("Config %s not found, using defaults", config_path)
        config = ProtectionConfig()

    _apply_env_overrides(config)
    return config


def save_config(config: ProtectionConfig, path: str) -> None:
    """Write configuration as indented JSON."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(config.to_dict(), indent=2), encoding="utf-8")
