"""
Extension points the monitor and orchestrator may call.

Network and registry inspection, binary signature verification and
system hardening are OS-specific. The core only depends on these narrow
interfaces; the ``Null*`` implementations are the defaults and observe
nothing.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from .models import SecurityEvent

logger = logging.getLogger(__name__)


class NetworkInspector(ABC):
    """Looks for suspicious connections (mining pools, known C2 ports)."""

    @abstractmethod
    def inspect(self) -> List[SecurityEvent]:
        """Return detections from one inspection pass."""


class RegistryInspector(ABC):
    """Looks for persistence changes (startup keys, policy tampering)."""

    @abstractmethod
    def inspect(self) -> List[SecurityEvent]:
        """Return detections from one inspection pass."""


class SignatureChecker(ABC):
    """Answers whether an executable carries a valid code signature."""

    @abstractmethod
    def is_signed(self, executable_path: str) -> Optional[bool]:
        """True if signed, False if unsigned, None if it cannot tell."""


@dataclass
class HardeningResult:
    success: bool
    message: str = ""
    applied: List[str] = field(default_factory=list)


class SystemHardening(ABC):
    """Policy application collaborator, called after a confirmed threat."""

    @abstractmethod
    def apply_system_hardening(self) -> HardeningResult:
        """Apply OS security policies. Must not raise for expected failures."""


class NullNetworkInspector(NetworkInspector):
    def inspect(self) -> List[SecurityEvent]:
        return []


class NullRegistryInspector(RegistryInspector):
    def inspect(self) -> List[SecurityEvent]:
        return []


class NullSignatureChecker(SignatureChecker):
    def is_signed(self, executable_path: str) -> Optional[bool]:
        return None


class NullSystemHardening(SystemHardening):
    def apply_system_hardening(self) -> HardeningResult:
        logger.debug("System hardening not configured, nothing applied")
        return HardeningResult(success=True, message="No hardening configured")
