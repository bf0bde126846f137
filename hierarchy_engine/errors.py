"""
Resolution engine exception hierarchy.

Every error carries a machine-readable code (HE_<CATEGORY>) so that run
reports and API responses can be filtered without parsing messages.
Only ConfigurationError is fatal to a run; the others are recovered at
the record or group boundary.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class EngineError(Exception):
    """
    Base exception for all resolution engine errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (HE_*)
        details: Additional context about the error
        group_id: Business group the error belongs to, if any
        certificate_id: Certificate the error belongs to, if any
    """
    message: str
    code: str = "HE_INTERNAL_ERROR"
    details: Dict[str, Any] = field(default_factory=dict)
    group_id: Optional[str] = None
    certificate_id: Optional[str] = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def __str__(self) -> str:
        parts = [f"[{self.code}] {self.message}"]
        if self.group_id:
            parts.append(f"(group: {self.group_id})")
        if self.certificate_id:
            parts.append(f"(certificate: {self.certificate_id})")
        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/API responses."""
        result: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        if self.group_id:
            result["group_id"] = self.group_id
        if self.certificate_id:
            result["certificate_id"] = self.certificate_id
        return result


@dataclass
class ConfigurationError(EngineError):
    """Thresholds or processing knobs are invalid. Fatal at run start."""
    code: str = "HE_CONFIG_INVALID"


@dataclass
class MalformedRecordError(EngineError):
    """An input row could not be parsed into a CertificateRecord."""
    code: str = "HE_RECORD_MALFORMED"


@dataclass
class InvariantViolationError(EngineError):
    """A certificate's configuration breaks a data-model invariant."""
    code: str = "HE_INVARIANT_VIOLATION"


@dataclass
class HashCollisionError(EngineError):
    """One digest was produced for two different serialized inputs."""
    code: str = "HE_HASH_COLLISION"


@dataclass
class StagingWriteError(EngineError):
    """The staging writer gave up after exhausting its retry policy."""
    code: str = "HE_STAGING_WRITE"
