"""
Outcome schemas - tracking stage results and their diagnostics.

StageOutcome tracks the result of executing a single stage within a run.
DiagnosticEvent is one timestamped, human-readable line of what a stage did.
ErrorInfo is the structured error attached to a failed stage or service.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from provorch.errors import ErrorKind, ProvorchError


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class StageStatus(str, Enum):
    """Status of a stage execution."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class DiagnosticEvent:
    """A timestamped, human-readable event recorded while a stage ran."""
    message: str
    at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {"at": self.at.isoformat(), "message": self.message}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DiagnosticEvent":
        return cls(message=data["message"], at=datetime.fromisoformat(data["at"]))


@dataclass(frozen=True)
class ErrorInfo:
    """
    Structured error details.

    Attributes:
        kind: Taxonomy entry (launch, probe_timeout, cancelled, ...)
        message: Human-readable description
        details: Extra machine-readable context (exception type, service name, ...)
    """
    kind: ErrorKind
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException, kind: Optional[ErrorKind] = None) -> "ErrorInfo":
        """Capture an exception as data, keeping provorch error kinds when present."""
        details: dict[str, Any] = {"type": type(exc).__name__}
        if isinstance(exc, ProvorchError):
            details.update(exc.details)
            resolved = kind or exc.kind
        else:
            resolved = kind or ErrorKind.STAGE_ACTION
        return cls(kind=resolved, message=str(exc) or type(exc).__name__, details=details)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ErrorInfo":
        return cls(
            kind=ErrorKind(data["kind"]),
            message=data["message"],
            details=data.get("details", {}),
        )


@dataclass(frozen=True)
class StageOutcome:
    """
    The outcome of executing a single stage within a run.

    Attributes:
        stage_name: Name of the stage
        ordinal: 1-based position of the stage in its pipeline
        status: succeeded, failed, or skipped
        critical: Whether the stage's failure halts the pipeline
        diagnostics: Ordered, timestamped events recorded by the stage
        error: Error details if status is failed (or why it was skipped)
        started_at: When stage execution started (null if skipped before running)
        ended_at: When stage execution ended
    """
    stage_name: str
    ordinal: int
    status: StageStatus
    critical: bool = True
    diagnostics: tuple[DiagnosticEvent, ...] = field(default_factory=tuple)
    error: Optional[ErrorInfo] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    def __post_init__(self):
        if self.ordinal < 1:
            raise ValueError("ordinal must be >= 1")
        if self.status in (StageStatus.SUCCEEDED, StageStatus.FAILED):
            if self.started_at is None or self.ended_at is None:
                raise ValueError(f"{self.status.value} stages must have started_at and ended_at")
        if self.status == StageStatus.SUCCEEDED and self.error is not None:
            raise ValueError("Succeeded stages cannot carry an error")

    @property
    def succeeded(self) -> bool:
        return self.status == StageStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status == StageStatus.FAILED

    @property
    def duration_ms(self) -> Optional[int]:
        """Calculate execution duration in milliseconds if both timestamps present."""
        if self.started_at and self.ended_at:
            delta = self.ended_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "stage_name": self.stage_name,
            "ordinal": self.ordinal,
            "status": self.status.value,
            "critical": self.critical,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }
        if self.started_at is not None:
            result["started_at"] = self.started_at.isoformat()
        if self.ended_at is not None:
            result["ended_at"] = self.ended_at.isoformat()
        if self.duration_ms is not None:
            result["duration_ms"] = self.duration_ms
        if self.error is not None:
            result["error"] = self.error.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StageOutcome":
        """Deserialize from dictionary."""
        return cls(
            stage_name=data["stage_name"],
            ordinal=data["ordinal"],
            status=StageStatus(data["status"]),
            critical=data.get("critical", True),
            diagnostics=tuple(DiagnosticEvent.from_dict(d) for d in data.get("diagnostics", [])),
            error=ErrorInfo.from_dict(data["error"]) if data.get("error") else None,
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            ended_at=datetime.fromisoformat(data["ended_at"]) if data.get("ended_at") else None,
        )
