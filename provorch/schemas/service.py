"""
Service schemas - the supervisor's view of one managed local service.

ServiceState is the readiness state machine:
    NOT_STARTED -> STARTING -> PROBING -> {HEALTHY | FAILED}
    NOT_STARTED -> SKIPPED  (dependency unmet, or cancelled before start)

ServiceSnapshot is the frozen copy of a handle that ends up in a RunReport.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .outcome import ErrorInfo


class ServiceState(str, Enum):
    """Lifecycle state of a ServiceHandle."""
    NOT_STARTED = "not_started"
    STARTING = "starting"
    PROBING = "probing"
    HEALTHY = "healthy"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (ServiceState.HEALTHY, ServiceState.FAILED, ServiceState.SKIPPED)


@dataclass(frozen=True)
class ServiceSnapshot:
    """Final (or current) state of one service handle."""
    name: str
    state: ServiceState
    required: bool = True
    attempts: int = 0
    error: Optional[ErrorInfo] = None
    last_detail: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "state": self.state.value,
            "required": self.required,
            "attempts": self.attempts,
        }
        if self.error is not None:
            result["error"] = self.error.to_dict()
        if self.last_detail is not None:
            result["last_detail"] = self.last_detail
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ServiceSnapshot":
        return cls(
            name=data["name"],
            state=ServiceState(data["state"]),
            required=data.get("required", True),
            attempts=data.get("attempts", 0),
            error=ErrorInfo.from_dict(data["error"]) if data.get("error") else None,
            last_detail=data.get("last_detail"),
        )
