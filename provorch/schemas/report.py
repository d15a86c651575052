"""
RunReport schema - the immutable record of one orchestration attempt.

A RunReport is assembled by OrchestrationRun once the pipeline has finished
(or halted, or been cancelled) and is handed to the caller frozen.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .outcome import StageOutcome, StageStatus
from .service import ServiceSnapshot


class RunStatus(str, Enum):
    """Overall status of a run."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class RunReport:
    """
    A record of one end-to-end orchestration run.

    Attributes:
        run_id: Unique identifier of this run
        pipeline_name: Name of the pipeline that was executed
        status: succeeded only if every critical stage succeeded
        started_at: When the run started
        ended_at: When the run ended
        outcomes: Stage outcomes in declared (= execution) order
        services: Final state of every service handle seen during the run
        cancelled: True if external cancellation was observed
        error_message: Set when the run failed outside any stage
    """
    run_id: str
    pipeline_name: str
    status: RunStatus
    started_at: datetime
    ended_at: datetime
    outcomes: tuple[StageOutcome, ...] = field(default_factory=tuple)
    services: tuple[ServiceSnapshot, ...] = field(default_factory=tuple)
    cancelled: bool = False
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    def get_outcome(self, stage_name: str) -> Optional[StageOutcome]:
        """Get the outcome for a specific stage."""
        for outcome in self.outcomes:
            if outcome.stage_name == stage_name:
                return outcome
        return None

    def get_failed_stages(self) -> tuple[StageOutcome, ...]:
        """Get all failed stage outcomes."""
        return tuple(o for o in self.outcomes if o.status == StageStatus.FAILED)

    def get_service(self, name: str) -> Optional[ServiceSnapshot]:
        for service in self.services:
            if service.name == name:
                return service
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "run_id": self.run_id,
            "pipeline_name": self.pipeline_name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "cancelled": self.cancelled,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "services": [s.to_dict() for s in self.services],
        }
        if self.error_message is not None:
            result["error_message"] = self.error_message
        return result

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunReport":
        """Deserialize from dictionary."""
        return cls(
            run_id=data["run_id"],
            pipeline_name=data["pipeline_name"],
            status=RunStatus(data["status"]),
            started_at=datetime.fromisoformat(data["started_at"]),
            ended_at=datetime.fromisoformat(data["ended_at"]),
            outcomes=tuple(StageOutcome.from_dict(o) for o in data.get("outcomes", [])),
            services=tuple(ServiceSnapshot.from_dict(s) for s in data.get("services", [])),
            cancelled=data.get("cancelled", False),
            error_message=data.get("error_message"),
        )
