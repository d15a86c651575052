"""
provorch.schemas - Result data structures for the orchestration core.

    StageOutcome -> RunReport
    ServiceSnapshot -> RunReport

All records are frozen dataclasses with to_dict()/from_dict() so a report can
be logged, persisted, and displayed without the core doing any formatting.
"""

from .outcome import (
    DiagnosticEvent,
    ErrorInfo,
    StageOutcome,
    StageStatus,
)
from .service import (
    ServiceSnapshot,
    ServiceState,
)
from .report import (
    RunReport,
    RunStatus,
)

__all__ = [
    # Outcome
    "DiagnosticEvent",
    "ErrorInfo",
    "StageOutcome",
    "StageStatus",
    # Service
    "ServiceSnapshot",
    "ServiceState",
    # Report
    "RunReport",
    "RunStatus",
]
