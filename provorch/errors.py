"""
Error classes for provorch.

These error types classify failures at the supervisor and pipeline boundaries:
- TransientError: Safe to retry (probe timeouts, connection refused)
- PermanentError: Do not retry (launch failures, malformed pipelines)

Every error carries a `kind` that names its place in the taxonomy. The
supervisor and the pipeline catch these at their boundaries and record them
as data (ErrorInfo on a ServiceHandle or StageOutcome). Only
PipelineConstructionError and ConfigError reach the caller, since no partial
run has happened yet when they are raised.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Taxonomy of failures recorded in outcomes and service handles."""
    LAUNCH = "launch"
    PROBE_TIMEOUT = "probe_timeout"
    PROBE_UNREACHABLE = "probe_unreachable"
    DEPENDENCY_UNMET = "dependency_unmet"
    STAGE_ACTION = "stage_action"
    PIPELINE_CONSTRUCTION = "pipeline_construction"
    CANCELLED = "cancelled"


class ProvorchError(Exception):
    """Base exception for provorch."""

    kind: ErrorKind = ErrorKind.STAGE_ACTION

    def __init__(self, message: str = "", details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class TransientError(ProvorchError):
    """
    Transient error - safe to retry.

    Examples:
    - Probe timed out
    - Connection refused while a daemon is still booting
    """
    pass


class PermanentError(ProvorchError):
    """
    Permanent error - do not retry.

    Examples:
    - Start command not found
    - Process exited during launch
    - Stage graph references an unknown stage
    """
    pass


class LaunchError(PermanentError):
    """A service's start action failed to even begin."""
    kind = ErrorKind.LAUNCH


class ProbeTimeout(TransientError):
    """Readiness probes kept timing out until the retry policy gave up."""
    kind = ErrorKind.PROBE_TIMEOUT


class ProbeUnreachable(TransientError):
    """Readiness probes kept failing until the retry policy gave up."""
    kind = ErrorKind.PROBE_UNREACHABLE


class DependencyUnmet(PermanentError):
    """A dependency never became healthy, so the dependent was never attempted."""
    kind = ErrorKind.DEPENDENCY_UNMET


class StageActionError(ProvorchError):
    """
    A stage action reported a structured failure.

    Stage authors raise this (or return a failed outcome) when a collaborator
    reports failure. Any other exception escaping an action is wrapped into
    the same kind.
    """
    kind = ErrorKind.STAGE_ACTION


class PipelineConstructionError(PermanentError):
    """The stage graph is malformed; raised before any stage runs."""
    kind = ErrorKind.PIPELINE_CONSTRUCTION


class Cancelled(ProvorchError):
    """External cancellation was observed mid-run."""
    kind = ErrorKind.CANCELLED


class ConfigError(PermanentError):
    """Configuration validation error."""
    kind = ErrorKind.PIPELINE_CONSTRUCTION


class InvalidTransition(ProvorchError):
    """A service handle was asked to make a transition its state machine forbids."""

    def __init__(self, name: str, current: Any, target: Any):
        self.name = name
        self.current = current
        self.target = target
        super().__init__(
            f"Service '{name}': illegal transition "
            f"{getattr(current, 'value', current)} -> {getattr(target, 'value', target)}"
        )
