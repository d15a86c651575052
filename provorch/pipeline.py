"""
Stage pipeline - ordered, gated, idempotent provisioning steps.

Stages run strictly one after another in declared order. For each stage:

1. Evaluate its precondition over the outcomes so far. If it does not hold,
   record SKIPPED and move on. A precondition that raises records FAILED.
2. Invoke the action. Returning normally means SUCCEEDED; raising (or
   returning a failed status) means FAILED with a stage_action error.
3. If a critical stage FAILED, stop: no later stage runs.
   A non-critical failure is recorded and the pipeline continues.

Cancellation is checked between stages: the stage in progress when the
token fires is recorded as FAILED/cancelled and no further stage begins.

Actions must check current state before acting (already installed, already
healthy, ...) so the whole pipeline can be re-run after an operator fixes
the environment.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Sequence, Union

from provorch.cancellation import CancellationToken
from provorch.errors import Cancelled, ErrorKind, PipelineConstructionError
from provorch.probe import ProbeClient
from provorch.schemas import DiagnosticEvent, ErrorInfo, StageOutcome, StageStatus
from provorch.supervisor import ServiceSupervisor

if TYPE_CHECKING:
    from provorch.collaborators import Collaborators
    from provorch.config import ProvisionConfig

logger = logging.getLogger(__name__)

ActionResult = Union[None, bool, StageStatus, StageOutcome]
StageAction = Callable[["StageContext"], Union[ActionResult, Awaitable[ActionResult]]]
Precondition = Callable[[tuple[StageOutcome, ...]], bool]


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Stage:
    """
    One unit of the provisioning pipeline.

    Attributes:
        name: Unique stage name
        action: Callable taking a StageContext (sync or async)
        critical: If True, failure halts the pipeline
        requires: Earlier stages that must have SUCCEEDED for this one to run
        precondition: Custom predicate over prior outcomes (replaces the default)
        description: Shown in dry runs and validation output
        ordinal: 1-based position, assigned by StagePipeline
    """
    name: str
    action: StageAction = field(compare=False)
    critical: bool = True
    requires: tuple[str, ...] = ()
    precondition: Optional[Precondition] = field(default=None, compare=False)
    description: str = ""
    ordinal: int = 0


@dataclass
class RunContext:
    """Everything a run shares across stages; threaded explicitly, never global."""
    config: "ProvisionConfig"
    supervisor: ServiceSupervisor
    probe_client: ProbeClient
    cancel: CancellationToken
    collaborators: "Collaborators"


class StageContext:
    """
    What a stage action sees: the run context, prior outcomes, and a
    diagnostics recorder for this stage.
    """

    def __init__(self, run: RunContext, stage: Stage, prior: tuple[StageOutcome, ...]):
        self.run = run
        self.stage = stage
        self.prior = prior
        self._diagnostics: list[DiagnosticEvent] = []

    @property
    def config(self) -> "ProvisionConfig":
        return self.run.config

    @property
    def supervisor(self) -> ServiceSupervisor:
        return self.run.supervisor

    @property
    def probe_client(self) -> ProbeClient:
        return self.run.probe_client

    @property
    def cancel(self) -> CancellationToken:
        return self.run.cancel

    @property
    def collaborators(self) -> "Collaborators":
        return self.run.collaborators

    @property
    def diagnostics(self) -> tuple[DiagnosticEvent, ...]:
        return tuple(self._diagnostics)

    def note(self, message: str) -> None:
        """Record a timestamped diagnostic for this stage."""
        self._diagnostics.append(DiagnosticEvent(message=message, at=_utcnow()))
        logger.info(message, extra={"event": "stage_note", "stage": self.stage.name})

    def outcome_of(self, stage_name: str) -> Optional[StageOutcome]:
        for outcome in self.prior:
            if outcome.stage_name == stage_name:
                return outcome
        return None


@dataclass(frozen=True)
class PipelineExecution:
    """What StagePipeline.execute() hands back to the run."""
    outcomes: tuple[StageOutcome, ...]
    halted: bool = False
    cancelled: bool = False


class StagePipeline:
    """
    An ordered list of stages.

    Construction validates the stage graph and raises
    PipelineConstructionError before anything runs.
    """

    def __init__(self, stages: Sequence[Stage], name: str = "provision"):
        self.name = name
        self.stages: tuple[Stage, ...] = tuple(
            replace(stage, ordinal=i) for i, stage in enumerate(stages, start=1)
        )
        self._validate()

    def _validate(self) -> None:
        if not self.stages:
            raise PipelineConstructionError(f"Pipeline '{self.name}' has no stages")

        positions: dict[str, int] = {}
        for stage in self.stages:
            if not stage.name:
                raise PipelineConstructionError(f"Stage #{stage.ordinal} has no name")
            if stage.name in positions:
                raise PipelineConstructionError(f"Duplicate stage name: {stage.name}")
            if not callable(stage.action):
                raise PipelineConstructionError(f"Stage {stage.name}: action is not callable")
            positions[stage.name] = stage.ordinal

        for stage in self.stages:
            for required in stage.requires:
                if required == stage.name:
                    raise PipelineConstructionError(f"Stage {stage.name} requires itself")
                if required not in positions:
                    raise PipelineConstructionError(
                        f"Stage {stage.name} requires unknown stage: {required}"
                    )
                if positions[required] > stage.ordinal:
                    raise PipelineConstructionError(
                        f"Stage {stage.name} requires later stage {required} "
                        f"(stages run in declared order, this would form a cycle)"
                    )

    def __len__(self) -> int:
        return len(self.stages)

    def __iter__(self):
        return iter(self.stages)

    def get_stage(self, name: str) -> Optional[Stage]:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    @property
    def critical_stages(self) -> tuple[Stage, ...]:
        return tuple(s for s in self.stages if s.critical)

    async def execute(self, run: RunContext) -> PipelineExecution:
        """
        Run stages in order until the end, a critical failure, or cancellation.

        Returns:
            PipelineExecution with outcomes in declared order
        """
        outcomes: list[StageOutcome] = []

        for stage in self.stages:
            if run.cancel.cancelled:
                logger.warning(
                    f"Not starting stage {stage.name}: run cancelled",
                    extra={"event": "stage_not_started", "stage": stage.name},
                )
                return PipelineExecution(tuple(outcomes), cancelled=True)

            outcome = await self.run_stage(stage, run, tuple(outcomes))
            outcomes.append(outcome)

            if run.cancel.cancelled:
                return PipelineExecution(tuple(outcomes), cancelled=True)

            if outcome.failed and stage.critical:
                logger.error(
                    f"Pipeline halted at critical stage {stage.name}",
                    extra={
                        "event": "pipeline_halted",
                        "stage": stage.name,
                        "metadata": {"error": outcome.error.to_dict() if outcome.error else None},
                    },
                )
                return PipelineExecution(tuple(outcomes), halted=True)

        return PipelineExecution(tuple(outcomes))

    async def run_stage(self, stage: Stage, run: RunContext, prior: tuple[StageOutcome, ...]) -> StageOutcome:
        """Evaluate one stage's precondition and run its action, capturing the outcome."""
        try:
            unmet = self._unmet_precondition(stage, prior)
        except Exception as e:
            logger.error(
                f"Stage {stage.name} precondition raised: {e}",
                extra={"event": "stage_precondition_error", "stage": stage.name,
                       "metadata": {"exception": str(e), "critical": stage.critical}},
                exc_info=True,
            )
            now = _utcnow()
            return StageOutcome(
                stage_name=stage.name,
                ordinal=stage.ordinal,
                status=StageStatus.FAILED,
                critical=stage.critical,
                error=ErrorInfo.from_exception(e, kind=ErrorKind.STAGE_ACTION),
                started_at=now,
                ended_at=now,
            )

        if unmet is not None:
            logger.info(
                f"Skipping stage {stage.name}: {unmet}",
                extra={"event": "stage_skipped", "stage": stage.name},
            )
            return StageOutcome(
                stage_name=stage.name,
                ordinal=stage.ordinal,
                status=StageStatus.SKIPPED,
                critical=stage.critical,
                error=ErrorInfo(kind=ErrorKind.DEPENDENCY_UNMET, message=unmet),
            )

        ctx = StageContext(run, stage, prior)
        started_at = _utcnow()
        logger.info(
            f"Executing stage: {stage.name}",
            extra={"event": "stage_starting", "stage": stage.name, "metadata": {"ordinal": stage.ordinal}},
        )

        status = StageStatus.SUCCEEDED
        error: Optional[ErrorInfo] = None
        extra_diagnostics: tuple[DiagnosticEvent, ...] = ()

        try:
            result = stage.action(ctx)
            if inspect.isawaitable(result):
                result = await result
            status, error, extra_diagnostics = self._interpret(stage, result)
        except asyncio.CancelledError:
            raise
        except Cancelled as e:
            status, error = StageStatus.FAILED, ErrorInfo.from_exception(e, kind=ErrorKind.CANCELLED)
        except Exception as e:
            logger.error(
                f"Stage {stage.name} failed with exception: {e}",
                extra={"event": "stage_exception", "stage": stage.name, "metadata": {"exception": str(e)}},
                exc_info=True,
            )
            status, error = StageStatus.FAILED, ErrorInfo.from_exception(e, kind=ErrorKind.STAGE_ACTION)

        if run.cancel.cancelled and (error is None or error.kind != ErrorKind.CANCELLED):
            status = StageStatus.FAILED
            error = ErrorInfo(
                kind=ErrorKind.CANCELLED,
                message=f"Stage {stage.name} interrupted: {run.cancel.reason or 'cancelled'}",
                details={"previous_error": error.to_dict()} if error else {},
            )

        outcome = StageOutcome(
            stage_name=stage.name,
            ordinal=stage.ordinal,
            status=status,
            critical=stage.critical,
            diagnostics=ctx.diagnostics + extra_diagnostics,
            error=error,
            started_at=started_at,
            ended_at=_utcnow(),
        )

        if outcome.succeeded:
            logger.info(
                f"Stage {stage.name} completed successfully",
                extra={"event": "stage_completed", "stage": stage.name,
                       "metadata": {"duration_ms": outcome.duration_ms}},
            )
        elif outcome.failed:
            logger.error(
                f"Stage {stage.name} failed: {error.message if error else 'unknown error'}",
                extra={"event": "stage_failed", "stage": stage.name,
                       "metadata": {"error": error.to_dict() if error else None, "critical": stage.critical}},
            )
        return outcome

    @staticmethod
    def _unmet_precondition(stage: Stage, prior: tuple[StageOutcome, ...]) -> Optional[str]:
        by_name = {o.stage_name: o for o in prior}

        for required in stage.requires:
            outcome = by_name.get(required)
            if outcome is None or not outcome.succeeded:
                state = outcome.status.value if outcome else "not run"
                return f"required stage {required} is {state}"

        if stage.precondition is not None:
            if not stage.precondition(prior):
                return "precondition not met"
            return None

        for outcome in prior:
            if outcome.critical and not outcome.succeeded:
                return f"critical stage {outcome.stage_name} is {outcome.status.value}"
        return None

    @staticmethod
    def _interpret(
        stage: Stage, result: Any
    ) -> tuple[StageStatus, Optional[ErrorInfo], tuple[DiagnosticEvent, ...]]:
        if result is None or result is True:
            return StageStatus.SUCCEEDED, None, ()
        if result is False:
            return StageStatus.FAILED, ErrorInfo(
                kind=ErrorKind.STAGE_ACTION, message=f"Stage {stage.name} reported failure"
            ), ()
        if isinstance(result, StageStatus):
            if result == StageStatus.FAILED:
                return result, ErrorInfo(
                    kind=ErrorKind.STAGE_ACTION, message=f"Stage {stage.name} reported failure"
                ), ()
            return result, None, ()
        if isinstance(result, StageOutcome):
            error = result.error
            if result.status == StageStatus.FAILED and error is None:
                error = ErrorInfo(kind=ErrorKind.STAGE_ACTION, message=f"Stage {stage.name} reported failure")
            return result.status, error, result.diagnostics
        raise TypeError(f"Stage {stage.name} returned unsupported result: {type(result).__name__}")
