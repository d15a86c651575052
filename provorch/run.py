"""
OrchestrationRun - one end-to-end attempt to bring the stack to ready.

A run owns a fresh ServiceSupervisor and ProbeClient, executes the pipeline
once, and hands back a frozen RunReport. Once started it never raises:
anything unexpected becomes a FAILED report with error_message set. There
are no run-level retries; re-running is the operator's decision and is safe
because stage actions are idempotent.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from provorch.cancellation import CancellationToken
from provorch.pipeline import PipelineExecution, RunContext, StagePipeline
from provorch.probe import DEFAULT_PROBE_TIMEOUT, ProbeClient
from provorch.retry import RetryPolicy
from provorch.schemas import RunReport, RunStatus, ServiceSnapshot, StageOutcome
from provorch.supervisor import ServiceSupervisor

if TYPE_CHECKING:
    from provorch.collaborators import Collaborators
    from provorch.config import ProvisionConfig

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_status(
    pipeline: StagePipeline,
    outcomes: tuple[StageOutcome, ...],
    cancelled: bool = False,
    error_message: Optional[str] = None,
) -> RunStatus:
    """
    SUCCEEDED only if every critical stage of the pipeline succeeded.

    Critical stages that were never reached (halt, cancellation) count as
    not succeeded. Non-critical failures do not affect the status.
    """
    if cancelled or error_message:
        return RunStatus.FAILED
    by_name = {o.stage_name: o for o in outcomes}
    for stage in pipeline.critical_stages:
        outcome = by_name.get(stage.name)
        if outcome is None or not outcome.succeeded:
            return RunStatus.FAILED
    return RunStatus.SUCCEEDED


class OrchestrationRun:
    """
    Executes a StagePipeline against a set of collaborators.

    Usage:
        run = OrchestrationRun.from_config(config, collaborators)
        report = run.run(build_pipeline(config))
        if not report.succeeded:
            ...
    """

    def __init__(
        self,
        config: Optional["ProvisionConfig"] = None,
        collaborators: Optional["Collaborators"] = None,
        retry: Optional[RetryPolicy] = None,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        stop_services_on_cancel: bool = False,
    ):
        if collaborators is None:
            from provorch.collaborators import Collaborators
            collaborators = Collaborators()
        self.config = config
        self.collaborators = collaborators
        self.retry = retry or RetryPolicy()
        self.probe_timeout = probe_timeout
        self.stop_services_on_cancel = stop_services_on_cancel

    @classmethod
    def from_config(cls, config: "ProvisionConfig", collaborators: Optional["Collaborators"] = None) -> "OrchestrationRun":
        """Build a run with retry, probe timeout and cancel behaviour taken from config."""
        return cls(
            config=config,
            collaborators=collaborators,
            retry=config.get_retry_policy(),
            probe_timeout=config.get_probe_timeout(),
            stop_services_on_cancel=config.should_stop_services_on_cancel(),
        )

    def run(self, pipeline: StagePipeline, cancel: Optional[CancellationToken] = None) -> RunReport:
        """Synchronous wrapper around run_async()."""
        return asyncio.run(self.run_async(pipeline, cancel))

    async def run_async(self, pipeline: StagePipeline, cancel: Optional[CancellationToken] = None) -> RunReport:
        """
        Execute the pipeline once.

        Args:
            pipeline: Validated stage pipeline
            cancel: Token the caller may fire to stop the run early

        Returns:
            RunReport (frozen)
        """
        cancel = cancel or CancellationToken()
        run_id = f"run_{uuid.uuid4().hex[:12]}"
        started_at = _utcnow()

        logger.info(
            f"Starting run {run_id}: {pipeline.name} ({len(pipeline)} stages)",
            extra={
                "run_id": run_id,
                "event": "run_started",
                "metadata": {"pipeline": pipeline.name, "stages": [s.name for s in pipeline]},
            },
        )

        execution = PipelineExecution(outcomes=())
        services: tuple[ServiceSnapshot, ...] = ()
        error_message: Optional[str] = None
        supervisor: Optional[ServiceSupervisor] = None

        try:
            async with ProbeClient(default_timeout=self.probe_timeout) as probe_client:
                supervisor = ServiceSupervisor(
                    probe_client,
                    retry=self.retry,
                    probe_timeout=self.probe_timeout,
                    cancel=cancel,
                )
                context = RunContext(
                    config=self.config,
                    supervisor=supervisor,
                    probe_client=probe_client,
                    cancel=cancel,
                    collaborators=self.collaborators,
                )
                execution = await pipeline.execute(context)

                if (execution.cancelled or cancel.cancelled) and self.stop_services_on_cancel:
                    logger.info("Stopping services started by this run", extra={"run_id": run_id, "event": "services_stopping"})
                    await supervisor.stop_all()
        except Exception as e:
            error_message = f"{type(e).__name__}: {e}"
            logger.error(
                f"Run {run_id} failed with exception: {e}",
                extra={"run_id": run_id, "event": "run_exception", "metadata": {"exception": str(e)}},
                exc_info=True,
            )
        finally:
            if supervisor is not None:
                services = supervisor.snapshot()

        cancelled = execution.cancelled or cancel.cancelled
        status = compute_status(pipeline, execution.outcomes, cancelled, error_message)

        report = RunReport(
            run_id=run_id,
            pipeline_name=pipeline.name,
            status=status,
            started_at=started_at,
            ended_at=_utcnow(),
            outcomes=execution.outcomes,
            services=services,
            cancelled=cancelled,
            error_message=error_message,
        )

        if report.succeeded:
            logger.info(
                f"Run {run_id} succeeded",
                extra={"run_id": run_id, "event": "run_completed", "metadata": {"duration_seconds": report.duration_seconds}},
            )
        else:
            failed = [o.stage_name for o in report.get_failed_stages()]
            logger.warning(
                f"Run {run_id} failed" + (f": {', '.join(failed)}" if failed else ""),
                extra={
                    "run_id": run_id,
                    "event": "run_failed",
                    "metadata": {"failed_stages": failed, "cancelled": cancelled},
                },
            )
        return report
