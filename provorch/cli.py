"""
CLI interface for provorch.

Provides commands: run, validate, status, probe, init.

Exit codes for `run`: 0 when every critical stage succeeded, 1 on failure
(including invalid configuration), 130 when the run was cancelled.
"""

import asyncio
import signal
from pathlib import Path
from typing import Optional

import click
import yaml
from rich.table import Table

from provorch import __version__
from provorch.cancellation import CancellationToken
from provorch.collaborators import Collaborators
from provorch.config import ProvisionConfig, default_config, get_default_config_path, get_provorch_home, load_config
from provorch.errors import ConfigError, PipelineConstructionError
from provorch.pipeline import StagePipeline
from provorch.probe import ProbeClient, ProbeResult, ProbeTarget
from provorch.report_store import load_report, save_report
from provorch.run import OrchestrationRun
from provorch.schemas import RunReport
from provorch.stages import build_pipeline
from provorch.utils import (
    console,
    describe_error,
    describe_service,
    format_duration,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
    styled_status,
)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


def exit_code_for(report: RunReport) -> int:
    if report.cancelled:
        return EXIT_CANCELLED
    return EXIT_OK if report.succeeded else EXIT_FAILED


def _load(config: Optional[Path]) -> ProvisionConfig:
    provision_config = load_config(config)
    provision_config.validate()
    return provision_config


async def _run_with_signals(orchestration: OrchestrationRun, pipeline: StagePipeline) -> RunReport:
    """Run the pipeline with SIGINT/SIGTERM wired to the cancellation token."""
    cancel = CancellationToken()
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel.cancel, f"received {sig.name}")
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Platform or thread without loop signal support
            continue
    try:
        return await orchestration.run_async(pipeline, cancel)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def _probe_once(target: ProbeTarget, timeout: float) -> ProbeResult:
    async with ProbeClient(default_timeout=timeout) as client:
        return await client.probe(target)


def _display_plan(pipeline: StagePipeline) -> None:
    table = Table(title=f"Pipeline: {pipeline.name}")
    table.add_column("#", justify="right")
    table.add_column("Stage")
    table.add_column("Critical")
    table.add_column("Requires")
    table.add_column("Description")
    for stage in pipeline:
        table.add_row(
            str(stage.ordinal),
            stage.name,
            "yes" if stage.critical else "no",
            ", ".join(stage.requires) or "-",
            stage.description,
        )
    console.print(table)


def _display_report(report: RunReport) -> None:
    stages = Table(title=f"Run {report.run_id}")
    stages.add_column("#", justify="right")
    stages.add_column("Stage")
    stages.add_column("Status")
    stages.add_column("Duration", justify="right")
    stages.add_column("Detail")
    for outcome in report.outcomes:
        if outcome.error:
            detail = describe_error(outcome.error)
        elif outcome.diagnostics:
            detail = outcome.diagnostics[-1].message
        else:
            detail = ""
        duration = format_duration(outcome.duration_ms / 1000) if outcome.duration_ms is not None else "-"
        name = outcome.stage_name if outcome.critical else f"{outcome.stage_name} (optional)"
        stages.add_row(str(outcome.ordinal), name, styled_status(outcome.status.value), duration, detail)
    console.print(stages)

    if report.services:
        services = Table(title="Services")
        services.add_column("Service")
        services.add_column("State")
        services.add_column("Probes", justify="right")
        services.add_column("Detail")
        for service in report.services:
            services.add_row(service.name, styled_status(service.state.value), str(service.attempts), describe_service(service))
        console.print(services)

    if report.cancelled:
        print_warning(f"Run cancelled after {format_duration(report.duration_seconds)}")
    elif report.succeeded:
        print_success(f"Stack ready in {format_duration(report.duration_seconds)}")
        for outcome in report.get_failed_stages():
            print_warning(f"Optional stage {outcome.stage_name} failed: {describe_error(outcome.error)}")
    else:
        print_error(report.error_message or "Provisioning failed")


@click.group()
@click.version_option(version=__version__, prog_name="provorch")
def main():
    """
    provorch - Local inference stack provisioning.

    Installs packages, starts local services, waits until they are ready
    and verifies the stack end to end.
    """
    pass


@main.command()
@click.option(
    "--config",
    type=click.Path(exists=True, path_type=Path),
    help="Custom configuration file (default: $PROVORCH_HOME/provision.yaml)",
)
@click.option("--dry-run", is_flag=True, help="Validate and show the plan without executing")
@click.option("--verbose", is_flag=True, help="Enable debug logging")
@click.option("--json", "as_json", is_flag=True, help="Print the run report as JSON")
def run(config, dry_run, verbose, as_json):
    """
    Run the provisioning pipeline.

    Examples:

      # Provision the stack
      provorch run

      # Show the plan only
      provorch run --dry-run

      # Machine-readable report
      provorch run --json
    """
    try:
        provision_config = _load(config)
        pipeline = build_pipeline(provision_config)
    except (ConfigError, PipelineConstructionError) as e:
        print_error(f"Invalid configuration: {e}")
        raise SystemExit(EXIT_FAILED)

    log_level = "DEBUG" if verbose else provision_config.get_log_level()
    setup_logging(
        provision_config.get_log_file_path(),
        log_level,
        provision_config.get_log_format(),
        provision_config.should_log_to_console() and not as_json,
    )

    if dry_run:
        _display_plan(pipeline)
        print_info("Dry run mode - validation complete, skipping execution")
        raise SystemExit(EXIT_OK)

    if not as_json:
        print_banner(f"{provision_config.name} v{provision_config.version}")

    orchestration = OrchestrationRun.from_config(provision_config, Collaborators.from_config(provision_config))
    report = asyncio.run(_run_with_signals(orchestration, pipeline))
    save_report(report, provision_config.get_state_file_path())

    if as_json:
        click.echo(report.to_json())
    else:
        _display_report(report)

    raise SystemExit(exit_code_for(report))


@main.command()
@click.option(
    "--config",
    type=click.Path(exists=True, path_type=Path),
    help="Custom configuration file",
)
def validate(config):
    """
    Validate configuration and the stage graph.

    Checks:
    - Configuration file syntax
    - Service definitions and dependencies
    - Stage types and requires entries
    """
    try:
        provision_config = _load(config)
        print_success(f"Configuration valid: {provision_config.config_path}")
        pipeline = build_pipeline(provision_config)
    except (ConfigError, PipelineConstructionError) as e:
        print_error(f"Validation failed: {e}")
        raise SystemExit(EXIT_FAILED)

    for stage in pipeline:
        print_success(f"  {stage.ordinal}. {stage.name}" + ("" if stage.critical else " (optional)"))
    print_success(f"Pipeline validation complete ({len(pipeline)} stages)")


@main.command()
@click.option(
    "--config",
    type=click.Path(exists=True, path_type=Path),
    help="Custom configuration file",
)
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
def status(config, as_json):
    """Show the report of the last run."""
    try:
        provision_config = load_config(config)
    except ConfigError as e:
        print_error(f"Could not load configuration: {e}")
        raise SystemExit(EXIT_FAILED)

    report = load_report(provision_config.get_state_file_path())
    if report is None:
        print_info("No previous runs found")
        return

    if as_json:
        click.echo(report.to_json())
        return

    print_info(f"Last run: {report.started_at.strftime('%Y-%m-%d %H:%M:%S')} ({report.pipeline_name})")
    _display_report(report)

    log_file = provision_config.get_log_file_path()
    if log_file.exists():
        print_info(f"Logs: {log_file}")


@main.command()
@click.argument("service")
@click.option(
    "--config",
    type=click.Path(exists=True, path_type=Path),
    help="Custom configuration file",
)
def probe(service, config):
    """Probe one configured service once and report whether it is ready."""
    try:
        provision_config = load_config(config)
        service_config = provision_config.get_service(service)
        if service_config is None:
            known = ", ".join(s.name for s in provision_config.services) or "none"
            raise ConfigError(f"Unknown service: {service} (configured: {known})")
        target = service_config.probe_target()
    except ConfigError as e:
        print_error(str(e))
        raise SystemExit(EXIT_FAILED)

    timeout = float(service_config.probe_timeout or provision_config.get_probe_timeout())
    result = asyncio.run(_probe_once(target, timeout))

    if result.reachable:
        print_success(f"{service}: ready ({target.describe()}, {result.status_detail})")
        return
    print_error(f"{service}: not ready ({target.describe()}, {result.status_detail})")
    raise SystemExit(EXIT_FAILED)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Write a default provision.yaml to $PROVORCH_HOME."""
    home = get_provorch_home()
    home.mkdir(parents=True, exist_ok=True)

    cfg_path = get_default_config_path()
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(EXIT_FAILED)

    cfg_path.write_text(yaml.safe_dump(default_config(), sort_keys=False))
    click.echo(f"Initialized provorch config at {cfg_path}")


if __name__ == "__main__":
    main()
