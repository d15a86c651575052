"""
Service stages: bring long-running local services up and wait until ready.

container_runtime registers a handle whose probe asks the runtime itself, so
the daemon is started (if configured) and waited on like any other service.

services registers every configured service (model daemon, translation proxy,
...) and drives the selected ones plus their dependencies through the
supervisor. The stage fails if any required service is not HEALTHY.
"""

import asyncio
import functools
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional, Sequence

from provorch.collaborators import ContainerRuntime, ContainerSpec, run_command
from provorch.collaborators.shell import tail
from provorch.errors import ConfigError, LaunchError, StageActionError
from provorch.probe import PredicateProbe
from provorch.retry import RetryPolicy
from provorch.stages.base import StageAction, require
from provorch.supervisor import ProcessLauncher, ServiceHandle

if TYPE_CHECKING:
    from provorch.config import ProvisionConfig, ServiceConfig
    from provorch.pipeline import StageContext

logger = logging.getLogger(__name__)


class CommandStart:
    """
    Start action that runs a command to completion (e.g. `colima start`).

    Unlike ProcessLauncher the command is expected to exit; a non-zero exit
    is a LaunchError.
    """

    def __init__(
        self,
        command: Sequence[str],
        timeout: float = 300.0,
        skip_if: Optional[Callable[[], Awaitable[bool]]] = None,
    ):
        self.command = list(command)
        self.timeout = timeout
        self.skip_if = skip_if

    async def __call__(self) -> None:
        if self.skip_if is not None and await self.skip_if():
            return
        result = await asyncio.to_thread(run_command, self.command, self.timeout)
        if result.returncode != 0:
            raise LaunchError(
                f"{' '.join(self.command)} exited with code {result.returncode}: {tail(result.stderr or result.stdout)}",
                details={"command": self.command, "returncode": result.returncode},
            )


class ContainerStart:
    """Start action that ensures a container is running via the ContainerRuntime."""

    def __init__(self, runtime: ContainerRuntime, spec: ContainerSpec):
        self.runtime = runtime
        self.spec = spec

    def __call__(self) -> None:
        result = self.runtime.ensure_container_running(self.spec)
        if not result.ok:
            raise LaunchError(result.message, details={"container": self.spec.name, **result.details})
        logger.info(
            f"Container {self.spec.name}: {result.status.value}",
            extra={"event": "container_ensured", "service": self.spec.name},
        )


def container_spec(service: "ServiceConfig") -> ContainerSpec:
    container = service.container or {}
    return ContainerSpec(
        name=container.get("name", service.name),
        image=container["image"],
        ports={int(k): int(v) for k, v in (container.get("ports") or {}).items()},
        volumes={str(k): str(v) for k, v in (container.get("volumes") or {}).items()},
        env={str(k): str(v) for k, v in (container.get("env") or {}).items()},
    )


def build_service_handle(service: "ServiceConfig", ctx: "StageContext") -> ServiceHandle:
    """Turn a service's configuration into a ServiceHandle for this run."""
    probe = service.probe_target()
    start = stop = None

    if service.command:
        async def already_up() -> bool:
            result = await ctx.probe_client.probe(probe, service.probe_timeout)
            return result.reachable

        launcher = ProcessLauncher(
            service.command,
            env=service.env,
            cwd=service.cwd,
            settle=service.settle,
            log_path=service.log,
            skip_if=already_up,
        )
        start, stop = launcher, launcher.stop
    elif service.container:
        runtime = require(ctx.collaborators.runtime, "container runtime")
        spec = container_spec(service)
        start = ContainerStart(runtime, spec)
        stop = functools.partial(runtime.stop_container, spec.name)

    return ServiceHandle(
        name=service.name,
        probe=probe,
        start=start,
        stop=stop,
        depends_on=service.depends_on,
        required=service.required,
        retry=service.retry_policy(ctx.supervisor.retry),
        probe_timeout=service.probe_timeout,
    )


def unhealthy_details(ctx: "StageContext", names: Sequence[str]) -> dict:
    details = {}
    for name in names:
        handle = ctx.supervisor.get(name)
        if handle is None or not handle.required or handle.healthy:
            continue
        details[name] = {
            "state": handle.state.value,
            "attempts": handle.attempts,
            "error": handle.error.to_dict() if handle.error else None,
        }
    return details


class ContainerRuntimeStage(StageAction):
    """Ensure the container runtime daemon answers, starting it if configured."""

    type_name = "container_runtime"

    def handle_name(self) -> str:
        return self.settings.get("service_name", "container-runtime")

    async def apply(self, ctx: "StageContext") -> None:
        runtime = require(ctx.collaborators.runtime, "container runtime")
        conf = ctx.config.container_runtime

        async def available() -> bool:
            return await asyncio.to_thread(runtime.is_available)

        start = None
        if conf.get("start"):
            start = CommandStart(conf["start"], timeout=float(conf.get("start_timeout", 300)), skip_if=available)

        retry = None
        if conf.get("retry"):
            try:
                retry = RetryPolicy.from_dict(conf["retry"], default=ctx.supervisor.retry)
            except ValueError as e:
                raise ConfigError(f"container_runtime.retry: {e}")

        handle = ctx.supervisor.register(ServiceHandle(
            name=self.handle_name(),
            probe=PredicateProbe(available, description="container runtime info"),
            start=start,
            required=True,
            retry=retry,
            probe_timeout=float(conf.get("probe_timeout", 20.0)),
        ))
        await ctx.supervisor.wait_for_all([handle.name])

        if not handle.healthy:
            raise StageActionError(
                handle.error.message if handle.error else f"{handle.name} is {handle.state.value}",
                details=unhealthy_details(ctx, [handle.name]),
            )
        ctx.note(f"{handle.name} healthy after {handle.attempts} probe(s)")


class ServicesStage(StageAction):
    """Start and wait for the configured local services."""

    type_name = "services"

    def selected(self, config: "ProvisionConfig") -> List[str]:
        names = self.settings.get("services")
        if names:
            return list(names)
        return [s.name for s in config.services]

    def validate(self, config: "ProvisionConfig") -> None:
        selected = self.selected(config)
        if not selected:
            raise ConfigError(f"Stage {self.name}: no services configured")
        unknown = [n for n in selected if config.get_service(n) is None]
        if unknown:
            raise ConfigError(f"Stage {self.name}: unknown services {unknown}")

    def with_dependencies(self, config: "ProvisionConfig") -> List[str]:
        """Selected services plus everything they transitively depend on, in config order."""
        wanted: set[str] = set()
        pending = list(self.selected(config))
        while pending:
            name = pending.pop()
            service = config.get_service(name)
            if name in wanted or service is None:
                continue
            wanted.add(name)
            pending.extend(service.depends_on)
        return [s.name for s in config.services if s.name in wanted]

    async def apply(self, ctx: "StageContext") -> None:
        # Dependencies outside the selection are registered too so they resolve
        for name in self.with_dependencies(ctx.config):
            ctx.supervisor.register(build_service_handle(ctx.config.get_service(name), ctx))

        selected = self.selected(ctx.config)
        states = await ctx.supervisor.wait_for_all(selected)

        for name, state in states.items():
            handle = ctx.supervisor.get(name)
            line = f"{name}: {state.value} after {handle.attempts} probe(s)"
            if handle.error:
                line += f" ({handle.error.kind.value}: {handle.error.message})"
            ctx.note(line)

        if not ctx.supervisor.aggregate_health(selected):
            details = unhealthy_details(ctx, selected)
            raise StageActionError(
                f"Required services not healthy: {', '.join(details)}",
                details={"services": details},
            )
