"""
Service supervisor - lifecycle and readiness of local dependent services.

Each ServiceHandle moves through a small state machine:

    NOT_STARTED -> STARTING -> PROBING -> HEALTHY
                                       -> FAILED   (retry policy gave up, or cancelled)
                            -> FAILED              (start action failed: LaunchError)
                -> SKIPPED                         (dependency unmet, or cancelled before start)

HEALTHY, FAILED and SKIPPED are terminal for a run. A handle only starts once
every entry in depends_on is HEALTHY; if one ends FAILED or SKIPPED the
dependent goes straight to SKIPPED. Failures are recorded on the handle as
ErrorInfo, never raised out of wait_for_all().

wait_for_all() runs one asyncio task per handle, so independent services are
probed concurrently and a backoff wait only suspends its own service.
"""

import asyncio
import inspect
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Sequence, Union

from provorch.cancellation import CancellationToken
from provorch.errors import ErrorKind, InvalidTransition, LaunchError
from provorch.probe import ProbeClient, ProbeResult, ProbeTarget
from provorch.retry import RetryPolicy
from provorch.schemas import DiagnosticEvent, ErrorInfo, ServiceSnapshot, ServiceState

logger = logging.getLogger(__name__)

Action = Callable[[], Union[Any, Awaitable[Any]]]

# Allowed transitions; terminal states have none
_TRANSITIONS: dict[ServiceState, frozenset[ServiceState]] = {
    ServiceState.NOT_STARTED: frozenset({ServiceState.STARTING, ServiceState.SKIPPED}),
    ServiceState.STARTING: frozenset({ServiceState.PROBING, ServiceState.FAILED}),
    ServiceState.PROBING: frozenset({ServiceState.HEALTHY, ServiceState.FAILED}),
    ServiceState.HEALTHY: frozenset(),
    ServiceState.FAILED: frozenset(),
    ServiceState.SKIPPED: frozenset(),
}


async def _invoke(action: Action) -> Any:
    """Call a sync or async action; sync ones run in a worker thread."""
    if inspect.iscoroutinefunction(action) or inspect.iscoroutinefunction(getattr(action, "__call__", None)):
        return await action()
    result = await asyncio.to_thread(action)
    if inspect.isawaitable(result):
        result = await result
    return result


@dataclass(eq=False)
class ServiceHandle:
    """
    The supervisor's model of one long-running local service.

    Attributes:
        name: Unique service name
        probe: Readiness check
        start: Action launching the service (None if externally managed)
        stop: Action stopping the service (used by ServiceSupervisor.stop_all)
        depends_on: Names of services that must be HEALTHY first
        required: Whether this service counts toward aggregate health
        retry: Per-service retry policy (defaults to the supervisor's)
        probe_timeout: Per-attempt probe timeout (defaults to the supervisor's)

    Runtime fields (state, attempts, error, diagnostics) are owned by the
    supervisor and exposed read-only.
    """
    name: str
    probe: ProbeTarget
    start: Optional[Action] = None
    stop: Optional[Action] = None
    depends_on: frozenset[str] = frozenset()
    required: bool = True
    retry: Optional[RetryPolicy] = None
    probe_timeout: Optional[float] = None

    _state: ServiceState = field(default=ServiceState.NOT_STARTED, init=False, repr=False)
    _attempts: int = field(default=0, init=False, repr=False)
    _error: Optional[ErrorInfo] = field(default=None, init=False, repr=False)
    _last_probe: Optional[ProbeResult] = field(default=None, init=False, repr=False)
    _diagnostics: list[DiagnosticEvent] = field(default_factory=list, init=False, repr=False)
    _settled: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)

    def __post_init__(self):
        if not self.name:
            raise ValueError("ServiceHandle requires a name")
        self.depends_on = frozenset(self.depends_on)

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def error(self) -> Optional[ErrorInfo]:
        return self._error

    @property
    def last_probe(self) -> Optional[ProbeResult]:
        return self._last_probe

    @property
    def diagnostics(self) -> tuple[DiagnosticEvent, ...]:
        return tuple(self._diagnostics)

    @property
    def healthy(self) -> bool:
        return self._state == ServiceState.HEALTHY

    def snapshot(self) -> ServiceSnapshot:
        return ServiceSnapshot(
            name=self.name,
            state=self._state,
            required=self.required,
            attempts=self._attempts,
            error=self._error,
            last_detail=self._last_probe.status_detail if self._last_probe else None,
        )


class ProcessLauncher:
    """
    Start action that spawns a long-running local process.

    The process is detached into its own session and its output goes to
    `log_path` (or /dev/null). If it exits within the settle window the launch
    is reported as a LaunchError. When `skip_if` reports the service is
    already up, nothing is spawned, so re-runs do not start duplicates.
    """

    def __init__(
        self,
        command: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        settle: float = 0.5,
        log_path: Optional[str] = None,
        skip_if: Optional[Callable[[], Awaitable[bool]]] = None,
    ):
        if not command:
            raise ValueError("ProcessLauncher requires a command")
        self.command = list(command)
        self.env = dict(env or {})
        self.cwd = cwd
        self.settle = settle
        self.log_path = log_path
        self.skip_if = skip_if
        self.process: Optional[asyncio.subprocess.Process] = None

    async def __call__(self) -> None:
        if self.skip_if is not None and await self.skip_if():
            logger.info(
                f"{self.command[0]} already running, not launching",
                extra={"event": "launch_skipped", "metadata": {"command": self.command}},
            )
            return

        env = os.environ.copy()
        env.update(self.env)

        if self.log_path:
            Path(self.log_path).parent.mkdir(parents=True, exist_ok=True)
        output = open(self.log_path, "ab") if self.log_path else asyncio.subprocess.DEVNULL
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=output,
                stderr=output,
                env=env,
                cwd=self.cwd,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise LaunchError(
                f"Command not found: {self.command[0]}",
                details={"command": self.command},
            ) from e
        except OSError as e:
            raise LaunchError(
                f"Could not launch {self.command[0]}: {e}",
                details={"command": self.command},
            ) from e
        finally:
            if self.log_path:
                output.close()

        # Give it a moment to crash on bad flags or a busy port
        await asyncio.sleep(self.settle)

        if self.process.returncode is not None:
            raise LaunchError(
                f"{self.command[0]} exited during launch with code {self.process.returncode}",
                details={"command": self.command, "returncode": self.process.returncode, "log": self.log_path},
            )

        logger.info(
            f"{self.command[0]} process started (PID: {self.process.pid})",
            extra={"event": "process_started", "metadata": {"pid": self.process.pid, "command": self.command}},
        )

    async def stop(self, timeout: float = 5.0) -> None:
        """Terminate the launched process, killing it if it ignores SIGTERM."""
        if self.process is None or self.process.returncode is not None:
            return
        self.process.terminate()
        try:
            await asyncio.wait_for(self.process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            self.process.kill()
            await self.process.wait()


class ServiceSupervisor:
    """
    Owns a set of ServiceHandles for one run.

    Usage:
        async with ProbeClient() as probes:
            supervisor = ServiceSupervisor(probes, retry=RetryPolicy(), cancel=token)
            states = await supervisor.wait_for_all([daemon, proxy])
            if supervisor.aggregate_health():
                ...

    A fresh supervisor is created per run, so every run re-probes from
    NOT_STARTED even if the underlying service is still up.
    """

    def __init__(
        self,
        probe_client: ProbeClient,
        retry: Optional[RetryPolicy] = None,
        probe_timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.probe_client = probe_client
        self.retry = retry or RetryPolicy()
        self.probe_timeout = probe_timeout
        self.cancel = cancel or CancellationToken()
        self._clock = clock
        self._handles: dict[str, ServiceHandle] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._started: list[str] = []

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, handle: ServiceHandle) -> ServiceHandle:
        """
        Register a handle. Registering a name twice returns the existing
        handle untouched, so re-running a stage does not reset a service.
        """
        existing = self._handles.get(handle.name)
        if existing is not None:
            logger.debug(
                f"Service {handle.name} already registered ({existing.state.value})",
                extra={"event": "service_reregistered", "service": handle.name},
            )
            return existing
        self._handles[handle.name] = handle
        logger.debug(
            f"Registered service {handle.name}",
            extra={"event": "service_registered", "service": handle.name,
                   "metadata": {"depends_on": sorted(handle.depends_on)}},
        )
        return handle

    def get(self, name: str) -> Optional[ServiceHandle]:
        return self._handles.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def states(self) -> dict[str, ServiceState]:
        return {name: handle.state for name, handle in self._handles.items()}

    def snapshot(self) -> tuple[ServiceSnapshot, ...]:
        return tuple(handle.snapshot() for handle in self._handles.values())

    def aggregate_health(self, names: Optional[Iterable[str]] = None) -> bool:
        """True if every required handle (optionally limited to `names`) is HEALTHY."""
        if names is None:
            handles = list(self._handles.values())
        else:
            handles = [self._handles[n] for n in names if n in self._handles]
        return all(h.healthy for h in handles if h.required)

    # ------------------------------------------------------------------
    # Driving handles
    # ------------------------------------------------------------------

    async def wait_for_all(self, handles: Iterable[Union[ServiceHandle, str]]) -> dict[str, ServiceState]:
        """
        Drive the given handles (and their registered dependencies) to a
        terminal state.

        Args:
            handles: Handles to register, or names of already-registered handles

        Returns:
            Mapping of each requested handle name to its final state
        """
        requested: list[ServiceHandle] = []
        for item in handles:
            if isinstance(item, ServiceHandle):
                requested.append(self.register(item))
            else:
                handle = self._handles.get(item)
                if handle is None:
                    raise KeyError(f"Unknown service: {item}")
                requested.append(handle)

        closure = self._dependency_closure(requested)
        self._skip_cycles(closure)

        tasks = [self._ensure_task(h) for h in closure if not h.state.terminal]
        if tasks:
            await asyncio.gather(*tasks)

        return {h.name: h.state for h in requested}

    async def stop_all(self) -> None:
        """Stop every service this supervisor started, in reverse start order."""
        for name in reversed(self._started):
            handle = self._handles[name]
            if handle.stop is None:
                continue
            try:
                await _invoke(handle.stop)
                logger.info(f"Stopped service {name}", extra={"event": "service_stopped", "service": name})
            except Exception as e:
                logger.warning(
                    f"Could not stop service {name}: {e}",
                    extra={"event": "service_stop_failed", "service": name},
                )

    def _dependency_closure(self, roots: list[ServiceHandle]) -> list[ServiceHandle]:
        seen: dict[str, ServiceHandle] = {}
        pending = list(roots)
        while pending:
            handle = pending.pop()
            if handle.name in seen:
                continue
            seen[handle.name] = handle
            for dep in handle.depends_on:
                dep_handle = self._handles.get(dep)
                if dep_handle is not None and dep_handle.name not in seen:
                    pending.append(dep_handle)
        return list(seen.values())

    def _skip_cycles(self, handles: list[ServiceHandle]) -> None:
        """Handles on a dependency cycle can never start; mark them SKIPPED up front."""
        for handle in handles:
            if handle.state != ServiceState.NOT_STARTED:
                continue
            if self._reaches(handle.name, handle.name):
                self._transition(
                    handle,
                    ServiceState.SKIPPED,
                    error=ErrorInfo(
                        kind=ErrorKind.DEPENDENCY_UNMET,
                        message=f"Service '{handle.name}' is part of a dependency cycle",
                        details={"depends_on": sorted(handle.depends_on)},
                    ),
                )

    def _reaches(self, source: str, target: str) -> bool:
        visited: set[str] = set()
        stack = list(self._handles[source].depends_on)
        while stack:
            name = stack.pop()
            if name == target:
                return True
            if name in visited or name not in self._handles:
                continue
            visited.add(name)
            stack.extend(self._handles[name].depends_on)
        return False

    def _ensure_task(self, handle: ServiceHandle) -> asyncio.Task:
        task = self._tasks.get(handle.name)
        if task is None or task.done():
            task = asyncio.create_task(self._drive(handle), name=f"supervise_{handle.name}")
            self._tasks[handle.name] = task
        return task

    async def _drive(self, handle: ServiceHandle) -> None:
        try:
            unmet = await self._await_dependencies(handle)
            if unmet is not None:
                self._transition(handle, ServiceState.SKIPPED, error=unmet)
                return

            if self.cancel.cancelled:
                self._transition(handle, ServiceState.SKIPPED, error=self._cancelled_error(handle))
                return

            self._transition(handle, ServiceState.STARTING)
            launch_error = await self._start(handle)
            if launch_error is not None:
                self._transition(handle, ServiceState.FAILED, error=launch_error)
                return

            self._transition(handle, ServiceState.PROBING)
            await self._probe_until_settled(handle)

        except Exception as e:
            # A bug in a probe target or action must not leave the handle hanging
            logger.error(
                f"Supervising {handle.name} failed unexpectedly: {e}",
                extra={"event": "supervise_exception", "service": handle.name},
                exc_info=True,
            )
            if handle.state == ServiceState.NOT_STARTED:
                self._transition(handle, ServiceState.SKIPPED, error=ErrorInfo.from_exception(e))
            elif not handle.state.terminal:
                self._transition(handle, ServiceState.FAILED, error=ErrorInfo.from_exception(e))
        finally:
            handle._settled.set()

    async def _await_dependencies(self, handle: ServiceHandle) -> Optional[ErrorInfo]:
        for dep in sorted(handle.depends_on):
            dep_handle = self._handles.get(dep)
            if dep_handle is None:
                return ErrorInfo(
                    kind=ErrorKind.DEPENDENCY_UNMET,
                    message=f"Service '{handle.name}' depends on unknown service '{dep}'",
                    details={"dependency": dep},
                )
            if not dep_handle.state.terminal:
                await dep_handle._settled.wait()
            if dep_handle.state != ServiceState.HEALTHY:
                return ErrorInfo(
                    kind=ErrorKind.DEPENDENCY_UNMET,
                    message=f"Service '{handle.name}' skipped: dependency '{dep}' is {dep_handle.state.value}",
                    details={"dependency": dep, "dependency_state": dep_handle.state.value},
                )
        return None

    async def _start(self, handle: ServiceHandle) -> Optional[ErrorInfo]:
        if handle.start is None:
            self._note(handle, "No start action (externally managed)")
            return None
        try:
            await _invoke(handle.start)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return ErrorInfo.from_exception(e, kind=ErrorKind.LAUNCH)
        self._started.append(handle.name)
        self._note(handle, "Start action completed")
        return None

    async def _probe_until_settled(self, handle: ServiceHandle) -> None:
        policy = handle.retry or self.retry
        timeout = handle.probe_timeout if handle.probe_timeout is not None else self.probe_timeout
        began = self._clock()

        while True:
            if self.cancel.cancelled:
                self._transition(handle, ServiceState.FAILED, error=self._cancelled_error(handle))
                return

            result = await self.probe_client.probe(handle.probe, timeout)
            handle._attempts += 1
            handle._last_probe = result

            if result.reachable:
                self._note(handle, f"Probe {handle._attempts} ok: {result.status_detail}")
                self._transition(handle, ServiceState.HEALTHY)
                return

            delay = policy.next_delay(handle._attempts, self._clock() - began)
            if delay is None:
                kind = ErrorKind.PROBE_TIMEOUT if result.timed_out else ErrorKind.PROBE_UNREACHABLE
                self._transition(
                    handle,
                    ServiceState.FAILED,
                    error=ErrorInfo(
                        kind=kind,
                        message=(
                            f"Service '{handle.name}' not ready after {handle._attempts} "
                            f"attempts: {result.status_detail}"
                        ),
                        details={"target": handle.probe.describe(), "attempts": handle._attempts},
                    ),
                )
                return

            self._note(handle, f"Probe {handle._attempts} failed ({result.status_detail}), retrying in {delay:.2f}s")
            if await self.cancel.sleep(delay):
                self._transition(handle, ServiceState.FAILED, error=self._cancelled_error(handle))
                return

    def _cancelled_error(self, handle: ServiceHandle) -> ErrorInfo:
        return ErrorInfo(
            kind=ErrorKind.CANCELLED,
            message=f"Service '{handle.name}': {self.cancel.reason or 'cancelled'}",
        )

    def _note(self, handle: ServiceHandle, message: str) -> None:
        handle._diagnostics.append(DiagnosticEvent(message=message, at=datetime.now(timezone.utc)))
        logger.debug(f"{handle.name}: {message}", extra={"event": "service_note", "service": handle.name})

    def _transition(self, handle: ServiceHandle, target: ServiceState, error: Optional[ErrorInfo] = None) -> None:
        current = handle._state
        if target not in _TRANSITIONS[current]:
            raise InvalidTransition(handle.name, current, target)

        handle._state = target
        if error is not None:
            handle._error = error
        self._note(handle, f"{current.value} -> {target.value}" + (f": {error.message}" if error else ""))

        if target.terminal:
            handle._settled.set()
            level = logging.INFO if target == ServiceState.HEALTHY else logging.WARNING
            logger.log(
                level,
                f"Service {handle.name} is {target.value}" + (f": {error.message}" if error else ""),
                extra={
                    "event": f"service_{target.value}",
                    "service": handle.name,
                    "metadata": {
                        "attempts": handle._attempts,
                        "error": error.to_dict() if error else None,
                    },
                },
            )
