"""
Readiness probes.

A probe is a single check against a service. ProbeClient.probe() always
returns a ProbeResult: failures (refused connections, bad status codes,
timeouts, a predicate raising) are reported as reachable=False with a short
status detail, never as exceptions. Each attempt is bounded by a per-attempt
timeout.

Targets:
- HttpProbe: endpoint answers with an expected status (2xx by default)
- TcpProbe: port accepts a connection
- ProcessProbe: a process with a given name exists
- PredicateProbe: arbitrary boolean check supplied by the caller
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

import aiohttp
import psutil

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 2.0

TIMEOUT_DETAIL = "timeout"


def is_success_status(status: int) -> bool:
    """Default HTTP expectation: any 2xx."""
    return 200 <= status < 300


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of a single probe attempt."""
    reachable: bool
    status_detail: str
    elapsed: float

    @property
    def timed_out(self) -> bool:
        return not self.reachable and self.status_detail == TIMEOUT_DETAIL


@dataclass(frozen=True)
class HttpProbe:
    """Endpoint returns an expected HTTP status."""
    url: str
    method: str = "GET"
    expect: Callable[[int], bool] = field(default=is_success_status, compare=False)

    def describe(self) -> str:
        return f"{self.method} {self.url}"


@dataclass(frozen=True)
class TcpProbe:
    """Port accepts a TCP connection."""
    host: str
    port: int

    def describe(self) -> str:
        return f"tcp://{self.host}:{self.port}"


@dataclass(frozen=True)
class ProcessProbe:
    """A process with this name is running."""
    process_name: str

    def describe(self) -> str:
        return f"process {self.process_name}"


@dataclass(frozen=True)
class PredicateProbe:
    """Caller-supplied boolean check (sync or async)."""
    check: Callable[[], Union[bool, Awaitable[bool]]] = field(compare=False)
    description: str = "predicate"

    def describe(self) -> str:
        return self.description


ProbeTarget = Union[HttpProbe, TcpProbe, ProcessProbe, PredicateProbe]


def describe_target(target) -> str:
    describe = getattr(target, "describe", None)
    return describe() if callable(describe) else type(target).__name__


def process_running(process_name: str) -> bool:
    """Check whether any process matches the given name."""
    for proc in psutil.process_iter(["name"]):
        try:
            if proc.info.get("name") == process_name:
                return True
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return False


class ProbeClient:
    """
    Issues single readiness checks.

    Use as an async context manager to share one aiohttp session across
    probes; outside the context each HTTP probe opens its own session.

        async with ProbeClient(default_timeout=2.0) as client:
            result = await client.probe(HttpProbe("http://127.0.0.1:11434/api/tags"))
    """

    def __init__(self, default_timeout: float = DEFAULT_PROBE_TIMEOUT):
        self.default_timeout = default_timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "ProbeClient":
        self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def probe(self, target: ProbeTarget, timeout: Optional[float] = None) -> ProbeResult:
        """
        Run one probe attempt.

        Args:
            target: What to check
            timeout: Per-attempt timeout in seconds (defaults to default_timeout)

        Returns:
            ProbeResult; unreachable on any failure, "timeout" on timeout
        """
        timeout = self.default_timeout if timeout is None else timeout
        start = time.monotonic()

        try:
            reachable, detail = await asyncio.wait_for(self._dispatch(target, timeout), timeout=timeout)
        except asyncio.TimeoutError:
            reachable, detail = False, TIMEOUT_DETAIL
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reachable, detail = False, f"{type(e).__name__}: {e}"

        result = ProbeResult(reachable=reachable, status_detail=detail, elapsed=time.monotonic() - start)
        described = describe_target(target)
        logger.debug(
            f"Probe {described}: {'ok' if reachable else detail}",
            extra={
                "event": "probe_completed",
                "metadata": {"target": described, "reachable": reachable, "elapsed": result.elapsed},
            },
        )
        return result

    async def _dispatch(self, target: ProbeTarget, timeout: float) -> tuple[bool, str]:
        if isinstance(target, HttpProbe):
            return await self._probe_http(target, timeout)
        elif isinstance(target, TcpProbe):
            return await self._probe_tcp(target)
        elif isinstance(target, ProcessProbe):
            running = await asyncio.to_thread(process_running, target.process_name)
            return running, "running" if running else "not running"
        elif isinstance(target, PredicateProbe):
            return await self._probe_predicate(target)
        else:
            raise TypeError(f"Unsupported probe target: {type(target).__name__}")

    async def _probe_http(self, target: HttpProbe, timeout: float) -> tuple[bool, str]:
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        if self._session is not None:
            return await self._request(self._session, target, client_timeout)
        async with aiohttp.ClientSession() as session:
            return await self._request(session, target, client_timeout)

    @staticmethod
    async def _request(session: aiohttp.ClientSession, target: HttpProbe, client_timeout: aiohttp.ClientTimeout) -> tuple[bool, str]:
        try:
            async with session.request(target.method, target.url, timeout=client_timeout) as response:
                return target.expect(response.status), f"HTTP {response.status}"
        except asyncio.TimeoutError:
            raise
        except aiohttp.ClientError as e:
            return False, f"{type(e).__name__}: {e}"

    @staticmethod
    async def _probe_tcp(target: TcpProbe) -> tuple[bool, str]:
        try:
            _, writer = await asyncio.open_connection(target.host, target.port)
        except OSError as e:
            return False, f"connection failed: {e.strerror or e}"
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True, "connected"

    @staticmethod
    async def _probe_predicate(target: PredicateProbe) -> tuple[bool, str]:
        if inspect.iscoroutinefunction(target.check):
            value: Any = await target.check()
        else:
            value = await asyncio.to_thread(target.check)
            if inspect.isawaitable(value):
                value = await value
        ok = bool(value)
        return ok, "check passed" if ok else "check failed"
