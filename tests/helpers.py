"""Test doubles shared across test modules."""

import asyncio
import socket
import time

from provorch.collaborators import CollaboratorResult


class Flaky:
    """Async readiness check that fails `failures` times, then succeeds."""

    def __init__(self, failures: int = 0, delay: float = 0.0):
        self.failures = failures
        self.delay = delay
        self.calls = 0
        self.call_times = []

    async def check(self) -> bool:
        self.calls += 1
        self.call_times.append(time.monotonic())
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.calls > self.failures


class RecordingInstaller:
    """PackageInstaller double: installs anything except `broken`."""

    def __init__(self, installed=(), broken=()):
        self.installed = set(installed)
        self.broken = set(broken)
        self.calls = []

    def ensure_installed(self, name: str) -> CollaboratorResult:
        self.calls.append(name)
        if name in self.installed:
            return CollaboratorResult.satisfied(f"{name} already installed")
        if name in self.broken:
            return CollaboratorResult.failed(f"Installing {name} failed")
        self.installed.add(name)
        return CollaboratorResult.changed(f"{name} installed")



def free_port() -> int:
    """A local port nothing is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
