"""
Collaborator protocols for the provisioning stages.

Installing packages, running containers, serving models and writing firewall
rules are all external concerns. Stages only talk to them through these
interfaces so that:
1. provorch's orchestration layer has no package-manager or docker details
2. Backends can be swapped (brew/apt, docker/podman, any Ollama-compatible server)
3. Testing is simplified via the NoOp implementations below

Every mutating call is idempotent and reports whether it found the desired
state already in place (ALREADY_SATISFIED), had to change something (CHANGED),
or could not get there (FAILED).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable


class CollaboratorStatus(str, Enum):
    """What an idempotent collaborator call found and did."""
    ALREADY_SATISFIED = "already_satisfied"
    CHANGED = "changed"
    FAILED = "failed"


@dataclass(frozen=True)
class CollaboratorResult:
    """Result of one collaborator call."""
    status: CollaboratorStatus
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status != CollaboratorStatus.FAILED

    @classmethod
    def satisfied(cls, message: str = "", **details: Any) -> "CollaboratorResult":
        return cls(CollaboratorStatus.ALREADY_SATISFIED, message, details)

    @classmethod
    def changed(cls, message: str = "", **details: Any) -> "CollaboratorResult":
        return cls(CollaboratorStatus.CHANGED, message, details)

    @classmethod
    def failed(cls, message: str, **details: Any) -> "CollaboratorResult":
        return cls(CollaboratorStatus.FAILED, message, details)


@dataclass(frozen=True)
class ContainerSpec:
    """
    Desired container.

    Attributes:
        name: Container name (reused across runs)
        image: Image reference; a running container with a different image is recreated
        ports: Host port -> container port
        volumes: Host path or named volume -> container path
        env: Environment variables
    """
    name: str
    image: str
    ports: dict[int, int] = field(default_factory=dict)
    volumes: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)


@runtime_checkable
class PackageInstaller(Protocol):
    """Installs named packages (package manager, CLI tools, daemons)."""

    def ensure_installed(self, name: str) -> CollaboratorResult:
        """Install `name` unless it is already present."""
        ...


@runtime_checkable
class ContainerRuntime(Protocol):
    """A local container runtime (docker-compatible)."""

    def is_available(self) -> bool:
        """True if the runtime daemon answers."""
        ...

    def ensure_container_running(self, spec: ContainerSpec) -> CollaboratorResult:
        """Reuse a matching running container, otherwise (re)create it."""
        ...

    def stop_container(self, name: str) -> CollaboratorResult:
        ...


@runtime_checkable
class ModelService(Protocol):
    """
    A local model-serving daemon.

    Calls are async because they share the run's event loop with probes.
    """

    async def list_models(self) -> set[str]:
        """Names of models available locally."""
        ...

    async def pull(self, model: str) -> CollaboratorResult:
        """Download `model` if missing."""
        ...

    async def generate(self, model: str, prompt: str, options: Optional[dict[str, Any]] = None) -> str:
        """Run a single non-streaming completion and return the text."""
        ...


@runtime_checkable
class FirewallConfigurator(Protocol):
    """Applies host isolation rules for the local stack."""

    def apply_isolation_rules(self, allowed_local_ports: list[int]) -> CollaboratorResult:
        """Allow only the given local ports; block outbound traffic for the stack."""
        ...


class NoOpPackageInstaller:
    """Reports every package as already installed."""

    def ensure_installed(self, name: str) -> CollaboratorResult:
        return CollaboratorResult.satisfied(f"{name} (noop)")


class NoOpContainerRuntime:
    """A runtime that is always available and never changes anything."""

    def is_available(self) -> bool:
        return True

    def ensure_container_running(self, spec: ContainerSpec) -> CollaboratorResult:
        return CollaboratorResult.satisfied(f"{spec.name} (noop)")

    def stop_container(self, name: str) -> CollaboratorResult:
        return CollaboratorResult.satisfied(f"{name} (noop)")


class NoOpModelService:
    """
    In-memory model service for dry runs and tests.

    Pulled models are remembered, generate() returns a fixed response.
    """

    def __init__(self, models: Optional[set[str]] = None, response: str = "[noop response]"):
        self.models = set(models or ())
        self.response = response

    async def list_models(self) -> set[str]:
        return set(self.models)

    async def pull(self, model: str) -> CollaboratorResult:
        if model in self.models:
            return CollaboratorResult.satisfied(model)
        self.models.add(model)
        return CollaboratorResult.changed(model)

    async def generate(self, model: str, prompt: str, options: Optional[dict[str, Any]] = None) -> str:
        return self.response


class NoOpFirewallConfigurator:
    """Accepts any rule set without touching the host."""

    def apply_isolation_rules(self, allowed_local_ports: list[int]) -> CollaboratorResult:
        return CollaboratorResult.satisfied("noop", ports=list(allowed_local_ports))
