"""
provorch.collaborators - external systems the stages drive.

Protocols:
    PackageInstaller, ContainerRuntime, ModelService, FirewallConfigurator

Adapters:
    ShellPackageInstaller, DockerRuntime, OllamaModelService, CommandFirewallConfigurator

Collaborators bundles one of each for a run.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from .base import (
    CollaboratorResult,
    CollaboratorStatus,
    ContainerRuntime,
    ContainerSpec,
    FirewallConfigurator,
    ModelService,
    NoOpContainerRuntime,
    NoOpFirewallConfigurator,
    NoOpModelService,
    NoOpPackageInstaller,
    PackageInstaller,
)
from .docker import DockerRuntime
from .firewall import CommandFirewallConfigurator
from .ollama import OllamaModelService, model_matches
from .shell import PackageSpec, ShellPackageInstaller, run_command

if TYPE_CHECKING:
    from provorch.config import ProvisionConfig


@dataclass
class Collaborators:
    """The collaborator set handed to every stage; a missing one fails the stage that needs it."""
    installer: Optional[PackageInstaller] = None
    runtime: Optional[ContainerRuntime] = None
    model_service: Optional[ModelService] = None
    firewall: Optional[FirewallConfigurator] = None

    @classmethod
    def from_config(cls, config: "ProvisionConfig") -> "Collaborators":
        """Build the real adapters from configuration."""
        packages = config.packages
        runtime = config.container_runtime
        firewall = config.firewall
        return cls(
            installer=ShellPackageInstaller(
                config.get_package_specs(),
                install_template=packages.get("install_template", ("brew", "install", "{name}")),
                timeout=float(packages.get("timeout", 1800)),
            ),
            runtime=DockerRuntime(binary=runtime.get("binary", "docker")),
            model_service=OllamaModelService(
                base_url=config.get_model_base_url(),
                generate_timeout=float(config.inference.get("timeout", 300)),
                pull_timeout=float(config.models.get("pull_timeout", 3600)),
            ),
            firewall=CommandFirewallConfigurator(
                allow_port=firewall.get("allow_port", ()),
                setup=firewall.get("setup", ()),
                finalize=firewall.get("finalize", ()),
                check=firewall.get("check"),
            ),
        )

    @classmethod
    def noop(cls) -> "Collaborators":
        """Collaborators that report everything as already in place."""
        return cls(
            installer=NoOpPackageInstaller(),
            runtime=NoOpContainerRuntime(),
            model_service=NoOpModelService(),
            firewall=NoOpFirewallConfigurator(),
        )


__all__ = [
    "Collaborators",
    "CollaboratorResult",
    "CollaboratorStatus",
    "CommandFirewallConfigurator",
    "ContainerRuntime",
    "ContainerSpec",
    "DockerRuntime",
    "FirewallConfigurator",
    "ModelService",
    "NoOpContainerRuntime",
    "NoOpFirewallConfigurator",
    "NoOpModelService",
    "NoOpPackageInstaller",
    "OllamaModelService",
    "PackageInstaller",
    "PackageSpec",
    "ShellPackageInstaller",
    "model_matches",
    "run_command",
]
