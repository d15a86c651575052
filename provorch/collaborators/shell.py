"""
Shell-backed package installer.

Each package is described by the binary that proves it is installed and the
command that installs it. Packages without an explicit install command use
the installer's template (e.g. ["brew", "install", "{name}"]).
"""

import logging
import shutil
import subprocess
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from provorch.collaborators.base import CollaboratorResult

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 1800.0


def run_command(command: Sequence[str], timeout: Optional[float] = DEFAULT_COMMAND_TIMEOUT) -> subprocess.CompletedProcess:
    """
    Run a command and capture its output.

    A missing executable is reported as returncode 127 and a timeout as
    returncode 124 rather than raised, so callers only inspect returncode.
    """
    try:
        return subprocess.run(list(command), capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError:
        return subprocess.CompletedProcess(list(command), 127, "", f"command not found: {command[0]}")
    except subprocess.TimeoutExpired:
        return subprocess.CompletedProcess(list(command), 124, "", f"timed out after {timeout}s")


def tail(text: str, lines: int = 5) -> str:
    """Last few lines of command output, for error messages."""
    return "\n".join(text.strip().splitlines()[-lines:])


@dataclass(frozen=True)
class PackageSpec:
    """
    How to detect and install one package.

    Attributes:
        name: Package name
        binary: Executable whose presence on PATH means installed (defaults to name)
        install: Install command; None uses the installer's template
        check: Optional command whose zero exit means installed (overrides binary)
    """
    name: str
    binary: Optional[str] = None
    install: Optional[tuple[str, ...]] = None
    check: Optional[tuple[str, ...]] = None

    @classmethod
    def from_dict(cls, data: Any) -> "PackageSpec":
        if isinstance(data, str):
            return cls(name=data)
        return cls(
            name=data["name"],
            binary=data.get("binary"),
            install=tuple(data["install"]) if data.get("install") else None,
            check=tuple(data["check"]) if data.get("check") else None,
        )


class ShellPackageInstaller:
    """
    PackageInstaller that shells out to a package manager.

    Usage:
        installer = ShellPackageInstaller(
            [PackageSpec("ollama"), PackageSpec("docker", binary="docker")],
            install_template=["brew", "install", "{name}"],
        )
        result = installer.ensure_installed("ollama")
    """

    def __init__(
        self,
        packages: Sequence[PackageSpec] = (),
        install_template: Sequence[str] = ("brew", "install", "{name}"),
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ):
        self.packages = {p.name: p for p in packages}
        self.install_template = tuple(install_template)
        self.timeout = timeout

    def spec_for(self, name: str) -> PackageSpec:
        return self.packages.get(name) or PackageSpec(name=name)

    def is_installed(self, name: str) -> bool:
        spec = self.spec_for(name)
        if spec.check:
            return run_command(spec.check, timeout=60).returncode == 0
        return shutil.which(spec.binary or spec.name) is not None

    def ensure_installed(self, name: str) -> CollaboratorResult:
        if self.is_installed(name):
            return CollaboratorResult.satisfied(f"{name} already installed")

        spec = self.spec_for(name)
        command = spec.install or tuple(part.format(name=name) for part in self.install_template)

        logger.info(
            f"Installing {name}: {' '.join(command)}",
            extra={"event": "package_installing", "metadata": {"package": name, "command": list(command)}},
        )
        result = run_command(command, timeout=self.timeout)

        if result.returncode != 0:
            return CollaboratorResult.failed(
                f"Installing {name} failed with exit code {result.returncode}: {tail(result.stderr or result.stdout)}",
                package=name,
                returncode=result.returncode,
            )

        if not self.is_installed(name):
            return CollaboratorResult.failed(
                f"{name} install command succeeded but {spec.binary or name} is still not available",
                package=name,
            )

        return CollaboratorResult.changed(f"{name} installed", package=name)
