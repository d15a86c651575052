"""
Docker CLI container runtime.

Containers are identified by name. A running container whose image, port
bindings, volumes and environment all match the requested spec is reused; a
stopped one that matches is started; anything else is removed and recreated.
"""

import json
import logging
from typing import Any, Optional

from provorch.collaborators.base import CollaboratorResult, ContainerSpec
from provorch.collaborators.shell import run_command, tail

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"


def published_ports(info: dict[str, Any]) -> set[tuple[str, int, int]]:
    """(host_ip, host_port, container_port) for every binding in HostConfig.PortBindings."""
    bindings = (info.get("HostConfig") or {}).get("PortBindings") or {}
    ports = set()
    for container_port, hosts in bindings.items():
        port = int(container_port.split("/", 1)[0])
        for host in hosts or ():
            ports.add((host.get("HostIp") or "", int(host["HostPort"]), port))
    return ports


def mounted_volumes(info: dict[str, Any]) -> dict[str, str]:
    """Source (bind path or volume name) -> destination for every mount."""
    mounts = {}
    for mount in info.get("Mounts") or ():
        source = mount.get("Name") if mount.get("Type") == "volume" else mount.get("Source")
        mounts[source] = mount.get("Destination")
    return mounts


def container_env(info: dict[str, Any]) -> dict[str, str]:
    env = {}
    for entry in (info.get("Config") or {}).get("Env") or ():
        key, _, value = entry.partition("=")
        env[key] = value
    return env


def spec_mismatch(spec: ContainerSpec, info: dict[str, Any]) -> Optional[str]:
    """
    Describe the first way an inspected container differs from spec, None if it matches.

    Ports must match exactly. Volumes and env must be present with the requested
    values; extra image-declared volumes and variables are allowed.
    """
    image = (info.get("Config") or {}).get("Image")
    if image != spec.image:
        return f"image {image} != {spec.image}"

    wanted_ports = {(LOOPBACK, host, container) for host, container in spec.ports.items()}
    actual_ports = published_ports(info)
    if actual_ports != wanted_ports:
        return f"ports {sorted(actual_ports)} != {sorted(wanted_ports)}"

    mounts = mounted_volumes(info)
    for source, target in spec.volumes.items():
        if mounts.get(source) != target:
            return f"volume {source}:{target} not mounted"

    env = container_env(info)
    for key, value in spec.env.items():
        if env.get(key) != str(value):
            return f"env {key} differs"
    return None


class DockerRuntime:
    """ContainerRuntime backed by the `docker` CLI (works with podman's docker shim too)."""

    def __init__(self, binary: str = "docker", timeout: float = 600.0):
        self.binary = binary
        self.timeout = timeout

    def _docker(self, *args: str, timeout: Optional[float] = None):
        return run_command([self.binary, *args], timeout=timeout or self.timeout)

    def is_available(self) -> bool:
        return self._docker("info", "--format", "{{.ServerVersion}}", timeout=15).returncode == 0

    def inspect(self, name: str) -> Optional[dict[str, Any]]:
        """`docker inspect` document for an existing container, None if it does not exist.

        An existing container whose output cannot be parsed yields an empty dict, so
        it never matches a spec and is recreated.
        """
        result = self._docker("inspect", "--type", "container", name, timeout=30)
        if result.returncode != 0:
            return None
        try:
            documents = json.loads(result.stdout)
        except json.JSONDecodeError:
            logger.warning(
                f"Unreadable docker inspect output for {name}",
                extra={"event": "container_inspect_unreadable", "metadata": {"container": name}},
            )
            return {}
        return documents[0] if documents else None

    def ensure_container_running(self, spec: ContainerSpec) -> CollaboratorResult:
        info = self.inspect(spec.name)

        if info is not None:
            mismatch = spec_mismatch(spec, info)
            running = bool((info.get("State") or {}).get("Running"))
            if mismatch is None and running:
                return CollaboratorResult.satisfied(f"{spec.name} already running ({spec.image})")
            if mismatch is None:
                result = self._docker("start", spec.name)
                if result.returncode != 0:
                    return CollaboratorResult.failed(
                        f"Could not start {spec.name}: {tail(result.stderr)}", container=spec.name
                    )
                return CollaboratorResult.changed(f"{spec.name} started", container=spec.name)

            logger.info(
                f"Recreating {spec.name}: {mismatch}",
                extra={"event": "container_recreate",
                       "metadata": {"container": spec.name, "image": spec.image, "reason": mismatch}},
            )
            removed = self._docker("rm", "-f", spec.name)
            if removed.returncode != 0:
                return CollaboratorResult.failed(
                    f"Could not remove {spec.name}: {tail(removed.stderr)}", container=spec.name
                )

        result = self._docker(*self.run_args(spec))
        if result.returncode != 0:
            return CollaboratorResult.failed(
                f"docker run {spec.name} failed: {tail(result.stderr)}",
                container=spec.name,
                returncode=result.returncode,
            )
        return CollaboratorResult.changed(f"{spec.name} created from {spec.image}", container=spec.name)

    def stop_container(self, name: str) -> CollaboratorResult:
        if self.inspect(name) is None:
            return CollaboratorResult.satisfied(f"{name} does not exist")
        result = self._docker("stop", name)
        if result.returncode != 0:
            return CollaboratorResult.failed(f"Could not stop {name}: {tail(result.stderr)}", container=name)
        return CollaboratorResult.changed(f"{name} stopped", container=name)

    @staticmethod
    def run_args(spec: ContainerSpec) -> list[str]:
        args = ["run", "-d", "--name", spec.name, "--restart", "unless-stopped"]
        for host_port, container_port in sorted(spec.ports.items()):
            # Publish on loopback only
            args += ["-p", f"{LOOPBACK}:{host_port}:{container_port}"]
        for source, target in sorted(spec.volumes.items()):
            args += ["-v", f"{source}:{target}"]
        for key, value in sorted(spec.env.items()):
            args += ["-e", f"{key}={value}"]
        args.append(spec.image)
        return args
