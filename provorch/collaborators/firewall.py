"""
Command-template firewall configurator.

The actual rule syntax (pf, nftables, ufw, ...) lives in configuration:

    firewall:
      check: ["sudo", "pfctl", "-a", "provorch", "-sr"]
      setup: [["sudo", "pfctl", "-E"]]
      allow_port: ["sudo", "sh", "-c", "echo 'pass in on lo0 proto tcp to port {port}' | pfctl -a provorch -f -"]
      finalize: [["sudo", "pfctl", "-a", "provorch", "-f", "/etc/pf.anchors/provorch"]]
"""

import logging
from typing import Optional, Sequence

from provorch.collaborators.base import CollaboratorResult
from provorch.collaborators.shell import run_command, tail

logger = logging.getLogger(__name__)


class CommandFirewallConfigurator:
    """FirewallConfigurator that runs configured command templates."""

    def __init__(
        self,
        allow_port: Sequence[str] = (),
        setup: Sequence[Sequence[str]] = (),
        finalize: Sequence[Sequence[str]] = (),
        check: Optional[Sequence[str]] = None,
        timeout: float = 60.0,
    ):
        self.allow_port = tuple(allow_port)
        self.setup = [tuple(c) for c in setup]
        self.finalize = [tuple(c) for c in finalize]
        self.check = tuple(check) if check else None
        self.timeout = timeout

    def already_applied(self, ports: list[int]) -> bool:
        """The check command exits 0 and mentions every allowed port."""
        if not self.check:
            return False
        result = run_command(self.check, timeout=self.timeout)
        return result.returncode == 0 and all(str(p) in result.stdout for p in ports)

    def commands_for(self, ports: list[int]) -> list[tuple[str, ...]]:
        commands = list(self.setup)
        if self.allow_port:
            for port in ports:
                commands.append(tuple(part.format(port=port) for part in self.allow_port))
        commands.extend(self.finalize)
        return commands

    def apply_isolation_rules(self, allowed_local_ports: list[int]) -> CollaboratorResult:
        ports = sorted(set(allowed_local_ports))
        if self.already_applied(ports):
            return CollaboratorResult.satisfied("isolation rules already in place", ports=ports)

        commands = self.commands_for(ports)
        if not commands:
            return CollaboratorResult.failed("No firewall commands configured", ports=ports)

        for command in commands:
            result = run_command(command, timeout=self.timeout)
            if result.returncode != 0:
                return CollaboratorResult.failed(
                    f"Firewall command failed ({' '.join(command)}): {tail(result.stderr or result.stdout)}",
                    ports=ports,
                    returncode=result.returncode,
                )
            logger.debug(f"Applied: {' '.join(command)}", extra={"event": "firewall_command"})

        return CollaboratorResult.changed(f"isolation rules applied for ports {ports}", ports=ports)
