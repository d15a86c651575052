"""
Network isolation stages (non-critical by default).

firewall: apply host isolation rules once, leaving only the stack's local
ports open.

offline_check: confirm that external endpoints are NOT reachable. An
endpoint answering with any HTTP status counts as a leak.
"""

import asyncio
from typing import TYPE_CHECKING, List

from provorch.errors import ConfigError, StageActionError
from provorch.probe import HttpProbe
from provorch.stages.base import StageAction, record, require

if TYPE_CHECKING:
    from provorch.config import ProvisionConfig
    from provorch.pipeline import StageContext


def _any_status(status: int) -> bool:
    return True


class FirewallStage(StageAction):
    """Apply isolation rules through the FirewallConfigurator."""

    type_name = "firewall"

    def ports(self, config: "ProvisionConfig") -> List[int]:
        explicit = self.settings.get("allowed_ports")
        if explicit:
            return sorted({int(p) for p in explicit})
        return config.get_allowed_ports()

    async def apply(self, ctx: "StageContext") -> None:
        firewall = require(ctx.collaborators.firewall, "firewall configurator")
        ports = self.ports(ctx.config)

        result = await asyncio.to_thread(firewall.apply_isolation_rules, ports)
        record(ctx, result, f"isolation rules for ports {ports}")
        if not result.ok:
            raise StageActionError(result.message, details=result.details)


class OfflineCheckStage(StageAction):
    """Fail if any configured external endpoint can be reached."""

    type_name = "offline_check"

    def endpoints(self, config: "ProvisionConfig") -> List[str]:
        return list(self.settings.get("endpoints") or config.offline_check.get("endpoints", []))

    def validate(self, config: "ProvisionConfig") -> None:
        if not self.endpoints(config):
            raise ConfigError(f"Stage {self.name}: no endpoints to check")

    async def apply(self, ctx: "StageContext") -> None:
        endpoints = self.endpoints(ctx.config)
        timeout = float(ctx.config.offline_check.get("timeout", 3.0))

        results = await asyncio.gather(*(
            ctx.probe_client.probe(HttpProbe(url=url, method="HEAD", expect=_any_status), timeout)
            for url in endpoints
        ))

        leaks = []
        for url, result in zip(endpoints, results):
            if result.reachable:
                leaks.append(url)
                ctx.note(f"{url}: reachable ({result.status_detail})")
            else:
                ctx.note(f"{url}: blocked ({result.status_detail})")

        if leaks:
            raise StageActionError(
                f"{len(leaks)} external endpoint(s) still reachable: {', '.join(leaks)}",
                details={"endpoints": leaks},
            )
