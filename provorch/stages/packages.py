"""
Packages stage: make sure the package manager, runtime and CLI tools exist.

Packages are ensured one at a time in configured order, since later entries
usually need earlier ones (the package manager itself comes first).
"""

import asyncio
from typing import TYPE_CHECKING, List

from provorch.collaborators import CollaboratorStatus
from provorch.errors import Cancelled, ConfigError, StageActionError
from provorch.stages.base import StageAction, record, require

if TYPE_CHECKING:
    from provorch.config import ProvisionConfig
    from provorch.pipeline import StageContext


class PackagesStage(StageAction):
    """Ensure every listed package is installed."""

    type_name = "packages"

    def packages(self, config: "ProvisionConfig") -> List[str]:
        return list(self.settings.get("packages") or config.get_package_names())

    def validate(self, config: "ProvisionConfig") -> None:
        if not self.packages(config):
            raise ConfigError(f"Stage {self.name}: no packages configured")

    async def apply(self, ctx: "StageContext") -> None:
        installer = require(ctx.collaborators.installer, "package installer")
        packages = self.packages(ctx.config)
        changed = 0

        for name in packages:
            if ctx.cancel.cancelled:
                raise Cancelled(f"Stopped before installing {name}")

            result = await asyncio.to_thread(installer.ensure_installed, name)
            record(ctx, result, name)
            if not result.ok:
                raise StageActionError(result.message, details={"package": name, **result.details})
            if result.status == CollaboratorStatus.CHANGED:
                changed += 1

        ctx.note(f"{len(packages)} package(s) present, {changed} newly installed")
