"""
Base class for built-in provisioning stages.

Each stage must implement:
- apply(): bring the system to the desired state

and may override:
- validate(): check configuration before anything runs
- is_satisfied(): report the desired state is already in place

StageAction instances are the `action` of a pipeline Stage: calling one with a
StageContext checks is_satisfied() first and only applies when needed, so a
re-run after a partial failure redoes only what is missing.
"""

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional, TypeVar

from provorch.collaborators import CollaboratorResult
from provorch.errors import StageActionError
from provorch.pipeline import Stage

if TYPE_CHECKING:
    from provorch.config import ProvisionConfig, StageSettings
    from provorch.pipeline import StageContext

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StageAction(ABC):
    """Abstract base class for built-in stages."""

    type_name: str = ""

    def __init__(self, settings: "StageSettings"):
        """
        Initialize stage.

        Args:
            settings: Stage configuration
        """
        self.settings = settings
        self.name = settings.name

    def validate(self, config: "ProvisionConfig") -> None:
        """
        Validate stage configuration.

        Raises:
            ConfigError: If the configuration cannot work
        """
        pass

    async def is_satisfied(self, ctx: "StageContext") -> bool:
        return False

    @abstractmethod
    async def apply(self, ctx: "StageContext") -> None:
        """
        Bring the system to the desired state.

        Raises:
            StageActionError: If a collaborator reports failure
        """
        pass

    async def __call__(self, ctx: "StageContext") -> None:
        if await self.is_satisfied(ctx):
            ctx.note(f"{self.name}: already satisfied")
            return
        await self.apply(ctx)

    def describe(self) -> str:
        return self.settings.description or self.type_name

    def to_stage(self) -> Stage:
        return Stage(
            name=self.name,
            action=self,
            critical=self.settings.critical,
            requires=self.settings.requires,
            description=self.describe(),
        )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name})"


def require(collaborator: Optional[T], what: str) -> T:
    """Fail the stage when the collaborator it needs was not provided."""
    if collaborator is None:
        raise StageActionError(f"No {what} configured")
    return collaborator


def record(ctx: "StageContext", result: CollaboratorResult, subject: str) -> None:
    ctx.note(f"{subject}: {result.status.value}" + (f" ({result.message})" if result.message else ""))
