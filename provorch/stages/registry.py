"""
Stage registry and pipeline factory.

The registry maps stage `type` names from provision.yaml to StageAction
classes. build_pipeline() turns the ordered `stages` list into a validated
StagePipeline.
"""

from typing import TYPE_CHECKING, Optional

from provorch.errors import PipelineConstructionError
from provorch.pipeline import StagePipeline
from provorch.stages.base import StageAction
from provorch.stages.models import InferenceStage, ModelsStage
from provorch.stages.network import FirewallStage, OfflineCheckStage
from provorch.stages.packages import PackagesStage
from provorch.stages.services import ContainerRuntimeStage, ServicesStage

if TYPE_CHECKING:
    from provorch.config import ProvisionConfig, StageSettings


class StageRegistry:
    """
    Registry of stage types.

    Usage:
        registry = StageRegistry.create_default()
        registry.register("custom", MyStage)
        action = registry.create(settings)
    """

    def __init__(self) -> None:
        self._types: dict[str, type[StageAction]] = {}

    def register(self, type_name: str, stage_class: type[StageAction]) -> None:
        self._types[type_name] = stage_class

    def get(self, type_name: str) -> type[StageAction]:
        """
        Get the stage class for a type name.

        Raises:
            PipelineConstructionError: If the type is not registered
        """
        if type_name not in self._types:
            raise PipelineConstructionError(
                f"Unknown stage type: {type_name}. Registered: {self.list_types()}"
            )
        return self._types[type_name]

    def has(self, type_name: str) -> bool:
        return type_name in self._types

    def list_types(self) -> list[str]:
        return list(self._types.keys())

    def create(self, settings: "StageSettings") -> StageAction:
        return self.get(settings.type)(settings)

    @classmethod
    def create_default(cls) -> "StageRegistry":
        registry = cls()
        for stage_class in (
            PackagesStage,
            ContainerRuntimeStage,
            ServicesStage,
            ModelsStage,
            InferenceStage,
            FirewallStage,
            OfflineCheckStage,
        ):
            registry.register(stage_class.type_name, stage_class)
        return registry


def build_pipeline(config: "ProvisionConfig", registry: Optional[StageRegistry] = None) -> StagePipeline:
    """
    Build the provisioning pipeline from configuration.

    Disabled stages are left out. A stage that requires a disabled stage is
    a construction error rather than silently losing its gate.

    Raises:
        PipelineConstructionError: Unknown stage type or malformed stage graph
        ConfigError: A stage's own configuration is invalid
    """
    registry = registry or StageRegistry.create_default()
    enabled = config.get_enabled_stages()
    disabled = {s.name for s in config.stages if not s.enabled}

    actions = []
    for settings in enabled:
        for required in settings.requires:
            if required in disabled:
                raise PipelineConstructionError(
                    f"Stage {settings.name} requires disabled stage {required}"
                )
        action = registry.create(settings)
        action.validate(config)
        actions.append(action)

    return StagePipeline([a.to_stage() for a in actions], name=config.name)
