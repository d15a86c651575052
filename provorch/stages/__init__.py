"""Built-in provisioning stages."""

from .base import StageAction
from .models import InferenceStage, ModelsStage
from .network import FirewallStage, OfflineCheckStage
from .packages import PackagesStage
from .registry import StageRegistry, build_pipeline
from .services import ContainerRuntimeStage, ServicesStage, build_service_handle

__all__ = [
    "ContainerRuntimeStage",
    "FirewallStage",
    "InferenceStage",
    "ModelsStage",
    "OfflineCheckStage",
    "PackagesStage",
    "ServicesStage",
    "StageAction",
    "StageRegistry",
    "build_pipeline",
    "build_service_handle",
]
