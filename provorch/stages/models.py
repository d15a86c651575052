"""
Model stages.

models: make sure every required model is available locally, pulling only
the missing ones.

inference: prove the stack actually answers by running one small
completion and checking the response is non-empty.
"""

from typing import TYPE_CHECKING, List, Optional

from provorch.collaborators import model_matches
from provorch.errors import Cancelled, ConfigError, StageActionError
from provorch.stages.base import StageAction, record, require

if TYPE_CHECKING:
    from provorch.config import ProvisionConfig
    from provorch.pipeline import StageContext

DEFAULT_PROMPT = "Reply with the single word: ready"


class ModelsStage(StageAction):
    """Ensure required models are present."""

    type_name = "models"

    def models(self, config: "ProvisionConfig") -> List[str]:
        return list(self.settings.get("models") or config.get_required_models())

    def validate(self, config: "ProvisionConfig") -> None:
        if not self.models(config):
            raise ConfigError(f"Stage {self.name}: no models configured")

    async def is_satisfied(self, ctx: "StageContext") -> bool:
        service = require(ctx.collaborators.model_service, "model service")
        available = await service.list_models()
        return all(model_matches(m, available) for m in self.models(ctx.config))

    async def apply(self, ctx: "StageContext") -> None:
        service = require(ctx.collaborators.model_service, "model service")
        available = await service.list_models()

        for model in self.models(ctx.config):
            if model_matches(model, available):
                ctx.note(f"{model}: already present")
                continue
            if ctx.cancel.cancelled:
                raise Cancelled(f"Stopped before pulling {model}")

            result = await service.pull(model)
            record(ctx, result, model)
            if not result.ok:
                raise StageActionError(result.message, details={"model": model, **result.details})


class InferenceStage(StageAction):
    """Validate inference readiness with a single generate call."""

    type_name = "inference"

    def model(self, config: "ProvisionConfig") -> Optional[str]:
        model = self.settings.get("model") or config.inference.get("model")
        if model:
            return model
        required = config.get_required_models()
        return required[0] if required else None

    def validate(self, config: "ProvisionConfig") -> None:
        if not self.model(config):
            raise ConfigError(f"Stage {self.name}: no inference model configured")

    async def apply(self, ctx: "StageContext") -> None:
        service = require(ctx.collaborators.model_service, "model service")
        conf = ctx.config.inference
        model = self.model(ctx.config)
        if not model:
            raise StageActionError("No inference model configured")

        prompt = self.settings.get("prompt") or conf.get("prompt", DEFAULT_PROMPT)
        text = await service.generate(model, prompt, conf.get("options"))

        if not text or not text.strip():
            raise StageActionError(f"{model} returned an empty response", details={"model": model})

        expect = conf.get("expect")
        if expect and expect.lower() not in text.lower():
            raise StageActionError(
                f"{model} response did not contain '{expect}'",
                details={"model": model, "response": text.strip()[:200]},
            )

        ctx.note(f"{model} answered: {text.strip()[:80]}")
