"""
ModelService client for an Ollama-compatible HTTP API.

Endpoints used:
- GET  /api/tags      list local models
- POST /api/pull      download a model (non-streaming)
- POST /api/generate  single completion (non-streaming)
"""

import logging
from typing import Any, Optional

import aiohttp

from provorch.collaborators.base import CollaboratorResult

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:11434"


def model_matches(wanted: str, available: set[str]) -> bool:
    """Ollama reports untagged models as `name:latest`."""
    if wanted in available:
        return True
    if ":" not in wanted:
        return f"{wanted}:latest" in available
    if wanted.endswith(":latest"):
        return wanted[: -len(":latest")] in available
    return False


class OllamaModelService:
    """Talks to a model daemon over HTTP, one aiohttp session per call."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        generate_timeout: float = 300.0,
        pull_timeout: float = 3600.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.generate_timeout = generate_timeout
        self.pull_timeout = pull_timeout

    async def _request(self, method: str, path: str, timeout: float, payload: Optional[dict] = None) -> dict[str, Any]:
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.request(method, f"{self.base_url}{path}", json=payload) as response:
                response.raise_for_status()
                return await response.json(content_type=None)

    async def list_models(self) -> set[str]:
        data = await self._request("GET", "/api/tags", self.timeout)
        return {m["name"] for m in data.get("models", []) if m.get("name")}

    async def pull(self, model: str) -> CollaboratorResult:
        if model_matches(model, await self.list_models()):
            return CollaboratorResult.satisfied(f"{model} already present")

        logger.info(f"Pulling model {model}", extra={"event": "model_pulling", "metadata": {"model": model}})
        try:
            data = await self._request("POST", "/api/pull", self.pull_timeout, {"name": model, "stream": False})
        except aiohttp.ClientResponseError as e:
            return CollaboratorResult.failed(f"Pull {model} failed: HTTP {e.status} {e.message}", model=model)

        if data.get("error"):
            return CollaboratorResult.failed(f"Pull {model} failed: {data['error']}", model=model)
        if data.get("status", "success") != "success":
            return CollaboratorResult.failed(f"Pull {model} ended with status {data.get('status')}", model=model)
        return CollaboratorResult.changed(f"{model} pulled", model=model)

    async def generate(self, model: str, prompt: str, options: Optional[dict[str, Any]] = None) -> str:
        payload: dict[str, Any] = {"model": model, "prompt": prompt, "stream": False}
        if options:
            payload["options"] = options
        data = await self._request("POST", "/api/generate", self.generate_timeout, payload)
        return data.get("response", "")
