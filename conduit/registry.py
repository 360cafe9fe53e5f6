import logging
from typing import Any, Dict, List, Optional

import httpx

from .schemas import ModelCapabilities, ModelDefinition


logger = logging.getLogger("uvicorn.error")

_LOCAL_TOOL_FAMILIES = ("llama3", "mistral", "command-r", "qwen")
_LOCAL_VISION_FAMILIES = ("llava", "moondream", "vision", "-vl")


def _cloud(model_id: str, name: str, provider: str, *, vision: bool = True, max_tokens: int = 128000) -> ModelDefinition:
    return ModelDefinition(
        id=model_id,
        display_name=name,
        provider=provider,
        type="cloud",
        capabilities=ModelCapabilities(tools=True, vision=vision, streaming=True, max_tokens=max_tokens),
    )


def default_cloud_models() -> List[ModelDefinition]:
    return [
        _cloud("gpt-4o", "GPT-4o", "openai"),
        _cloud("gpt-4-turbo", "GPT-4 Turbo", "openai"),
        _cloud("gpt-3.5-turbo", "GPT-3.5 Turbo", "openai", vision=False, max_tokens=16000),
        _cloud("claude-sonnet-4-5-20250929", "Claude Sonnet 4.5", "anthropic", max_tokens=200000),
        _cloud("claude-opus-4-5-20251101", "Claude Opus 4.5", "anthropic", max_tokens=200000),
        _cloud("claude-haiku-4-5-20251001", "Claude Haiku 4.5", "anthropic", vision=False, max_tokens=200000),
        _cloud("gemini-2.0-flash", "Gemini 2.0 Flash", "google", max_tokens=1000000),
        _cloud("gemini-2.5-flash", "Gemini 2.5 Flash", "google", max_tokens=1000000),
        _cloud("gemini-2.5-pro", "Gemini 2.5 Pro", "google", max_tokens=2000000),
    ]


def local_model_from_tag(name: str) -> ModelDefinition:
    lower = name.lower()
    return ModelDefinition(
        id=name,
        display_name=name.split(":")[0].upper(),
        provider="ollama",
        type="local",
        capabilities=ModelCapabilities(
            tools=any(token in lower for token in _LOCAL_TOOL_FAMILIES),
            vision=any(token in lower for token in _LOCAL_VISION_FAMILIES),
            streaming=True,
            max_tokens=4096,
        ),
    )


class ModelRegistry:
    """Model id -> provider kind and capabilities."""

    def __init__(self, models: Optional[List[ModelDefinition]] = None):
        self._models: Dict[str, ModelDefinition] = {}
        for model in models if models is not None else default_cloud_models():
            self._models[model.id] = model

    def get_model_by_id(self, model_id: str) -> Optional[ModelDefinition]:
        if not model_id:
            return None
        return self._models.get(model_id)

    def all_models(self, type: Optional[str] = None) -> List[ModelDefinition]:
        models = list(self._models.values())
        if type:
            models = [m for m in models if m.type == type]
        return models

    def add_model(self, model: ModelDefinition) -> None:
        self._models[model.id] = model

    async def sync_ollama_models(self, ollama_url: str, client: Optional[httpx.AsyncClient] = None) -> int:
        """Replace local models with the tags reported by Ollama. Returns the local model count."""
        url = f"{ollama_url.rstrip('/')}/api/tags"
        owns_client = client is None
        http = client or httpx.AsyncClient(timeout=10)
        try:
            resp = await http.get(url)
            resp.raise_for_status()
            data: Dict[str, Any] = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Ollama model sync from %s failed: %s", url, exc)
            return len(self.all_models(type="local"))
        finally:
            if owns_client:
                await http.aclose()
        local = [
            local_model_from_tag(str(item["name"]))
            for item in data.get("models") or []
            if isinstance(item, dict) and item.get("name")
        ]
        self._models = {mid: m for mid, m in self._models.items() if m.provider != "ollama"}
        for model in local:
            self._models[model.id] = model
        logger.info("Synced %s Ollama models from %s", len(local), url)
        return len(local)
