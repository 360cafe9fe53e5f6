import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import httpx

from .config import AppSettings
from .errors import ConduitError, ModelNotFoundError, ProviderConfigurationError, TransientProviderError
from .providers import ChunkCallback, ProviderClient, build_providers
from .registry import ModelRegistry
from .schemas import ChatMessage, CompletionResult, ModelDefinition, StreamResult, ToolDefinition
from .tools import ToolRegistry


logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, (TransientProviderError, httpx.TransportError))


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    retries: int,
    base_delay: float,
    label: str = "request",
    should_retry: Callable[[BaseException], bool] = is_retryable,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run ``operation``, retrying transient failures with exponential backoff.

    Delays are ``base_delay * 2**attempt``; after ``retries`` retries the last
    error propagates unchanged.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            if attempt >= retries or not should_retry(exc):
                raise
            delay = base_delay * (2 ** attempt)
            attempt += 1
            logger.info("%s failed (%s); retry %s/%s in %.1fs", label, exc, attempt, retries, delay)
            await sleep(delay)


class ProviderGateway:
    """Single entry point for completions across local and cloud providers."""

    def __init__(
        self,
        settings: AppSettings,
        registry: ModelRegistry,
        tools: Optional[ToolRegistry] = None,
        *,
        providers: Optional[Dict[str, ProviderClient]] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings
        self.registry = registry
        self.tools = tools
        self.providers = providers or build_providers(settings, client=client)
        self._sleep = sleep

    def resolve_model(self, model_id: Optional[str] = None) -> ModelDefinition:
        target = model_id or self.settings.preferred_model_id
        model = self.registry.get_model_by_id(target)
        if model is None:
            raise ModelNotFoundError(target)
        return model

    def provider_for(self, model: ModelDefinition) -> ProviderClient:
        provider = self.providers.get(model.provider)
        if provider is None:
            raise ProviderConfigurationError(model.provider, "no client configured for this provider")
        return provider

    def tool_result_role(self, model_id: Optional[str] = None) -> str:
        model = self.resolve_model(model_id)
        return self.provider_for(model).result_role_for(model)

    def _tool_definitions(self, use_tools: bool) -> List[ToolDefinition]:
        if not use_tools or self.tools is None:
            return []
        return self.tools.definitions(enabled_only=True)

    async def send(
        self,
        messages: List[ChatMessage],
        model_id: Optional[str] = None,
        *,
        use_tools: bool = True,
    ) -> CompletionResult:
        model = self.resolve_model(model_id)
        provider = self.provider_for(model)
        tools = self._tool_definitions(use_tools)
        return await with_retry(
            lambda: provider.send(messages, model, tools),
            retries=self.settings.max_retries,
            base_delay=self.settings.retry_base_delay_s,
            label=f"{provider.kind} send ({model.id})",
            sleep=self._sleep,
        )

    async def stream(
        self,
        messages: List[ChatMessage],
        on_chunk: ChunkCallback,
        model_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        *,
        use_tools: bool = True,
    ) -> StreamResult:
        model = self.resolve_model(model_id)
        provider = self.provider_for(model)
        tools = self._tool_definitions(use_tools)
        emitted = False

        def forward(chunk: str) -> None:
            nonlocal emitted
            emitted = True
            on_chunk(chunk)

        def retry_before_output(exc: BaseException) -> bool:
            # Text already reached the caller; replaying would duplicate it.
            return not emitted and is_retryable(exc)

        if cancel_event is not None and cancel_event.is_set():
            return StreamResult()
        return await with_retry(
            lambda: provider.stream(messages, model, tools, forward, cancel_event),
            retries=self.settings.max_retries,
            base_delay=self.settings.retry_base_delay_s,
            label=f"{provider.kind} stream ({model.id})",
            should_retry=retry_before_output,
            sleep=self._sleep,
        )

    async def test_connection(self, model_id: Optional[str] = None) -> Tuple[bool, str]:
        try:
            model = self.resolve_model(model_id)
            provider = self.provider_for(model)
        except ConduitError as exc:
            return False, str(exc)
        if model.provider == "ollama":
            url = f"{self.settings.ollama_url.rstrip('/')}/api/tags"
            try:
                resp = await provider.client.get(url)
                resp.raise_for_status()
                count = len((resp.json() or {}).get("models") or [])
            except (httpx.HTTPError, ValueError) as exc:
                return False, f"Ollama unreachable at {self.settings.ollama_url}: {exc}"
            return True, f"Connected to Ollama ({count} models available)"
        if not self.settings.api_key_for(model.provider):
            return False, "API key is required"
        try:
            await provider.send([ChatMessage(role="user", content="ping")], model, [])
        except ConduitError as exc:
            return False, str(exc)
        return True, f"Connected to {model.display_name}"

    async def close(self) -> None:
        seen = set()
        for provider in self.providers.values():
            if id(provider.client) in seen:
                continue
            seen.add(id(provider.client))
            await provider.close()
