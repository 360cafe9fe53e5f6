import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from .config import AppSettings
from .errors import ProviderConfigurationError, ProviderError, TransientProviderError
from .images import parse_data_url, prepare_local_image, split_image, to_data_url
from .schemas import ChatMessage, CompletionResult, ModelDefinition, StreamResult, ToolCall, ToolDefinition
from .streaming import iter_json_lines, iter_sse_json
from .tool_parsing import dedupe_tool_calls, tool_call_from_native


logger = logging.getLogger("uvicorn.error")

ChunkCallback = Callable[[str], None]

TRANSIENT_STATUS = {429, 500, 502, 503}


def think(text: str) -> str:
    return f"<think>{text}</think>"


def _extract_error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except Exception:
        data = None
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        return json.dumps(data, ensure_ascii=True)
    try:
        return response.text or response.reason_phrase
    except Exception:
        return response.reason_phrase


def _merge_consecutive(entries: List[Dict[str, Any]], key: str) -> List[Dict[str, Any]]:
    """Fold adjacent same-role entries; ``key`` names the list field to join."""
    merged: List[Dict[str, Any]] = []
    for entry in entries:
        if merged and merged[-1]["role"] == entry["role"]:
            merged[-1][key] = list(merged[-1][key]) + list(entry[key])
        else:
            merged.append({"role": entry["role"], key: list(entry[key])})
    return merged


def to_openai_tools(definitions: List[ToolDefinition]) -> List[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {"name": d.name, "description": d.description, "parameters": d.parameters},
        }
        for d in definitions
    ]


def to_anthropic_tools(definitions: List[ToolDefinition]) -> List[Dict[str, Any]]:
    return [{"name": d.name, "description": d.description, "input_schema": d.parameters} for d in definitions]


def to_google_schema(schema: Any) -> Any:
    """Translate a lowercase-typed JSON schema into Gemini's uppercase dialect."""
    if isinstance(schema, list):
        return [to_google_schema(item) for item in schema]
    if not isinstance(schema, dict):
        return schema
    out: Dict[str, Any] = {}
    for key, value in schema.items():
        if key == "type" and isinstance(value, str):
            out[key] = value.upper()
        elif key == "properties" and isinstance(value, dict):
            out[key] = {name: to_google_schema(prop) for name, prop in value.items()}
        elif key in ("items", "anyOf"):
            out[key] = to_google_schema(value)
        else:
            out[key] = value
    return out


def to_google_tools(definitions: List[ToolDefinition]) -> List[Dict[str, Any]]:
    if not definitions:
        return []
    return [
        {
            "function_declarations": [
                {"name": d.name, "description": d.description, "parameters": to_google_schema(d.parameters)}
                for d in definitions
            ]
        }
    ]


class ProviderClient(ABC):
    """One implementation per provider protocol."""

    kind: str = ""
    transient_status = TRANSIENT_STATUS
    # Role used when feeding tool output back into the conversation.
    tool_result_role: str = "system"

    def __init__(self, settings: AppSettings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.request_timeout_s, connect=settings.stream_connect_timeout_s)
        )

    def result_role_for(self, model: ModelDefinition) -> str:
        return self.tool_result_role

    @abstractmethod
    async def send(
        self,
        messages: List[ChatMessage],
        model: ModelDefinition,
        tools: List[ToolDefinition],
    ) -> CompletionResult:
        ...

    @abstractmethod
    async def stream(
        self,
        messages: List[ChatMessage],
        model: ModelDefinition,
        tools: List[ToolDefinition],
        on_chunk: ChunkCallback,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> StreamResult:
        ...

    def _error_for_status(self, response: httpx.Response) -> ProviderError:
        status = response.status_code
        detail = _extract_error_detail(response)
        if status in self.transient_status:
            return TransientProviderError(self.kind, detail, status)
        return ProviderError(self.kind, detail, status)

    async def _post_json(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        try:
            resp = await self.client.post(url, json=payload, headers=headers, params=params)
        except httpx.TransportError as exc:
            raise TransientProviderError(self.kind, f"network error: {exc}") from exc
        if resp.status_code >= 400:
            raise self._error_for_status(resp)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError(self.kind, "response was not valid JSON", resp.status_code) from exc
        return data if isinstance(data, dict) else {}

    def _open_stream(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
    ):
        return self.client.stream("POST", url, json=payload, headers=headers, params=params)

    async def _check_stream_status(self, response: httpx.Response) -> None:
        if response.status_code >= 400:
            await response.aread()
            raise self._error_for_status(response)

    def _require_key(self) -> str:
        key = self.settings.api_key_for(self.kind)
        if not key:
            raise ProviderConfigurationError(self.kind, "API key is required")
        return key

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


class OllamaProvider(ProviderClient):
    kind = "ollama"

    @property
    def chat_url(self) -> str:
        return f"{self.settings.ollama_url.rstrip('/')}/api/chat"

    def result_role_for(self, model: ModelDefinition) -> str:
        # System turns are stripped for vision models.
        return "user" if model.capabilities.vision else self.tool_result_role

    async def _build_messages(
        self,
        messages: List[ChatMessage],
        model: ModelDefinition,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Optional[List[Dict[str, Any]]]:
        # Only one image per request; keep the first image of the latest message carrying any.
        image_owner = None
        dropped = 0
        for idx in range(len(messages) - 1, -1, -1):
            if messages[idx].images:
                if image_owner is None:
                    image_owner = idx
                    dropped += len(messages[idx].images) - 1
                else:
                    dropped += len(messages[idx].images)
        if dropped:
            logger.info("Ollama request keeps 1 image, dropping %s", dropped)
        image_payload: Optional[str] = None
        if image_owner is not None:
            image_payload = await prepare_local_image(
                messages[image_owner].images[0],
                self.settings.local_image_max_side,
                self.settings.local_image_quality,
                cancel_event,
            )
            if image_payload is None:
                return None
        out: List[Dict[str, Any]] = []
        for idx, msg in enumerate(messages):
            if model.capabilities.vision and msg.role == "system":
                continue
            entry: Dict[str, Any] = {"role": msg.role, "content": msg.content}
            if idx == image_owner and image_payload:
                entry["images"] = [image_payload]
            out.append(entry)
        return out

    def _payload(self, model: ModelDefinition, messages: List[Dict[str, Any]], tools: List[ToolDefinition], stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": model.id, "messages": messages, "stream": stream}
        if tools and model.capabilities.tools:
            payload["tools"] = to_openai_tools(tools)
        return payload

    def _native_calls(self, message: Dict[str, Any]) -> List[ToolCall]:
        calls: List[ToolCall] = []
        for item in message.get("tool_calls") or []:
            func = (item or {}).get("function") or {}
            call = tool_call_from_native(func.get("name"), func.get("arguments"))
            if call is not None:
                calls.append(call)
        return calls

    async def send(self, messages, model, tools):
        built = await self._build_messages(messages, model)
        data = await self._post_json(self.chat_url, self._payload(model, built or [], tools, stream=False))
        if data.get("error"):
            raise ProviderError(self.kind, str(data["error"]))
        message = data.get("message") or {}
        content = message.get("content") or ""
        reasoning = message.get("thinking") or message.get("reasoning_content")
        if reasoning:
            content = think(reasoning) + content
        return CompletionResult(content=content, tool_calls=self._native_calls(message))

    async def stream(self, messages, model, tools, on_chunk, cancel_event=None):
        built = await self._build_messages(messages, model, cancel_event)
        if built is None:
            return StreamResult()
        payload = self._payload(model, built, tools, stream=True)
        calls: List[ToolCall] = []
        try:
            async with self._open_stream(self.chat_url, payload) as resp:
                await self._check_stream_status(resp)
                async for data in iter_json_lines(resp, cancel_event):
                    if data.get("error"):
                        raise ProviderError(self.kind, str(data["error"]))
                    message = data.get("message") or {}
                    reasoning = message.get("thinking") or message.get("reasoning_content")
                    if reasoning:
                        on_chunk(think(reasoning))
                    if message.get("content"):
                        on_chunk(message["content"])
                    calls.extend(self._native_calls(message))
        except httpx.TransportError as exc:
            raise TransientProviderError(self.kind, f"network error: {exc}") from exc
        return StreamResult(tool_calls=calls)


class OpenAIProvider(ProviderClient):
    kind = "openai"

    @property
    def chat_url(self) -> str:
        return f"{self.settings.openai_base_url.rstrip('/')}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Authorization": f"Bearer {self._require_key()}"}

    def _convert(self, messages: List[ChatMessage]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for msg in messages:
            if not msg.images:
                out.append({"role": msg.role, "content": msg.content})
                continue
            parts: List[Dict[str, Any]] = [{"type": "text", "text": msg.content}]
            for image in msg.images:
                mime, payload = split_image(image)
                parts.append({"type": "image_url", "image_url": {"url": to_data_url(mime, payload)}})
            out.append({"role": msg.role, "content": parts})
        return out

    def _payload(self, model: ModelDefinition, messages: List[ChatMessage], tools: List[ToolDefinition], stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": model.id, "messages": self._convert(messages), "stream": stream}
        if tools:
            payload["tools"] = to_openai_tools(tools)
            payload["tool_choice"] = "auto"
        return payload

    async def send(self, messages, model, tools):
        headers = self._headers()
        data = await self._post_json(self.chat_url, self._payload(model, messages, tools, stream=False), headers)
        choices = data.get("choices") or []
        message = (choices[0].get("message") if choices else None) or {}
        content = message.get("content") or ""
        reasoning = message.get("reasoning_content") or message.get("reasoning")
        if reasoning:
            content = think(reasoning) + content
        calls: List[ToolCall] = []
        for item in message.get("tool_calls") or []:
            func = (item or {}).get("function") or {}
            call = tool_call_from_native(func.get("name"), func.get("arguments"))
            if call is not None:
                calls.append(call)
        return CompletionResult(content=content, tool_calls=calls)

    @staticmethod
    def _accumulate(pending: Dict[int, Dict[str, str]], fragments: List[Dict[str, Any]]) -> None:
        for fragment in fragments:
            if not isinstance(fragment, dict):
                continue
            index = fragment.get("index")
            if not isinstance(index, int):
                index = len(pending)
            entry = pending.setdefault(index, {"name": "", "arguments": ""})
            func = fragment.get("function") or {}
            name = func.get("name")
            # The first frame names the call; a later full resend replaces a partial name.
            if name and (not entry["name"] or name.startswith(entry["name"])):
                entry["name"] = name
            if func.get("arguments"):
                entry["arguments"] += func["arguments"]

    @staticmethod
    def _finalize(pending: Dict[int, Dict[str, str]]) -> List[ToolCall]:
        calls: List[ToolCall] = []
        for index in sorted(pending):
            entry = pending[index]
            call = tool_call_from_native(entry["name"], entry["arguments"])
            if call is not None:
                calls.append(call)
        return calls

    async def stream(self, messages, model, tools, on_chunk, cancel_event=None):
        headers = self._headers()
        payload = self._payload(model, messages, tools, stream=True)
        pending: Dict[int, Dict[str, str]] = {}
        try:
            async with self._open_stream(self.chat_url, payload, headers) as resp:
                await self._check_stream_status(resp)
                async for data in iter_sse_json(resp, cancel_event):
                    if data.get("error"):
                        err = data["error"]
                        raise ProviderError(self.kind, str(err.get("message") if isinstance(err, dict) else err))
                    choices = data.get("choices") or []
                    if not choices:
                        continue
                    delta = choices[0].get("delta") or {}
                    reasoning = delta.get("reasoning_content") or delta.get("reasoning")
                    if reasoning:
                        on_chunk(think(reasoning))
                    if delta.get("content"):
                        on_chunk(delta["content"])
                    if delta.get("tool_calls"):
                        self._accumulate(pending, delta["tool_calls"])
        except httpx.TransportError as exc:
            raise TransientProviderError(self.kind, f"network error: {exc}") from exc
        if cancel_event is not None and cancel_event.is_set():
            # Fragments may be incomplete; nothing here is safe to execute.
            return StreamResult()
        return StreamResult(tool_calls=self._finalize(pending))


class AnthropicProvider(ProviderClient):
    kind = "anthropic"
    transient_status = TRANSIENT_STATUS | {529}
    tool_result_role = "user"

    @property
    def messages_url(self) -> str:
        return f"{self.settings.anthropic_base_url.rstrip('/')}/v1/messages"

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self._require_key(),
            "anthropic-version": self.settings.anthropic_version,
        }

    def _convert(self, messages: List[ChatMessage]) -> Tuple[str, List[Dict[str, Any]]]:
        system_parts = [m.content for m in messages if m.role == "system" and m.content]
        entries: List[Dict[str, Any]] = []
        for msg in messages:
            if msg.role == "system":
                continue
            blocks: List[Dict[str, Any]] = []
            for image in msg.images or []:
                mime, payload = split_image(image)
                blocks.append({"type": "image", "source": {"type": "base64", "media_type": mime, "data": payload}})
            if msg.content:
                blocks.append({"type": "text", "text": msg.content})
            if blocks:
                entries.append({"role": msg.role, "content": blocks})
        return "\n\n".join(system_parts), _merge_consecutive(entries, "content")

    def _payload(self, model: ModelDefinition, messages: List[ChatMessage], tools: List[ToolDefinition], stream: bool) -> Dict[str, Any]:
        system, converted = self._convert(messages)
        payload: Dict[str, Any] = {
            "model": model.id,
            "max_tokens": self.settings.anthropic_max_tokens,
            "messages": converted,
            "stream": stream,
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = to_anthropic_tools(tools)
        return payload

    async def send(self, messages, model, tools):
        headers = self._headers()
        data = await self._post_json(self.messages_url, self._payload(model, messages, tools, stream=False), headers)
        text_parts: List[str] = []
        calls: List[ToolCall] = []
        for block in data.get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text":
                text_parts.append(block.get("text") or "")
            elif block.get("type") == "thinking" and block.get("thinking"):
                text_parts.append(think(block["thinking"]))
            elif block.get("type") == "tool_use":
                call = tool_call_from_native(block.get("name"), block.get("input"))
                if call is not None:
                    calls.append(call)
        return CompletionResult(content="".join(text_parts), tool_calls=calls)

    def _raise_stream_error(self, data: Dict[str, Any]) -> None:
        err = data.get("error") or {}
        err_type = err.get("type") if isinstance(err, dict) else ""
        message = err.get("message") if isinstance(err, dict) else str(err)
        if err_type in ("overloaded_error", "rate_limit_error", "api_error"):
            raise TransientProviderError(self.kind, message or err_type)
        raise ProviderError(self.kind, message or "stream error")

    @staticmethod
    def _finish_block(block: Dict[str, Any]) -> Optional[ToolCall]:
        raw = block["json"] if block["json"].strip() else block.get("input")
        return tool_call_from_native(block["name"], raw)

    async def stream(self, messages, model, tools, on_chunk, cancel_event=None):
        headers = self._headers()
        payload = self._payload(model, messages, tools, stream=True)
        open_blocks: Dict[int, Dict[str, Any]] = {}
        calls: List[ToolCall] = []
        try:
            async with self._open_stream(self.messages_url, payload, headers) as resp:
                await self._check_stream_status(resp)
                async for data in iter_sse_json(resp, cancel_event):
                    event = data.get("type")
                    index = data.get("index", 0)
                    if event == "error":
                        self._raise_stream_error(data)
                    elif event == "content_block_start":
                        block = data.get("content_block") or {}
                        if block.get("type") == "tool_use":
                            open_blocks[index] = {
                                "name": block.get("name") or "",
                                "json": "",
                                "input": block.get("input") or None,
                            }
                        elif block.get("type") == "text" and block.get("text"):
                            on_chunk(block["text"])
                    elif event == "content_block_delta":
                        delta = data.get("delta") or {}
                        delta_type = delta.get("type")
                        if delta_type == "input_json_delta":
                            if index in open_blocks:
                                open_blocks[index]["json"] += delta.get("partial_json") or ""
                        elif delta_type == "thinking_delta" and delta.get("thinking"):
                            on_chunk(think(delta["thinking"]))
                        elif delta.get("text"):
                            on_chunk(delta["text"])
                    elif event == "content_block_stop":
                        block = open_blocks.pop(index, None)
                        if block is not None:
                            call = self._finish_block(block)
                            if call is not None:
                                calls.append(call)
        except httpx.TransportError as exc:
            raise TransientProviderError(self.kind, f"network error: {exc}") from exc
        cancelled = cancel_event is not None and cancel_event.is_set()
        if open_blocks and not cancelled:
            logger.info("Anthropic stream ended with %s open tool block(s); finalizing", len(open_blocks))
            for index in sorted(open_blocks):
                call = self._finish_block(open_blocks[index])
                if call is not None:
                    calls.append(call)
        return StreamResult(tool_calls=calls)


class GoogleProvider(ProviderClient):
    kind = "google"
    tool_result_role = "user"

    def _url(self, model: ModelDefinition, stream: bool) -> str:
        method = "streamGenerateContent" if stream else "generateContent"
        return f"{self.settings.google_base_url.rstrip('/')}/v1beta/models/{model.id}:{method}"

    def _params(self, stream: bool) -> Dict[str, str]:
        params = {"key": self._require_key()}
        if stream:
            params["alt"] = "sse"
        return params

    def _payload(self, messages: List[ChatMessage], tools: List[ToolDefinition]) -> Dict[str, Any]:
        entries: List[Dict[str, Any]] = []
        for msg in messages:
            if msg.role == "system":
                continue
            parts: List[Dict[str, Any]] = []
            if msg.content:
                parts.append({"text": msg.content})
            for image in msg.images or []:
                mime, payload = split_image(image)
                parts.append({"inline_data": {"mime_type": mime, "data": payload}})
            if parts:
                entries.append({"role": "model" if msg.role == "assistant" else "user", "parts": parts})
        body: Dict[str, Any] = {"contents": _merge_consecutive(entries, "parts")}
        system_text = "\n\n".join(m.content for m in messages if m.role == "system" and m.content)
        if system_text:
            body["system_instruction"] = {"parts": [{"text": system_text}]}
        google_tools = to_google_tools(tools)
        if google_tools:
            body["tools"] = google_tools
        return body

    def _parse_parts(self, data: Dict[str, Any]) -> Tuple[List[str], List[ToolCall]]:
        texts: List[str] = []
        calls: List[ToolCall] = []
        candidates = data.get("candidates") or []
        if not candidates:
            return texts, calls
        content = (candidates[0] or {}).get("content") or {}
        for part in content.get("parts") or []:
            if not isinstance(part, dict):
                continue
            func = part.get("functionCall") or part.get("function_call")
            if func:
                call = tool_call_from_native(func.get("name"), func.get("args"))
                if call is not None:
                    calls.append(call)
            elif part.get("text"):
                texts.append(think(part["text"]) if part.get("thought") else part["text"])
        return texts, calls

    async def send(self, messages, model, tools):
        params = self._params(stream=False)
        data = await self._post_json(self._url(model, False), self._payload(messages, tools), params=params)
        texts, calls = self._parse_parts(data)
        return CompletionResult(content="".join(texts), tool_calls=dedupe_tool_calls(calls))

    async def stream(self, messages, model, tools, on_chunk, cancel_event=None):
        params = self._params(stream=True)
        calls: List[ToolCall] = []
        try:
            async with self._open_stream(self._url(model, True), self._payload(messages, tools), params=params) as resp:
                await self._check_stream_status(resp)
                async for data in iter_sse_json(resp, cancel_event):
                    if data.get("error"):
                        err = data["error"]
                        raise ProviderError(self.kind, str(err.get("message") if isinstance(err, dict) else err))
                    texts, chunk_calls = self._parse_parts(data)
                    for text in texts:
                        on_chunk(text)
                    calls.extend(chunk_calls)
        except httpx.TransportError as exc:
            raise TransientProviderError(self.kind, f"network error: {exc}") from exc
        return StreamResult(tool_calls=dedupe_tool_calls(calls))


PROVIDER_CLASSES = {
    "ollama": OllamaProvider,
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "google": GoogleProvider,
}


def build_providers(settings: AppSettings, client: Optional[httpx.AsyncClient] = None) -> Dict[str, ProviderClient]:
    return {kind: cls(settings, client=client) for kind, cls in PROVIDER_CLASSES.items()}


__all__ = [
    "AnthropicProvider",
    "GoogleProvider",
    "OllamaProvider",
    "OpenAIProvider",
    "PROVIDER_CLASSES",
    "ProviderClient",
    "build_providers",
    "parse_data_url",
    "to_anthropic_tools",
    "to_google_schema",
    "to_google_tools",
    "to_openai_tools",
]
