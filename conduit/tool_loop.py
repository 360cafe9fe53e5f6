import asyncio
import json
import logging
from datetime import datetime
from typing import List, Optional

from .config import AppSettings
from .errors import ToolLoopLimitError
from .gateway import ProviderGateway
from .providers import ChunkCallback
from .schemas import ChatMessage, ToolCall, ToolDefinition, ToolResult
from .tool_parsing import extract_text_tool_calls, extract_tool_calls
from .tools import ToolExecutor


logger = logging.getLogger("uvicorn.error")

EDITOR_INSTRUCTIONS = (
    "When the user asks you to edit or rewrite a document, reply with the complete revised text "
    "and keep formatting that was not part of the request unchanged."
)


def temporal_context(now: Optional[datetime] = None) -> str:
    current = (now or datetime.now()).astimezone()
    stamp = current.strftime("%A, %B %d, %Y at %H:%M")
    return f"Current date and time: {stamp} (Timezone: {current.tzname() or 'local'})"


def tool_catalog(definitions: List[ToolDefinition]) -> str:
    if not definitions:
        return ""
    lines = [
        "You can call tools. To call one, reply with [TOOL:tool_name]{\"arg\": \"value\"}[/TOOL]. "
        "Arguments must be a JSON object. Results arrive as 'Tool Result [tool_name]: ...'.",
        "Available tools:",
    ]
    for definition in definitions:
        lines.append(f"- {definition.name}: {definition.description}")
        lines.append(f"  Parameters: {json.dumps(definition.parameters, ensure_ascii=False)}")
    return "\n".join(lines)


def build_injected_context(definitions: List[ToolDefinition], now: Optional[datetime] = None) -> str:
    sections = [temporal_context(now), tool_catalog(definitions), EDITOR_INSTRUCTIONS]
    return "\n\n".join(section for section in sections if section)


def inject_context(messages: List[ChatMessage], context: str) -> List[ChatMessage]:
    """Return a copy with ``context`` merged into the first system message."""
    out = [m.model_copy() for m in messages]
    for idx, msg in enumerate(out):
        if msg.role == "system":
            merged = f"{msg.content}\n\n{context}" if msg.content else context
            out[idx] = msg.model_copy(update={"content": merged})
            return out
    return [ChatMessage(role="system", content=context)] + out


def format_tool_result(result: ToolResult) -> str:
    label = "Tool Error" if result.is_error else "Tool Result"
    return f"{label} [{result.tool}]: {result.result}"


class ToolCallLoop:
    """Alternates model turns with tool execution until the model stops asking."""

    def __init__(self, gateway: ProviderGateway, executor: ToolExecutor, settings: AppSettings):
        self.gateway = gateway
        self.executor = executor
        self.settings = settings

    def _prepare(self, messages: List[ChatMessage], inject: bool) -> List[ChatMessage]:
        if not inject:
            return [m.model_copy() for m in messages]
        tools = getattr(self.gateway, "tools", None)
        definitions = tools.definitions(enabled_only=True) if tools is not None else []
        return inject_context(messages, build_injected_context(definitions))

    async def _execute_round(
        self,
        calls: List[ToolCall],
        history: List[ChatMessage],
        role: str,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> int:
        succeeded = 0
        for call in calls:
            if on_chunk is not None:
                on_chunk(f"\n\n*[Executing {call.name}...]*\n")
            result = await self.executor.execute(call.name, call.arguments)
            if not result.is_error:
                succeeded += 1
            else:
                logger.info("Tool %s returned an error: %s", call.name, result.result[:200])
            history.append(ChatMessage(role=role, content=format_tool_result(result)))
            if on_chunk is not None:
                on_chunk(f"\n*[{call.name} completed]*\n\n")
        return succeeded

    async def run_stream(
        self,
        messages: List[ChatMessage],
        on_chunk: ChunkCallback,
        model_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        *,
        inject: bool = True,
        use_tools: bool = True,
    ) -> str:
        history = self._prepare(messages, inject)
        role = self.gateway.tool_result_role(model_id)
        full_text: List[str] = []
        for _ in range(self.settings.stream_max_iterations):
            round_text: List[str] = []

            def collect(chunk: str) -> None:
                round_text.append(chunk)
                on_chunk(chunk)

            result = await self.gateway.stream(history, collect, model_id, cancel_event, use_tools=use_tools)
            text = "".join(round_text)
            full_text.append(text)
            if cancel_event is not None and cancel_event.is_set():
                return "".join(full_text)
            calls = list(result.tool_calls) or (extract_text_tool_calls(text) if use_tools else [])
            if not calls:
                return "".join(full_text)
            history.append(ChatMessage(role="assistant", content=text))
            if await self._execute_round(calls, history, role, on_chunk) == 0:
                return "".join(full_text)
        raise ToolLoopLimitError(f"Model still requested tools after {self.settings.stream_max_iterations} rounds")

    async def run_send(
        self,
        messages: List[ChatMessage],
        model_id: Optional[str] = None,
        *,
        inject: bool = True,
        use_tools: bool = True,
    ) -> str:
        history = self._prepare(messages, inject)
        role = self.gateway.tool_result_role(model_id)
        full_text: List[str] = []
        for _ in range(self.settings.send_max_iterations):
            result = await self.gateway.send(history, model_id, use_tools=use_tools)
            full_text.append(result.content)
            calls = extract_tool_calls(result.content, result.tool_calls) if use_tools else []
            if not calls:
                return "".join(full_text)
            history.append(ChatMessage(role="assistant", content=result.content))
            if await self._execute_round(calls, history, role) == 0:
                return "".join(full_text)
        raise ToolLoopLimitError(f"Model still requested tools after {self.settings.send_max_iterations} rounds")
