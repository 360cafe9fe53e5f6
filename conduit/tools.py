import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from .schemas import ToolDefinition, ToolResult


logger = logging.getLogger("uvicorn.error")

ToolHandler = Callable[[Dict[str, Any]], Union[str, Awaitable[str]]]

_DEFAULT_STATUS_MESSAGE = {
    "active": "Tool is active.",
    "limited": "Tool is limited.",
    "wip": "Tool is a work in progress.",
    "disabled": "Tool is disabled.",
}


class ToolExecutor(Protocol):
    async def execute(self, name: str, args: Dict[str, Any]) -> ToolResult:
        ...


class ToolRegistry:
    """Named tools with their JSON-schema definitions and handlers.

    Failures are reported as ``ToolResult(is_error=True)`` so the tool loop
    can always feed a result back to the model.
    """

    def __init__(self, tools_enabled: Optional[Dict[str, bool]] = None):
        self._definitions: Dict[str, ToolDefinition] = {}
        self._handlers: Dict[str, ToolHandler] = {}
        self.tools_enabled: Dict[str, bool] = dict(tools_enabled or {})

    def register(self, definition: ToolDefinition, handler: ToolHandler) -> None:
        self._definitions[definition.name] = definition
        self._handlers[definition.name] = handler

    def is_enabled(self, name: str) -> bool:
        return self.tools_enabled.get(name, True) is not False

    def definitions(self, enabled_only: bool = True) -> List[ToolDefinition]:
        items = list(self._definitions.values())
        if enabled_only:
            items = [d for d in items if self.is_enabled(d.name) and d.status != "disabled"]
        return items

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._definitions.get(name)

    async def execute(self, name: str, args: Dict[str, Any]) -> ToolResult:
        definition = self._definitions.get(name)
        if definition is None:
            return ToolResult(tool=name, result=f"Unknown tool: {name}", is_error=True)
        if not self.is_enabled(name):
            return ToolResult(tool=name, result=f"Tool {name} is disabled in settings.", is_error=True)
        if definition.status in ("wip", "disabled"):
            message = definition.status_message or _DEFAULT_STATUS_MESSAGE[definition.status]
            return ToolResult(tool=name, result=f"TOOL_NOT_READY: {message}", is_error=True)
        handler = self._handlers[name]
        try:
            output = handler(dict(args or {}))
            if inspect.isawaitable(output):
                output = await output
        except Exception as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            return ToolResult(tool=name, result=f"Error: {exc}", is_error=True)
        return ToolResult(tool=name, result="" if output is None else str(output))
