import pytest

from conduit.schemas import ToolDefinition
from conduit.tools import ToolRegistry


def registry(**enabled):
    tools = ToolRegistry(enabled)
    tools.register(ToolDefinition(name="echo", description="echo"), lambda args: args.get("text", ""))
    return tools


@pytest.mark.asyncio
async def test_sync_and_async_handlers():
    tools = registry()

    async def shout(args):
        return args["text"].upper()

    tools.register(ToolDefinition(name="shout"), shout)
    assert (await tools.execute("echo", {"text": "hi"})).result == "hi"
    result = await tools.execute("shout", {"text": "hi"})
    assert result.result == "HI"
    assert result.is_error is False


@pytest.mark.asyncio
async def test_unknown_and_disabled_tools_are_errors():
    tools = registry(echo=False)
    assert (await tools.execute("nope", {})).is_error
    disabled = await tools.execute("echo", {"text": "hi"})
    assert disabled.is_error
    assert "disabled" in disabled.result
    assert tools.definitions() == []
    assert [d.name for d in tools.definitions(enabled_only=False)] == ["echo"]


@pytest.mark.asyncio
async def test_wip_status_reports_not_ready():
    tools = registry()
    tools.register(ToolDefinition(name="calendar", status="wip", status_message="OAuth pending"), lambda args: "x")
    result = await tools.execute("calendar", {})
    assert result.is_error
    assert result.result == "TOOL_NOT_READY: OAuth pending"


@pytest.mark.asyncio
async def test_handler_exception_becomes_error_result():
    tools = ToolRegistry()

    def broken(args):
        raise RuntimeError("bad input")

    tools.register(ToolDefinition(name="broken"), broken)
    result = await tools.execute("broken", {})
    assert result.is_error
    assert result.result == "Error: bad input"
