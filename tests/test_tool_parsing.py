import logging

from conduit.schemas import ToolCall
from conduit.tool_parsing import (
    dedupe_tool_calls,
    extract_text_tool_calls,
    extract_tool_calls,
    format_tool_call,
    parse_arguments,
    repair_json,
)


def test_plain_text_has_no_tool_calls():
    assert extract_tool_calls("The weather is nice today.") == []
    assert extract_tool_calls("") == []


def test_tag_convention_parses_name_and_arguments():
    calls = extract_text_tool_calls('Let me look. [TOOL:web_search]{"query": "conduit"}[/TOOL]')
    assert calls == [ToolCall(name="web_search", arguments={"query": "conduit"})]


def test_malformed_call_is_dropped_but_valid_one_survives(caplog):
    content = (
        "[TOOL:web_search]{query: this is not json at all[/TOOL]"
        '[TOOL:url_reader]{"url": "https://example.com"}[/TOOL]'
    )
    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        calls = extract_text_tool_calls(content)
    assert calls == [ToolCall(name="url_reader", arguments={"url": "https://example.com"})]
    assert any("web_search" in rec.getMessage() for rec in caplog.records)


def test_empty_tag_body_yields_empty_arguments():
    calls = extract_text_tool_calls("[TOOL:list_files][/TOOL]")
    assert calls == [ToolCall(name="list_files", arguments={})]


def test_non_object_arguments_are_rejected():
    assert extract_text_tool_calls('[TOOL:web_search]["a", "b"][/TOOL]') == []
    assert extract_text_tool_calls("[TOOL:web_search]42[/TOOL]") == []


def test_fenced_block_used_when_no_tags():
    content = 'Sure.\n```tool_call\n{"name": "web_search", "arguments": {"query": "x"}}\n```\n'
    assert extract_text_tool_calls(content) == [ToolCall(name="web_search", arguments={"query": "x"})]


def test_json_fence_without_tool_shape_is_ignored():
    content = '```json\n{"answer": 42}\n```'
    assert extract_text_tool_calls(content) == []


def test_tags_take_priority_over_fences():
    content = (
        '[TOOL:first]{"a": 1}[/TOOL]\n'
        '```tool_call\n{"name": "second", "arguments": {}}\n```'
    )
    assert [c.name for c in extract_text_tool_calls(content)] == ["first"]


def test_xml_conventions():
    content = '<tool_call name="web_search">{"query": "x"}</tool_call>'
    assert extract_text_tool_calls(content) == [ToolCall(name="web_search", arguments={"query": "x"})]
    content = "<tool name=\"url_reader\" args='{\"url\": \"u\"}'/>"
    assert extract_text_tool_calls(content) == [ToolCall(name="url_reader", arguments={"url": "u"})]


def test_native_calls_win_over_text():
    native = [ToolCall(name="native", arguments={})]
    assert extract_tool_calls('[TOOL:text]{}[/TOOL]', native) == native


def test_repair_handles_common_model_mistakes():
    assert parse_arguments("{query: 'weather', limit: 5,}") == {"query": "weather", "limit": 5}
    assert parse_arguments("{“query”: “x”}") == {"query": "x"}
    assert repair_json('{"a": 1,}') == '{"a": 1}'


def test_parse_arguments_passthrough_and_none():
    assert parse_arguments({"a": 1}) == {"a": 1}
    assert parse_arguments(None) == {}
    assert parse_arguments("   ") == {}
    assert parse_arguments(12) is None


def test_dedupe_ignores_key_order():
    calls = [
        ToolCall(name="a", arguments={"x": 1, "y": 2}),
        ToolCall(name="a", arguments={"y": 2, "x": 1}),
        ToolCall(name="b", arguments={"x": 1, "y": 2}),
    ]
    assert [c.name for c in dedupe_tool_calls(calls)] == ["a", "b"]


def test_format_tool_call_is_parseable():
    call = ToolCall(name="web_search", arguments={"query": "q"})
    assert extract_text_tool_calls(format_tool_call(call)) == [call]
