"""Tool-call extraction from model output.

Native calls (structured provider fields) are converted by the provider
clients through :func:`tool_call_from_native`. When a response carries none,
:func:`extract_tool_calls` falls back to text conventions, in priority order:

1. ``[TOOL:name]{json}[/TOOL]``
2. fenced code: a ```` ```tool_call ```` (or ``tool``/``json``) block holding
   ``{"name": ..., "arguments": {...}}``
3. XML attributes: ``<tool_call name="x">{json}</tool_call>`` or
   ``<tool name="x" args='{json}'/>``

Lower tiers are only consulted when every higher tier found zero matches.
"""
import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from .schemas import ToolCall


logger = logging.getLogger("uvicorn.error")

TOOL_TAG_RE = re.compile(r"\[TOOL:([\w.-]+)\]([\s\S]*?)\[/TOOL\]")
FENCED_RE = re.compile(r"```(?:tool_call|tool|json)[ \t]*\r?\n([\s\S]*?)```")
XML_BODY_RE = re.compile(r"<tool_call\s+name\s*=\s*[\"']([\w.-]+)[\"']\s*>([\s\S]*?)</tool_call>")
XML_ATTR_RE = re.compile(r"<tool\s+name\s*=\s*\"([\w.-]+)\"\s+args\s*=\s*'([\s\S]*?)'\s*/>")

_SMART_QUOTES = {
    "“": '"',
    "”": '"',
    "„": '"',
    "″": '"',
    "‘": "'",
    "’": "'",
    "′": "'",
}
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][\w-]*)(\s*:)")
_SINGLE_QUOTED_RE = re.compile(r"'((?:[^'\\]|\\.)*)'")


def repair_json(raw: str) -> str:
    """Best-effort cleanup of almost-JSON emitted by models."""
    text = raw.strip()
    for bad, good in _SMART_QUOTES.items():
        text = text.replace(bad, good)
    if '"' not in text and "'" in text:
        text = _SINGLE_QUOTED_RE.sub(lambda m: json.dumps(m.group(1)), text)
    text = _TRAILING_COMMA_RE.sub(r"\1", text)
    text = _BARE_KEY_RE.sub(r'\1"\2"\3', text)
    return text


def _loads_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(text)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def parse_arguments(raw: Any, tool_name: str = "") -> Optional[Dict[str, Any]]:
    """Parse tool arguments into a dict; ``None`` when the payload is unusable."""
    if isinstance(raw, dict):
        return raw
    if raw is None:
        return {}
    if not isinstance(raw, str):
        logger.warning("Dropping tool call %s: arguments are %s, not an object", tool_name, type(raw).__name__)
        return None
    text = raw.strip()
    if not text:
        return {}
    parsed = _loads_object(text)
    if parsed is not None:
        return parsed
    repaired = _loads_object(repair_json(text))
    if repaired is not None:
        return repaired
    logger.warning("Dropping tool call %s: could not parse arguments %r", tool_name, text[:200])
    return None


def tool_call_from_native(name: Any, arguments: Any) -> Optional[ToolCall]:
    if not name:
        logger.warning("Dropping native tool call without a name")
        return None
    args = parse_arguments(arguments, str(name))
    if args is None:
        return None
    return ToolCall(name=str(name), arguments=args)


def _from_tags(content: str) -> List[ToolCall]:
    calls: List[ToolCall] = []
    for match in TOOL_TAG_RE.finditer(content):
        call = tool_call_from_native(match.group(1), match.group(2))
        if call is not None:
            calls.append(call)
    return calls


def _from_fences(content: str) -> List[ToolCall]:
    calls: List[ToolCall] = []
    for match in FENCED_RE.finditer(content):
        body = match.group(1).strip()
        payload = _loads_object(body) or _loads_object(repair_json(body))
        if payload is None:
            continue
        name = payload.get("name") or payload.get("tool")
        if not name:
            continue
        raw_args = payload.get("arguments", payload.get("args", payload.get("parameters")))
        call = tool_call_from_native(name, raw_args)
        if call is not None:
            calls.append(call)
    return calls


def _from_xml(content: str) -> List[ToolCall]:
    calls: List[ToolCall] = []
    for pattern in (XML_BODY_RE, XML_ATTR_RE):
        for match in pattern.finditer(content):
            call = tool_call_from_native(match.group(1), match.group(2))
            if call is not None:
                calls.append(call)
    return calls


def extract_text_tool_calls(content: str) -> List[ToolCall]:
    if not content:
        return []
    # A tier that matched but produced only malformed calls still blocks the fallbacks.
    if TOOL_TAG_RE.search(content):
        return _from_tags(content)
    if FENCED_RE.search(content):
        fenced = _from_fences(content)
        if fenced:
            return fenced
    return _from_xml(content)


def extract_tool_calls(content: str, native: Optional[Iterable[ToolCall]] = None) -> List[ToolCall]:
    native_calls = list(native or [])
    if native_calls:
        return native_calls
    return extract_text_tool_calls(content)


def dedupe_tool_calls(calls: Iterable[ToolCall]) -> List[ToolCall]:
    seen = set()
    unique: List[ToolCall] = []
    for call in calls:
        key = (call.name, json.dumps(call.arguments, sort_keys=True, default=str))
        if key in seen:
            continue
        seen.add(key)
        unique.append(call)
    return unique


def format_tool_call(call: ToolCall) -> str:
    return f"[TOOL:{call.name}]{json.dumps(call.arguments, ensure_ascii=False)}[/TOOL]"
