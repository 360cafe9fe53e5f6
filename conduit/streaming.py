import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx


logger = logging.getLogger("uvicorn.error")

SSE_DONE = "[DONE]"


async def iter_lines(response: httpx.Response, cancel_event: Optional[asyncio.Event] = None) -> AsyncIterator[str]:
    """Yield response lines in transport order, stopping promptly on cancel.

    A pending read is raced against ``cancel_event`` so a quiet connection
    does not hold the caller hostage. Cancellation ends iteration silently.
    """
    lines = response.aiter_lines()
    if cancel_event is None:
        async for line in lines:
            yield line
        return
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        while not cancel_event.is_set():
            pending = asyncio.ensure_future(lines.__anext__())
            done, _ = await asyncio.wait({pending, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if pending in done:
                try:
                    line = pending.result()
                except StopAsyncIteration:
                    return
                yield line
                continue
            pending.cancel()
            try:
                await pending
            except (asyncio.CancelledError, StopAsyncIteration, httpx.HTTPError):
                pass
            return
    finally:
        waiter.cancel()


async def iter_sse_data(response: httpx.Response, cancel_event: Optional[asyncio.Event] = None) -> AsyncIterator[str]:
    """Yield the payload of every ``data:`` line. ``event:``/comment lines are skipped."""
    async for line in iter_lines(response, cancel_event):
        if not line.startswith("data:"):
            continue
        payload = line[5:].strip()
        if payload:
            yield payload


async def iter_sse_json(response: httpx.Response, cancel_event: Optional[asyncio.Event] = None) -> AsyncIterator[Dict[str, Any]]:
    async for payload in iter_sse_data(response, cancel_event):
        if payload == SSE_DONE:
            return
        try:
            data = json.loads(payload)
        except ValueError:
            logger.warning("Skipping malformed SSE frame: %s", payload[:200])
            continue
        if isinstance(data, dict):
            yield data


async def iter_json_lines(response: httpx.Response, cancel_event: Optional[asyncio.Event] = None) -> AsyncIterator[Dict[str, Any]]:
    async for line in iter_lines(response, cancel_event):
        trimmed = line.strip()
        if not trimmed:
            continue
        try:
            data = json.loads(trimmed)
        except ValueError:
            logger.warning("Skipping malformed JSON line: %s", trimmed[:200])
            continue
        if isinstance(data, dict):
            yield data
