import asyncio
from datetime import datetime, timezone
from typing import List


class EventBus:
    """In-memory fan-out of automation events to SSE subscribers."""

    def __init__(self):
        self.subscribers: List[asyncio.Queue] = []
        self.lock = asyncio.Lock()
        self._seq = 0

    async def emit(self, event_type: str, payload: dict) -> dict:
        async with self.lock:
            self._seq += 1
            event = {
                "seq": self._seq,
                "event_type": event_type,
                "payload": dict(payload or {}),
                "created_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            }
            queues = list(self.subscribers)
        for q in queues:
            await q.put(event)
        return event

    async def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.subscribers.append(queue)
        return queue

    async def unsubscribe(self, queue: asyncio.Queue) -> None:
        async with self.lock:
            if queue in self.subscribers:
                self.subscribers.remove(queue)
