from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BroadcastEvent:
    event: str
    data: dict[str, Any]


@dataclass(eq=False)
class Subscription:
    """One live listener (an open SSE stream) for a single instance."""

    instance: str
    queue: "asyncio.Queue[BroadcastEvent]"
    closed: bool = False
    dropped: int = field(default=0)

    async def get(self, timeout: Optional[float] = None) -> Optional[BroadcastEvent]:
        if timeout is None:
            return await self.queue.get()
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        self.closed = True


class EventBroadcaster:
    """In-process fan-out of ``qrcode`` / ``state`` events keyed by instance name.

    Best effort only: a subscriber that registers after a broadcast, or whose
    queue is full or closed, misses the event. The status poller compensates.
    """

    def __init__(self, *, max_queue: int = 32):
        self._subscribers: dict[str, set[Subscription]] = defaultdict(set)
        self._max_queue = max(1, int(max_queue))

    def register(self, instance: str) -> Subscription:
        sub = Subscription(instance=instance, queue=asyncio.Queue(maxsize=self._max_queue))
        self._subscribers[instance].add(sub)
        logger.info("SSE subscriber registered instance=%s subscribers=%s", instance, len(self._subscribers[instance]))
        return sub

    def unregister(self, sub: Subscription) -> None:
        sub.close()
        subs = self._subscribers.get(sub.instance)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[sub.instance]
        logger.info("SSE subscriber removed instance=%s", sub.instance)

    def subscriber_count(self, instance: str) -> int:
        return len(self._subscribers.get(instance) or ())

    def broadcast(self, instance: str, event: str, data: dict[str, Any]) -> int:
        """Push to every live subscriber of ``instance``; returns how many received it. Never raises."""
        subs = self._subscribers.get(instance)
        if not subs:
            return 0
        message = BroadcastEvent(event=event, data=dict(data or {}))
        delivered = 0
        stale: list[Subscription] = []
        for sub in list(subs):
            if sub.closed:
                stale.append(sub)
                continue
            try:
                sub.queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                sub.dropped += 1
                stale.append(sub)
        for sub in stale:
            self.unregister(sub)
        if stale:
            logger.warning("SSE subscribers pruned instance=%s count=%s", instance, len(stale))
        return delivered


def format_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False, default=str)}\n\n"
