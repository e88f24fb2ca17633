from __future__ import annotations

import asyncio
import json

from backend.whatsapp.broadcaster import EventBroadcaster, format_sse


def test_broadcast_without_subscribers_is_a_noop() -> None:
    assert EventBroadcaster().broadcast("loja1", "state", {"state": "open"}) == 0


def test_broadcast_reaches_only_the_same_instance() -> None:
    async def scenario():
        broadcaster = EventBroadcaster()
        a1 = broadcaster.register("loja1")
        a2 = broadcaster.register("loja1")
        b = broadcaster.register("loja2")
        delivered = broadcaster.broadcast("loja1", "qrcode", {"code": "x"})
        return delivered, await a1.get(timeout=0.1), await a2.get(timeout=0.1), await b.get(timeout=0.05)

    delivered, e1, e2, other = asyncio.run(scenario())
    assert delivered == 2
    assert e1.data == e2.data == {"code": "x"}
    assert other is None


def test_full_or_closed_subscribers_are_pruned() -> None:
    async def scenario():
        broadcaster = EventBroadcaster(max_queue=1)
        slow = broadcaster.register("loja1")
        closed = broadcaster.register("loja1")
        closed.close()
        first = broadcaster.broadcast("loja1", "state", {"n": 1})
        second = broadcaster.broadcast("loja1", "state", {"n": 2})
        return broadcaster, slow, first, second

    broadcaster, slow, first, second = asyncio.run(scenario())
    assert (first, second) == (1, 0)
    assert slow.dropped == 1
    assert slow.closed is True
    assert broadcaster.subscriber_count("loja1") == 0


def test_unregister_is_idempotent() -> None:
    async def scenario():
        broadcaster = EventBroadcaster()
        sub = broadcaster.register("loja1")
        broadcaster.unregister(sub)
        broadcaster.unregister(sub)
        return broadcaster.subscriber_count("loja1")

    assert asyncio.run(scenario()) == 0


def test_format_sse() -> None:
    frame = format_sse("state", {"status": "conectado"})
    assert frame.startswith("event: state\ndata: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame.split("data: ", 1)[1]) == {"status": "conectado"}
