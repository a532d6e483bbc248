"""
Tests for the broadcast hub.

The hub is driven with asyncio.run and fake websockets, so delivery order,
failure isolation and slow-consumer handling can be observed directly.
"""

import asyncio
from types import SimpleNamespace

from relaychat.hub import BroadcastHub, SLOW_CONSUMER_CLOSE_CODE
from relaychat.models import ORIGIN_LOCAL
from relaychat.registry import ConnectionRegistry


class FakeWebSocket:
    def __init__(self):
        self.sent = []
        self.closed_with = None

    async def send_json(self, data):
        self.sent.append(data)

    async def close(self, code=1000):
        self.closed_with = code


class BrokenWebSocket(FakeWebSocket):
    async def send_json(self, data):
        raise RuntimeError("connection reset")


class StuckWebSocket(FakeWebSocket):
    """Never finishes a send, like a client that stopped reading."""

    async def send_json(self, data):
        await asyncio.Event().wait()


async def settle():
    for _ in range(20):
        await asyncio.sleep(0)


def bodies(ws):
    return [event["message"]["message"] for event in ws.sent if event["type"] == "new_message"]


def ingest(store, hub, sender, body):
    message = store.append(sender, body, ORIGIN_LOCAL)
    hub.on_append(message)
    return message


class TestAttach:

    def test_backlog_sent_once_on_attach(self, store):
        store.append("alice", "before", ORIGIN_LOCAL)
        hub = BroadcastHub(store, ConnectionRegistry())

        async def scenario():
            ws = FakeWebSocket()
            sub = await hub.attach(ws)
            await settle()
            await hub.close()
            return ws, sub

        ws, sub = asyncio.run(scenario())

        assert len(ws.sent) == 1
        assert ws.sent[0]["type"] == "initial_messages"
        assert [m["message"] for m in ws.sent[0]["messages"]] == ["before"]
        assert sub.cursor == 1

    def test_message_in_backlog_is_not_pushed_again(self, store):
        """An append whose broadcast lands after attach is delivered once."""
        hub = BroadcastHub(store, ConnectionRegistry())

        async def scenario():
            ws = FakeWebSocket()
            message = store.append("alice", "racing", ORIGIN_LOCAL)
            await hub.attach(ws)
            hub.on_append(message)
            await settle()
            await hub.close()
            return ws

        ws = asyncio.run(scenario())

        assert [m["message"] for m in ws.sent[0]["messages"]] == ["racing"]
        assert bodies(ws) == []

    def test_cursor_is_last_backlog_id_when_ids_have_gaps(self):
        """The cursor tracks message ids, not how many messages the backlog holds."""

        def stored(message_id, body):
            return SimpleNamespace(
                id=message_id, sender="alice", body=body,
                created_at="2026-01-01T00:00:00Z", origin=ORIGIN_LOCAL, sent_at=None,
            )

        class GappedStore:
            def read_all(self):
                return [stored(5, "five"), stored(9, "nine")]

        hub = BroadcastHub(GappedStore(), ConnectionRegistry())

        async def scenario():
            ws = FakeWebSocket()
            sub = await hub.attach(ws)
            hub.on_append(stored(9, "nine"))
            hub.on_append(stored(12, "twelve"))
            await settle()
            await hub.close()
            return ws, sub

        ws, sub = asyncio.run(scenario())

        assert [m["message"] for m in ws.sent[0]["messages"]] == ["five", "nine"]
        assert bodies(ws) == ["twelve"]
        assert sub.cursor == 12


class TestOnAppend:

    def test_in_order_delivery_to_each_subscriber(self, store):
        hub = BroadcastHub(store, ConnectionRegistry())

        async def scenario():
            first, second = FakeWebSocket(), FakeWebSocket()
            await hub.attach(first)
            await hub.attach(second)
            for body in ["X", "Y", "Z"]:
                ingest(store, hub, "alice", body)
            await settle()
            await hub.close()
            return first, second

        first, second = asyncio.run(scenario())

        assert bodies(first) == ["X", "Y", "Z"]
        assert bodies(second) == ["X", "Y", "Z"]

    def test_failed_subscriber_is_dropped_others_unaffected(self, store):
        registry = ConnectionRegistry()
        hub = BroadcastHub(store, registry)

        async def scenario():
            good, broken = FakeWebSocket(), BrokenWebSocket()
            await hub.attach(good)
            bad_sub = await hub.attach(broken)
            await settle()
            ingest(store, hub, "alice", "still delivered")
            await settle()
            live = len(registry)
            await hub.close()
            return good, bad_sub, live

        good, bad_sub, live = asyncio.run(scenario())

        assert bodies(good) == ["still delivered"]
        assert live == 1
        assert bad_sub.connected is False

    def test_slow_subscriber_dropped_without_stalling_others(self, store):
        registry = ConnectionRegistry()
        hub = BroadcastHub(store, registry, queue_size=2)

        async def scenario():
            fast, stuck = FakeWebSocket(), StuckWebSocket()
            await hub.attach(fast)
            stuck_sub = await hub.attach(stuck)
            await settle()
            for i in range(5):
                ingest(store, hub, "alice", f"m{i}")
                await settle()
            dropped = stuck_sub.connection_id not in registry
            await stuck_sub.stop()
            await hub.close()
            return fast, dropped

        fast, dropped = asyncio.run(scenario())

        assert dropped is True
        assert bodies(fast) == [f"m{i}" for i in range(5)]

    def test_detach_stops_delivery(self, store):
        registry = ConnectionRegistry()
        hub = BroadcastHub(store, registry)

        async def scenario():
            ws = FakeWebSocket()
            sub = await hub.attach(ws)
            await settle()
            await hub.detach(sub.connection_id)
            ingest(store, hub, "alice", "after")
            await settle()
            return ws, sub

        ws, sub = asyncio.run(scenario())

        assert bodies(ws) == []
        assert len(registry) == 0
        assert sub.sender_task.done()


class TestSlowConsumerClose:

    def test_overflowed_subscriber_told_and_closed(self, store):
        """Once its socket drains, an overflowed subscriber gets an error and a close."""
        registry = ConnectionRegistry()
        hub = BroadcastHub(store, registry, queue_size=2)

        class GatedWebSocket(FakeWebSocket):
            def __init__(self):
                super().__init__()
                self.gate = asyncio.Event()

            async def send_json(self, data):
                await self.gate.wait()
                await super().send_json(data)

        async def scenario():
            ws = GatedWebSocket()
            await hub.attach(ws)
            await settle()
            for i in range(4):
                ingest(store, hub, "alice", f"m{i}")
            ws.gate.set()
            await settle()
            return ws

        ws = asyncio.run(scenario())

        assert ws.sent[-1]["type"] == "error"
        assert ws.sent[-1]["error"]["code"] == "SLOW_CONSUMER"
        assert ws.closed_with == SLOW_CONSUMER_CLOSE_CODE
        assert len(registry) == 0
