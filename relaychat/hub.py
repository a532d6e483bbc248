import asyncio
import logging
import threading
from typing import Any, Optional

from relaychat.errors import StoreReadError, SubscriberSendFailure
from relaychat.metrics import record_subscriber_drop
from relaychat.registry import ConnectionRegistry, Subscriber
from relaychat.schemas import make_error, make_initial_messages, make_new_message
from relaychat.storage import MessageStore

logger = logging.getLogger(__name__)

# Queue sentinel: sender loop closes the connection when it reads this
_CLOSE = object()

# Close code sent to a subscriber that fell too far behind
SLOW_CONSUMER_CLOSE_CODE = 1013


class BroadcastHub:
    """
    Fans every appended message out to the live subscribers.

    attach() and on_append() run under the same lock and compare each
    message id with the subscriber's cursor, so a message reaches a
    subscriber either in its backlog or as a push, exactly once.
    Both must be called from the event loop that owns the subscriber queues.
    """

    def __init__(self, store: MessageStore, registry: ConnectionRegistry, queue_size: int = 100):
        self.store = store
        self.registry = registry
        self.queue_size = queue_size
        self._lock = threading.Lock()

    async def attach(self, websocket: Any, connection_id: Optional[str] = None) -> Subscriber:
        """
        Register a live connection and queue its backlog.

        The subscriber receives one initial_messages event with the full
        history, then one new_message event per later append.
        """
        subscriber = Subscriber(websocket, self.queue_size, connection_id)

        with self._lock:
            try:
                backlog = self.store.read_all()
            except StoreReadError as e:
                logger.error(f"Backlog unavailable for {subscriber.connection_id}, sending empty: {e}")
                backlog = []
            self.registry.register(subscriber, backlog[-1].id if backlog else 0)
            subscriber.queue.put_nowait(make_initial_messages(backlog))

        subscriber.sender_task = asyncio.create_task(self._sender_loop(subscriber))
        return subscriber

    def on_append(self, message: Any) -> None:
        """
        Queue `message` for every live subscriber that has not seen it yet.
        Never blocks on a subscriber and never raises for one.
        """
        with self._lock:
            self.registry.for_each_live(lambda sub: self._enqueue(sub, message))

    async def detach(self, connection_id: str, reason: str = "disconnect") -> None:
        subscriber = self.registry.unregister(connection_id)
        if subscriber is None:
            return
        record_subscriber_drop(reason)
        await subscriber.stop()

    async def close(self) -> None:
        """Detach every subscriber (application shutdown)."""
        for subscriber in self.registry.snapshot():
            await self.detach(subscriber.connection_id, reason="shutdown")

    # =========================================================================
    # Internals
    # =========================================================================

    def _enqueue(self, subscriber: Subscriber, message: Any) -> None:
        if message.id <= subscriber.cursor:
            return
        try:
            subscriber.queue.put_nowait(make_new_message(message))
        except asyncio.QueueFull:
            self._drop_slow(subscriber)
            return
        subscriber.cursor = message.id

    def _drop_slow(self, subscriber: Subscriber) -> None:
        """
        Unregister a subscriber whose queue is full and have its sender loop
        tell it why before closing. Pending events are discarded.
        """
        logger.warning(
            f"Subscriber {subscriber.connection_id} queue full, dropping",
            extra={"connection_id": subscriber.connection_id, "queue_size": self.queue_size},
        )
        self.registry.unregister(subscriber.connection_id)
        record_subscriber_drop("slow_consumer")
        subscriber.connected = False

        while not subscriber.queue.empty():
            subscriber.queue.get_nowait()
        subscriber.queue.put_nowait(make_error("SLOW_CONSUMER", "Subscriber queue overflow; reconnect to resync"))
        if self.queue_size > 1:
            subscriber.queue.put_nowait(_CLOSE)

    async def _sender_loop(self, subscriber: Subscriber) -> None:
        """
        Background task per subscriber: read from queue and send over the
        websocket. A failed send removes only this subscriber.
        """
        websocket = subscriber.websocket
        close_code = None
        try:
            while True:
                item = await subscriber.queue.get()
                if item is _CLOSE:
                    close_code = SLOW_CONSUMER_CLOSE_CODE
                    break
                try:
                    await websocket.send_json(item)
                except Exception as e:
                    raise SubscriberSendFailure(str(e)) from e
                if not subscriber.connected and subscriber.queue.empty():
                    close_code = SLOW_CONSUMER_CLOSE_CODE
                    break
        except SubscriberSendFailure as e:
            logger.info(f"Send to subscriber {subscriber.connection_id} failed: {e}")
            if self.registry.unregister(subscriber.connection_id) is not None:
                record_subscriber_drop("send_error")
        finally:
            subscriber.connected = False

        if close_code is not None:
            try:
                await websocket.close(code=close_code)
            except Exception as e:
                logger.debug(f"Close of subscriber {subscriber.connection_id} failed: {e}")
