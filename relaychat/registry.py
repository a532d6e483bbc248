import asyncio
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from relaychat.metrics import live_subscribers

logger = logging.getLogger(__name__)


class Subscriber:
    """A live connection interested in new messages."""

    def __init__(self, websocket: Any, queue_size: int, connection_id: Optional[str] = None):
        self.connection_id = connection_id or uuid.uuid4().hex
        self.websocket = websocket
        self.joined_at = datetime.now(timezone.utc)

        # highest message id already queued for this subscriber
        self.cursor = 0

        # per subscriber outbound buffer, drained by sender_task;
        # the broadcaster never waits on a slow subscriber
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.sender_task: Optional[asyncio.Task] = None
        self.connected = True

    async def stop(self) -> None:
        self.connected = False
        task = self.sender_task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def __repr__(self) -> str:
        return f"<Subscriber {self.connection_id} cursor={self.cursor}>"


class ConnectionRegistry:
    """
    Process-lifetime table of live subscribers.

    Iteration works on a snapshot, so subscribers may register or leave
    while a broadcast is walking the table.
    """

    def __init__(self):
        self._subscribers: Dict[str, Subscriber] = {}
        self._lock = threading.Lock()

    def register(self, subscriber: Subscriber, cursor: int) -> int:
        """
        Add a subscriber whose backlog ends at message id `cursor`.

        Returns:
            The cursor recorded for the subscriber
        """
        subscriber.cursor = cursor
        with self._lock:
            self._subscribers[subscriber.connection_id] = subscriber
            live_subscribers.set(len(self._subscribers))
        logger.info(f"Subscriber registered: {subscriber.connection_id}, cursor={cursor}")
        return cursor

    def unregister(self, connection_id: str) -> Optional[Subscriber]:
        """Remove a subscriber. Unknown ids are ignored."""
        with self._lock:
            subscriber = self._subscribers.pop(connection_id, None)
            live_subscribers.set(len(self._subscribers))
        if subscriber is not None:
            logger.info(f"Subscriber unregistered: {connection_id}")
        return subscriber

    def get(self, connection_id: str) -> Optional[Subscriber]:
        with self._lock:
            return self._subscribers.get(connection_id)

    def snapshot(self) -> List[Subscriber]:
        with self._lock:
            return list(self._subscribers.values())

    def for_each_live(self, fn: Callable[[Subscriber], None]) -> None:
        """
        Call `fn` once for every subscriber registered at call time
        that is still registered when its turn comes.
        """
        for subscriber in self.snapshot():
            if subscriber.connected and self.get(subscriber.connection_id) is subscriber:
                fn(subscriber)

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def __contains__(self, connection_id: str) -> bool:
        with self._lock:
            return connection_id in self._subscribers
