"""
Best-effort relay of locally originated messages to the paired node.

Each forward is a detached asyncio task making one POST with a bounded
timeout. The outcome is logged and counted; nothing is retried and the
ingest response never waits for it.
"""

import asyncio
import logging
from typing import Any, Optional, Set

import httpx

from relaychat.errors import PeerUnreachable
from relaychat.metrics import record_forward_outcome
from relaychat.models import ORIGIN_LOCAL

logger = logging.getLogger(__name__)

# Ingestion endpoint on the paired node
RECEIVE_PATH = "/api/messages/receive"


class PeerForwarder:
    """
    Forwards `local` messages to one peer. `relayed` messages are never
    forwarded, which keeps two paired nodes from bouncing a message forever.
    """

    def __init__(
        self,
        peer_url: Optional[str],
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.peer_url = peer_url.rstrip("/") if peer_url else None
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._pending: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.peer_url)

    @property
    def receive_url(self) -> str:
        return f"{self.peer_url}{RECEIVE_PATH}"

    @property
    def pending(self) -> int:
        return len(self._pending)

    def forward(self, message: Any) -> Optional[asyncio.Task]:
        """
        Schedule delivery of `message` to the peer and return immediately.

        Must be called from a running event loop.

        Returns:
            The detached delivery task, or None when the message is not
            eligible (relayed) or no peer is configured.
        """
        if message.origin != ORIGIN_LOCAL:
            logger.debug(f"Not forwarding relayed message {message.id}")
            record_forward_outcome("skipped")
            return None
        if not self.enabled:
            logger.debug(f"No peer configured, message {message.id} stays local")
            record_forward_outcome("skipped")
            return None

        payload = {
            "sender": message.sender,
            "message": message.body,
            "timestamp": message.created_at,
        }
        task = asyncio.create_task(self._deliver(message.id, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every in-flight delivery to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # Internals
    # =========================================================================

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def _deliver(self, message_id: int, payload: dict) -> bool:
        """
        One delivery attempt. Returns True when the peer accepted the message.
        """
        try:
            try:
                response = await asyncio.wait_for(
                    self._get_client().post(self.receive_url, json=payload),
                    timeout=self.timeout,
                )
            except (httpx.HTTPError, asyncio.TimeoutError) as e:
                record_forward_outcome("unreachable")
                raise PeerUnreachable(f"{type(e).__name__}: {e}") from e

            if response.is_error:
                record_forward_outcome("rejected")
                raise PeerUnreachable(f"peer answered {response.status_code}")
        except PeerUnreachable as e:
            logger.warning(
                f"Forward of message {message_id} to {self.receive_url} failed: {e}",
                extra={"message_id": message_id, "peer": self.peer_url},
            )
            return False

        record_forward_outcome("delivered")
        logger.info(
            f"Message {message_id} forwarded to peer",
            extra={"message_id": message_id, "peer": self.peer_url},
        )
        return True
