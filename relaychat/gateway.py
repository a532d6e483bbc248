import logging
from typing import Any, List, Optional

from relaychat.errors import MessageValidationError
from relaychat.forwarder import PeerForwarder
from relaychat.hub import BroadcastHub
from relaychat.models import ORIGIN_LOCAL, ORIGIN_RELAYED
from relaychat.storage import MessageStore

logger = logging.getLogger(__name__)

MAX_SENDER_LENGTH = 100
DEFAULT_RELAY_SENDER = "external-server"


class PollingGateway:
    """
    Stateless read/write facade over the message store.

    snapshot() always returns the whole history; clients diff or re-render.
    ingest() and receive() run validate, persist, broadcast and (for local
    messages only) forward, in that order.
    """

    def __init__(
        self,
        store: MessageStore,
        hub: BroadcastHub,
        forwarder: PeerForwarder,
        max_length: int = 500,
    ):
        self.store = store
        self.hub = hub
        self.forwarder = forwarder
        self.max_length = max_length

    def snapshot(self) -> List:
        return self.store.read_all()

    def ingest(self, sender: Optional[str], body: Optional[str]) -> Any:
        """
        Accept a message from a local client.

        Raises:
            MessageValidationError: nothing was stored
            StoreWriteError: nothing was stored, broadcast or forwarded
        """
        sender, body = self.validate(sender, body)
        message = self.store.append(sender, body, ORIGIN_LOCAL)
        logger.info(f"Local message stored: id={message.id}, sender={sender}")

        self.hub.on_append(message)
        self.forwarder.forward(message)
        return message

    def receive(
        self,
        sender: Optional[str],
        body: Optional[str],
        sent_at: Optional[str] = None,
    ) -> Any:
        """
        Accept a message relayed by the paired node. It is stored and
        broadcast here but never forwarded again.
        """
        if sender is None or not sender.strip():
            sender = DEFAULT_RELAY_SENDER
        sender, body = self.validate(sender, body)
        message = self.store.append(sender, body, ORIGIN_RELAYED, sent_at=sent_at)
        logger.info(f"Relayed message stored: id={message.id}, sender={sender}")

        self.hub.on_append(message)
        return message

    def validate(self, sender: Optional[str], body: Optional[str]) -> tuple[str, str]:
        """Return trimmed (sender, body) or raise MessageValidationError."""
        if not isinstance(body, str) or not body.strip():
            raise MessageValidationError("Message is required")
        if not isinstance(sender, str) or not sender.strip():
            raise MessageValidationError("Sender is required")

        sender = sender.strip()
        body = body.strip()
        if len(body) > self.max_length:
            raise MessageValidationError(f"Message must be at most {self.max_length} characters")
        if len(sender) > MAX_SENDER_LENGTH:
            raise MessageValidationError(f"Sender must be at most {MAX_SENDER_LENGTH} characters")
        return sender, body
