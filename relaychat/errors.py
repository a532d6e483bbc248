"""
Error taxonomy for a chat node.

Only failures at or before the durable append reach the submitting client.
PeerUnreachable and SubscriberSendFailure are logged where they happen.
"""


class RelayChatError(Exception):
    """Base class for all node errors."""


class MessageValidationError(RelayChatError):
    """Missing, empty or oversized sender/body. Maps to 400."""


class StoreWriteError(RelayChatError):
    """The durable append failed; the message was not saved. Maps to 500."""


class StoreReadError(RelayChatError):
    """The store could not be read. Maps to 500 on snapshot reads."""


class PeerUnreachable(RelayChatError):
    """The paired node did not accept a forwarded message."""


class SubscriberSendFailure(RelayChatError):
    """A push to one live subscriber failed or its queue overflowed."""
