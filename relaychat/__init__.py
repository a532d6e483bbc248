"""Two-node chat relay: message store, live fan-out, polling and peer forwarding."""

__version__ = "1.0.0"
