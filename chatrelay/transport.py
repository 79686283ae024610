from __future__ import annotations

from typing import Any, Protocol

from .events import ChatEvent


class Transport(Protocol):
    """
    The one capability the core needs from the wire layer.

    `send` runs while the topic's publish lock is held, so it must not call
    back into the core (on_close, publish, ...) on the same thread. Close
    signals noticed during a send are delivered afterwards.
    """

    def send(self, connection: Any, event: ChatEvent) -> bool:
        """Deliver an event to one connection. Returns False (or raises) on failure."""
        ...
