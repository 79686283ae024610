"""Error taxonomy for the session registry and dispatch engine."""

from __future__ import annotations

from typing import Any


class ChatRelayError(Exception):
    """Base class for connection-scoped failures. None of these are fatal."""


class DuplicateConnection(ChatRelayError):
    pass


class UnknownSession(ChatRelayError):
    pass


class IdentityAlreadyBound(ChatRelayError):
    def __init__(self, bound: str, attempted: str) -> None:
        super().__init__(f"identity already bound to {bound!r} (attempted {attempted!r})")
        self.bound = bound
        self.attempted = attempted


class UnknownDestination(ChatRelayError):
    def __init__(self, destination: str) -> None:
        super().__init__(f"no handler for destination {destination!r}")
        self.destination = destination


class InvalidEvent(ChatRelayError, ValueError):
    pass


class DeliveryFailure(ChatRelayError):
    """
    A single failed delivery attempt to one subscriber.

    Collected into a DeliveryReport rather than raised.
    """

    def __init__(self, session: Any, cause: BaseException | str) -> None:
        super().__init__(f"delivery to {getattr(session, 'connection_id', '-')} failed: {cause}")
        self.session = session
        self.cause = cause
