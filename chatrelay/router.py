from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Optional

from .constants import D_ADD_USER, D_SEND_MESSAGE, TOPIC_PUBLIC
from .errors import InvalidEvent, UnknownDestination, UnknownSession
from .events import EventKind
from .util import fmt_connection_id, normalize_identity

if TYPE_CHECKING:
    from .events import ChatEvent
    from .session import ConnectionRegistry, Session
    from .topics import DeliveryReport, TopicManager

Handler = Callable[["ChatEvent", "Session"], Optional["ChatEvent"]]


class MessageRouter:
    """
    Maps inbound destinations to handlers and publishes their results.

    This class is responsible for:
    - The destination -> handler table
    - Resolving the Session for an inbound connection
    - Publishing handler output to the broadcast topic

    Errors are raised to the caller; the lifecycle manager decides what
    gets logged and dropped.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        topics: TopicManager,
        *,
        broadcast_topic: str = TOPIC_PUBLIC,
        identity_max_chars: int = 32,
    ) -> None:
        self.registry = registry
        self.topics = topics
        self.broadcast_topic = broadcast_topic
        self.identity_max_chars = int(identity_max_chars)
        self.log = logging.getLogger("chatrelay.router")
        self._handlers: dict[str, Handler] = {}

    def register_handler(self, destination: str, handler: Handler) -> None:
        if destination in self._handlers:
            self.log.info("Replacing handler destination=%s", destination)
        self._handlers[destination] = handler

    def destinations(self) -> list[str]:
        return sorted(self._handlers)

    def install_default_handlers(self) -> None:
        self.register_handler(D_SEND_MESSAGE, self._handle_send_message)
        self.register_handler(D_ADD_USER, self._handle_add_user)

    def dispatch(self, connection: Any, event: ChatEvent) -> DeliveryReport | None:
        sess = self.registry.lookup(connection)
        if sess is None or not sess.is_open:
            raise UnknownSession(
                f"no open session for connection {fmt_connection_id(connection)}"
            )

        handler = self._handlers.get(event.destination)
        if handler is None:
            raise UnknownDestination(event.destination)

        out = handler(event, sess)
        if out is None:
            return None

        return self.topics.publish(self.broadcast_topic, out)

    def _handle_send_message(self, event: ChatEvent, sess: Session) -> ChatEvent:
        if event.kind is not EventKind.CHAT:
            raise InvalidEvent(
                f"{D_SEND_MESSAGE} carries CHAT events, got {event.kind.value}"
            )
        return event

    def _handle_add_user(self, event: ChatEvent, sess: Session) -> ChatEvent:
        if event.kind is not EventKind.JOIN:
            raise InvalidEvent(
                f"{D_ADD_USER} carries JOIN events, got {event.kind.value}"
            )

        name = normalize_identity(event.sender, self.identity_max_chars)
        if name is None:
            raise InvalidEvent(f"invalid identity {event.sender!r}")

        conn = sess.connection
        if conn is None:
            raise UnknownSession(f"connection {sess.connection_id} is gone")

        self.registry.bind_identity(conn, name)
        return event
