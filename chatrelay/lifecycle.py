from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

from .constants import D_ADD_USER, TOPIC_PUBLIC
from .errors import ChatRelayError, InvalidEvent, UnknownDestination, UnknownSession
from .events import EventKind, event_from_payload, leave_event
from .util import fmt_connection_id

if TYPE_CHECKING:
    from .router import MessageRouter
    from .session import ConnectionRegistry, Session
    from .stats import StatsManager
    from .topics import DeliveryReport, TopicManager


class SessionLifecycleManager:
    """
    Entry points the transport drives: open, message, close.

    Per connection: OPEN -> (events...) -> CLOSING -> CLOSED. Graceful and
    abrupt closes both end up in on_close. Errors on the message path are
    logged and drop only the offending event.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        topics: TopicManager,
        router: MessageRouter,
        stats: StatsManager,
        *,
        broadcast_topic: str = TOPIC_PUBLIC,
        max_content_chars: int = 0,
        on_report: Callable[[DeliveryReport], None] | None = None,
    ) -> None:
        self.registry = registry
        self.topics = topics
        self.router = router
        self.stats = stats
        self.broadcast_topic = broadcast_topic
        self.max_content_chars = int(max_content_chars)
        self.on_report = on_report
        self.log = logging.getLogger("chatrelay.lifecycle")

    def on_open(self, connection: Any) -> Session:
        sess = self.registry.register(connection)
        try:
            self.topics.subscribe(self.broadcast_topic, sess)
        except UnknownSession:
            # Closed between register and subscribe.
            self.log.debug("Session closed before subscribe conn=%s", sess.connection_id)
        self.stats.inc("opens")
        return sess

    def on_close(self, connection: Any) -> None:
        sess = self.registry.begin_close(connection)
        if sess is None:
            return

        left: list[str] = []
        try:
            left = self.topics.unsubscribe_all(sess)

            # Published after this session left its topics, so it never sees
            # its own LEAVE, and before deregister completes.
            if sess.identity:
                report = self.topics.publish(
                    self.broadcast_topic, leave_event(self.broadcast_topic, sess.identity)
                )
                self.stats.inc("leaves")
                self._account(report)
        finally:
            self.registry.deregister(connection)
            self.stats.inc("closes")

        self.log.info(
            "Session closed conn=%s identity=%r topics=%s",
            sess.connection_id,
            sess.identity,
            len(left),
        )

    def on_message(
        self, connection: Any, destination: str, payload: Any
    ) -> DeliveryReport | None:
        self.stats.inc("events_in")

        if not self.registry.refill_and_take(connection, 1.0):
            self.stats.inc("rate_limited")
            self.stats.inc("events_dropped")
            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug("Rate limited conn=%s", fmt_connection_id(connection))
            return None

        default_kind = EventKind.JOIN if destination == D_ADD_USER else EventKind.CHAT
        try:
            event = event_from_payload(destination, payload, default_kind=default_kind)
            if self.max_content_chars > 0 and len(event.content) > self.max_content_chars:
                raise InvalidEvent("content too long")
            report = self.router.dispatch(connection, event)
        except UnknownDestination as e:
            self._drop(connection, e, level=logging.DEBUG)
            return None
        except ChatRelayError as e:
            self._drop(connection, e, level=logging.WARNING)
            return None

        if report is not None:
            if event.kind is EventKind.JOIN:
                self.stats.inc("joins")
            self._account(report)
        return report

    def _drop(self, connection: Any, err: Exception, *, level: int) -> None:
        self.stats.inc("events_dropped")
        self.log.log(
            level,
            "Dropped event conn=%s err=%s: %s",
            fmt_connection_id(connection),
            type(err).__name__,
            err,
        )

    def _account(self, report: DeliveryReport) -> None:
        self.stats.inc("publishes")
        self.stats.inc("deliveries", len(report.delivered))
        if report.failures:
            self.stats.inc("delivery_failures", len(report.failures))
        if self.on_report is not None:
            self.on_report(report)
