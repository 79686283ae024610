"""Topic management for the chatrelay hub.

This module handles broadcast channels:
- Topic membership tracking (weak references to sessions)
- Ordered fan-out of published events
- Per-subscriber delivery reporting
"""

from __future__ import annotations

import logging
import threading
import weakref
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .errors import DeliveryFailure, UnknownSession

if TYPE_CHECKING:
    from .events import ChatEvent
    from .session import Session
    from .transport import Transport


@dataclass
class DeliveryReport:
    topic: str
    event: ChatEvent
    delivered: list[Session] = field(default_factory=list)
    failures: list[DeliveryFailure] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.delivered) + len(self.failures)

    @property
    def ok(self) -> bool:
        return not self.failures


class Topic:
    """A named broadcast channel."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.subscribers: weakref.WeakSet[Session] = weakref.WeakSet()
        # Held across snapshot and fan-out: publishes to one topic are
        # delivered in the order they acquire this lock. Not re-entrant;
        # Transport.send must not call back into the core on the same thread.
        self._publish_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Topic({self.name!r}, subscribers={len(self.subscribers)})"


class TopicManager:
    """Manages topic memberships and ordered publish fan-out."""

    def __init__(self, transport: Transport) -> None:
        self.transport = transport
        self.log = logging.getLogger("chatrelay.topics")
        self.topics: dict[str, Topic] = {}

        # Guards topic membership and Session.subscriptions. Never held
        # while sending.
        self._lock = threading.RLock()

    def _topic(self, name: str) -> Topic:
        """Get or create a topic. Must be called with the membership lock held."""
        topic = self.topics.get(name)
        if topic is None:
            topic = Topic(name)
            self.topics[name] = topic
        return topic

    def subscribe(self, topic_name: str, session: Session) -> None:
        with self._lock:
            if not session.is_open:
                raise UnknownSession(
                    f"cannot subscribe {session.connection_id}: session is {session.state.value}"
                )
            topic = self._topic(topic_name)
            if session in topic.subscribers:
                return
            topic.subscribers.add(session)
            session.subscriptions.add(topic_name)

        self.log.debug("Subscribed conn=%s topic=%s", session.connection_id, topic_name)

    def unsubscribe(self, topic_name: str, session: Session) -> None:
        with self._lock:
            session.subscriptions.discard(topic_name)
            topic = self.topics.get(topic_name)
            if topic is None or session not in topic.subscribers:
                return
            topic.subscribers.discard(session)

        self.log.debug("Unsubscribed conn=%s topic=%s", session.connection_id, topic_name)

    def unsubscribe_all(self, session: Session) -> list[str]:
        """Remove a session from every topic. Returns the topics it left."""
        with self._lock:
            names = sorted(
                set(session.subscriptions)
                | {n for n, t in self.topics.items() if session in t.subscribers}
            )
            for name in names:
                self.unsubscribe(name, session)
            return names

    def members(self, topic_name: str) -> list[Session]:
        with self._lock:
            topic = self.topics.get(topic_name)
            return list(topic.subscribers) if topic is not None else []

    def topics_of(self, session: Session) -> list[str]:
        with self._lock:
            return sorted(session.subscriptions)

    def publish(self, topic_name: str, event: ChatEvent) -> DeliveryReport:
        """
        Deliver `event` to the subscribers present when the publish begins.

        Outbound events are addressed to the topic name.

        Every snapshot member gets exactly one attempt. Failures are recorded
        in the report and never stop delivery to the remaining subscribers.
        """
        if event.destination != topic_name:
            event = event.to(topic_name)
        report = DeliveryReport(topic=topic_name, event=event)

        with self._lock:
            topic = self._topic(topic_name)

        with topic._publish_lock:
            with self._lock:
                snapshot = list(topic.subscribers)

            for sess in snapshot:
                self._deliver(sess, event, report)

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "Published topic=%s kind=%s sender=%r delivered=%d failed=%d",
                topic_name,
                event.kind.value,
                event.sender,
                len(report.delivered),
                len(report.failures),
            )
        return report

    def _deliver(self, sess: Session, event: ChatEvent, report: DeliveryReport) -> None:
        conn = sess.connection
        if conn is None or not sess.is_open:
            report.failures.append(DeliveryFailure(sess, f"session {sess.state.value}"))
            return

        try:
            sent = self.transport.send(conn, event)
        except Exception as e:
            self.log.debug("Send raised conn=%s", sess.connection_id, exc_info=True)
            report.failures.append(DeliveryFailure(sess, e))
            return

        if sent is False:
            report.failures.append(DeliveryFailure(sess, "send failed"))
        else:
            report.delivered.append(sess)

    def clear_all(self) -> None:
        """Clear all topic state. Called during hub shutdown."""
        with self._lock:
            for topic in self.topics.values():
                for sess in list(topic.subscribers):
                    sess.subscriptions.clear()
            self.topics.clear()

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            topics_total = len(self.topics)
            memberships = sum(len(t.subscribers) for t in self.topics.values())
            top_topics = sorted(
                ((name, len(t.subscribers)) for name, t in self.topics.items()),
                key=lambda x: (-x[1], x[0]),
            )[:5]
            return {
                "topics_total": topics_total,
                "memberships": memberships,
                "top_topics": top_topics,
            }
