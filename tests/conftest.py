from __future__ import annotations

import threading
from collections import defaultdict

import pytest

from chatrelay.lifecycle import SessionLifecycleManager
from chatrelay.router import MessageRouter
from chatrelay.session import ConnectionRegistry
from chatrelay.stats import StatsManager
from chatrelay.topics import TopicManager


class FakeLink:
    """Stands in for an RNS.Link: hashable, weak-referenceable, closable."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.link_id = name.encode("utf-8")
        self.closed = False
        self.packet_callback = None
        self.closed_callback = None

    def set_packet_callback(self, cb) -> None:
        self.packet_callback = cb

    def set_link_closed_callback(self, cb) -> None:
        self.closed_callback = cb

    def teardown(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.closed_callback is not None:
            self.closed_callback(self)

    def __repr__(self) -> str:
        return f"FakeLink({self.name})"


class RecordingTransport:
    """Records every event sent, per connection."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.received: dict[FakeLink, list] = defaultdict(list)
        self.failing: set[FakeLink] = set()
        self.raising: set[FakeLink] = set()
        self.before_send = None

    def send(self, connection, event) -> bool:
        if self.before_send is not None:
            self.before_send(connection, event)
        if connection in self.raising:
            raise ConnectionResetError("link went away")
        if connection in self.failing:
            return False
        with self._lock:
            self.received[connection].append(event)
        return True

    def events(self, connection) -> list:
        with self._lock:
            return list(self.received.get(connection, []))


class Core:
    def __init__(self, rate_limit_msgs_per_minute: int = 0, max_content_chars: int = 0) -> None:
        self.transport = RecordingTransport()
        self.stats = StatsManager()
        self.registry = ConnectionRegistry(rate_limit_msgs_per_minute)
        self.topics = TopicManager(self.transport)
        self.router = MessageRouter(self.registry, self.topics)
        self.router.install_default_handlers()
        self.lifecycle = SessionLifecycleManager(
            self.registry,
            self.topics,
            self.router,
            self.stats,
            max_content_chars=max_content_chars,
        )


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def core() -> Core:
    return Core()


@pytest.fixture
def links() -> list[FakeLink]:
    return [FakeLink(f"c{i}") for i in range(1, 6)]


@pytest.fixture
def make_link():
    return FakeLink


@pytest.fixture
def make_core():
    return Core
