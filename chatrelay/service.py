from __future__ import annotations

import logging
import os
import signal
import threading
import time
from typing import Any

import RNS

from .codec import decode, encode
from .config import HubRuntimeConfig
from .constants import CHAT_VERSION, K_BODY, K_DEST
from .envelope import envelope_for_event, validate_envelope
from .errors import DuplicateConnection
from .events import ChatEvent
from .lifecycle import SessionLifecycleManager
from .router import MessageRouter
from .session import ConnectionRegistry
from .stats import StatsManager
from .topics import DeliveryReport, TopicManager
from .util import expand_path, fmt_connection_id


class HubService:
    """
    Runs the chat core on top of Reticulum links.

    Reticulum invokes link callbacks from its own threads. The core
    components each guard their own state; this class only translates
    between links/packets and the lifecycle entry points, and implements
    the send capability the topics fan out through.
    """

    def __init__(self, config: HubRuntimeConfig) -> None:
        self.config = config
        self.log = logging.getLogger("chatrelay.hub")

        self._shutdown = threading.Event()

        self.stats = StatsManager()
        self.registry = ConnectionRegistry(config.rate_limit_msgs_per_minute)
        self.topics = TopicManager(self)
        self.router = MessageRouter(
            self.registry,
            self.topics,
            broadcast_topic=config.public_topic,
            identity_max_chars=config.identity_max_chars,
        )
        self.router.install_default_handlers()
        self.lifecycle = SessionLifecycleManager(
            self.registry,
            self.topics,
            self.router,
            self.stats,
            broadcast_topic=config.public_topic,
            max_content_chars=config.max_content_chars,
            on_report=self._on_report,
        )

        # Consecutive failed deliveries per link.
        self._failures: dict[Any, int] = {}
        self._failures_lock = threading.Lock()

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None
        self._announce_thread: threading.Thread | None = None

    # Transport capability used by TopicManager

    def send(self, link: Any, event: ChatEvent) -> bool:
        payload = encode(envelope_for_event(event))
        try:
            RNS.Packet(link, payload).send()
        except OSError as e:
            # Common failure mode on low-MTU links: packet too large.
            self.log.warning(
                "Send failed link_id=%s bytes=%s err=%s",
                fmt_connection_id(link),
                len(payload),
                e,
            )
            return False
        except Exception:
            self.log.debug(
                "Send failed link_id=%s bytes=%s",
                fmt_connection_id(link),
                len(payload),
                exc_info=True,
            )
            return False

        self.stats.inc("bytes_out", len(payload))
        return True

    def _on_report(self, report: DeliveryReport) -> None:
        limit = int(self.config.max_delivery_failures)
        if limit <= 0:
            return

        to_teardown: list[Any] = []
        with self._failures_lock:
            for sess in report.delivered:
                conn = sess.connection
                if conn is not None:
                    self._failures.pop(conn, None)
            for failure in report.failures:
                sess = failure.session
                conn = sess.connection
                if conn is None or not sess.is_open:
                    continue
                n = self._failures.get(conn, 0) + 1
                self._failures[conn] = n
                if n >= limit:
                    self._failures.pop(conn, None)
                    to_teardown.append(conn)

        for link in to_teardown:
            self.log.warning(
                "Closing link after %s failed deliveries link_id=%s",
                limit,
                fmt_connection_id(link),
            )
            try:
                link.teardown()
            except Exception:
                self.log.debug("Teardown failed", exc_info=True)
            # Teardown normally fires the closed callback; closing here too
            # is a no-op if it already ran.
            self._on_close(link)

    # Reticulum callbacks

    def _on_link(self, link: RNS.Link) -> None:
        try:
            self.lifecycle.on_open(link)
        except DuplicateConnection:
            self.log.warning("Duplicate link established link_id=%s", fmt_connection_id(link))
            return

        link.set_packet_callback(lambda data, pkt: self._on_packet(link, data))
        link.set_link_closed_callback(lambda closed_link: self._on_close(closed_link))

        self.log.info("Link established link_id=%s", fmt_connection_id(link))

    def _on_close(self, link: Any) -> None:
        with self._failures_lock:
            self._failures.pop(link, None)
        self.lifecycle.on_close(link)

    def _on_packet(self, link: Any, data: bytes) -> None:
        self.stats.inc("pkts_in")
        self.stats.inc("bytes_in", len(data))

        try:
            env = decode(data)
            validate_envelope(env)
        except (TypeError, ValueError) as e:
            self.stats.inc("pkts_bad")
            self.log.debug(
                "Bad packet link_id=%s bytes=%s err=%s",
                fmt_connection_id(link),
                len(data),
                e,
            )
            return

        destination = env[K_DEST]
        body = env.get(K_BODY) or {}

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX link_id=%s dest=%s bytes=%s",
                fmt_connection_id(link),
                destination,
                len(data),
            )

        self.lifecycle.on_message(link, destination, body)

    # Process lifecycle

    def start(self) -> None:
        self.log.info("Starting Reticulum")
        self.stats.set_start_time()
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()

        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_thread = threading.Thread(
                target=self._announce_loop,
                name="chatrelay-announce",
                daemon=True,
            )
            self._announce_thread.start()

        self.log.info(
            "Hub running dest_name=%s dest_hash=%s topic=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
            self.config.public_topic,
        )
        self.log.info(
            "Policy identity_max_chars=%s max_content_chars=%s "
            "rate_limit_msgs_per_minute=%s max_delivery_failures=%s",
            self.config.identity_max_chars,
            self.config.max_content_chars,
            self.config.rate_limit_msgs_per_minute,
            self.config.max_delivery_failures,
        )

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode(
                    {"proto": "chatrelay", "v": CHAT_VERSION, "hub": self.config.hub_name}
                )
            )
            self.stats.inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        period = float(self.config.announce_period_s)
        while not self._shutdown.wait(period):
            self._announce_once()

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()

        links = self.registry.clear_all()
        self.topics.clear_all()
        with self._failures_lock:
            self._failures.clear()

        for link in links:
            try:
                link.teardown()
            except Exception:
                self.log.debug("Teardown failed", exc_info=True)

        self.log.info("Hub stopped\n%s", self.format_stats())

    def format_stats(self) -> str:
        return self.stats.format_stats(self.registry, self.topics)

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident
