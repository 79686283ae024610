"""Statistics tracking and reporting for the chatrelay hub."""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .session import ConnectionRegistry
    from .topics import TopicManager


class StatsManager:
    """
    Lifetime counters for the hub.

    Tracks counters for:
    - Bytes and packets in/out
    - Events received, dropped and rate limited
    - Publishes, deliveries and delivery failures
    - Joins and leaves
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "pkts_in": 0,
            "pkts_bad": 0,
            "events_in": 0,
            "events_dropped": 0,
            "rate_limited": 0,
            "publishes": 0,
            "deliveries": 0,
            "delivery_failures": 0,
            "joins": 0,
            "leaves": 0,
            "opens": 0,
            "closes": 0,
            "announces": 0,
        }

    def set_start_time(self) -> None:
        """Set the start time for uptime calculations."""
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return int(self._counters.get(key, 0))

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def format_stats(
        self,
        registry: ConnectionRegistry | None = None,
        topics: TopicManager | None = None,
    ) -> str:
        """Format current statistics as a human-readable string."""
        from . import __version__

        started_mono = self.started_monotonic
        uptime_s = (time.monotonic() - started_mono) if started_mono is not None else 0.0
        c = self.snapshot()

        lines: list[str] = []
        lines.append(f"chatrelay {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")

        if registry is not None:
            s = registry.get_stats()
            lines.append(
                f"clients_total={s['total']} "
                f"clients_identified={s['identified']} "
                f"clients_closing={s['closing']}"
            )

        if topics is not None:
            t = topics.get_stats()
            lines.append(f"topics={t['topics_total']} memberships={t['memberships']}")
            if t["top_topics"]:
                lines.append(
                    "top_topics=" + ", ".join(f"{n}:{k}" for n, k in t["top_topics"])
                )

        lines.append(
            "io: pkts_in={} pkts_bad={} bytes_in={} bytes_out={}".format(
                c.get("pkts_in", 0),
                c.get("pkts_bad", 0),
                c.get("bytes_in", 0),
                c.get("bytes_out", 0),
            )
        )
        lines.append(
            "events: in={} dropped={} rate_limited={} joins={} leaves={}".format(
                c.get("events_in", 0),
                c.get("events_dropped", 0),
                c.get("rate_limited", 0),
                c.get("joins", 0),
                c.get("leaves", 0),
            )
        )
        lines.append(
            "fanout: publishes={} deliveries={} failures={}".format(
                c.get("publishes", 0),
                c.get("deliveries", 0),
                c.get("delivery_failures", 0),
            )
        )
        lines.append(
            "sessions: opens={} closes={}".format(c.get("opens", 0), c.get("closes", 0))
        )

        return "\n".join(lines)
