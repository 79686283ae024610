from __future__ import annotations

import logging
import threading
import time
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import (
    ChatRelayError,
    DuplicateConnection,
    IdentityAlreadyBound,
    UnknownSession,
)
from .util import fmt_connection_id


class SessionState(str, Enum):
    OPEN = "OPEN"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


@dataclass(eq=False)
class Session:
    """Chat-domain state for one live connection. Hashed by identity."""

    _conn_ref: weakref.ReferenceType
    connection_id: str
    identity: str | None = None
    subscriptions: set[str] = field(default_factory=set)
    state: SessionState = SessionState.OPEN

    @property
    def connection(self) -> Any | None:
        return self._conn_ref()

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    def __repr__(self) -> str:
        return (
            f"Session(conn={self.connection_id}, identity={self.identity!r}, "
            f"state={self.state.value})"
        )


class ConnectionRegistry:
    """
    Authoritative map of live connections to their Session.

    This class is responsible for:
    - Session creation and teardown (one Session per connection)
    - Identity binding (at most once per session)
    - Identity indexing for lookups
    - Rate limiting with token bucket algorithm

    Topic membership is not tracked here; the lifecycle manager removes a
    session from its topics before deregistering it.
    """

    def __init__(self, rate_limit_msgs_per_minute: int = 0) -> None:
        self.log = logging.getLogger("chatrelay.session")
        self.rate_limit_msgs_per_minute = int(rate_limit_msgs_per_minute)

        self._lock = threading.RLock()
        self._sessions: dict[Any, Session] = {}
        self._rate: dict[Any, _RateState] = {}
        self._index_by_identity: dict[str, set[Any]] = {}  # normalized identity -> connections

    def register(self, connection: Any) -> Session:
        with self._lock:
            if connection in self._sessions:
                raise DuplicateConnection(
                    f"connection {fmt_connection_id(connection)} already registered"
                )

            try:
                conn_ref = weakref.ref(connection)
            except TypeError as e:
                raise ChatRelayError(
                    f"connection {fmt_connection_id(connection)} does not support weak references"
                ) from e

            sess = Session(
                _conn_ref=conn_ref,
                connection_id=fmt_connection_id(connection),
            )
            self._sessions[connection] = sess
            if self.rate_limit_msgs_per_minute > 0:
                self._rate[connection] = _RateState(
                    tokens=float(self.rate_limit_msgs_per_minute),
                    last_refill=time.monotonic(),
                )

        self.log.info("Session created conn=%s", sess.connection_id)
        return sess

    def bind_identity(self, connection: Any, name: str) -> None:
        with self._lock:
            sess = self._sessions.get(connection)
            if sess is None or not sess.is_open:
                raise UnknownSession(
                    f"connection {fmt_connection_id(connection)} is not registered"
                )
            if sess.identity is not None:
                raise IdentityAlreadyBound(sess.identity, name)

            sess.identity = name
            self._index_by_identity.setdefault(name.strip().lower(), set()).add(
                connection
            )

        self.log.info("Identity bound conn=%s identity=%r", sess.connection_id, name)

    def lookup(self, connection: Any) -> Session | None:
        with self._lock:
            return self._sessions.get(connection)

    def begin_close(self, connection: Any) -> Session | None:
        """
        Move an OPEN session to CLOSING.

        Returns None if the connection is unknown or already closing, so only
        one caller ever performs teardown for a connection.
        """
        with self._lock:
            sess = self._sessions.get(connection)
            if sess is None or not sess.is_open:
                return None
            sess.state = SessionState.CLOSING
            return sess

    def deregister(self, connection: Any) -> Session | None:
        with self._lock:
            sess = self._sessions.pop(connection, None)
            self._rate.pop(connection, None)
            if sess is None:
                return None

            if sess.identity:
                key = sess.identity.strip().lower()
                conns = self._index_by_identity.get(key)
                if conns is not None:
                    conns.discard(connection)
                    if not conns:
                        self._index_by_identity.pop(key, None)

            sess.state = SessionState.CLOSED

        self.log.debug("Session removed conn=%s", sess.connection_id)
        return sess

    def refill_and_take(self, connection: Any, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take `cost` tokens.
        Returns True if tokens were available and taken, False if rate limited.
        """
        with self._lock:
            state = self._rate.get(connection)
            if state is None:
                return True

            now = time.monotonic()
            per_min = float(max(1, self.rate_limit_msgs_per_minute))
            rate_per_s = per_min / 60.0
            elapsed = max(0.0, now - state.last_refill)
            state.tokens = min(per_min, state.tokens + elapsed * rate_per_s)
            state.last_refill = now

            if state.tokens < cost:
                return False

            state.tokens -= cost
            return True

    def get_connections_by_identity(self, name: str) -> set[Any]:
        key = name.strip().lower()
        with self._lock:
            return self._index_by_identity.get(key, set()).copy()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, connection: Any) -> bool:
        with self._lock:
            return connection in self._sessions

    def clear_all(self) -> list[Any]:
        """Clear all sessions and return their connections for teardown."""
        with self._lock:
            conns = list(self._sessions.keys())
            for sess in self._sessions.values():
                sess.state = SessionState.CLOSED
            self._sessions.clear()
            self._rate.clear()
            self._index_by_identity.clear()
            return conns

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            total = len(self._sessions)
            identified = sum(1 for s in self._sessions.values() if s.identity)
            closing = sum(
                1 for s in self._sessions.values() if s.state is SessionState.CLOSING
            )
            return {
                "total": total,
                "identified": identified,
                "closing": closing,
                "indexed_by_identity": len(self._index_by_identity),
            }
