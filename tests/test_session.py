import random

import pytest

from chatrelay.errors import (
    ChatRelayError,
    DuplicateConnection,
    IdentityAlreadyBound,
    UnknownSession,
)
from chatrelay.session import ConnectionRegistry, SessionState


def test_register_creates_open_session_without_identity(make_link) -> None:
    reg = ConnectionRegistry()
    link = make_link("a")
    sess = reg.register(link)
    assert sess.identity is None
    assert sess.state is SessionState.OPEN
    assert sess.connection is link
    assert reg.lookup(link) is sess


def test_register_twice_is_duplicate(make_link) -> None:
    reg = ConnectionRegistry()
    link = make_link("a")
    reg.register(link)
    with pytest.raises(DuplicateConnection):
        reg.register(link)
    assert len(reg) == 1


def test_register_rejects_connection_without_weakref_support() -> None:
    reg = ConnectionRegistry()
    with pytest.raises(ChatRelayError):
        reg.register("plain-string-handle")
    assert len(reg) == 0
    assert "plain-string-handle" not in reg


def test_bind_identity_once(make_link) -> None:
    reg = ConnectionRegistry()
    link = make_link("a")
    reg.register(link)
    reg.bind_identity(link, "alice")
    assert reg.lookup(link).identity == "alice"

    with pytest.raises(IdentityAlreadyBound):
        reg.bind_identity(link, "alice")
    with pytest.raises(IdentityAlreadyBound):
        reg.bind_identity(link, "mallory")
    assert reg.lookup(link).identity == "alice"


def test_bind_identity_unregistered(make_link) -> None:
    reg = ConnectionRegistry()
    with pytest.raises(UnknownSession):
        reg.bind_identity(make_link("ghost"), "alice")


def test_bind_identity_on_closing_session(make_link) -> None:
    reg = ConnectionRegistry()
    link = make_link("a")
    reg.register(link)
    reg.begin_close(link)
    with pytest.raises(UnknownSession):
        reg.bind_identity(link, "alice")


def test_deregister_returns_closed_session(make_link) -> None:
    reg = ConnectionRegistry()
    link = make_link("a")
    sess = reg.register(link)
    assert reg.deregister(link) is sess
    assert sess.state is SessionState.CLOSED
    assert reg.lookup(link) is None
    assert reg.deregister(link) is None


def test_begin_close_only_once(make_link) -> None:
    reg = ConnectionRegistry()
    link = make_link("a")
    sess = reg.register(link)
    assert reg.begin_close(link) is sess
    assert sess.state is SessionState.CLOSING
    assert reg.begin_close(link) is None
    assert reg.begin_close(make_link("ghost")) is None


def test_identity_index(make_link) -> None:
    reg = ConnectionRegistry()
    a, b = make_link("a"), make_link("b")
    reg.register(a)
    reg.register(b)
    reg.bind_identity(a, "Alice")
    reg.bind_identity(b, "alice")
    assert reg.get_connections_by_identity("ALICE") == {a, b}

    reg.deregister(a)
    assert reg.get_connections_by_identity("alice") == {b}
    reg.deregister(b)
    assert reg.get_connections_by_identity("alice") == set()


def test_random_register_deregister_keeps_one_session_per_connection(make_link) -> None:
    rng = random.Random(1234)
    reg = ConnectionRegistry()
    pool = [make_link(f"l{i}") for i in range(20)]
    live: dict = {}

    for _ in range(500):
        link = rng.choice(pool)
        if link in live:
            assert reg.deregister(link) is live.pop(link)
        else:
            live[link] = reg.register(link)

        assert len(reg) == len(live)
        for lk, sess in live.items():
            assert reg.lookup(lk) is sess


def test_rate_limit_bucket(make_link) -> None:
    reg = ConnectionRegistry(rate_limit_msgs_per_minute=3)
    link = make_link("a")
    reg.register(link)
    assert all(reg.refill_and_take(link) for _ in range(3))
    assert reg.refill_and_take(link) is False


def test_rate_limit_disabled(make_link) -> None:
    reg = ConnectionRegistry(rate_limit_msgs_per_minute=0)
    link = make_link("a")
    reg.register(link)
    assert all(reg.refill_and_take(link) for _ in range(1000))


def test_clear_all(make_link) -> None:
    reg = ConnectionRegistry()
    a, b = make_link("a"), make_link("b")
    sa = reg.register(a)
    reg.register(b)
    reg.bind_identity(a, "alice")
    assert set(reg.clear_all()) == {a, b}
    assert len(reg) == 0
    assert sa.state is SessionState.CLOSED
    assert reg.get_stats() == {
        "total": 0,
        "identified": 0,
        "closing": 0,
        "indexed_by_identity": 0,
    }
