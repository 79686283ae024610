import pytest

from chatrelay.constants import D_ADD_USER, D_SEND_MESSAGE, TOPIC_PUBLIC
from chatrelay.errors import (
    IdentityAlreadyBound,
    InvalidEvent,
    UnknownDestination,
    UnknownSession,
)
from chatrelay.events import ChatEvent, EventKind


def test_send_message_is_passthrough(core, make_link) -> None:
    link = make_link("a")
    core.lifecycle.on_open(link)
    ev = ChatEvent(D_SEND_MESSAGE, "alice", "hi")

    report = core.router.dispatch(link, ev)

    assert report is not None and report.ok
    assert core.transport.events(link) == [ev.to(TOPIC_PUBLIC)]
    assert core.registry.lookup(link).identity is None


def test_add_user_binds_identity_and_broadcasts(core, make_link) -> None:
    link = make_link("a")
    core.lifecycle.on_open(link)
    ev = ChatEvent(D_ADD_USER, "alice", kind=EventKind.JOIN)

    core.router.dispatch(link, ev)

    assert core.registry.lookup(link).identity == "alice"
    assert core.transport.events(link) == [ev.to(TOPIC_PUBLIC)]


def test_add_user_twice_fails(core, make_link) -> None:
    link = make_link("a")
    core.lifecycle.on_open(link)
    core.router.dispatch(link, ChatEvent(D_ADD_USER, "alice", kind=EventKind.JOIN))

    with pytest.raises(IdentityAlreadyBound):
        core.router.dispatch(link, ChatEvent(D_ADD_USER, "bob", kind=EventKind.JOIN))
    assert len(core.transport.events(link)) == 1


def test_add_user_rejects_bad_identity(core, make_link) -> None:
    link = make_link("a")
    core.lifecycle.on_open(link)
    with pytest.raises(InvalidEvent):
        core.router.dispatch(link, ChatEvent(D_ADD_USER, "x" * 40, kind=EventKind.JOIN))
    with pytest.raises(InvalidEvent):
        core.router.dispatch(link, ChatEvent(D_ADD_USER, "a\nb", kind=EventKind.JOIN))
    assert core.registry.lookup(link).identity is None


def test_dispatch_unknown_session(core, make_link) -> None:
    with pytest.raises(UnknownSession):
        core.router.dispatch(make_link("ghost"), ChatEvent(D_SEND_MESSAGE, "alice", "hi"))


def test_dispatch_unknown_destination(core, make_link) -> None:
    link = make_link("a")
    core.lifecycle.on_open(link)
    with pytest.raises(UnknownDestination):
        core.router.dispatch(link, ChatEvent("chat.nope", "alice", "hi"))
    assert core.transport.events(link) == []


def test_custom_handler_and_none_result(core, make_link) -> None:
    link = make_link("a")
    core.lifecycle.on_open(link)
    seen = []

    def typing(event, session):
        seen.append((event.sender, session.connection))
        return None

    core.router.register_handler("chat.typing", typing)
    assert "chat.typing" in core.router.destinations()

    assert core.router.dispatch(link, ChatEvent("chat.typing", "alice")) is None
    assert seen == [("alice", link)]
    assert core.transport.events(link) == []


def test_handler_output_goes_to_broadcast_topic(core, make_link) -> None:
    a, b = make_link("a"), make_link("b")
    core.lifecycle.on_open(a)
    core.lifecycle.on_open(b)

    def shout(event, session):
        return ChatEvent(event.destination, event.sender, event.content.upper())

    core.router.register_handler(D_SEND_MESSAGE, shout)
    core.router.dispatch(a, ChatEvent(D_SEND_MESSAGE, "alice", "hi"))

    assert [ev.content for ev in core.transport.events(b)] == ["HI"]


def test_add_user_rejects_non_join_kind(core, make_link) -> None:
    a, b = make_link("a"), make_link("b")
    core.lifecycle.on_open(a)
    core.lifecycle.on_open(b)

    with pytest.raises(InvalidEvent):
        core.router.dispatch(a, ChatEvent(D_ADD_USER, "alice", kind=EventKind.LEAVE))

    assert core.registry.lookup(a).identity is None
    assert core.transport.events(b) == []


def test_send_message_rejects_non_chat_kind(core, make_link) -> None:
    a, b = make_link("a"), make_link("b")
    core.lifecycle.on_open(a)
    core.lifecycle.on_open(b)

    for kind in (EventKind.JOIN, EventKind.LEAVE):
        with pytest.raises(InvalidEvent):
            core.router.dispatch(a, ChatEvent(D_SEND_MESSAGE, "alice", kind=kind))

    assert core.transport.events(b) == []
