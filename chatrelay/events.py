"""Chat event record exchanged between the router, topics and transport."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from .constants import B_CONTENT, B_SENDER, B_TYPE
from .errors import InvalidEvent


def now_ms() -> int:
    return int(time.time() * 1000)


class EventKind(str, Enum):
    CHAT = "CHAT"
    JOIN = "JOIN"
    LEAVE = "LEAVE"

    @classmethod
    def parse(cls, value: Any) -> EventKind:
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().upper())
            except ValueError:
                pass
        raise InvalidEvent(f"unknown event type {value!r}")


@dataclass(frozen=True)
class ChatEvent:
    destination: str
    sender: str
    content: str = ""
    kind: EventKind = EventKind.CHAT
    timestamp: int = field(default_factory=now_ms)

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", EventKind.parse(self.kind))

        if not isinstance(self.destination, str) or not self.destination:
            raise InvalidEvent("destination must be a non-empty string")
        if not isinstance(self.sender, str):
            raise InvalidEvent("sender must be a string")
        if not isinstance(self.content, str):
            raise InvalidEvent("content must be a string")
        if self.kind in (EventKind.CHAT, EventKind.JOIN) and not self.sender.strip():
            raise InvalidEvent(f"{self.kind.value} event requires a sender")
        if not isinstance(self.timestamp, int) or self.timestamp < 0:
            raise InvalidEvent("timestamp must be an unsigned integer")

    def to(self, destination: str) -> ChatEvent:
        """Return a copy addressed to another destination."""
        return replace(self, destination=destination)


def event_from_payload(
    destination: str,
    payload: Any,
    *,
    default_kind: EventKind = EventKind.CHAT,
    ts: int | None = None,
) -> ChatEvent:
    """Build a ChatEvent from a client payload {sender, content, type}."""
    if not isinstance(payload, dict):
        raise InvalidEvent("payload must be a map")

    kind = payload.get(B_TYPE)
    return ChatEvent(
        destination=destination,
        sender=payload.get(B_SENDER, ""),
        content=payload.get(B_CONTENT) or "",
        kind=default_kind if kind is None else kind,
        timestamp=ts if ts is not None else now_ms(),
    )


def event_to_payload(event: ChatEvent) -> dict[str, str]:
    return {
        B_SENDER: event.sender,
        B_CONTENT: event.content,
        B_TYPE: event.kind.value,
    }


def leave_event(destination: str, identity: str) -> ChatEvent:
    return ChatEvent(destination=destination, sender=identity, kind=EventKind.LEAVE)
