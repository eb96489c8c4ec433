from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List

from .errors import ValidationError
from .identity import USERNAME_SEPARATOR, normalize_username
from .sqlite_backend import _now_ms

TIMESTAMP_MIN = -(2**63)
TIMESTAMP_MAX = 2**63 - 1


@dataclass(frozen=True)
class Message:
    """An immutable message stored in a two-party conversation."""

    id: int
    conversation_id: str
    sender: str
    text: str | None
    image: str | None
    timestamp: int
    created_at_ms: int

    def sort_key(self) -> tuple[int, int]:
        return (self.timestamp, self.id)

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "sender": self.sender,
            "text": self.text,
            "image": self.image,
            "timestamp": self.timestamp,
            "created_at": self.created_at_ms,
        }


def conversation_id(user_a: str, user_b: str) -> str:
    """Return the canonical id shared by both orderings of a username pair."""

    first = normalize_username(user_a)
    second = normalize_username(user_b)
    return USERNAME_SEPARATOR.join(sorted([first, second]))


def validate_message_body(text: Any, image: Any, timestamp: Any) -> None:
    if text is not None and not isinstance(text, str):
        raise ValidationError("text must be a string")
    if image is not None and not isinstance(image, str):
        raise ValidationError("image must be a string")
    if not text and not image:
        raise ValidationError("message needs text or image")
    if not isinstance(timestamp, int) or isinstance(timestamp, bool):
        raise ValidationError("timestamp must be an integer")
    # Stored as a SQLite INTEGER, a signed 64-bit value.
    if not TIMESTAMP_MIN <= timestamp <= TIMESTAMP_MAX:
        raise ValidationError("timestamp out of range")


class MessageLog:
    """In-memory, append-only message log keyed by conversation id."""

    def __init__(self) -> None:
        self._messages: Dict[str, List[Message]] = {}
        self._next_id = 1

    def append(
        self,
        conv_id: str,
        sender: str,
        text: str | None,
        image: str | None,
        timestamp: int,
    ) -> Message:
        """Store a message and return it with its assigned id.

        Ids are global and strictly increasing. ``sender`` is not checked
        against the participants encoded in ``conv_id``.
        """

        validate_message_body(text, image, timestamp)
        message = Message(
            id=self._next_id,
            conversation_id=conv_id,
            sender=sender,
            text=text,
            image=image,
            timestamp=timestamp,
            created_at_ms=_now_ms(),
        )
        self._next_id += 1
        self._messages.setdefault(conv_id, []).append(message)
        return message

    def history(self, conv_id: str) -> list[Message]:
        return sorted(self._messages.get(conv_id, []), key=Message.sort_key)
