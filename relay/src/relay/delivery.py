from __future__ import annotations

import logging
from typing import Any

from .errors import ChannelError
from .identity import normalize_username
from .log import Message, conversation_id, validate_message_body
from .registry import ConnectionRegistry

logger = logging.getLogger(__name__)


def new_message_frame(message: Message, sender: str) -> dict[str, Any]:
    return {"type": "new_message", "message": message.to_api_dict(), "from": sender}


class DeliveryCoordinator:
    """Persists messages, then pushes them to the recipient if it is online.

    Push is at-most-once and best-effort: there is no pending queue and no
    retry. Clients reconcile by pulling ``history`` on (re)connect and
    de-duplicating by message id.
    """

    def __init__(self, *, identities, log, registry: ConnectionRegistry) -> None:
        self.identities = identities
        self.log = log
        self.registry = registry

    def send(
        self,
        sender: str,
        recipient: str,
        text: str | None = None,
        image: str | None = None,
        timestamp: int | None = None,
    ) -> Message:
        sender_name = normalize_username(sender, field="sender")
        recipient_name = normalize_username(recipient, field="recipient")
        validate_message_body(text, image, timestamp)

        conv_id = conversation_id(sender_name, recipient_name)
        message = self.log.append(conv_id, sender_name, text, image, timestamp)
        # Created only once the message is stored, so a failed send leaves no user behind.
        self.identities.get_or_create(recipient_name)
        self._push(recipient_name, message)
        return message

    def history(self, username: str, contact_username: str) -> list[Message]:
        return self.log.history(conversation_id(username, contact_username))

    def _push(self, recipient: str, message: Message) -> bool:
        channel = self.registry.lookup(recipient)
        if channel is None or not channel.is_open:
            return False
        try:
            channel.push(new_message_frame(message, message.sender))
        except ChannelError:
            logger.debug("push of message %s to %s dropped", message.id, recipient, exc_info=True)
            return False
        return True
