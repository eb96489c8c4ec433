from __future__ import annotations

import logging
from typing import Any, Dict, Protocol

logger = logging.getLogger(__name__)


class Channel(Protocol):
    """A live, writable connection to one client."""

    @property
    def is_open(self) -> bool: ...

    def push(self, frame: dict[str, Any]) -> None: ...

    async def close(self, *, code: int = 1000, message: bytes = b"") -> None: ...


class ConnectionRegistry:
    """Maps an online username to the channel that receives its pushes.

    One registry is owned by each application. Registering a username again
    replaces its channel without closing the previous one; close handling
    matches entries by channel identity so a stale channel closing cannot
    detach a newer registration.
    """

    def __init__(self) -> None:
        self._channels: Dict[str, Channel] = {}

    def register(self, username: str, channel: Channel) -> None:
        previous = self._channels.get(username)
        self._channels[username] = channel
        if previous is not None and previous is not channel:
            logger.info("user %s re-registered on a new channel", username)
        else:
            logger.info("user %s registered", username)

    def unregister(self, username: str) -> None:
        if self._channels.pop(username, None) is not None:
            logger.info("user %s unregistered", username)

    def on_channel_closed(self, channel: Channel) -> list[str]:
        removed = [username for username, current in self._channels.items() if current is channel]
        for username in removed:
            del self._channels[username]
            logger.info("user %s disconnected", username)
        return removed

    def lookup(self, username: str) -> Channel | None:
        return self._channels.get(username)

    def usernames(self) -> list[str]:
        return sorted(self._channels)

    def __len__(self) -> int:
        return len(self._channels)

    async def close_all(self) -> None:
        """Close every registered channel and empty the registry."""

        channels = list({id(channel): channel for channel in self._channels.values()}.values())
        self._channels.clear()
        for channel in channels:
            await channel.close(code=1001, message=b"server shutdown")
