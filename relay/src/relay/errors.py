from __future__ import annotations


class RelayError(Exception):
    """Base class for errors raised by the relay core."""


class ValidationError(RelayError):
    pass


class NotFoundError(RelayError):
    pass


class PersistenceError(RelayError):
    """Storage unavailable or an unexpected constraint violation."""


class ChannelError(RelayError):
    """A push was attempted against a channel that is no longer writable."""
