"""Two-party chat relay: identities, contacts, durable conversations and live push."""

from .contacts import Contact, InMemoryContactGraph, SQLiteContactGraph
from .delivery import DeliveryCoordinator
from .errors import ChannelError, NotFoundError, PersistenceError, RelayError, ValidationError
from .identity import InMemoryIdentityStore, SQLiteIdentityStore, User
from .log import Message, MessageLog, conversation_id
from .registry import ConnectionRegistry
from .server import main

__all__ = [
    "ChannelError",
    "ConnectionRegistry",
    "Contact",
    "DeliveryCoordinator",
    "InMemoryContactGraph",
    "InMemoryIdentityStore",
    "Message",
    "MessageLog",
    "NotFoundError",
    "PersistenceError",
    "RelayError",
    "SQLiteContactGraph",
    "SQLiteIdentityStore",
    "User",
    "ValidationError",
    "conversation_id",
    "main",
]
