from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List

from .errors import NotFoundError, PersistenceError, ValidationError
from .identity import InMemoryIdentityStore, SQLiteIdentityStore, User, normalize_username
from .sqlite_backend import SQLiteBackend, _now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Contact:
    contact_username: str
    initials: str
    color: str

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "contact_username": self.contact_username,
            "initials": self.initials,
            "color": self.color,
        }


class _ContactGraph:
    """Symmetric contact relation shared by the in-memory and SQLite stores.

    Subclasses provide an idempotent ``_insert_edge`` and either
    ``_contact_usernames`` or their own ``list``.
    """

    def __init__(self, identities) -> None:
        self._identities = identities

    def list(self, username: str) -> list[Contact]:
        contacts: list[Contact] = []
        for contact_username in self._contact_usernames(username):
            user = self._identities.get(contact_username)
            if user is None:
                continue
            contacts.append(Contact(contact_username=user.username, initials=user.initials, color=user.color))
        return contacts

    def add(self, owner: str, contact: str) -> User:
        owner_name = normalize_username(owner)
        contact_name = normalize_username(contact, field="contactUsername")
        if owner_name == contact_name:
            raise ValidationError("can't add yourself as a contact")

        owner_user = self._identities.get(owner_name)
        if owner_user is None:
            raise NotFoundError(f"user {owner_name!r} not found")
        contact_user = self._identities.get_or_create(contact_name)

        self._insert_edge(owner_user, contact_user.username)
        self._add_reverse_edge(contact_user, owner_user.username)
        return contact_user

    def _add_reverse_edge(self, contact_user: User, owner_name: str) -> None:
        # The reverse edge is best-effort: its failure is logged and never fails add().
        try:
            self._insert_edge(contact_user, owner_name)
        except PersistenceError:
            logger.warning(
                "reverse contact %s -> %s not stored", contact_user.username, owner_name, exc_info=True
            )

    def _insert_edge(self, owner_user: User, contact_username: str) -> None:
        raise NotImplementedError

    def _contact_usernames(self, username: str) -> list[str]:
        raise NotImplementedError


class InMemoryContactGraph(_ContactGraph):
    def __init__(self, identities: InMemoryIdentityStore) -> None:
        super().__init__(identities)
        self._edges: Dict[str, List[str]] = {}

    def _insert_edge(self, owner_user: User, contact_username: str) -> None:
        edges = self._edges.setdefault(owner_user.username, [])
        if contact_username not in edges:
            edges.append(contact_username)

    def _contact_usernames(self, username: str) -> list[str]:
        return list(self._edges.get(username, []))


class SQLiteContactGraph(_ContactGraph):
    def __init__(self, backend: SQLiteBackend, identities: SQLiteIdentityStore) -> None:
        super().__init__(identities)
        self._backend = backend

    def list(self, username: str) -> list[Contact]:
        # Single join; edges whose target user is missing drop out of the inner join.
        try:
            with self._backend.lock:
                rows = self._backend.connection.execute(
                    """
                    SELECT c.contact_username, u.initials, u.color
                    FROM contacts c
                    JOIN users owner ON owner.id = c.user_id
                    JOIN users u ON u.username = c.contact_username
                    WHERE owner.username = ?
                    ORDER BY c.id ASC
                    """,
                    (username,),
                ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"contact query failed: {exc}") from exc
        return [Contact(contact_username=row[0], initials=row[1], color=row[2]) for row in rows]

    def _insert_edge(self, owner_user: User, contact_username: str) -> None:
        try:
            with self._backend.lock:
                self._backend.connection.execute(
                    "INSERT OR IGNORE INTO contacts (user_id, contact_username, created_at_ms) VALUES (?, ?, ?)",
                    (owner_user.id, contact_username, _now_ms()),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"contact insert failed: {exc}") from exc
