from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any, Dict

from .errors import PersistenceError, ValidationError
from .sqlite_backend import SQLiteBackend, _now_ms

# Joins the two usernames of a conversation id, so it may not appear in a username.
USERNAME_SEPARATOR = "__"

AVATAR_COLORS = (
    "linear-gradient(135deg, #667eea 0%, #764ba2 100%)",
    "linear-gradient(135deg, #f093fb 0%, #f5576c 100%)",
    "linear-gradient(135deg, #4facfe 0%, #00f2fe 100%)",
    "linear-gradient(135deg, #43e97b 0%, #38f9d7 100%)",
    "linear-gradient(135deg, #fa709a 0%, #fee140 100%)",
    "linear-gradient(135deg, #30cfd0 0%, #330867 100%)",
)


@dataclass(frozen=True)
class User:
    id: int
    username: str
    initials: str
    color: str
    created_at_ms: int

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "initials": self.initials,
            "color": self.color,
            "created_at": self.created_at_ms,
        }


def normalize_username(username: Any, *, field: str = "username") -> str:
    """Return the trimmed username or raise ``ValidationError``."""

    if not isinstance(username, str) or not username.strip():
        raise ValidationError(f"{field} is required")
    clean = username.strip()
    if USERNAME_SEPARATOR in clean:
        raise ValidationError(f"{field} must not contain {USERNAME_SEPARATOR!r}")
    return clean


def initials_for(username: str) -> str:
    return "".join(token[0] for token in username.split()).upper()[:2]


def color_for(username: str) -> str:
    return AVATAR_COLORS[ord(username[0]) % len(AVATAR_COLORS)]


class InMemoryIdentityStore:
    def __init__(self) -> None:
        self._users: Dict[str, User] = {}
        self._next_id = 1

    def get(self, username: str) -> User | None:
        return self._users.get(username)

    def get_or_create(self, username: str) -> User:
        clean = normalize_username(username)
        user = self._users.get(clean)
        if user is not None:
            return user
        user = User(
            id=self._next_id,
            username=clean,
            initials=initials_for(clean),
            color=color_for(clean),
            created_at_ms=_now_ms(),
        )
        self._next_id += 1
        self._users[clean] = user
        return user


class SQLiteIdentityStore:
    """Durable username -> profile mapping backed by SQLite."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def get(self, username: str) -> User | None:
        try:
            with self._backend.lock:
                row = self._backend.connection.execute(
                    "SELECT id, username, initials, color, created_at_ms FROM users WHERE username=?",
                    (username,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"user lookup failed: {exc}") from exc
        return self._row_to_user(row) if row else None

    def get_or_create(self, username: str) -> User:
        """Fetch ``username`` or insert it with derived initials and color.

        Losing an insert race to another creator surfaces as an
        ``IntegrityError`` on the unique username column; the winner's row is
        re-fetched and returned.
        """

        clean = normalize_username(username)
        existing = self.get(clean)
        if existing is not None:
            return existing

        initials = initials_for(clean)
        color = color_for(clean)
        created_at_ms = _now_ms()
        try:
            with self._backend.lock:
                cursor = self._backend.connection.execute(
                    "INSERT INTO users (username, initials, color, created_at_ms) VALUES (?, ?, ?, ?)",
                    (clean, initials, color, created_at_ms),
                )
                user_id = int(cursor.lastrowid)
        except sqlite3.IntegrityError:
            winner = self.get(clean)
            if winner is None:
                raise PersistenceError(f"user {clean!r} conflicted but cannot be re-fetched")
            return winner
        except sqlite3.Error as exc:
            raise PersistenceError(f"user creation failed: {exc}") from exc

        return User(id=user_id, username=clean, initials=initials, color=color, created_at_ms=created_at_ms)

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=int(row[0]),
            username=row[1],
            initials=row[2],
            color=row[3],
            created_at_ms=int(row[4]),
        )
