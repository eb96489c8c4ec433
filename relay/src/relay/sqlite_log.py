from __future__ import annotations

import sqlite3

from .errors import PersistenceError
from .log import Message, validate_message_body
from .sqlite_backend import SQLiteBackend, _now_ms


class SQLiteMessageLog:
    """Durable message log backed by SQLite."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def append(
        self,
        conv_id: str,
        sender: str,
        text: str | None,
        image: str | None,
        timestamp: int,
    ) -> Message:
        validate_message_body(text, image, timestamp)
        created_at_ms = _now_ms()
        try:
            with self._backend.lock:
                cursor = self._backend.connection.execute(
                    """
                    INSERT INTO messages (conversation_id, sender, text, image, timestamp, created_at_ms)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (conv_id, sender, text, image, timestamp, created_at_ms),
                )
                message_id = int(cursor.lastrowid)
        except sqlite3.Error as exc:
            raise PersistenceError(f"message append failed: {exc}") from exc

        return Message(
            id=message_id,
            conversation_id=conv_id,
            sender=sender,
            text=text,
            image=image,
            timestamp=timestamp,
            created_at_ms=created_at_ms,
        )

    def history(self, conv_id: str) -> list[Message]:
        try:
            with self._backend.lock:
                rows = self._backend.connection.execute(
                    """
                    SELECT id, conversation_id, sender, text, image, timestamp, created_at_ms
                    FROM messages WHERE conversation_id=?
                    ORDER BY timestamp ASC, id ASC
                    """,
                    (conv_id,),
                ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"history query failed: {exc}") from exc

        return [
            Message(
                id=int(row[0]),
                conversation_id=row[1],
                sender=row[2],
                text=row[3],
                image=row[4],
                timestamp=int(row[5]),
                created_at_ms=int(row[6]),
            )
            for row in rows
        ]
