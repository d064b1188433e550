from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime, timezone
from typing import List, Optional

import aiosqlite

from .errors import StorageError
from .proto import Identity, Message, now_ms

log = logging.getLogger("rtchat.store")

# sender/receiver columns carry no type affinity so int and str ids round-trip unchanged
SCHEMA = """
CREATE TABLE IF NOT EXISTS messages(
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    sender_id   NOT NULL,
    receiver_id NOT NULL,
    content     TEXT    NOT NULL,
    created_at  INTEGER NOT NULL,
    deleted_at  INTEGER
);
CREATE INDEX IF NOT EXISTS idx_messages_pair ON messages(sender_id, receiver_id, id);
"""

_COLUMNS = "id, sender_id, receiver_id, content, created_at"


def _row_to_message(row) -> Message:
    return Message(
        id=row[0],
        sender_id=row[1],
        receiver_id=row[2],
        content=row[3],
        created_at=datetime.fromtimestamp(row[4] / 1000, tz=timezone.utc),
    )


class MessageStore:
    """Durable message log on SQLite; the source of truth for history."""

    def __init__(self, path: str = "rtchat.db") -> None:
        self.path = path
        self._db: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def open(self) -> None:
        if self._db is not None:
            return
        try:
            self._db = await aiosqlite.connect(self.path)
            await self._db.executescript(SCHEMA)
            await self._db.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open message store at {self.path}: {exc}") from exc
        log.info("Message store ready at %s", self.path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> "MessageStore":
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageError("message store is not open")
        return self._db

    async def append(self, sender_id: Identity, receiver_id: Identity, content: str) -> Message:
        async with self._write_lock:
            created = now_ms()
            try:
                cur = await self.db.execute(
                    "INSERT INTO messages(sender_id, receiver_id, content, created_at) VALUES(?,?,?,?)",
                    (sender_id, receiver_id, content, created),
                )
                message_id = cur.lastrowid
                await self.db.commit()
            except (sqlite3.Error, OverflowError) as exc:
                log.error("Failed to persist message %s -> %s: %s", sender_id, receiver_id, exc)
                raise StorageError("failed to store message") from exc
        return Message(
            id=message_id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            created_at=datetime.fromtimestamp(created / 1000, tz=timezone.utc),
        )

    async def history(self, user_a: Identity, user_b: Identity) -> List[Message]:
        try:
            cur = await self.db.execute(
                f"SELECT {_COLUMNS} FROM messages "
                "WHERE deleted_at IS NULL AND "
                "((sender_id=? AND receiver_id=?) OR (sender_id=? AND receiver_id=?)) "
                "ORDER BY id",
                (user_a, user_b, user_b, user_a),
            )
            rows = await cur.fetchall()
        except (sqlite3.Error, OverflowError) as exc:
            raise StorageError("failed to load history") from exc
        return [_row_to_message(r) for r in rows]

    async def get(self, message_id: int) -> Optional[Message]:
        try:
            cur = await self.db.execute(
                f"SELECT {_COLUMNS} FROM messages WHERE id=? AND deleted_at IS NULL",
                (message_id,),
            )
            row = await cur.fetchone()
        except (sqlite3.Error, OverflowError) as exc:
            raise StorageError("failed to load message") from exc
        return _row_to_message(row) if row else None

    async def delete_by_id(self, message_id: int) -> bool:
        """Soft delete; returns False if there was no live message with that id."""
        async with self._write_lock:
            try:
                cur = await self.db.execute(
                    "UPDATE messages SET deleted_at=? WHERE id=? AND deleted_at IS NULL",
                    (now_ms(), message_id),
                )
                await self.db.commit()
            except (sqlite3.Error, OverflowError) as exc:
                raise StorageError("failed to delete message") from exc
        return cur.rowcount > 0


__all__ = ["MessageStore", "SCHEMA"]
