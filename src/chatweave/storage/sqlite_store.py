"""SQLite-backed message store."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Sequence, TypeVar

from ..chat.files import content_hash
from ..chat.types import PromptRecord, StoredFile, StoredMessage, ThreadRecord

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_MESSAGE_COLUMNS = (
    "id",
    "thread_id",
    "role",
    "content",
    "idx",
    "data",
    "reasoning_text",
    "file_hashes",
    "pending",
    "deleted",
    "error",
    "stream_id",
    "created_at",
    "updated_at",
)


class SQLiteMessageStore:
    """Persist threads, messages, prompts and attachment blobs in SQLite.

    The connection is shared across threads and guarded by a re-entrant lock;
    every public coroutine runs its SQL in a worker thread so the event loop is
    never blocked on disk I/O.
    """

    def __init__(self, db_path: Path | str) -> None:
        self._path = Path(db_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._lock = RLock()
        self._create_schema()

    @property
    def path(self) -> Path:
        return self._path

    def _create_schema(self) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS messages (
                        id TEXT PRIMARY KEY,
                        thread_id TEXT NOT NULL,
                        role TEXT NOT NULL,
                        content TEXT NOT NULL DEFAULT '',
                        idx INTEGER NOT NULL,
                        data TEXT NOT NULL DEFAULT '{}',
                        reasoning_text TEXT,
                        file_hashes TEXT,
                        pending INTEGER NOT NULL DEFAULT 0,
                        deleted INTEGER NOT NULL DEFAULT 0,
                        error TEXT,
                        stream_id TEXT,
                        created_at REAL NOT NULL,
                        updated_at REAL NOT NULL
                    )
                    """
                )
                self._conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(thread_id, idx)"
                )
                self._conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS threads (
                        id TEXT PRIMARY KEY,
                        title TEXT NOT NULL DEFAULT '',
                        system_prompt_id TEXT,
                        created_at REAL NOT NULL,
                        updated_at REAL NOT NULL
                    )
                    """
                )
                self._conn.execute(
                    "CREATE TABLE IF NOT EXISTS prompts (id TEXT PRIMARY KEY, content TEXT NOT NULL)"
                )
                self._conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS files (
                        hash TEXT PRIMARY KEY,
                        mime_type TEXT NOT NULL,
                        name TEXT,
                        data BLOB NOT NULL,
                        created_at REAL NOT NULL
                    )
                    """
                )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    async def upsert_message(self, message: StoredMessage) -> None:
        await self._run(self._upsert_message_sync, message)

    async def append_message(self, message: StoredMessage) -> StoredMessage:
        return await self._run(self._append_message_sync, message)

    async def get_message(self, message_id: str) -> StoredMessage | None:
        return await self._run(self._get_message_sync, message_id)

    async def query_thread(
        self,
        thread_id: str,
        *,
        start: int | None = None,
        end: int | None = None,
        include_deleted: bool = False,
    ) -> list[StoredMessage]:
        return await self._run(self._query_thread_sync, thread_id, start, end, include_deleted)

    async def count_thread(self, thread_id: str) -> int:
        return await self._run(self._count_thread_sync, thread_id)

    async def delete_messages(self, message_ids: Sequence[str]) -> None:
        await self._run(self._delete_messages_sync, list(message_ids))

    # ------------------------------------------------------------------
    # Threads, prompts, files
    # ------------------------------------------------------------------
    async def get_thread(self, thread_id: str) -> ThreadRecord | None:
        return await self._run(self._get_thread_sync, thread_id)

    async def upsert_thread(self, thread: ThreadRecord) -> None:
        await self._run(self._upsert_thread_sync, thread)

    async def get_prompt(self, prompt_id: str) -> PromptRecord | None:
        row = await self._run(self._fetch_one, "SELECT * FROM prompts WHERE id = ?", (prompt_id,))
        return PromptRecord(id=row["id"], content=row["content"]) if row is not None else None

    async def upsert_prompt(self, prompt: PromptRecord) -> None:
        await self._run(
            self._execute,
            "INSERT INTO prompts (id, content) VALUES (?, ?) ON CONFLICT(id) DO UPDATE SET content=excluded.content",
            (prompt.id, prompt.content),
        )

    async def put_file(self, data: bytes, mime_type: str, *, name: str | None = None) -> str:
        digest = content_hash(data)
        await self._run(
            self._execute,
            "INSERT OR IGNORE INTO files (hash, mime_type, name, data, created_at) VALUES (?, ?, ?, ?, ?)",
            (digest, mime_type, name, sqlite3.Binary(data), time.time()),
        )
        return digest

    async def get_file(self, file_hash: str) -> StoredFile | None:
        row = await self._run(self._fetch_one, "SELECT * FROM files WHERE hash = ?", (file_hash,))
        if row is None:
            return None
        return StoredFile(hash=row["hash"], mime_type=row["mime_type"], data=bytes(row["data"]), name=row["name"])

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.close()
            except sqlite3.Error:  # pragma: no cover - close failures are rare
                LOGGER.debug("Failed to close message store", exc_info=True)

    # ------------------------------------------------------------------
    # Synchronous helpers
    # ------------------------------------------------------------------
    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(func, *args)

    def _execute(self, sql: str, params: Sequence[Any]) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(sql, params)

    def _fetch_one(self, sql: str, params: Sequence[Any]) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def _upsert_message_sync(self, message: StoredMessage) -> None:
        payload = self._message_to_tuple(message, updated_at=time.time())
        placeholders = ", ".join("?" for _ in _MESSAGE_COLUMNS)
        updates = ", ".join(f"{column}=excluded.{column}" for column in _MESSAGE_COLUMNS[1:] if column != "created_at")
        with self._lock:
            with self._conn:
                self._conn.execute(
                    f"INSERT INTO messages ({', '.join(_MESSAGE_COLUMNS)}) VALUES ({placeholders}) "
                    f"ON CONFLICT(id) DO UPDATE SET {updates}",
                    payload,
                )

    def _append_message_sync(self, message: StoredMessage) -> StoredMessage:
        with self._lock:
            with self._conn:
                row = self._conn.execute(
                    "SELECT COALESCE(MAX(idx), -1) AS last FROM messages WHERE thread_id = ?",
                    (message.thread_id,),
                ).fetchone()
                next_index = int(row["last"]) + 1
                now = time.time()
                payload = list(self._message_to_tuple(message, updated_at=now))
                payload[_MESSAGE_COLUMNS.index("idx")] = next_index
                placeholders = ", ".join("?" for _ in _MESSAGE_COLUMNS)
                self._conn.execute(
                    f"INSERT INTO messages ({', '.join(_MESSAGE_COLUMNS)}) VALUES ({placeholders})",
                    payload,
                )
        appended = self._get_message_sync(message.id)
        if appended is None:
            raise RuntimeError(f"Message {message.id} was not readable after insert")
        return appended

    def _get_message_sync(self, message_id: str) -> StoredMessage | None:
        row = self._fetch_one("SELECT * FROM messages WHERE id = ?", (message_id,))
        return self._row_to_message(row) if row is not None else None

    def _query_thread_sync(
        self, thread_id: str, start: int | None, end: int | None, include_deleted: bool
    ) -> list[StoredMessage]:
        clauses = ["thread_id = ?"]
        params: list[Any] = [thread_id]
        if not include_deleted:
            clauses.append("deleted = 0")
        if start is not None:
            clauses.append("idx >= ?")
            params.append(start)
        if end is not None:
            clauses.append("idx < ?")
            params.append(end)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM messages WHERE {' AND '.join(clauses)} ORDER BY idx",
                params,
            ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def _count_thread_sync(self, thread_id: str) -> int:
        row = self._fetch_one(
            "SELECT COUNT(*) AS total FROM messages WHERE thread_id = ? AND deleted = 0", (thread_id,)
        )
        return int(row["total"]) if row is not None else 0

    def _delete_messages_sync(self, message_ids: list[str]) -> None:
        if not message_ids:
            return
        with self._lock:
            with self._conn:
                self._conn.executemany("DELETE FROM messages WHERE id = ?", [(mid,) for mid in message_ids])

    def _get_thread_sync(self, thread_id: str) -> ThreadRecord | None:
        row = self._fetch_one("SELECT * FROM threads WHERE id = ?", (thread_id,))
        if row is None:
            return None
        return ThreadRecord(
            id=row["id"],
            title=row["title"],
            system_prompt_id=row["system_prompt_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _upsert_thread_sync(self, thread: ThreadRecord) -> None:
        self._execute(
            """
            INSERT INTO threads (id, title, system_prompt_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title=excluded.title,
                system_prompt_id=excluded.system_prompt_id,
                updated_at=excluded.updated_at
            """,
            (thread.id, thread.title, thread.system_prompt_id, thread.created_at, time.time()),
        )

    def _message_to_tuple(self, message: StoredMessage, *, updated_at: float) -> tuple[Any, ...]:
        return (
            message.id,
            message.thread_id,
            message.role,
            message.content,
            message.index,
            json.dumps(message.data, ensure_ascii=False),
            message.reasoning_text,
            message.file_hashes,
            int(message.pending),
            int(message.deleted),
            message.error,
            message.stream_id,
            message.created_at,
            updated_at,
        )

    def _row_to_message(self, row: sqlite3.Row) -> StoredMessage:
        try:
            data = json.loads(row["data"] or "{}")
        except json.JSONDecodeError:
            LOGGER.warning("Message %s has corrupt data payload; resetting", row["id"])
            data = {}
        return StoredMessage(
            id=row["id"],
            thread_id=row["thread_id"],
            role=row["role"],
            content=row["content"],
            index=int(row["idx"]),
            data=data if isinstance(data, dict) else {},
            reasoning_text=row["reasoning_text"],
            file_hashes=row["file_hashes"],
            pending=bool(row["pending"]),
            deleted=bool(row["deleted"]),
            error=row["error"],
            stream_id=row["stream_id"],
            created_at=float(row["created_at"]),
            updated_at=float(row["updated_at"]),
        )


__all__ = ["SQLiteMessageStore"]
