import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

import aiosqlite

from .schemas import Conversation, Message

DEFAULT_MESSAGE_LIMIT = 20
MAX_MESSAGE_LIMIT = 100


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Database:
    """Conversation and message persistence, scoped by the caller's API key."""

    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS chat_conversations(
                    id TEXT NOT NULL,
                    owner_key TEXT NOT NULL,
                    title TEXT,
                    created_at TEXT,
                    updated_at TEXT,
                    PRIMARY KEY (owner_key, id)
                );
                CREATE TABLE IF NOT EXISTS chat_messages(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id TEXT NOT NULL,
                    owner_key TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_chat_messages_conversation
                    ON chat_messages(owner_key, conversation_id, id);
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def create_conversation(self, owner_key: str, title: Optional[str] = None) -> Conversation:
        convo_id = uuid.uuid4().hex
        created_at = utc_now()
        title = (title or "").strip() or None
        await self.execute(
            "INSERT INTO chat_conversations(id, owner_key, title, created_at, updated_at) VALUES (?,?,?,?,?)",
            (convo_id, owner_key, title, created_at, created_at),
        )
        return Conversation(id=convo_id, owner_key=owner_key, title=title, created_at=created_at, updated_at=created_at)

    async def get_conversation(self, owner_key: str, conversation_id: str) -> Optional[Conversation]:
        row = await self.fetchone(
            "SELECT id, owner_key, title, created_at, updated_at FROM chat_conversations WHERE owner_key=? AND id=?",
            (owner_key, conversation_id),
        )
        if not row:
            return None
        return Conversation(**dict(row))

    async def append_message(self, owner_key: str, conversation_id: Optional[str], role: str, content: str) -> None:
        """Store one message; an unknown conversation id is created on the fly."""
        conversation_id = (conversation_id or "").strip()
        if not conversation_id:
            return
        created_at = utc_now()
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT OR IGNORE INTO chat_conversations(id, owner_key, title, created_at, updated_at) "
                "VALUES (?,?,NULL,?,?)",
                (conversation_id, owner_key, created_at, created_at),
            )
            await db.execute(
                "UPDATE chat_conversations SET updated_at=? WHERE owner_key=? AND id=?",
                (created_at, owner_key, conversation_id),
            )
            await db.execute(
                "INSERT INTO chat_messages(conversation_id, owner_key, role, content, created_at) VALUES (?,?,?,?,?)",
                (conversation_id, owner_key, role, content, created_at),
            )
            await db.commit()

    async def list_messages(self, owner_key: str, conversation_id: Optional[str], limit: int = 20) -> List[Message]:
        """Newest ``limit`` messages, returned oldest first."""
        conversation_id = (conversation_id or "").strip()
        if not conversation_id:
            return []
        if limit <= 0 or limit > MAX_MESSAGE_LIMIT:
            limit = DEFAULT_MESSAGE_LIMIT
        rows = await self.fetchall(
            "SELECT id, conversation_id, role, content, created_at FROM chat_messages "
            "WHERE owner_key=? AND conversation_id=? ORDER BY id DESC LIMIT ?",
            (owner_key, conversation_id, limit),
        )
        return [Message(**dict(r)) for r in reversed(rows)]
