from pathlib import Path

import pytest

from app.db import Database


@pytest.mark.asyncio
async def test_db_init_creates_tables(tmp_path: Path):
    db = Database(str(tmp_path / "schema.db"))
    await db.init()
    await db.init()
    rows = await db.fetchall("SELECT name FROM sqlite_master WHERE type='table'")
    tables = {row["name"] for row in rows}
    assert {"chat_conversations", "chat_messages"}.issubset(tables)


@pytest.mark.asyncio
async def test_create_and_get_conversation_is_owner_scoped(db):
    convo = await db.create_conversation("key-a", "  Weekly POP  ")
    assert convo.title == "Weekly POP"
    assert convo.created_at.endswith("Z")
    fetched = await db.get_conversation("key-a", convo.id)
    assert fetched == convo
    assert await db.get_conversation("key-b", convo.id) is None

    untitled = await db.create_conversation("key-a", "   ")
    assert untitled.title is None


@pytest.mark.asyncio
async def test_append_message_creates_conversation_on_demand(db):
    await db.append_message("key-a", "client-id", "user", "hello")
    convo = await db.get_conversation("key-a", "client-id")
    assert convo is not None
    assert convo.title is None

    await db.append_message("key-a", "  ", "user", "ignored")
    await db.append_message("key-a", None, "user", "ignored")
    row = await db.fetchone("SELECT COUNT(*) as cnt FROM chat_messages")
    assert row["cnt"] == 1


@pytest.mark.asyncio
async def test_append_message_touches_updated_at(db):
    convo = await db.create_conversation("key-a", "Chat")
    await db.execute(
        "UPDATE chat_conversations SET updated_at=? WHERE id=?", ("2000-01-01T00:00:00Z", convo.id)
    )
    await db.append_message("key-a", convo.id, "user", "hi")
    touched = await db.get_conversation("key-a", convo.id)
    assert touched.updated_at > "2000-01-01T00:00:00Z"
    assert touched.created_at == convo.created_at


@pytest.mark.asyncio
async def test_list_messages_newest_window_oldest_first(db):
    for idx in range(25):
        await db.append_message("key-a", "c1", "user" if idx % 2 == 0 else "assistant", f"m{idx}")
    await db.append_message("key-b", "c1", "user", "other owner")

    messages = await db.list_messages("key-a", "c1", limit=3)
    assert [m.content for m in messages] == ["m22", "m23", "m24"]

    default = await db.list_messages("key-a", "c1", limit=0)
    assert len(default) == 20
    assert default[0].content == "m5"
    assert len(await db.list_messages("key-a", "c1", limit=500)) == 20
    assert await db.list_messages("key-a", "", limit=5) == []
