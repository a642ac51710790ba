from __future__ import annotations

import pytest

from freshcontext.models.conversation import ConversationTurn
from freshcontext.services.chat_store import DEFAULT_TITLE, ChatStore, derive_chat_title


def test_derive_chat_title():
    assert derive_chat_title("   ") == DEFAULT_TITLE
    assert derive_chat_title("  What is   new in Rust? ") == "What is new in Rust?"
    long_title = derive_chat_title("x" * 80)
    assert long_title == "x" * 60 + "…"


@pytest.mark.asyncio
async def test_append_exchange_sets_title_once_and_keeps_order():
    store = ChatStore()
    chat = await store.create(model="llama3.1")

    await store.append_exchange(
        chat.id,
        ConversationTurn(role="user", content="Latest on fusion energy"),
        ConversationTurn(role="assistant", content="Recent tests reached net gain."),
    )
    await store.append_exchange(
        chat.id,
        ConversationTurn(role="user", content="and next year?"),
        ConversationTurn(role="assistant", content="More shots are planned."),
    )

    record = await store.get(chat.id)
    assert record.title == "Latest on fusion energy"
    assert [t.role for t in record.turns] == ["user", "assistant", "user", "assistant"]
    assert record.original_goal == "Latest on fusion energy"
    assert record.to_dict(include_turns=False).keys() == {"id", "title", "model", "created_at", "updated_at"}

    history = await store.history(chat.id)
    history.clear()
    assert len(await store.history(chat.id)) == 4


@pytest.mark.asyncio
async def test_get_or_create_and_delete():
    store = ChatStore()
    first = await store.get_or_create(None)
    again = await store.get_or_create(first.id)
    other = await store.get_or_create("unknown-id")

    assert again is first
    assert other.id != first.id
    assert len(await store.list_chats()) == 2

    assert await store.delete(first.id) is True
    assert await store.delete(first.id) is False
    assert await store.history(first.id) == []


@pytest.mark.asyncio
async def test_append_to_missing_chat_raises():
    store = ChatStore()

    with pytest.raises(KeyError):
        await store.append_exchange(
            "missing",
            ConversationTurn(role="user", content="q"),
            ConversationTurn(role="assistant", content="a"),
        )
