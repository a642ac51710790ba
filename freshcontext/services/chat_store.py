"""In-memory chat records. Stand-in for the session store of a real deployment."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from freshcontext.models.conversation import ConversationTurn, original_goal, utc_now

DEFAULT_TITLE = "New Chat"
TITLE_MAX_CHARS = 60


def derive_chat_title(prompt: str) -> str:
    prompt = " ".join((prompt or "").split())
    if not prompt:
        return DEFAULT_TITLE
    return f"{prompt[:TITLE_MAX_CHARS]}…" if len(prompt) > TITLE_MAX_CHARS else prompt


@dataclass
class ChatRecord:
    id: str = field(default_factory=lambda: str(uuid4()))
    title: str = DEFAULT_TITLE
    model: str | None = None
    turns: list[ConversationTurn] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def original_goal(self) -> str | None:
        return original_goal(self.turns)

    def to_dict(self, *, include_turns: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "model": self.model,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if include_turns:
            data["turns"] = [t.to_dict() for t in self.turns]
        return data


class ChatStore:
    def __init__(self) -> None:
        self._chats: dict[str, ChatRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, *, model: str | None = None) -> ChatRecord:
        record = ChatRecord(model=model)
        async with self._lock:
            self._chats[record.id] = record
        return record

    async def get(self, chat_id: str) -> ChatRecord | None:
        return self._chats.get(chat_id)

    async def get_or_create(self, chat_id: str | None, *, model: str | None = None) -> ChatRecord:
        if chat_id:
            record = self._chats.get(chat_id)
            if record is not None:
                return record
        return await self.create(model=model)

    async def list_chats(self) -> list[ChatRecord]:
        return sorted(self._chats.values(), key=lambda r: r.updated_at, reverse=True)

    async def history(self, chat_id: str) -> list[ConversationTurn]:
        record = self._chats.get(chat_id)
        return list(record.turns) if record else []

    async def append_exchange(
        self,
        chat_id: str,
        user_turn: ConversationTurn,
        assistant_turn: ConversationTurn,
    ) -> ChatRecord:
        """Append a completed prompt/answer pair; turns are never edited afterwards."""
        async with self._lock:
            record = self._chats.get(chat_id)
            if record is None:
                raise KeyError(f"Chat not found: {chat_id}")
            record.turns.extend([user_turn, assistant_turn])
            if not record.title or record.title == DEFAULT_TITLE:
                record.title = derive_chat_title(user_turn.content)
            record.updated_at = utc_now()
            return record

    async def delete(self, chat_id: str) -> bool:
        async with self._lock:
            return self._chats.pop(chat_id, None) is not None
