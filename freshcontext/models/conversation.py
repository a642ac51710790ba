from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class TurnMeta:
    """Retrieval bookkeeping stored on assistant turns."""

    context: str = ""
    context_queries: tuple[str, ...] = ()
    retrieved_at: datetime | None = None
    used_web_search: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "context": self.context,
            "context_queries": list(self.context_queries),
            "retrieved_at": self.retrieved_at.isoformat() if self.retrieved_at else None,
            "used_web_search": self.used_web_search,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "TurnMeta":
        if not isinstance(payload, dict):
            return cls()
        retrieved_raw = payload.get("retrieved_at")
        retrieved_at: datetime | None = None
        if isinstance(retrieved_raw, datetime):
            retrieved_at = retrieved_raw
        elif isinstance(retrieved_raw, str) and retrieved_raw:
            try:
                retrieved_at = datetime.fromisoformat(retrieved_raw)
            except ValueError:
                retrieved_at = None
        if retrieved_at is not None and retrieved_at.tzinfo is None:
            retrieved_at = retrieved_at.replace(tzinfo=timezone.utc)
        queries = payload.get("context_queries") or []
        return cls(
            context=str(payload.get("context") or ""),
            context_queries=tuple(str(q) for q in queries if q),
            retrieved_at=retrieved_at,
            used_web_search=bool(payload.get("used_web_search")),
        )


@dataclass(frozen=True, slots=True)
class ConversationTurn:
    role: str
    content: str
    created_at: datetime = field(default_factory=utc_now)
    meta: TurnMeta = field(default_factory=TurnMeta)
    id: str = field(default_factory=lambda: str(uuid4()))

    @property
    def is_assistant(self) -> bool:
        return self.role == "assistant"

    @property
    def is_user(self) -> bool:
        return self.role == "user"

    def to_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "meta": self.meta.to_dict(),
        }


def original_goal(history: list[ConversationTurn]) -> str | None:
    """The conversation's stated objective: its first non-empty user turn."""
    for turn in history:
        if turn.is_user and turn.content.strip():
            return turn.content.strip()
    return None


def last_context_turn(history: list[ConversationTurn]) -> ConversationTurn | None:
    """Most recent assistant turn that stored retrieval context."""
    for turn in reversed(history):
        if turn.is_assistant and turn.meta.context.strip():
            return turn
    return None
