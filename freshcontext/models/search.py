from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class SearchResult:
    """One deduplicated web result."""

    title: str
    url: str
    snippet: str = ""
    query_used: str = ""
    summary: str | None = None

    @property
    def body(self) -> str:
        return self.summary or self.snippet

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "url": self.url,
            "snippet": self.snippet,
            "summary": self.summary,
            "query_used": self.query_used,
        }


@dataclass(frozen=True, slots=True)
class GroundingSignal:
    confidence: float
    coverage_ratio: float
    missing_terms: frozenset[str]
    long_running: bool
    assistant_turns: int = 0
    total_turns: int = 0
    prompt_terms: tuple[str, ...] = ()

    @property
    def minimal_gaps(self) -> bool:
        missing = len(self.missing_terms)
        return missing == 0 or (missing <= 1 and self.coverage_ratio >= 0.5)


@dataclass(slots=True)
class SearchPlan:
    should_search: bool
    queries: list[str] = field(default_factory=list)
    generic_fresh_info: bool = False
    disabled: bool = False
    message: str = ""
    reuse_context: bool = False
    redirect_to_goal: bool = False
    focused_refresh: bool = False
    directive_topic: str | None = None
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "should_search": self.should_search,
            "queries": list(self.queries),
            "generic_fresh_info": self.generic_fresh_info,
            "disabled": self.disabled,
            "message": self.message,
            "reuse_context": self.reuse_context,
            "redirect_to_goal": self.redirect_to_goal,
            "focused_refresh": self.focused_refresh,
            "reason": self.reason,
        }


@dataclass(slots=True)
class SearchOutcome:
    text: str = ""
    entries: list[SearchResult] = field(default_factory=list)
    queries: list[str] = field(default_factory=list)
    retrieved_at: datetime | None = None
    plan: SearchPlan | None = None
    reused: bool = False

    @property
    def has_context(self) -> bool:
        return bool(self.text.strip())

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "entries": [e.to_dict() for e in self.entries],
            "queries": list(self.queries),
            "retrieved_at": self.retrieved_at.isoformat() if self.retrieved_at else None,
            "reused": self.reused,
        }
