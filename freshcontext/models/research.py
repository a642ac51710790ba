from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from freshcontext.models.search import SearchResult


@dataclass(slots=True)
class ResearchPass:
    """One iteration of the deep-research loop."""

    iteration: int
    query: str
    findings: list[SearchResult] = field(default_factory=list)
    follow_up_queries: list[str] = field(default_factory=list)
    review: str | None = None
    answer: str | None = None
    verdict: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "query": self.query,
            "findings": [{"title": f.title, "url": f.url} for f in self.findings],
            "follow_up_queries": list(self.follow_up_queries),
            "review": self.review,
            "answer": self.answer,
            "verdict": self.verdict,
            "error": self.error,
        }


ResearchTimeline = list[ResearchPass]


@dataclass(slots=True)
class Reflection:
    text: str
    unique_sources: int
    top_domains: list[tuple[str, int]]
    suggested_queries: list[str]


@dataclass(slots=True)
class DeepResearchMeta:
    summary: str = ""
    answer: str = ""
    sources: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"summary": self.summary, "answer": self.answer, "sources": list(self.sources)}


@dataclass(slots=True)
class DeepResearchResult:
    topic: str
    timeline: ResearchTimeline = field(default_factory=list)
    summary: str = ""
    answer: str = ""
    sources: list[dict[str, str]] = field(default_factory=list)
    accepted: bool = False

    @property
    def meta(self) -> DeepResearchMeta:
        return DeepResearchMeta(summary=self.summary, answer=self.answer, sources=list(self.sources))

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "timeline": [p.to_dict() for p in self.timeline],
            "summary": self.summary,
            "answer": self.answer,
            "sources": list(self.sources),
            "accepted": self.accepted,
        }
