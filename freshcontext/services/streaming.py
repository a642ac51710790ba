from __future__ import annotations

from typing import Any

from freshcontext.models.events import EventType, SSEEvent
from freshcontext.models.research import DeepResearchResult, Reflection, ResearchPass
from freshcontext.models.stream import StreamEvent


def planning(topic: str, queries: list[str], iterations: int) -> SSEEvent:
    """Emit the seeded query pool before the first pass."""
    return SSEEvent(
        event=EventType.PLANNING,
        data={"topic": topic, "queries": list(queries), "iterations": iterations},
    )


def iteration_start(iteration: int, query: str, total: int) -> SSEEvent:
    return SSEEvent(
        event=EventType.ITERATION_START,
        data={"iteration": iteration, "query": query, "total": total},
    )


def iteration_review(research_pass: ResearchPass) -> SSEEvent:
    return SSEEvent(
        event=EventType.ITERATION_REVIEW,
        data={
            "iteration": research_pass.iteration,
            "query": research_pass.query,
            "findings": [
                {"title": f.title, "url": f.url, "snippet": f.body} for f in research_pass.findings
            ],
            "follow_up_queries": list(research_pass.follow_up_queries),
        },
    )


def iteration_reflection(iteration: int, reflection: Reflection) -> SSEEvent:
    return SSEEvent(
        event=EventType.ITERATION_REFLECTION,
        data={
            "iteration": iteration,
            "text": reflection.text,
            "unique_sources": reflection.unique_sources,
            "top_domains": [{"domain": d, "count": c} for d, c in reflection.top_domains],
            "suggested_queries": list(reflection.suggested_queries),
        },
    )


def iteration_error(iteration: int, query: str, message: str) -> SSEEvent:
    return SSEEvent(
        event=EventType.ITERATION_ERROR,
        data={"iteration": iteration, "query": query, "message": message},
    )


def model_draft(iteration: int, answer: str) -> SSEEvent:
    return SSEEvent(event=EventType.MODEL_DRAFT, data={"iteration": iteration, "answer": answer})


def model_eval(iteration: int, verdict: str, critique: str) -> SSEEvent:
    return SSEEvent(
        event=EventType.MODEL_EVAL,
        data={"iteration": iteration, "verdict": verdict, "critique": critique},
    )


def model_error(iteration: int, stage: str, message: str) -> SSEEvent:
    return SSEEvent(
        event=EventType.MODEL_ERROR,
        data={"iteration": iteration, "stage": stage, "message": message},
    )


def complete(result: DeepResearchResult, runtime_ms: int | None = None) -> SSEEvent:
    data: dict[str, Any] = result.to_dict()
    if runtime_ms is not None:
        data["runtime_ms"] = runtime_ms
    return SSEEvent(event=EventType.COMPLETE, data=data)


def error(message: str, **kwargs: Any) -> SSEEvent:
    return SSEEvent(event=EventType.ERROR, data={"message": message, **kwargs})


def thinking(stage: str, message: str, **kwargs: Any) -> SSEEvent:
    """Chat-turn planning notice (grounding, search, reuse, offline)."""
    return SSEEvent(event=EventType.THINKING, data={"stage": stage, "message": message, **kwargs})


def stream_chunk(event: StreamEvent) -> SSEEvent:
    return SSEEvent(event=EventType.STREAM, data=event.to_dict())
