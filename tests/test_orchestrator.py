from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from freshcontext.agents.orchestrator import (
    MAX_POOLED_QUERIES,
    DeepResearchOrchestrator,
    _extract_json_object,
    clamp_iterations,
    derive_follow_up_queries,
    seed_query_pool,
    validate_topic,
)
from freshcontext.exceptions import OfflineError, ResearchInputError, TransientNetworkError
from freshcontext.models.events import EventType
from freshcontext.models.search import SearchOutcome, SearchResult

NOW = datetime(2026, 10, 18, tzinfo=timezone.utc)


class FakeProvider:
    """Returns three results per query; URLs repeat across queries to exercise dedupe."""

    def __init__(self, *, fail_on: set[str] | None = None, empty: bool = False):
        self.queries: list[str] = []
        self.fail_on = fail_on or set()
        self.empty = empty

    async def search(self, queries, limit=None):
        query = queries[0]
        self.queries.append(query)
        if query in self.fail_on:
            raise TransientNetworkError("search backend timed out")
        if self.empty:
            return SearchOutcome(queries=[query])
        n = len(self.queries)
        entries = [
            SearchResult(
                title=f"Battery storage report {n}",
                url=f"https://news{i}.example/report-{n // 2}",
                snippet="Grid battery storage capacity expanded with lithium iron phosphate cells.",
                query_used=query,
            )
            for i in range(3)
        ]
        return SearchOutcome(text="ctx", entries=entries, queries=[query])


class FakeLLM:
    def __init__(self, replies: dict[str, list[str]]):
        self.replies = {k: list(v) for k, v in replies.items()}
        self.callers: list[str] = []

    async def complete(self, messages, model, *, caller="side_call", timeout=None):
        self.callers.append(caller)
        queue = self.replies.get(caller) or ["{}"]
        return queue.pop(0) if len(queue) > 1 else queue[0]


def _orchestrator(provider, llm=None, probe=None, **kwargs):
    return DeepResearchOrchestrator(provider, llm=llm, probe=probe, clock=lambda: NOW, **kwargs)


@pytest.mark.asyncio
async def test_run_without_model_does_three_passes():
    provider = FakeProvider()
    events = []

    result = await _orchestrator(provider).run("grid battery storage", on_event=events.append)

    assert len(result.timeline) == 3
    assert result.answer == ""
    assert result.sources
    assert len({s["url"] for s in result.sources}) == len(result.sources)
    assert len(result.sources) <= 5
    assert result.summary.startswith("Deep research: grid battery storage")
    assert events[0].event is EventType.PLANNING
    assert events[-1].event is EventType.COMPLETE
    assert provider.queries[0] == "grid battery storage"
    assert provider.queries[1] == "latest grid battery storage 2026"


@pytest.mark.asyncio
async def test_findings_are_unique_across_passes():
    result = await _orchestrator(FakeProvider()).run("grid battery storage", iterations=4)

    urls = [f.url for p in result.timeline for f in p.findings]
    assert len(urls) == len(set(urls))
    assert all(len(p.findings) <= 3 for p in result.timeline)


@pytest.mark.asyncio
async def test_search_failures_become_iteration_errors():
    provider = FakeProvider(fail_on={"grid battery storage"})
    events = []

    result = await _orchestrator(provider).run("grid battery storage", on_event=events.append)

    assert result.timeline[0].error.startswith("TransientNetworkError")
    assert [e.event for e in events].count(EventType.ITERATION_ERROR) == 1
    assert len(result.timeline) == 3


@pytest.mark.asyncio
async def test_empty_results_are_reported_and_sources_empty():
    result = await _orchestrator(FakeProvider(empty=True)).run("grid battery storage")

    assert all(p.error == "No results found" for p in result.timeline)
    assert result.sources == []


@pytest.mark.asyncio
async def test_offline_probe_raises_before_any_event():
    probe = AsyncMock()
    probe.is_online.return_value = False
    stream = _orchestrator(FakeProvider(), probe=probe).research("grid battery storage")

    with pytest.raises(OfflineError):
        await stream.__anext__()


@pytest.mark.asyncio
async def test_empty_topic_is_rejected():
    with pytest.raises(ResearchInputError):
        await _orchestrator(FakeProvider()).run("   ")
    with pytest.raises(ResearchInputError):
        validate_topic("the and of")


@pytest.mark.asyncio
async def test_good_verdict_stops_early_with_answer():
    llm = FakeLLM(
        {
            "research_suggest": ['{"queries": ["grid battery storage costs"]}'],
            "research_draft": ["Grid batteries are expanding fast (news0.example)."],
            "research_evaluate": ['{"verdict": "revise", "critique": "needs costs"}', '{"verdict": "good", "critique": "ok"}'],
        }
    )
    events = []

    result = await _orchestrator(FakeProvider(), llm=llm).run(
        "grid battery storage", model="test-model", iterations=5, on_event=events.append
    )

    assert len(result.timeline) == 2
    assert result.accepted is True
    assert result.answer == "Grid batteries are expanding fast (news0.example)."
    assert result.timeline[0].verdict == "revise"
    assert result.timeline[1].verdict == "good"
    assert [e.event for e in events].count(EventType.MODEL_DRAFT) == 2


@pytest.mark.asyncio
async def test_model_errors_do_not_stop_the_run():
    llm = FakeLLM(
        {
            "research_suggest": ["no json at all"],
            "research_draft": ["   "],
        }
    )
    events = []

    result = await _orchestrator(FakeProvider(), llm=llm).run(
        "grid battery storage", model="test-model", on_event=events.append
    )

    stages = [e.data["stage"] for e in events if e.event is EventType.MODEL_ERROR]
    # the third pass only sees URLs found earlier, so it has nothing to draft from
    assert stages.count("suggest") == 3
    assert stages.count("draft") == 2
    assert result.answer == ""
    assert len(result.timeline) == 3


@pytest.mark.asyncio
async def test_summary_is_capped():
    result = await _orchestrator(FakeProvider(), summary_char_cap=120).run("grid battery storage")

    assert len(result.summary) <= 120
    assert result.summary.endswith("…")


def test_clamp_iterations():
    assert clamp_iterations(1) == 3
    assert clamp_iterations(9) == 5
    assert clamp_iterations("4") == 4
    assert clamp_iterations(None) == 3


def test_seed_query_pool_splits_compound_topics():
    pool = seed_query_pool("solar vs wind, hydro", ["Solar vs wind, hydro", "tidal power"], now=NOW)

    assert pool == ["solar vs wind, hydro", "solar", "wind", "hydro", "latest solar vs wind, hydro 2026", "tidal power"]


def test_seed_query_pool_skips_dated_variant_for_fresh_topics():
    assert seed_query_pool("latest EU AI act news", now=NOW) == ["latest EU AI act news"]


def test_follow_up_queries_prefer_frequent_on_topic_terms():
    findings = [
        SearchResult(title="Battery storage tariffs", url="https://a.example", snippet="tariffs rise for lithium"),
        SearchResult(title="Battery storage 2026", url="https://b.example", snippet="lithium supply tariffs"),
    ]

    queries = derive_follow_up_queries("battery storage", findings, ["battery storage lithium"])

    assert queries == ["battery storage tariffs", "battery storage rise"]


def test_extract_json_object_handles_fences():
    assert _extract_json_object('```json\n{"verdict": "good"}\n```') == {"verdict": "good"}
    assert _extract_json_object('Sure: {"queries": ["a"]} done') == {"queries": ["a"]}


@pytest.mark.asyncio
async def test_query_pool_never_grows_past_cap():
    llm = FakeLLM({"research_suggest": ['{"queries": ["solar panel recycling", "solar panel tariffs"]}']})
    seeds = [f"solar panels angle {i}" for i in range(10)]
    pool_sizes = []

    def record(run_id, step_type, status, data=None):
        if data and "pool" in data:
            pool = data["pool"]
            pool_sizes.append(len(pool) if isinstance(pool, list) else pool)

    with patch("freshcontext.agents.orchestrator.log_service.log_research_step", side_effect=record):
        result = await _orchestrator(FakeProvider(), llm=llm).run(
            "solar panels", model="test-model", iterations=5, seed_queries=seeds
        )

    assert len(result.timeline) == 5
    assert pool_sizes
    assert max(pool_sizes) <= MAX_POOLED_QUERIES
    assert "solar panel recycling" not in [p.query for p in result.timeline]
