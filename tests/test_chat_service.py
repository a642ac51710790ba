from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from freshcontext.config import SearchPreferences
from freshcontext.models.conversation import ConversationTurn, TurnMeta
from freshcontext.models.research import DeepResearchMeta
from freshcontext.models.search import SearchOutcome, SearchPlan, SearchResult
from freshcontext.models.stream import ChatChunk
from freshcontext.services.chat import MSG_NO_RESULTS, MSG_OFFLINE, ChatService, describe_outcome
from freshcontext.services.search_planner import MSG_DISABLED

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
ENABLED = SearchPreferences(auto_web_search=True, search_result_limit=4)
NEWS_PROMPT = "What's the latest news on renewable energy?"


class ScriptedLLM:
    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.calls = []

    async def stream_chat(self, messages, model):
        self.calls.append((list(messages), model))
        for chunk in self.scripts.pop(0):
            yield chunk


def _probe(online: bool = True) -> AsyncMock:
    probe = AsyncMock()
    probe.is_online.return_value = online
    return probe


def _provider(outcome: SearchOutcome | None = None) -> AsyncMock:
    provider = AsyncMock()
    provider.search.return_value = outcome or SearchOutcome(
        text="Fresh context collected ...\n\n• Solar record",
        entries=[SearchResult(title="Solar record", url="https://news.example/solar")],
        queries=[NEWS_PROMPT],
        retrieved_at=NOW,
    )
    return provider


def _service(provider=None, llm=None, probe=None) -> ChatService:
    return ChatService(
        provider=provider or _provider(),
        llm=llm or ScriptedLLM(),
        probe=probe or _probe(),
        orchestrator=AsyncMock(),
    )


@pytest.mark.asyncio
async def test_plan_and_search_runs_search_with_preference_limit():
    provider = _provider()
    service = _service(provider=provider)

    outcome = await service.plan_and_search([], NEWS_PROMPT, ENABLED, now=NOW)

    queries, limit = provider.search.await_args.args
    assert queries[0] == NEWS_PROMPT
    assert limit == 4
    assert outcome.plan.should_search is True
    assert outcome.has_context is True
    assert describe_outcome(outcome) == f"Using 1 web results for: {NEWS_PROMPT}"


@pytest.mark.asyncio
async def test_plan_and_search_skips_network_when_offline():
    provider = _provider()
    service = _service(provider=provider, probe=_probe(online=False))

    outcome = await service.plan_and_search([], NEWS_PROMPT, ENABLED, now=NOW)

    provider.search.assert_not_awaited()
    assert outcome.has_context is False
    assert outcome.plan.message == MSG_OFFLINE
    assert describe_outcome(outcome) == MSG_OFFLINE


def test_describe_outcome_when_search_finds_nothing():
    outcome = SearchOutcome(queries=["q"], plan=SearchPlan(should_search=True, queries=["q"]))

    assert describe_outcome(outcome) == MSG_NO_RESULTS


@pytest.mark.asyncio
async def test_plan_and_search_reuses_stored_context():
    history = [
        ConversationTurn(role="user", content=NEWS_PROMPT, created_at=NOW),
        ConversationTurn(
            role="assistant",
            content="Solar and wind grew.",
            created_at=NOW,
            meta=TurnMeta(
                context="Stored context",
                context_queries=("renewable energy news",),
                retrieved_at=NOW - timedelta(minutes=5),
                used_web_search=True,
            ),
        ),
    ]
    provider = _provider()
    service = _service(provider=provider)

    outcome = await service.plan_and_search(history, "and what about next year?", ENABLED, now=NOW)

    provider.search.assert_not_awaited()
    assert outcome.reused is True
    assert outcome.text == "Stored context"
    assert outcome.queries == ["renewable energy news"]


@pytest.mark.asyncio
async def test_disabled_search_reports_queries_without_searching():
    provider = _provider()
    service = _service(provider=provider)

    outcome = await service.plan_and_search([], NEWS_PROMPT, SearchPreferences(auto_web_search=False), now=NOW)

    provider.search.assert_not_awaited()
    assert outcome.queries
    assert describe_outcome(outcome) == MSG_DISABLED


def test_build_messages_orders_context_before_prompt():
    service = _service()
    history = [
        ConversationTurn(role="user", content="How do I bake sourdough bread at home?"),
        ConversationTurn(role="assistant", content="Use a lively starter."),
    ]
    context = SearchOutcome(text="Fresh context collected ...", retrieved_at=NOW)
    research = DeepResearchMeta(
        summary="Deep research: ovens", answer="Use steam.", sources=[{"title": "Oven", "url": "https://o.example"}]
    )

    messages = service.build_messages(history, "Which oven?", context, research, ENABLED)

    assert messages[0]["role"] == "system"
    assert "[[search:" in messages[0]["content"]
    assert [m["role"] for m in messages[1:3]] == ["user", "assistant"]
    assert "Context:\nFresh context collected ..." in messages[3]["content"]
    assert "Context retrieved: Oct 18, 2026" in messages[3]["content"]
    assert "Use steam." in messages[4]["content"]
    assert messages[-1] == {"role": "user", "content": "Which oven?"}


def test_build_messages_without_auto_search_has_no_directive_instructions():
    messages = _service().build_messages([], "hi", None, None, SearchPreferences(auto_web_search=False))

    assert "[[search:" not in messages[0]["content"]
    assert len(messages) == 2


@pytest.mark.asyncio
async def test_stream_answer_registers_and_releases_request():
    llm = ScriptedLLM([ChatChunk("Done."), ChatChunk(done=True)])
    service = _service(llm=llm)

    seen_registered = []
    events = []
    async for event in service.stream_answer([], "hi", None, "m", request_id="req-9", preferences=ENABLED):
        seen_registered.append("req-9" in service.registry)
        events.append(event)

    assert all(seen_registered)
    assert "req-9" not in service.registry
    assert events[-1].done is True
    assert llm.calls[0][1] == "m"


@pytest.mark.asyncio
async def test_directive_search_runs_through_provider():
    llm = ScriptedLLM(
        [ChatChunk("[[search: fusion record]]")],
        [ChatChunk("Net gain."), ChatChunk(done=True)],
    )
    provider = _provider(SearchOutcome(text="fusion context", queries=["fusion record"]))
    service = _service(provider=provider, llm=llm)

    events = [e async for e in service.stream_answer([], "fusion?", None, "m", preferences=ENABLED)]

    provider.search.assert_awaited_once_with(["fusion record"], 4)
    assert events[-1].full == "Net gain."
    assert any(e.context == "fusion context" for e in events)


def test_cancel_unknown_request_is_false():
    assert _service().cancel("nope") is False


def test_build_turn_meta_merges_supplemental_context():
    outcome = SearchOutcome(text="primary", queries=["q1"], retrieved_at=NOW)

    meta = ChatService.build_turn_meta(outcome, ["extra", "  "])

    assert meta.context == "primary\n\nextra"
    assert meta.context_queries == ("q1",)
    assert meta.used_web_search is True
    assert ChatService.build_turn_meta(None).used_web_search is False
