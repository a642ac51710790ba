from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from freshcontext.config import SearchPreferences
from freshcontext.models.conversation import ConversationTurn, TurnMeta
from freshcontext.models.search import GroundingSignal
from freshcontext.services import search_planner
from freshcontext.services.search_planner import (
    build_search_queries,
    create_search_plan,
    is_generic_fresh_info_prompt,
    is_referential_follow_up,
    parse_fetch_directive,
)

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
ENABLED = SearchPreferences(auto_web_search=True, search_result_limit=6)


def _web_turn(content: str, context: str, queries: tuple[str, ...] = ("renewable energy news",)):
    return ConversationTurn(
        role="assistant",
        content=content,
        created_at=NOW,
        meta=TurnMeta(
            context=context,
            context_queries=queries,
            retrieved_at=NOW - timedelta(minutes=10),
            used_web_search=True,
        ),
    )


def test_latest_news_prompt_without_history_searches_with_dated_variant():
    plan = create_search_plan("What's the latest news on renewable energy?", [], ENABLED, now=NOW)

    assert plan.generic_fresh_info is True
    assert plan.should_search is True
    assert plan.focused_refresh is True
    assert plan.queries[0] == "What's the latest news on renewable energy?"
    assert "renewable energy news October 18, 2026" in plan.queries
    assert 1 <= len(plan.queries) <= 2


def test_referential_follow_up_reuses_previous_context():
    history = [
        ConversationTurn(role="user", content="What's the latest news on renewable energy?", created_at=NOW),
        _web_turn("Solar and wind grew this quarter.", "Fresh context collected ..."),
    ]

    plan = create_search_plan("and what about next year?", history, ENABLED, now=NOW)

    assert plan.should_search is False
    assert plan.reuse_context is True
    assert plan.message == search_planner.MSG_REUSE
    assert plan.queries == ["renewable energy news"]


def test_directive_without_subject_skips_search():
    plan = create_search_plan("fetch this page", [], ENABLED, now=NOW)

    assert plan.should_search is False
    assert plan.message == search_planner.MSG_NO_SUBJECT
    assert plan.reason == "directive-without-subject"


def test_explicit_directive_searches_for_topic_even_when_grounded():
    grounding = GroundingSignal(
        confidence=0.95,
        coverage_ratio=1.0,
        missing_terms=frozenset(),
        long_running=True,
        assistant_turns=4,
        total_turns=8,
        prompt_terms=("james", "webb", "telescope"),
    )

    plan = create_search_plan(
        "search for James Webb telescope images", [], ENABLED, grounding=grounding, now=NOW
    )

    assert plan.should_search is True
    assert plan.directive_topic == "James Webb telescope images"
    assert plan.queries[0] == "James Webb telescope images"
    assert plan.reason == "explicit-directive"


def test_disabled_search_still_reports_candidate_queries():
    prefs = SearchPreferences(auto_web_search=False)

    plan = create_search_plan("What's the latest news on renewable energy?", [], prefs, now=NOW)

    assert plan.should_search is False
    assert plan.disabled is True
    assert plan.message == search_planner.MSG_DISABLED
    assert 1 <= len(plan.queries) <= 4


def test_very_high_confidence_suppresses_search():
    grounding = GroundingSignal(
        confidence=0.9,
        coverage_ratio=1.0,
        missing_terms=frozenset(),
        long_running=True,
        assistant_turns=3,
        total_turns=6,
        prompt_terms=("solar", "output"),
    )

    plan = create_search_plan("solar output", [], ENABLED, grounding=grounding, now=NOW)

    assert plan.should_search is False
    assert plan.reason == "very-high-confidence"


def test_off_goal_prompt_is_redirected():
    history = [
        ConversationTurn(role="user", content="How do I bake sourdough bread at home?", created_at=NOW),
        ConversationTurn(role="assistant", content="Start with an active starter and strong flour.", created_at=NOW),
    ]

    plan = create_search_plan("Explain quantum computing qubits", history, ENABLED, now=NOW)

    assert plan.should_search is False
    assert plan.redirect_to_goal is True
    assert plan.reason == "off-goal"


def test_previous_web_context_is_reused_after_two_assistant_turns():
    history = [
        ConversationTurn(role="user", content="latest news on renewable energy", created_at=NOW),
        _web_turn("Capacity is growing.", "Offshore wind turbines capacity grew sharply."),
        ConversationTurn(role="user", content="tell me about wind turbines", created_at=NOW),
        ConversationTurn(role="assistant", content="Wind turbines convert kinetic energy.", created_at=NOW),
    ]

    plan = create_search_plan("offshore wind turbines capacity in europe", history, ENABLED, now=NOW)

    assert plan.should_search is False
    assert plan.reason == "reuse-web-context"
    assert plan.reuse_context is True


def test_minimal_gaps_skip_search():
    history = [
        ConversationTurn(role="user", content="solar panel efficiency", created_at=NOW),
        ConversationTurn(role="assistant", content="Solar panel efficiency is about 22 percent.", created_at=NOW),
    ]

    plan = create_search_plan("solar panel efficiency records", history, ENABLED, now=NOW)

    assert plan.should_search is False
    assert plan.reason == "minimal-gaps"


@pytest.mark.parametrize(
    "prompt",
    [
        "What's the latest news on renewable energy?",
        "latest updates",
        "search for rust async runtimes",
        "How tall is the Eiffel tower?",
        "news about the european central bank interest rate decision and inflation outlook",
    ],
)
def test_plans_respect_query_bounds(prompt):
    history = [
        ConversationTurn(role="user", content="Help me plan a trip to Paris next spring", created_at=NOW),
        ConversationTurn(role="assistant", content="Sure, spring is a lovely time.", created_at=NOW),
    ]
    for turns in ([], history):
        plan = create_search_plan(prompt, turns, ENABLED, now=NOW)
        assert len(plan.queries) <= 4
        if plan.should_search:
            assert len(plan.queries) >= 1


def test_build_search_queries_is_idempotent_and_includes_goal():
    kwargs = {"now": NOW, "focus_terms": ["tariffs", "steel"], "goal": "US trade policy"}

    first = build_search_queries("latest updates on steel tariffs", **kwargs)
    second = build_search_queries("latest updates on steel tariffs", **kwargs)

    assert first == second
    assert first[-1] == "US trade policy"
    assert len(first) <= 4


def test_fetch_directive_parsing():
    assert parse_fetch_directive("What is the capital of France?") is None
    assert parse_fetch_directive("get me more info") == ""
    assert parse_fetch_directive("please look up the Mars rover landing") == "Mars rover landing"
    assert parse_fetch_directive("get the weather") is None


def test_follow_up_and_generic_heuristics():
    assert is_referential_follow_up("and what about next year?") is True
    assert is_referential_follow_up("why?") is True
    assert is_referential_follow_up("what about the EU?") is True
    assert is_referential_follow_up("what about european battery factories") is False

    assert is_generic_fresh_info_prompt("latest news") is True
    assert is_generic_fresh_info_prompt("What's happening today?") is True
    assert is_generic_fresh_info_prompt("Explain how transformers work") is False
