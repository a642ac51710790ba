"""Decide whether a chat turn needs fresh web context, and what to search for."""
from __future__ import annotations

import re
from datetime import datetime, timezone

from freshcontext.config import SearchPreferences
from freshcontext.models.conversation import ConversationTurn, last_context_turn, original_goal
from freshcontext.models.search import GroundingSignal, SearchPlan
from freshcontext.services.grounding import analyze_grounding
from freshcontext.tools.text_utils import (
    FOLLOW_UP_FILLERS,
    STOP_WORDS,
    collapse_whitespace,
    tokenize,
    words,
)

MAX_QUERIES = 4
FOCUSED_REFRESH_QUERIES = 2
MAX_FOCUS_TERMS = 6

VERY_HIGH_CONFIDENCE = 0.85
HIGH_CONFIDENCE = 0.65
GOOD_COVERAGE = 0.6
MIN_REUSE_ASSISTANT_TURNS = 2

QUESTION_WORDS = (
    "who",
    "what",
    "when",
    "where",
    "why",
    "how",
    "latest",
    "today",
    "current",
    "news",
    "update",
    "updates",
    "breaking",
)

GENERIC_FRESH_PHRASES = (
    "latest news",
    "whats the latest news",
    "what's the latest news",
    "what is the latest news",
    "what is happening",
    "what's happening",
    "current events",
    "latest updates",
    "latest headlines",
    "breaking news",
)

FETCH_DIRECTIVE = re.compile(
    r"^\s*(?:(?:please|can\s+you|could\s+you|would\s+you)\s+)?"
    r"(?P<verb>fetch|retrieve|look\s+up|search(?:\s+the\s+web)?(?:\s+for)?|google|get|grab|find|pull\s+up)\b"
    r"(?:\s+me)?"
    r"(?:\s+(?:this|that|the|some|any|more))?"
    r"(?:\s+(?P<noun>page|site|website|link|info|information|details|article|data|news|results))?"
    r"(?:\s+(?:about|on|for|regarding|from))?"
    r"(?P<topic>.*)$",
    re.IGNORECASE | re.DOTALL,
)
STRONG_FETCH_VERBS = ("fetch", "retrieve", "look up", "search", "google")

MSG_NO_SUBJECT = "No searchable subject found in the request – answering without web search."
MSG_REUSE = "Follow-up detected – reusing context from the previous answer."
MSG_DISABLED = "Web search is disabled in settings."
MSG_GROUNDED = "Conversation already covers this – answering from existing context."
MSG_REUSE_WEB = "Earlier web context is still relevant – reusing it instead of refreshing."
MSG_MINIMAL_GAPS = "Nothing new to look up – responding with model knowledge."
MSG_GENERIC = "Broad request detected – gathering current headlines."
MSG_FOCUSED = "Focused refresh – searching only for what the conversation has not covered."
MSG_DIRECTIVE = "Fetching the requested subject from the web."


def _normalize_prompt(prompt: str) -> str:
    return collapse_whitespace(prompt.replace("’", "'")).strip()


def parse_fetch_directive(prompt: str) -> str | None:
    """Topic of an explicit "fetch/get this page/info about X" request.

    Returns ``None`` when the prompt is not such a request, and ``""`` when it
    is one but nothing searchable remains after cleaning.
    """
    match = FETCH_DIRECTIVE.match(_normalize_prompt(prompt))
    if not match:
        return None
    verb = " ".join(match.group("verb").lower().split())
    if not (verb.startswith(STRONG_FETCH_VERBS) or match.group("noun")):
        return None

    topic = collapse_whitespace(match.group("topic")).strip(" \t\"'`.,!?:;")
    topic = re.sub(r"\s+(?:for\s+me|please)$", "", topic, flags=re.IGNORECASE).strip()
    return topic if tokenize(topic) else ""


def is_referential_follow_up(prompt: str) -> bool:
    tokens = words(_normalize_prompt(prompt))
    if not tokens:
        return False
    filler = STOP_WORDS | FOLLOW_UP_FILLERS
    meaningful = [t for t in tokens if t not in filler]
    if not meaningful:
        return True
    return len(tokens) <= 4 and len(meaningful) == 1 and len(meaningful[0]) <= 3


def is_generic_fresh_info_prompt(prompt: str) -> bool:
    lower = _normalize_prompt(prompt).lower().rstrip("?!. ")
    if any(lower == phrase or lower.startswith(f"{phrase} ") for phrase in GENERIC_FRESH_PHRASES):
        return True
    return len(lower.split()) <= 4 and re.search(r"latest|news|update|updates|headlines", lower) is not None


def looks_like_question(prompt: str) -> bool:
    trimmed = _normalize_prompt(prompt)
    if not trimmed:
        return False
    lower = trimmed.lower()
    return trimmed.endswith("?") or any(word in lower for word in QUESTION_WORDS)


def extract_news_topic(prompt: str) -> str:
    for pattern in (
        r"latest\s+news(?:\s+(?:about|on|regarding))?\s*(.*)",
        r"news\s+(?:about|on|regarding)\s+(.*)",
    ):
        match = re.search(pattern, prompt, flags=re.IGNORECASE)
        if match:
            topic = match.group(1).strip(" \t?!.,;:")
            if topic:
                return topic
    return ""


def expand_prompt(prompt: str, now: datetime) -> list[str]:
    """Raw prompt plus date-qualified variants for news/latest/update requests."""
    trimmed = _normalize_prompt(prompt)
    if not trimmed:
        return []
    lower = trimmed.lower()
    iso_date = now.date().isoformat()
    readable_date = f"{now:%B} {now.day}, {now.year}"
    queries = [trimmed]

    if "news" in lower:
        focus = extract_news_topic(trimmed) or "world"
        queries.append(f"{focus} news {readable_date}")
        queries.append(f"breaking {focus} news {iso_date}")
        queries.append(f"top {focus} headlines {iso_date}")
    elif "update" in lower or "latest" in lower:
        keyword = re.sub(
            r"\b(?:what'?s|what|is|are|the|latest|updates|update)\b",
            "",
            trimmed,
            flags=re.IGNORECASE,
        )
        keyword = collapse_whitespace(keyword).strip(" ?!.,;:") or "latest developments"
        queries.append(f"{keyword} updates {readable_date}")
        queries.append(f"{keyword} developments {iso_date}")
    return queries


def _dedupe(queries: list[str]) -> list[str]:
    result: list[str] = []
    seen: set[str] = set()
    for query in queries:
        cleaned = collapse_whitespace(query)
        key = cleaned.lower()
        if cleaned and key not in seen:
            seen.add(key)
            result.append(cleaned)
    return result


def build_search_queries(
    prompt: str,
    *,
    now: datetime,
    directive_topic: str | None = None,
    focus_terms: list[str] | None = None,
    goal: str | None = None,
) -> list[str]:
    """Candidate queries for a turn; pure for a fixed ``now``."""
    if directive_topic:
        candidates = [directive_topic]
    else:
        candidates = expand_prompt(prompt, now)
        if focus_terms:
            candidates.append(" ".join(focus_terms[:MAX_FOCUS_TERMS]))

    candidates = _dedupe(candidates)
    if goal:
        goal_clean = collapse_whitespace(goal)
        if goal_clean.lower() not in {c.lower() for c in candidates}:
            candidates = candidates[: MAX_QUERIES - 1] + [goal_clean]
    return candidates[:MAX_QUERIES]


def is_off_goal(
    grounding: GroundingSignal,
    goal: str | None,
    *,
    generic_fresh: bool,
) -> bool:
    """Prompt shares nothing with the stated goal nor with the conversation so far."""
    if not goal or generic_fresh or grounding.assistant_turns < 1:
        return False
    if len(grounding.prompt_terms) < 2 or grounding.coverage_ratio > 0:
        return False
    goal_terms = set(tokenize(goal))
    if not goal_terms:
        return False
    return not goal_terms.intersection(grounding.prompt_terms)


def create_search_plan(
    prompt: str,
    history: list[ConversationTurn] | None = None,
    preferences: SearchPreferences | None = None,
    *,
    grounding: GroundingSignal | None = None,
    now: datetime | None = None,
) -> SearchPlan:
    history = list(history or [])
    preferences = preferences or SearchPreferences.from_settings()
    now = now or datetime.now(timezone.utc)
    trimmed = _normalize_prompt(prompt)
    auto_enabled = preferences.auto_web_search is not False

    if not trimmed:
        return SearchPlan(should_search=False, disabled=not auto_enabled, reason="empty-prompt")

    directive_topic = parse_fetch_directive(trimmed)
    if directive_topic == "":
        return SearchPlan(
            should_search=False,
            disabled=not auto_enabled,
            message=MSG_NO_SUBJECT,
            reason="directive-without-subject",
        )

    prior = last_context_turn(history)
    if prior is not None and directive_topic is None and is_referential_follow_up(trimmed):
        return SearchPlan(
            should_search=False,
            queries=list(prior.meta.context_queries)[:MAX_QUERIES],
            disabled=not auto_enabled,
            message=MSG_REUSE,
            reuse_context=True,
            reason="referential-follow-up",
        )

    generic_fresh = is_generic_fresh_info_prompt(trimmed)
    question = looks_like_question(trimmed)
    grounding = grounding or analyze_grounding(history, trimmed, now=now)
    goal = original_goal(history)
    focus_terms = [t for t in grounding.prompt_terms if t in grounding.missing_terms] if history else []

    queries = build_search_queries(
        trimmed,
        now=now,
        directive_topic=directive_topic,
        focus_terms=focus_terms,
        goal=goal,
    ) or [trimmed]

    if not auto_enabled:
        return SearchPlan(
            should_search=False,
            queries=queries,
            generic_fresh_info=generic_fresh,
            disabled=True,
            message=MSG_DISABLED,
            directive_topic=directive_topic,
            reason="disabled",
        )

    if directive_topic:
        return SearchPlan(
            should_search=True,
            queries=queries,
            generic_fresh_info=generic_fresh,
            message=MSG_DIRECTIVE,
            directive_topic=directive_topic,
            reason="explicit-directive",
        )

    def suppressed(reason: str, message: str, **flags: bool) -> SearchPlan:
        return SearchPlan(
            should_search=False,
            queries=queries,
            generic_fresh_info=generic_fresh,
            message=message,
            reason=reason,
            **flags,
        )

    if grounding.confidence >= VERY_HIGH_CONFIDENCE and not generic_fresh:
        return suppressed("very-high-confidence", MSG_GROUNDED, reuse_context=prior is not None)

    if (
        grounding.confidence >= HIGH_CONFIDENCE
        and grounding.minimal_gaps
        and (grounding.coverage_ratio >= GOOD_COVERAGE or not question)
    ):
        return suppressed("high-confidence", MSG_GROUNDED, reuse_context=prior is not None)

    if is_off_goal(grounding, goal, generic_fresh=generic_fresh):
        return suppressed(
            "off-goal",
            f"Prompt drifts from the conversation goal – steering back to: {goal[:80]}",
            redirect_to_goal=True,
        )

    used_web_before = any(t.is_assistant and t.meta.used_web_search for t in history)
    if grounding.assistant_turns >= MIN_REUSE_ASSISTANT_TURNS and used_web_before:
        return suppressed("reuse-web-context", MSG_REUSE_WEB, reuse_context=prior is not None)

    if grounding.minimal_gaps:
        return suppressed("minimal-gaps", MSG_MINIMAL_GAPS)

    return SearchPlan(
        should_search=True,
        queries=queries[:FOCUSED_REFRESH_QUERIES],
        generic_fresh_info=generic_fresh,
        message=MSG_GENERIC if generic_fresh else MSG_FOCUSED,
        focused_refresh=True,
        reason="focused-refresh",
    )
