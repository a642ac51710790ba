"""Heuristic estimate of how well a conversation already covers a new prompt.

Token overlap is an approximation of relevance, not semantic grounding. The
thresholds below are fixed; callers and tests depend on their exact values.
"""
from __future__ import annotations

from datetime import datetime, timezone

from freshcontext.models.conversation import ConversationTurn
from freshcontext.models.search import GroundingSignal
from freshcontext.tools.text_utils import tokenize

HISTORY_WINDOW = 12

LONG_RUNNING_ASSISTANT_TURNS = 3
LONG_RUNNING_TOTAL_TURNS = 6
LONG_RUNNING_BONUS = 0.35

# (minimum assistant turns, bonus), checked top-down
ASSISTANT_TURN_TIERS = ((5, 0.10), (3, 0.06), (1, 0.03))
# (minimum coverage ratio, bonus), checked top-down
COVERAGE_TIERS = ((0.8, 0.40), (0.6, 0.28), (0.45, 0.15))

STORED_CONTEXT_BONUS = 0.12
RECENT_RETRIEVAL_MINUTES = 30
STALE_RETRIEVAL_MINUTES = 24 * 60
RECENT_RETRIEVAL_BONUS = 0.05
STALE_RETRIEVAL_PENALTY = -0.08


def _tier_bonus(value: float, tiers: tuple[tuple[float, float], ...]) -> float:
    for threshold, bonus in tiers:
        if value >= threshold:
            return bonus
    return 0.0


def recency_adjustment(minutes_since_retrieval: float | None) -> float:
    if minutes_since_retrieval is None:
        return 0.0
    if minutes_since_retrieval <= RECENT_RETRIEVAL_MINUTES:
        return RECENT_RETRIEVAL_BONUS
    if minutes_since_retrieval > STALE_RETRIEVAL_MINUTES:
        return STALE_RETRIEVAL_PENALTY
    return 0.0


def score_confidence(
    *,
    coverage_ratio: float,
    assistant_turns: int,
    total_turns: int,
    last_turn_has_context: bool,
    minutes_since_retrieval: float | None,
) -> float:
    """Combine the grounding factors into a confidence clamped to [0, 1]."""
    long_running = assistant_turns >= LONG_RUNNING_ASSISTANT_TURNS or total_turns >= LONG_RUNNING_TOTAL_TURNS
    confidence = 0.0
    if long_running:
        confidence += LONG_RUNNING_BONUS
    confidence += _tier_bonus(assistant_turns, ASSISTANT_TURN_TIERS)
    confidence += _tier_bonus(coverage_ratio, COVERAGE_TIERS)
    if last_turn_has_context:
        confidence += STORED_CONTEXT_BONUS
    confidence += recency_adjustment(minutes_since_retrieval)
    return round(max(0.0, min(1.0, confidence)), 4)


def analyze_grounding(
    history: list[ConversationTurn],
    prompt: str,
    *,
    now: datetime | None = None,
) -> GroundingSignal:
    recent = list(history)[-HISTORY_WINDOW:]
    now = now or datetime.now(timezone.utc)

    known: set[str] = set()
    for turn in recent:
        known.update(tokenize(turn.content))
        if turn.meta.context:
            known.update(tokenize(turn.meta.context))

    prompt_terms = tokenize(prompt)
    covered = [t for t in prompt_terms if t in known]
    coverage = len(covered) / len(prompt_terms) if prompt_terms else 0.0
    missing = frozenset(t for t in prompt_terms if t not in known)

    assistant_turns = [t for t in recent if t.is_assistant]
    last_assistant = assistant_turns[-1] if assistant_turns else None

    minutes_since: float | None = None
    for turn in reversed(assistant_turns):
        if turn.meta.retrieved_at is not None:
            retrieved_at = turn.meta.retrieved_at
            if retrieved_at.tzinfo is None:
                retrieved_at = retrieved_at.replace(tzinfo=timezone.utc)
            minutes_since = max((now - retrieved_at).total_seconds() / 60.0, 0.0)
            break

    long_running = (
        len(assistant_turns) >= LONG_RUNNING_ASSISTANT_TURNS or len(recent) >= LONG_RUNNING_TOTAL_TURNS
    )
    confidence = score_confidence(
        coverage_ratio=coverage,
        assistant_turns=len(assistant_turns),
        total_turns=len(recent),
        last_turn_has_context=bool(last_assistant and last_assistant.meta.context.strip()),
        minutes_since_retrieval=minutes_since,
    )

    return GroundingSignal(
        confidence=confidence,
        coverage_ratio=round(coverage, 4),
        missing_terms=missing,
        long_running=long_running,
        assistant_turns=len(assistant_turns),
        total_turns=len(recent),
        prompt_terms=tuple(prompt_terms),
    )
