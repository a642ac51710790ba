from __future__ import annotations

import re

TOKEN_PATTERN = re.compile(r"[a-z0-9]+")
WORD_PATTERN = re.compile(r"[a-z0-9']+")
MIN_TOKEN_LENGTH = 3
MAX_TOKENS = 20

STOP_WORDS = frozenset(
    {
        "a", "about", "above", "after", "again", "against", "all", "also", "am", "an",
        "and", "any", "are", "aren", "around", "as", "at", "be", "because", "been",
        "before", "being", "below", "between", "both", "but", "by", "can", "could",
        "did", "didn", "do", "does", "doesn", "doing", "don", "down", "during", "each",
        "else", "even", "ever", "few", "for", "from", "further", "get", "give", "go",
        "got", "had", "has", "have", "having", "he", "her", "here", "hers", "him",
        "his", "how", "however", "i", "if", "in", "into", "is", "isn", "it", "its",
        "itself", "just", "know", "let", "like", "me", "might", "more", "most", "much",
        "must", "my", "no", "nor", "not", "now", "of", "off", "on", "once", "only",
        "or", "other", "our", "ours", "out", "over", "own", "please", "same", "say",
        "she", "should", "so", "some", "such", "tell", "than", "thanks", "that",
        "that's", "the", "their", "theirs", "them", "then", "there", "these", "they",
        "thing", "things", "this", "those", "through", "to", "too", "under", "until",
        "up", "us", "very", "was", "wasn", "we", "were", "what", "what's", "whats",
        "when", "where", "which", "while", "who", "whom", "why", "will", "with",
        "would", "yes", "you", "your", "yours",
    }
)

# Words that only make sense relative to an earlier turn.
FOLLOW_UP_FILLERS = frozenset(
    {
        "next", "last", "previous", "year", "years", "month", "months", "week",
        "weeks", "day", "days", "today", "tomorrow", "yesterday", "one", "ones",
        "another", "instead", "same", "again", "else", "more", "detail", "details",
        "elaborate", "continue", "why", "really", "ok", "okay", "sure", "cool",
    }
)


def tokenize(text: str, *, limit: int | None = MAX_TOKENS) -> list[str]:
    """Lower-cased alphanumeric content tokens, unique in first-seen order."""
    tokens: list[str] = []
    seen: set[str] = set()
    for token in TOKEN_PATTERN.findall((text or "").lower()):
        if len(token) < MIN_TOKEN_LENGTH or token in STOP_WORDS or token in seen:
            continue
        seen.add(token)
        tokens.append(token)
        if limit is not None and len(tokens) >= limit:
            break
    return tokens


def words(text: str) -> list[str]:
    """All lower-cased words, stop words included."""
    return [w.strip("'") for w in WORD_PATTERN.findall((text or "").lower()) if w.strip("'")]


def collapse_whitespace(text: str) -> str:
    return " ".join((text or "").split())


def truncate(text: str, max_chars: int, *, marker: str = "…") -> str:
    """Tail-truncate so the result, marker included, fits ``max_chars``."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    keep = max(max_chars - len(marker), 0)
    return text[:keep].rstrip() + marker
