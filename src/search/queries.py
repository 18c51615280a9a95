"""Query normalisation and related-query derivation for cache pre-warming."""

from __future__ import annotations

import re
from datetime import date

MAX_RELATED = 3
KEYWORD_LIMIT = 4

_WORD_RE = re.compile(r"[\w'-]+", re.UNICODE)

STOPWORDS = frozenset(
    """
    a an and are as at be by can could do does for from how i in is it me my of on
    or please should tell that the this to was what when where which who why will
    with would you your about
    """.split()
)

TIME_SENSITIVE_TERMS = frozenset(
    """
    today tonight tomorrow yesterday now current currently latest recent news
    weather forecast price prices stock stocks score scores live update updates
    """.split()
)

# Phrase prefix → suffix appended to the keyword form of the query.
TOPIC_EXPANSIONS: tuple[tuple[str, str], ...] = (
    ("how to", "guide"),
    ("how do", "tutorial"),
    ("what is", "explained"),
    ("what are", "overview"),
    ("who is", "biography"),
    ("why", "reasons"),
    ("best", "comparison"),
)


def normalize_query(query: str) -> str:
    """Lowercase and collapse whitespace; used as the cache identity of a query."""
    return " ".join(query.lower().split())


def keywords(query: str) -> list[str]:
    """Content words of *query* in order, stopwords removed."""
    words = _WORD_RE.findall(query.lower())
    return [w for w in words if w not in STOPWORDS]


def is_time_sensitive(query: str) -> bool:
    return any(w in TIME_SENSITIVE_TERMS for w in _WORD_RE.findall(query.lower()))


def derive_related_queries(query: str, today: date | None = None) -> list[str]:
    """Derive up to three queries a user is likely to ask next.

    Combines keyword truncation, a date-stamped variant for time-sensitive
    queries and a topic-specific expansion. Results are normalised, unique
    and never equal to the original query.
    """
    original = normalize_query(query)
    if not original:
        return []

    words = keywords(original)
    core = " ".join(words[:KEYWORD_LIMIT])
    candidates: list[str] = []

    if core:
        candidates.append(core)

    if is_time_sensitive(original):
        stamp = (today or date.today()).isoformat()
        candidates.append(f"{core or original} {stamp}")

    for prefix, suffix in TOPIC_EXPANSIONS:
        if original.startswith(prefix):
            candidates.append(f"{core or original} {suffix}")
            break

    related: list[str] = []
    for candidate in candidates:
        candidate = normalize_query(candidate)
        if candidate and candidate != original and candidate not in related:
            related.append(candidate)
    return related[:MAX_RELATED]
