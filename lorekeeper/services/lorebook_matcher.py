"""Select, rank and budget lorebook entries relevant to a piece of text.

The matcher is a pure computation over :class:`LorebookEntrySnapshot` values:
callers load the project's entries, convert them with
``LorebookEntry.to_snapshot()`` and hand the list over together with the
scene text. Only :func:`record_lorebook_usage` touches the database.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from .token_counter import estimate_tokens

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 10
DEFAULT_TOKEN_BUDGET = 2000

PRIMARY_KEY_SCORE = 10
SECONDARY_KEY_SCORE = 5
REGEX_MATCH_SCORE = 3
MAX_REGEX_KEYWORDS = 3
PRIORITY_WEIGHT = 2
RECENCY_BONUS = 3
RECENCY_WINDOW = timedelta(days=7)

MAX_SUGGESTIONS = 10

_CAPITALIZED_WORD = re.compile(r"\b[A-Z][a-z]+\b")
_QUOTED_PHRASE = re.compile(r'"([^"]+)"')
_CATEGORY_SEPARATORS = re.compile(r"[\s\-_]+")


@dataclass(frozen=True)
class LorebookEntrySnapshot:
    id: object
    key: str
    value: str
    category: Optional[str] = None
    keys: Tuple[str, ...] = ()
    trigger_mode: str = "auto"
    searchable: bool = True
    regex_pattern: Optional[str] = None
    priority: int = 0
    last_used: Optional[datetime] = None
    use_count: int = 0
    context_strategy: str = "full"


@dataclass
class TriggeredEntry:
    entry: LorebookEntrySnapshot
    matched_keywords: List[str] = field(default_factory=list)
    relevance_score: int = 0


def match_lorebook_entries(
    entries: Iterable[LorebookEntrySnapshot],
    context: str,
    *,
    max_entries: int = DEFAULT_MAX_ENTRIES,
    token_budget: Optional[int] = DEFAULT_TOKEN_BUDGET,
    now: Optional[datetime] = None,
) -> List[TriggeredEntry]:
    """Return the entries triggered by ``context``, best first.

    Only ``auto`` and searchable entries are considered. The result is capped
    at ``max_entries`` and then trimmed to the longest ranked prefix whose
    estimated token cost fits in ``token_budget``. A falsy budget disables
    the token check.
    """

    if not context:
        return []

    current_time = _as_naive_utc(now) if now else datetime.utcnow()
    context_lower = context.lower()

    triggered: List[TriggeredEntry] = []
    for entry in entries:
        if entry.trigger_mode != "auto" or not entry.searchable:
            continue

        matched_keywords, score = _scan_entry(entry, context, context_lower)
        if not matched_keywords:
            continue

        score += (entry.priority or 0) * PRIORITY_WEIGHT
        if _recently_used(entry.last_used, current_time):
            score += RECENCY_BONUS

        triggered.append(
            TriggeredEntry(entry=entry, matched_keywords=matched_keywords, relevance_score=score)
        )

    # list.sort is stable, so equal scores keep the order entries arrived in.
    triggered.sort(key=lambda item: item.relevance_score, reverse=True)
    selected = triggered[: max(max_entries, 0)]

    if token_budget:
        selected = _fit_token_budget(selected, token_budget)

    return selected


def format_triggered_entries(triggered: Sequence[TriggeredEntry]) -> str:
    if not triggered:
        return ""

    sections = []
    for item in triggered:
        header = f"[{item.entry.key}]"
        if item.entry.category:
            header += f" ({item.entry.category})"
        sections.append(f"{header}\n{item.entry.value}")

    return "# World Information\n\n" + "\n\n---\n\n".join(sections)


def record_lorebook_usage(entry_ids: Sequence[object]) -> None:
    """Bump ``use_count`` and ``last_used`` for every id in ``entry_ids``.

    The increment happens inside a single UPDATE so concurrent requests never
    lose a count. Failures are logged and rolled back without propagating:
    usage stats must not break the generation request that triggered them.
    """

    ids = [entry_id for entry_id in entry_ids if entry_id is not None]
    if not ids:
        return

    # Imported here because the models module imports the snapshot type above.
    from ..models import LorebookEntry

    try:
        LorebookEntry.query.filter(LorebookEntry.id.in_(ids)).update(
            {
                LorebookEntry.last_used: datetime.utcnow(),
                LorebookEntry.use_count: LorebookEntry.use_count + 1,
            },
            synchronize_session=False,
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        LOGGER.exception("Failed to record lorebook usage for entries %s", ids)


def suggest_keywords(entry: LorebookEntrySnapshot) -> List[str]:
    """Propose trigger keywords for ``entry`` from its text and category."""

    value = entry.value or ""
    suggestions: List[str] = []

    capitalized = [word for word in _CAPITALIZED_WORD.findall(value) if len(word) > 3]
    suggestions.extend(capitalized[:5])
    suggestions.extend(_QUOTED_PHRASE.findall(value)[:3])

    if entry.category:
        suggestions.extend(_CATEGORY_SEPARATORS.split(entry.category.lower()))

    unique: List[str] = []
    seen: set[str] = set()
    for suggestion in suggestions:
        if suggestion in seen or len(suggestion) <= 2:
            continue
        seen.add(suggestion)
        unique.append(suggestion)
    return unique[:MAX_SUGGESTIONS]


def _scan_entry(
    entry: LorebookEntrySnapshot,
    context: str,
    context_lower: str,
) -> Tuple[List[str], int]:
    matched: List[str] = []
    score = 0

    if entry.key and entry.key.lower() in context_lower:
        matched.append(entry.key)
        score += PRIMARY_KEY_SCORE

    for keyword in entry.keys or ():
        if keyword and keyword.lower() in context_lower:
            matched.append(keyword)
            score += SECONDARY_KEY_SCORE

    if entry.regex_pattern:
        regex_matches = _find_regex_matches(entry, context)
        if regex_matches:
            matched.extend(regex_matches[:MAX_REGEX_KEYWORDS])
            score += len(regex_matches) * REGEX_MATCH_SCORE

    return matched, score


def _find_regex_matches(entry: LorebookEntrySnapshot, context: str) -> List[str]:
    try:
        pattern = re.compile(entry.regex_pattern, re.IGNORECASE)
    except (re.error, TypeError) as exc:
        LOGGER.warning(
            "Invalid regex pattern on lorebook entry %s (%r): %s",
            entry.id,
            entry.regex_pattern,
            exc,
        )
        return []
    return [match.group(0) for match in pattern.finditer(context)]


def _recently_used(last_used: Optional[datetime], now: datetime) -> bool:
    if last_used is None:
        return False
    return now - _as_naive_utc(last_used) < RECENCY_WINDOW


def _as_naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def _fit_token_budget(selected: List[TriggeredEntry], token_budget: int) -> List[TriggeredEntry]:
    within_budget: List[TriggeredEntry] = []
    total_tokens = 0
    for item in selected:
        entry_tokens = estimate_tokens(item.entry.value)
        if total_tokens + entry_tokens > token_budget:
            break
        within_budget.append(item)
        total_tokens += entry_tokens
    return within_budget


__all__ = [
    "DEFAULT_MAX_ENTRIES",
    "DEFAULT_TOKEN_BUDGET",
    "LorebookEntrySnapshot",
    "TriggeredEntry",
    "format_triggered_entries",
    "match_lorebook_entries",
    "record_lorebook_usage",
    "suggest_keywords",
]
