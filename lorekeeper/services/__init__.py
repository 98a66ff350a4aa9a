"""Service layer helpers for lorebook matching and prompt context."""

from __future__ import annotations

# Modules that import ``lorekeeper.models`` are left out here: the models
# module imports the matcher, so re-exporting them would be circular.
from .lorebook_matcher import (  # noqa: F401
    LorebookEntrySnapshot,
    TriggeredEntry,
    format_triggered_entries,
    match_lorebook_entries,
    record_lorebook_usage,
    suggest_keywords,
)
from .token_counter import build_context_breakdown, estimate_tokens  # noqa: F401

__all__ = [
    "LorebookEntrySnapshot",
    "TriggeredEntry",
    "build_context_breakdown",
    "estimate_tokens",
    "format_triggered_entries",
    "match_lorebook_entries",
    "record_lorebook_usage",
    "suggest_keywords",
]
