"""Rough token estimates for prompt text.

No tokenizer is loaded: the estimate averages a word-based guess (about 1.3
tokens per word) with a character-based one (about 4 characters per token),
which is close enough for budgeting prompt sections.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence


@dataclass
class SectionTokens:
    text: str
    tokens: int
    count: Optional[int] = None

    def as_dict(self) -> dict:
        data = {"text": self.text, "tokens": self.tokens}
        if self.count is not None:
            data["count"] = self.count
        return data


@dataclass
class ContextBreakdown:
    system_prompt: SectionTokens
    user_instructions: SectionTokens
    scene_context: SectionTokens
    lorebook_entries: SectionTokens
    character_info: SectionTokens
    chapter_summaries: SectionTokens
    user_prompt: SectionTokens
    total: int

    def as_dict(self) -> dict:
        return {
            "system_prompt": self.system_prompt.as_dict(),
            "user_instructions": self.user_instructions.as_dict(),
            "scene_context": self.scene_context.as_dict(),
            "lorebook_entries": self.lorebook_entries.as_dict(),
            "character_info": self.character_info.as_dict(),
            "chapter_summaries": self.chapter_summaries.as_dict(),
            "user_prompt": self.user_prompt.as_dict(),
            "total": self.total,
        }


def estimate_tokens(text: Optional[str]) -> int:
    if not text:
        return 0
    word_estimate = len(text.split()) * 1.3
    char_estimate = len(text) / 4
    return math.ceil((word_estimate + char_estimate) / 2)


def estimate_tokens_from_words(word_count: int) -> int:
    return math.ceil(word_count * 1.3)


def build_context_breakdown(
    *,
    system_prompt: Optional[str] = None,
    user_instructions: Optional[str] = None,
    scene_context: Optional[str] = None,
    lorebook_entries: Optional[Sequence[str]] = None,
    character_info: Optional[Sequence[str]] = None,
    chapter_summaries: Optional[Sequence[str]] = None,
    user_prompt: Optional[str] = None,
) -> ContextBreakdown:
    """Estimate the token cost of each section of an AI prompt."""

    sections = {
        "system_prompt": _text_section(system_prompt),
        "user_instructions": _text_section(user_instructions),
        "scene_context": _text_section(scene_context),
        "lorebook_entries": _list_section(lorebook_entries),
        "character_info": _list_section(character_info),
        "chapter_summaries": _list_section(chapter_summaries),
        "user_prompt": _text_section(user_prompt),
    }
    total = sum(section.tokens for section in sections.values())
    return ContextBreakdown(total=total, **sections)


def token_percentage(tokens: int, total: int) -> int:
    if total == 0:
        return 0
    # Halves round up.
    return math.floor(tokens / total * 100 + 0.5)


def _text_section(text: Optional[str]) -> SectionTokens:
    value = text or ""
    return SectionTokens(text=value, tokens=estimate_tokens(value))


def _list_section(items: Optional[Sequence[str]]) -> SectionTokens:
    values = list(items or [])
    joined = "\n\n".join(values)
    return SectionTokens(text=joined, tokens=estimate_tokens(joined), count=len(values))
