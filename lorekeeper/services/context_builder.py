"""Assemble the full AI prompt context for a scene."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from flask import current_app
from sqlalchemy import and_, or_

from ..models import CharacterProfile, Project, User, UserInstruction
from .lorebook_entries import load_snapshots
from .lorebook_matcher import (
    DEFAULT_MAX_ENTRIES,
    DEFAULT_TOKEN_BUDGET,
    format_triggered_entries,
    match_lorebook_entries,
)

SCOPE_ORDER = {"character": 3, "project": 2, "global": 1}

_SECTION_SEPARATOR = "\n\n---\n\n"
_CHARACTER_FIELDS = (
    ("Role", "role"),
    ("Background", "background"),
    ("Goals", "goals"),
    ("Conflict", "conflict"),
    ("Notes", "notes"),
)


@dataclass
class BuiltContext:
    system_prompt: str
    user_instructions: str = ""
    scene_context: str = ""
    lorebook_entries: str = ""
    character_info: str = ""
    triggered_lorebook_ids: List[int] = field(default_factory=list)


def build_user_instructions(
    user_id: int,
    project_id: Optional[int] = None,
    character_id: Optional[int] = None,
) -> str:
    """Combine enabled instructions, most specific scope first."""

    clauses = [
        and_(
            UserInstruction.scope == "global",
            UserInstruction.project_id.is_(None),
            UserInstruction.character_id.is_(None),
        )
    ]
    if project_id is not None:
        clauses.append(
            and_(UserInstruction.scope == "project", UserInstruction.project_id == project_id)
        )
    if character_id is not None:
        clauses.append(
            and_(UserInstruction.scope == "character", UserInstruction.character_id == character_id)
        )

    instructions = (
        UserInstruction.query.filter(
            UserInstruction.user_id == user_id,
            UserInstruction.is_enabled.is_(True),
            or_(*clauses),
        )
        .order_by(UserInstruction.priority.desc(), UserInstruction.id.asc())
        .all()
    )

    ordered = sorted(
        instructions,
        key=lambda item: (SCOPE_ORDER.get(item.scope, 0), item.priority),
        reverse=True,
    )
    return "\n\n".join(item.instructions.strip() for item in ordered if item.instructions.strip())


def build_ai_context(
    user: User,
    project: Project,
    scene_context: str,
    *,
    character_id: Optional[int] = None,
    include_user_instructions: bool = True,
    include_lorebook: bool = True,
    include_characters: bool = True,
    max_lorebook_entries: Optional[int] = None,
    lorebook_token_budget: Optional[int] = None,
) -> BuiltContext:
    """Collect every context source for a generation request.

    The caller is responsible for recording usage of
    ``triggered_lorebook_ids`` once the context is actually sent.
    """

    config = current_app.config
    context = BuiltContext(
        system_prompt=config.get("DEFAULT_SYSTEM_PROMPT", ""),
        scene_context=scene_context or "",
    )

    if include_user_instructions:
        context.user_instructions = build_user_instructions(user.id, project.id, character_id)

    if include_lorebook and scene_context:
        if max_lorebook_entries is None:
            max_lorebook_entries = config.get("LOREBOOK_MAX_ENTRIES", DEFAULT_MAX_ENTRIES)
        if lorebook_token_budget is None:
            lorebook_token_budget = config.get("LOREBOOK_TOKEN_BUDGET", DEFAULT_TOKEN_BUDGET)

        triggered = match_lorebook_entries(
            load_snapshots(project.id),
            scene_context,
            max_entries=max_lorebook_entries,
            token_budget=lorebook_token_budget,
        )
        context.lorebook_entries = format_triggered_entries(triggered)
        context.triggered_lorebook_ids = [item.entry.id for item in triggered]
        current_app.logger.debug(
            "Lorebook matched %d entries for project %s", len(triggered), project.id
        )

    if include_characters and character_id is not None:
        character = CharacterProfile.query.filter_by(id=character_id, project_id=project.id).first()
        if character:
            context.character_info = format_character(character)

    return context


def format_character(character: CharacterProfile) -> str:
    lines = [f"# Character: {character.name}", ""]
    for label, attribute in _CHARACTER_FIELDS:
        value = (getattr(character, attribute) or "").strip()
        if value:
            lines.append(f"{label}: {value}")
    return "\n".join(lines).strip()


def format_context_for_ai(context: BuiltContext) -> Tuple[str, str]:
    """Return ``(system_prompt, context_text)`` ready for the completion client."""

    system_prompt = context.system_prompt
    if context.user_instructions:
        system_prompt += "\n\n## User Instructions\n" + context.user_instructions

    parts = []
    if context.lorebook_entries:
        parts.append(context.lorebook_entries)
    if context.character_info:
        parts.append(context.character_info)
    if context.scene_context:
        parts.append("# Current Scene\n\n" + context.scene_context)

    return system_prompt, _SECTION_SEPARATOR.join(parts)
