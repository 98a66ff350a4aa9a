"""Persistence helpers for project lorebook entries."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

from ..extensions import db
from ..models import LorebookEntry, Project
from .lorebook_matcher import LorebookEntrySnapshot


class LorebookEntryError(RuntimeError):
    """Raised when a lorebook entry payload cannot be saved."""


TRIGGER_MODES = ("auto", "manual")
CONTEXT_STRATEGIES = ("full", "summary")

SORT_COLUMNS = {
    "priority": LorebookEntry.priority,
    "use_count": LorebookEntry.use_count,
    "last_used": LorebookEntry.last_used,
    "created_at": LorebookEntry.created_at,
}

_TEXT_FIELDS = ("category", "summary")


def create_entry(project: Project, payload: Dict[str, Any]) -> LorebookEntry:
    """Validate ``payload`` and add a new entry to ``project``."""

    data = _clean_payload(payload, partial=False)
    entry = LorebookEntry(project=project, **data)
    db.session.add(entry)
    db.session.flush()
    return entry


def update_entry(entry: LorebookEntry, payload: Dict[str, Any]) -> LorebookEntry:
    """Apply the fields present in ``payload`` to ``entry``.

    Usage statistics are not accepted here; they only change through
    :func:`~lorekeeper.services.lorebook_matcher.record_lorebook_usage`.
    """

    data = _clean_payload(payload, partial=True)
    for name, value in data.items():
        setattr(entry, name, value)
    db.session.flush()
    return entry


def list_project_entries(
    project_id: int,
    *,
    sort_by: Optional[str] = None,
    category: Optional[str] = None,
) -> List[LorebookEntry]:
    query = LorebookEntry.query.filter_by(project_id=project_id, is_archived=False)
    return _sorted(_filter_category(query, category), sort_by).all()


def list_user_entries(
    user_id: int,
    *,
    sort_by: Optional[str] = None,
    category: Optional[str] = None,
) -> List[LorebookEntry]:
    query = (
        LorebookEntry.query.join(Project, LorebookEntry.project_id == Project.id)
        .filter(Project.owner_id == user_id, LorebookEntry.is_archived.is_(False))
    )
    return _sorted(_filter_category(query, category), sort_by).all()


def load_snapshots(project_id: int) -> List[LorebookEntrySnapshot]:
    """Return matcher input for every active entry in the project.

    Rows come back ordered by id so equal relevance scores always rank the
    same way.
    """

    entries = (
        LorebookEntry.query.filter_by(project_id=project_id, is_archived=False)
        .order_by(LorebookEntry.id.asc())
        .all()
    )
    return [entry.to_snapshot() for entry in entries]


def serialize_entry(entry: LorebookEntry, *, include_project: bool = False) -> Dict[str, Any]:
    data = {
        "id": entry.id,
        "project_id": entry.project_id,
        "key": entry.key,
        "value": entry.value,
        "category": entry.category,
        "keys": entry.keys_list,
        "trigger_mode": entry.trigger_mode,
        "searchable": entry.searchable,
        "regex_pattern": entry.regex_pattern,
        "priority": entry.priority,
        "context_strategy": entry.context_strategy,
        "summary": entry.summary,
        "is_archived": entry.is_archived,
        "last_used": entry.last_used.isoformat() if entry.last_used else None,
        "use_count": entry.use_count,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
        "updated_at": entry.updated_at.isoformat() if entry.updated_at else None,
    }
    if include_project:
        data["project"] = {"id": entry.project.id, "title": entry.project.title}
    return data


def _filter_category(query, category: Optional[str]):
    if category and category != "all":
        query = query.filter(LorebookEntry.category == category)
    return query


def _sorted(query, sort_by: Optional[str]):
    column = SORT_COLUMNS.get(sort_by or "created_at", LorebookEntry.created_at)
    return query.order_by(column.desc(), LorebookEntry.id.desc())


def _clean_payload(payload: Dict[str, Any], *, partial: bool) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise LorebookEntryError("Send the entry as a JSON object.")

    data: Dict[str, Any] = {}

    for name, label in (("key", "a trigger key"), ("value", "the entry text")):
        if name in payload or not partial:
            text = _as_text(payload.get(name))
            if not text:
                raise LorebookEntryError(f"Provide {label} for the lorebook entry.")
            data[name] = text

    for name in _TEXT_FIELDS:
        if name in payload:
            data[name] = _as_text(payload.get(name)) or None

    if "keys" in payload:
        data["keys"] = _encode_keys(payload.get("keys"))

    if "trigger_mode" in payload or not partial:
        mode = _as_text(payload.get("trigger_mode")) or "auto"
        if mode not in TRIGGER_MODES:
            raise LorebookEntryError("Trigger mode must be 'auto' or 'manual'.")
        data["trigger_mode"] = mode

    if "context_strategy" in payload or not partial:
        strategy = _as_text(payload.get("context_strategy")) or "full"
        if strategy not in CONTEXT_STRATEGIES:
            raise LorebookEntryError("Context strategy must be 'full' or 'summary'.")
        data["context_strategy"] = strategy

    if "priority" in payload or not partial:
        raw_priority = payload.get("priority")
        if raw_priority in (None, ""):
            data["priority"] = 0
        elif isinstance(raw_priority, bool):
            raise LorebookEntryError("Priority must be a whole number.")
        else:
            try:
                data["priority"] = int(raw_priority)
            except (TypeError, ValueError) as exc:
                raise LorebookEntryError("Priority must be a whole number.") from exc

    for name, default in (("searchable", True), ("is_archived", False)):
        if name in payload:
            value = payload.get(name)
            if not isinstance(value, bool):
                raise LorebookEntryError(f"'{name}' must be true or false.")
            data[name] = value
        elif not partial:
            data[name] = default

    if "regex_pattern" in payload:
        pattern = _as_text(payload.get("regex_pattern")) or None
        if pattern:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise LorebookEntryError(f"Invalid regex pattern: {exc}") from exc
        data["regex_pattern"] = pattern

    return data


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value.strip() if isinstance(value, str) else str(value).strip()


def _encode_keys(raw: Any) -> Optional[str]:
    if raw in (None, ""):
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            raw = raw.split(",")
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise LorebookEntryError("Additional keys must be a list of strings.")
    cleaned = [item.strip() for item in raw if item.strip()]
    return json.dumps(cleaned, ensure_ascii=False) if cleaned else None


__all__ = [
    "CONTEXT_STRATEGIES",
    "LorebookEntryError",
    "TRIGGER_MODES",
    "create_entry",
    "list_project_entries",
    "list_user_entries",
    "load_snapshots",
    "serialize_entry",
    "update_entry",
]
