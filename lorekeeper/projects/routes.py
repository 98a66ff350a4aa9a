from __future__ import annotations

from flask import (
    abort,
    current_app,
    flash,
    jsonify,
    redirect,
    render_template,
    request,
    url_for,
)
from flask_login import current_user, login_required

from ..extensions import db
from ..models import CharacterProfile, LorebookEntry, Project, UserInstruction
from ..services.context_builder import SCOPE_ORDER, build_ai_context, format_context_for_ai
from ..services.lorebook_entries import (
    LorebookEntryError,
    create_entry,
    list_project_entries,
    load_snapshots,
    serialize_entry,
    update_entry,
)
from ..services.lorebook_matcher import (
    format_triggered_entries,
    match_lorebook_entries,
    record_lorebook_usage,
    suggest_keywords,
)
from ..services.token_counter import build_context_breakdown
from . import bp
from .forms import CharacterProfileForm


def _owned_project(project_id: int) -> Project:
    project = Project.query.get_or_404(project_id)
    if project.owner != current_user:
        abort(403)
    return project


def _owned_entry(project: Project, entry_id: int) -> LorebookEntry:
    entry = LorebookEntry.query.filter_by(id=entry_id, project_id=project.id).first()
    if not entry:
        abort(404)
    return entry


def _optional_int(payload: dict, name: str, default):
    raw = payload.get(name)
    if raw is None or raw == "":
        return default
    if isinstance(raw, bool):
        raise ValueError(name)
    return int(raw)


@bp.route("/<int:project_id>", methods=["GET", "POST"])
@login_required
def detail(project_id: int):
    project = _owned_project(project_id)
    character_form = CharacterProfileForm(prefix="character")

    if character_form.submit.data and character_form.validate_on_submit():
        character = CharacterProfile(
            project=project,
            name=character_form.name.data.strip(),
            role=(character_form.role.data or "").strip() or None,
            background=(character_form.background.data or "").strip() or None,
            goals=(character_form.goals.data or "").strip() or None,
            conflict=(character_form.conflict.data or "").strip() or None,
            notes=(character_form.notes.data or "").strip() or None,
        )
        db.session.add(character)
        db.session.commit()
        flash("Character added to the project.", "success")
        return redirect(url_for("projects.detail", project_id=project.id))

    elif character_form.submit.data:
        for field_name, errors in character_form.errors.items():
            for error in errors:
                if field_name == "name" and "required" in error.strip().lower():
                    flash("Add a character name before saving.", "danger")
                else:
                    flash(error, "danger")

    characters = (
        CharacterProfile.query.filter_by(project_id=project.id)
        .order_by(CharacterProfile.name.asc())
        .all()
    )
    entries = list_project_entries(project.id, sort_by="priority")

    return render_template(
        "projects/detail.html",
        project=project,
        character_form=character_form,
        characters=characters,
        entries=entries,
    )


@bp.route("/<int:project_id>/lorebook", methods=["GET"])
@login_required
def list_lorebook(project_id: int):
    project = _owned_project(project_id)
    entries = list_project_entries(
        project.id,
        sort_by=request.args.get("sort_by"),
        category=request.args.get("category"),
    )
    return jsonify([serialize_entry(entry) for entry in entries])


@bp.route("/<int:project_id>/lorebook", methods=["POST"])
@login_required
def create_lorebook_entry(project_id: int):
    project = _owned_project(project_id)
    payload = request.get_json(silent=True) or {}

    try:
        entry = create_entry(project, payload)
    except LorebookEntryError as exc:
        db.session.rollback()
        return jsonify({"error": str(exc)}), 400

    db.session.commit()
    return jsonify(serialize_entry(entry)), 201


@bp.route("/<int:project_id>/lorebook/<int:entry_id>", methods=["PATCH"])
@login_required
def update_lorebook_entry(project_id: int, entry_id: int):
    project = _owned_project(project_id)
    entry = _owned_entry(project, entry_id)
    payload = request.get_json(silent=True) or {}

    try:
        update_entry(entry, payload)
    except LorebookEntryError as exc:
        db.session.rollback()
        return jsonify({"error": str(exc)}), 400

    db.session.commit()
    return jsonify(serialize_entry(entry))


@bp.route("/<int:project_id>/lorebook/<int:entry_id>", methods=["DELETE"])
@login_required
def delete_lorebook_entry(project_id: int, entry_id: int):
    project = _owned_project(project_id)
    entry = _owned_entry(project, entry_id)
    db.session.delete(entry)
    db.session.commit()
    return jsonify({"deleted": entry_id})


@bp.route("/<int:project_id>/lorebook/<int:entry_id>/suggestions", methods=["GET"])
@login_required
def lorebook_suggestions(project_id: int, entry_id: int):
    project = _owned_project(project_id)
    entry = _owned_entry(project, entry_id)
    return jsonify({"id": entry.id, "suggestions": suggest_keywords(entry.to_snapshot())})


@bp.route("/<int:project_id>/lorebook/match", methods=["POST"])
@login_required
def match_lorebook(project_id: int):
    project = _owned_project(project_id)
    payload = request.get_json(silent=True) or {}

    context = payload.get("context")
    if not isinstance(context, str) or not context.strip():
        return jsonify({"error": "Provide the context text to match against."}), 400

    try:
        max_entries = _optional_int(
            payload, "max_entries", current_app.config["LOREBOOK_MAX_ENTRIES"]
        )
        token_budget = _optional_int(
            payload, "token_budget", current_app.config["LOREBOOK_TOKEN_BUDGET"]
        )
    except (TypeError, ValueError):
        return jsonify({"error": "max_entries and token_budget must be whole numbers."}), 400

    triggered = match_lorebook_entries(
        load_snapshots(project.id),
        context,
        max_entries=max_entries,
        token_budget=token_budget,
    )

    if payload.get("record_usage", True) and triggered:
        record_lorebook_usage([item.entry.id for item in triggered])

    return jsonify(
        {
            "triggered": [
                {
                    "id": item.entry.id,
                    "key": item.entry.key,
                    "value": item.entry.value,
                    "category": item.entry.category,
                    "matched_keywords": item.matched_keywords,
                    "relevance_score": item.relevance_score,
                }
                for item in triggered
            ],
            "formatted_context": format_triggered_entries(triggered),
            "count": len(triggered),
        }
    )


@bp.route("/<int:project_id>/context", methods=["POST"])
@login_required
def build_context(project_id: int):
    project = _owned_project(project_id)
    payload = request.get_json(silent=True) or {}

    scene_context = payload.get("scene_context") or ""
    if not isinstance(scene_context, str):
        return jsonify({"error": "scene_context must be text."}), 400

    try:
        character_id = _optional_int(payload, "character_id", None)
    except (TypeError, ValueError):
        return jsonify({"error": "character_id must be a whole number."}), 400

    try:
        context = build_ai_context(
            current_user,
            project,
            scene_context,
            character_id=character_id,
            include_user_instructions=bool(payload.get("include_user_instructions", True)),
            include_lorebook=bool(payload.get("include_lorebook", True)),
            include_characters=bool(payload.get("include_characters", True)),
        )
    except Exception:  # pragma: no cover
        current_app.logger.exception("Unexpected error while building AI context")
        return jsonify({"error": "We couldn't build the prompt context right now."}), 500

    if context.triggered_lorebook_ids:
        record_lorebook_usage(context.triggered_lorebook_ids)

    system_prompt, context_text = format_context_for_ai(context)
    breakdown = build_context_breakdown(
        system_prompt=context.system_prompt,
        user_instructions=context.user_instructions,
        scene_context=context.scene_context,
        lorebook_entries=[context.lorebook_entries] if context.lorebook_entries else [],
        character_info=[context.character_info] if context.character_info else [],
        user_prompt=payload.get("user_prompt") or "",
    )

    return jsonify(
        {
            "system_prompt": system_prompt,
            "context_text": context_text,
            "triggered_lorebook_ids": context.triggered_lorebook_ids,
            "breakdown": breakdown.as_dict(),
        }
    )


@bp.route("/<int:project_id>/instructions", methods=["POST"])
@login_required
def add_instruction(project_id: int):
    project = _owned_project(project_id)
    payload = request.get_json(silent=True) or {}

    text_value = payload.get("instructions")
    if not isinstance(text_value, str) or not text_value.strip():
        return jsonify({"error": "Write the instructions before saving."}), 400

    scope = payload.get("scope") or "project"
    if scope not in SCOPE_ORDER:
        return jsonify({"error": "Scope must be global, project, or character."}), 400

    try:
        priority = _optional_int(payload, "priority", 0)
        character_id = _optional_int(payload, "character_id", None)
    except (TypeError, ValueError):
        return jsonify({"error": "priority and character_id must be whole numbers."}), 400

    if scope == "character":
        character = CharacterProfile.query.filter_by(
            id=character_id, project_id=project.id
        ).first()
        if not character:
            return jsonify({"error": "We couldn't find the selected character."}), 404

    instruction = UserInstruction(
        user=current_user._get_current_object(),
        project=project if scope != "global" else None,
        character_id=character_id if scope == "character" else None,
        scope=scope,
        instructions=text_value.strip(),
        priority=priority,
    )
    db.session.add(instruction)
    db.session.commit()

    return (
        jsonify(
            {
                "id": instruction.id,
                "scope": instruction.scope,
                "instructions": instruction.instructions,
                "priority": instruction.priority,
                "is_enabled": instruction.is_enabled,
            }
        ),
        201,
    )
