from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Optional

from flask_login import UserMixin
from werkzeug.security import check_password_hash, generate_password_hash

from .extensions import db, login_manager
from .services.lorebook_matcher import LorebookEntrySnapshot


LOGGER = logging.getLogger(__name__)


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    display_name = db.Column(db.String(120), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    projects = db.relationship("Project", backref="owner", lazy=True, cascade="all, delete-orphan")
    instructions = db.relationship(
        "UserInstruction", backref="user", lazy=True, cascade="all, delete-orphan"
    )

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def __repr__(self) -> str:  # pragma: no cover - repr for debugging
        return f"<User {self.email}>"


@login_manager.user_loader
def load_user(user_id: str) -> Optional["User"]:
    return User.query.get(int(user_id))


class Project(db.Model):
    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    characters = db.relationship(
        "CharacterProfile",
        backref="project",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="CharacterProfile.name",
    )
    lorebook_entries = db.relationship(
        "LorebookEntry",
        backref="project",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="LorebookEntry.id",
    )
    instructions = db.relationship(
        "UserInstruction",
        backref="project",
        lazy=True,
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Project {self.title}>"


class CharacterProfile(db.Model):
    __tablename__ = "character_profiles"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    background = db.Column(db.Text, nullable=True)
    role = db.Column(db.String(120), nullable=True)
    goals = db.Column(db.Text, nullable=True)
    conflict = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<CharacterProfile {self.name}>"


class LorebookEntry(db.Model):
    __tablename__ = "lorebook_entries"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=False, index=True)
    key = db.Column(db.String(200), nullable=False)
    value = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(120), nullable=True)
    keys = db.Column(db.Text, nullable=True)
    trigger_mode = db.Column(db.String(20), nullable=False, default="auto")
    searchable = db.Column(db.Boolean, nullable=False, default=True)
    regex_pattern = db.Column(db.String(500), nullable=True)
    priority = db.Column(db.Integer, nullable=False, default=0)
    context_strategy = db.Column(db.String(20), nullable=False, default="full")
    summary = db.Column(db.Text, nullable=True)
    is_archived = db.Column(db.Boolean, nullable=False, default=False)
    last_used = db.Column(db.DateTime, nullable=True)
    use_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<LorebookEntry {self.key} (project {self.project_id})>"

    @property
    def keys_list(self) -> list[str]:
        """Additional trigger keys decoded from the stored JSON array.

        Malformed data is logged and treated as an empty list so a single bad
        row never breaks matching for the rest of the project.
        """

        if not self.keys:
            return []
        try:
            data = json.loads(self.keys)
        except (TypeError, ValueError):
            LOGGER.warning("Failed to parse lorebook keys for entry %s: %r", self.id, self.keys)
            return []
        if not isinstance(data, list):
            LOGGER.warning("Lorebook keys for entry %s are not a list: %r", self.id, self.keys)
            return []
        return [item.strip() for item in data if isinstance(item, str) and item.strip()]

    def to_snapshot(self) -> LorebookEntrySnapshot:
        return LorebookEntrySnapshot(
            id=self.id,
            key=self.key or "",
            value=self.value or "",
            category=self.category,
            keys=tuple(self.keys_list),
            trigger_mode=self.trigger_mode or "auto",
            searchable=bool(self.searchable),
            regex_pattern=self.regex_pattern,
            priority=self.priority or 0,
            last_used=self.last_used,
            use_count=self.use_count or 0,
            context_strategy=self.context_strategy or "full",
        )


class UserInstruction(db.Model):
    __tablename__ = "user_instructions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=True, index=True)
    character_id = db.Column(db.Integer, db.ForeignKey("character_profiles.id"), nullable=True, index=True)
    scope = db.Column(db.String(20), nullable=False, default="global")
    instructions = db.Column(db.Text, nullable=False)
    priority = db.Column(db.Integer, nullable=False, default=0)
    is_enabled = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<UserInstruction {self.scope} ({self.priority})>"
