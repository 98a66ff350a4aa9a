"""Database helper utilities for ensuring schema consistency."""
from __future__ import annotations

from typing import Iterable, Set

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from .extensions import db


# Columns added to ``lorebook_entries`` after its first release.
LOREBOOK_COLUMN_UPGRADES = {
    "regex_pattern": "ALTER TABLE lorebook_entries ADD COLUMN regex_pattern VARCHAR(500)",
    "context_strategy": (
        "ALTER TABLE lorebook_entries ADD COLUMN context_strategy VARCHAR(20) NOT NULL DEFAULT 'full'"
    ),
    "summary": "ALTER TABLE lorebook_entries ADD COLUMN summary TEXT",
    "is_archived": "ALTER TABLE lorebook_entries ADD COLUMN is_archived BOOLEAN NOT NULL DEFAULT 0",
    "last_used": "ALTER TABLE lorebook_entries ADD COLUMN last_used DATETIME",
    "use_count": "ALTER TABLE lorebook_entries ADD COLUMN use_count INTEGER NOT NULL DEFAULT 0",
}


def _get_column_names(table_name: str) -> Set[str]:
    inspector = inspect(db.engine)
    return {column["name"] for column in inspector.get_columns(table_name)}


def ensure_database_schema() -> None:
    """Ensure that essential schema updates are applied.

    Runs on every application start. Missing tables are created and the
    ``lorebook_entries`` table is brought up to date with the usage tracking
    and matching columns introduced after the initial release.
    """

    try:
        inspector = inspect(db.engine)
        table_names: Iterable[str] = inspector.get_table_names()

        if "projects" not in table_names:
            db.create_all()
            inspector = inspect(db.engine)
            table_names = inspector.get_table_names()

        # Import locally to avoid circular import issues during application setup.
        from .models import CharacterProfile, LorebookEntry, UserInstruction

        required_tables = {
            "character_profiles": CharacterProfile.__table__,
            "lorebook_entries": LorebookEntry.__table__,
            "user_instructions": UserInstruction.__table__,
        }

        for table_name, table in required_tables.items():
            if table_name not in table_names:
                table.create(bind=db.engine)

        if "lorebook_entries" in table_names:
            entry_columns = _get_column_names("lorebook_entries")
            for column_name, statement in LOREBOOK_COLUMN_UPGRADES.items():
                if column_name in entry_columns:
                    continue
                with db.engine.begin() as connection:
                    connection.execute(text(statement))
    except SQLAlchemyError:
        # Re-raise so the application does not continue half configured.
        raise
