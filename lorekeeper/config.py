import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _default_sqlite_uri() -> str:
    instance_path = BASE_DIR / "instance"
    instance_path.mkdir(exist_ok=True)
    return f"sqlite:///{instance_path / 'lorekeeper.db'}"


class Config:
    """Base configuration shared across environments."""

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-change-me")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", _default_sqlite_uri())
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_TIME_LIMIT = None

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

    LOREBOOK_MAX_ENTRIES = int(os.environ.get("LOREBOOK_MAX_ENTRIES", 10))
    LOREBOOK_TOKEN_BUDGET = int(os.environ.get("LOREBOOK_TOKEN_BUDGET", 2000))
    DEFAULT_SYSTEM_PROMPT = os.environ.get(
        "DEFAULT_SYSTEM_PROMPT",
        "You are a creative writing assistant helping authors craft engaging stories.",
    )


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
