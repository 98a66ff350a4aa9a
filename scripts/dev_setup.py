"""Write a development .env file and create the Lorekeeper database."""
from __future__ import annotations

import argparse
import shutil
import sys
from pathlib import Path
from typing import Dict

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from lorekeeper import create_app, db

DEFAULT_ENV_PATH = REPO_ROOT / ".env"
BACKUP_SUFFIX = ".bak"


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Create or update a .env file with the Flask settings required for local development "
            "and initialize the SQLite database."
        )
    )
    parser.add_argument(
        "--flask-app",
        default="lorekeeper:create_app",
        help="Entry point used by Flask (default: lorekeeper:create_app)",
    )
    parser.add_argument(
        "--secret-key",
        required=False,
        help="Secret key for Flask sessions. Keeps the current value in .env when omitted.",
    )
    parser.add_argument(
        "--database-url",
        help="Override DATABASE_URL (optional).",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Application log level (optional).",
    )
    parser.add_argument(
        "--lorebook-max-entries",
        type=int,
        help="Default cap on lorebook entries injected per prompt (optional).",
    )
    parser.add_argument(
        "--lorebook-token-budget",
        type=int,
        help="Default token budget for the lorebook block (optional).",
    )
    parser.add_argument(
        "--env-path",
        type=Path,
        default=DEFAULT_ENV_PATH,
        help="Path to the .env file that should be created/updated.",
    )
    parser.add_argument(
        "--skip-db",
        action="store_true",
        help="Only update the .env file without touching the database.",
    )
    return parser.parse_args()


def read_env(path: Path) -> Dict[str, str]:
    if not path.exists():
        return {}
    data: Dict[str, str] = {}
    for line in path.read_text().splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, _, value = stripped.partition("=")
        data[key.strip()] = value.strip()
    return data


def write_env(path: Path, values: Dict[str, str]) -> None:
    if path.exists():
        backup_path = path.with_suffix(path.suffix + BACKUP_SUFFIX)
        shutil.copy(path, backup_path)
        print(f"Existing {path.name} backed up to {backup_path.name}.")
    lines = [f"{key}={value}" for key, value in values.items()]
    path.write_text("\n".join(lines) + "\n")
    print(f"Updated environment variables written to {path}.")


def collect_env_updates(args: argparse.Namespace) -> Dict[str, str]:
    updates = {"FLASK_APP": args.flask_app}
    optional = {
        "SECRET_KEY": args.secret_key,
        "DATABASE_URL": args.database_url,
        "LOG_LEVEL": args.log_level,
        "LOREBOOK_MAX_ENTRIES": args.lorebook_max_entries,
        "LOREBOOK_TOKEN_BUDGET": args.lorebook_token_budget,
    }
    for key, value in optional.items():
        if value is not None:
            updates[key] = str(value)
    return updates


def initialize_database() -> None:
    app = create_app()
    with app.app_context():
        db.create_all()
        print(f"Database initialized ({app.config['SQLALCHEMY_DATABASE_URI']}).")


def main() -> None:
    args = parse_args()
    env_values = read_env(args.env_path)
    env_values.update(collect_env_updates(args))
    write_env(args.env_path, env_values)

    if not args.skip_db:
        initialize_database()
    else:
        print("Database initialization skipped.")

    print("\nSetup complete! Summary:")
    for key in sorted(env_values):
        print(f"  {key}={env_values[key]}")


if __name__ == "__main__":
    main()
