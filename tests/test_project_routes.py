import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from lorekeeper import create_app
from lorekeeper.config import TestConfig
from lorekeeper.extensions import db
from lorekeeper.models import CharacterProfile, LorebookEntry, Project, User, UserInstruction


@pytest.fixture
def app_instance():
    app = create_app(TestConfig)
    app.config["WTF_CSRF_ENABLED"] = False
    ctx = app.app_context()
    ctx.push()
    db.create_all()
    yield app
    db.session.remove()
    db.drop_all()
    ctx.pop()


@pytest.fixture
def client(app_instance):
    return app_instance.test_client()


@pytest.fixture
def user(app_instance):
    user = User(email="user@example.com", display_name="Test User")
    user.set_password("password123")
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def project(app_instance, user):
    project = Project(title="Demo Project", description="Desc", owner=user)
    db.session.add(project)
    db.session.commit()
    return project


def _login(client, user):
    client.post(
        "/login",
        data={"email": user.email, "password": "password123"},
        follow_redirects=True,
    )


def test_dashboard_creates_project(client, user):
    _login(client, user)

    response = client.post(
        "/dashboard",
        data={"title": "  Skyward  ", "description": "", "submit": "Create project"},
    )

    assert response.status_code == 302
    project = Project.query.one()
    assert project.title == "Skyward"
    assert project.description is None
    assert response.headers["Location"].endswith(f"/projects/{project.id}")


def test_login_ignores_offsite_next_url(client, user):
    response = client.post(
        "/login?next=https://evil.example.com/",
        data={"email": "USER@example.com", "password": "password123"},
    )

    assert response.status_code == 302
    assert response.headers["Location"].endswith("/dashboard")


def test_invalid_character_submission_shows_flash(client, user, project):
    _login(client, user)

    response = client.post(
        f"/projects/{project.id}",
        data={
            "character-csrf_token": "",
            "character-name": "",
            "character-role": "",
            "character-background": "",
            "character-goals": "",
            "character-conflict": "",
            "character-notes": "",
            "character-submit": "Save character",
        },
        follow_redirects=True,
    )

    assert b"Add a character name before saving." in response.data
    assert CharacterProfile.query.count() == 0


def test_valid_character_submission_creates_profile(client, user, project):
    _login(client, user)

    response = client.post(
        f"/projects/{project.id}",
        data={
            "character-csrf_token": "",
            "character-name": "Nova",
            "character-role": "Scout",
            "character-background": "Raised among smugglers.",
            "character-goals": "Wants to chart safe passages.",
            "character-conflict": "Owes a debt to crime lords.",
            "character-notes": "Distrusts authority.",
            "character-submit": "Save character",
        },
        follow_redirects=True,
    )

    assert b"Character added to the project." in response.data
    assert CharacterProfile.query.count() == 1
    assert CharacterProfile.query.first().name == "Nova"


def test_context_endpoint_builds_prompt_and_records_usage(client, user, project):
    character = CharacterProfile(project=project, name="Nova", role="Scout")
    entry = LorebookEntry(
        project=project, key="Smuggler Docks", value="Where debts are paid in silence."
    )
    db.session.add_all([character, entry])
    db.session.commit()
    _login(client, user)

    response = client.post(
        f"/projects/{project.id}/instructions",
        json={"scope": "character", "character_id": character.id, "instructions": "Keep Nova terse."},
    )
    assert response.status_code == 201
    assert UserInstruction.query.one().character_id == character.id

    response = client.post(
        f"/projects/{project.id}/context",
        json={
            "scene_context": "Nova slipped through the smuggler docks.",
            "character_id": character.id,
            "user_prompt": "Continue.",
        },
    )

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["triggered_lorebook_ids"] == [entry.id]
    assert payload["system_prompt"].endswith("## User Instructions\nKeep Nova terse.")
    assert payload["context_text"].startswith("# World Information\n\n[Smuggler Docks]")
    assert "# Character: Nova" in payload["context_text"]
    assert payload["context_text"].endswith("# Current Scene\n\nNova slipped through the smuggler docks.")
    assert payload["breakdown"]["lorebook_entries"]["count"] == 1
    assert payload["breakdown"]["total"] > 0

    db.session.expire_all()
    assert db.session.get(LorebookEntry, entry.id).use_count == 1


def test_instruction_rejects_unknown_character(client, user, project):
    _login(client, user)

    response = client.post(
        f"/projects/{project.id}/instructions",
        json={"scope": "character", "character_id": 999, "instructions": "Whisper."},
    )

    assert response.status_code == 404
    assert UserInstruction.query.count() == 0
