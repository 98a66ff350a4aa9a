import json
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy.exc import SQLAlchemyError

sys.path.append(str(Path(__file__).resolve().parents[1]))

from lorekeeper import create_app
from lorekeeper.config import TestConfig
from lorekeeper.extensions import db
from lorekeeper.models import LorebookEntry, Project, User
from lorekeeper.services.lorebook_matcher import record_lorebook_usage


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
    user = User(email="writer@example.com", display_name="Test Writer")
    user.set_password("password123")
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def project(app_instance, user):
    project = Project(title="Ember Chronicles", description="Desc", owner=user)
    db.session.add(project)
    db.session.commit()
    return project


def _login(client, user):
    client.post(
        "/login",
        data={"email": user.email, "password": "password123"},
        follow_redirects=True,
    )


def _add_entry(project, **fields):
    data = {"key": "Dragon", "value": "Winged beasts of the north."}
    data.update(fields)
    if isinstance(data.get("keys"), list):
        data["keys"] = json.dumps(data["keys"])
    entry = LorebookEntry(project=project, **data)
    db.session.add(entry)
    db.session.commit()
    return entry


def test_create_entry_stores_keys_and_defaults(client, user, project):
    _login(client, user)

    response = client.post(
        f"/projects/{project.id}/lorebook",
        json={
            "key": "Arden",
            "value": "A river city built on stilts.",
            "category": "Locations",
            "keys": ["river city", "  ", "stilts"],
            "priority": "3",
        },
    )

    assert response.status_code == 201
    payload = response.get_json()
    assert payload["keys"] == ["river city", "stilts"]
    assert payload["trigger_mode"] == "auto"
    assert payload["searchable"] is True
    assert payload["priority"] == 3
    assert payload["use_count"] == 0

    stored = LorebookEntry.query.one()
    assert json.loads(stored.keys) == ["river city", "stilts"]


@pytest.mark.parametrize(
    "body, message",
    [
        ({"value": "No key"}, "trigger key"),
        ({"key": "Arden"}, "entry text"),
        ({"key": "Arden", "value": "x", "trigger_mode": "sometimes"}, "Trigger mode"),
        ({"key": "Arden", "value": "x", "regex_pattern": "(["}, "Invalid regex"),
        ({"key": "Arden", "value": "x", "keys": [1, 2]}, "list of strings"),
    ],
)
def test_create_entry_rejects_invalid_payloads(client, user, project, body, message):
    _login(client, user)

    response = client.post(f"/projects/{project.id}/lorebook", json=body)

    assert response.status_code == 400
    assert message in response.get_json()["error"]
    assert LorebookEntry.query.count() == 0


def test_list_entries_sorts_and_filters(client, user, project):
    _add_entry(project, key="Low", priority=1, category="Places")
    _add_entry(project, key="High", priority=9, category="Places")
    _add_entry(project, key="Archived", priority=20, is_archived=True)
    _add_entry(project, key="Other", priority=5, category="People")
    _login(client, user)

    response = client.get(f"/projects/{project.id}/lorebook?sort_by=priority")
    assert [item["key"] for item in response.get_json()] == ["High", "Other", "Low"]

    response = client.get(f"/projects/{project.id}/lorebook?category=Places&sort_by=priority")
    assert [item["key"] for item in response.get_json()] == ["High", "Low"]


def test_update_and_delete_entry(client, user, project):
    entry = _add_entry(project)
    _login(client, user)

    response = client.patch(
        f"/projects/{project.id}/lorebook/{entry.id}",
        json={"priority": 7, "trigger_mode": "manual", "use_count": 99},
    )
    assert response.status_code == 200
    payload = response.get_json()
    assert payload["priority"] == 7
    assert payload["trigger_mode"] == "manual"
    assert payload["key"] == "Dragon"
    assert payload["use_count"] == 0

    response = client.delete(f"/projects/{project.id}/lorebook/{entry.id}")
    assert response.status_code == 200
    assert LorebookEntry.query.count() == 0


def test_match_returns_ranked_entries_and_records_usage(client, user, project):
    dragon = _add_entry(project, keys=["fire-breather"], priority=5)
    _add_entry(project, key="Citadel", value="Seat of the council.", category="Places")
    _add_entry(project, key="Secret", value="Never automatic.", trigger_mode="manual")
    _login(client, user)

    response = client.post(
        f"/projects/{project.id}/lorebook/match",
        json={"context": "The dragon flew over the fire-breather's lair near the Citadel. A secret."},
    )

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["count"] == 2
    assert [item["key"] for item in payload["triggered"]] == ["Dragon", "Citadel"]
    assert payload["triggered"][0]["matched_keywords"] == ["Dragon", "fire-breather"]
    assert payload["triggered"][0]["relevance_score"] == 25
    assert payload["formatted_context"].startswith("# World Information\n\n[Dragon]\n")
    assert "[Citadel] (Places)" in payload["formatted_context"]

    db.session.expire_all()
    refreshed = db.session.get(LorebookEntry, dragon.id)
    assert refreshed.use_count == 1
    assert refreshed.last_used is not None
    secret = LorebookEntry.query.filter_by(key="Secret").one()
    assert secret.use_count == 0


def test_match_respects_limits_and_record_usage_flag(client, user, project):
    _add_entry(project, key="Dragon", priority=1)
    _add_entry(project, key="Wyvern", priority=3)
    _login(client, user)

    response = client.post(
        f"/projects/{project.id}/lorebook/match",
        json={
            "context": "A dragon fought a wyvern.",
            "max_entries": 1,
            "record_usage": False,
        },
    )

    payload = response.get_json()
    assert [item["key"] for item in payload["triggered"]] == ["Wyvern"]
    db.session.expire_all()
    assert all(entry.use_count == 0 for entry in LorebookEntry.query.all())


def test_match_recently_used_entry_gets_bonus(client, user, project):
    _add_entry(project, key="Dragon", last_used=datetime.utcnow() - timedelta(days=2))
    _login(client, user)

    response = client.post(
        f"/projects/{project.id}/lorebook/match",
        json={"context": "dragon", "record_usage": False},
    )

    assert response.get_json()["triggered"][0]["relevance_score"] == 13


def test_match_requires_context(client, user, project):
    _login(client, user)

    response = client.post(f"/projects/{project.id}/lorebook/match", json={"context": "  "})
    assert response.status_code == 400

    response = client.post(
        f"/projects/{project.id}/lorebook/match",
        json={"context": "dragon", "max_entries": "many"},
    )
    assert response.status_code == 400


def test_malformed_stored_keys_do_not_break_matching(client, user, project):
    entry = _add_entry(project, key="Citadel")
    entry.keys = "not json ["
    db.session.commit()
    _login(client, user)

    response = client.post(
        f"/projects/{project.id}/lorebook/match",
        json={"context": "The citadel gates", "record_usage": False},
    )

    assert response.get_json()["count"] == 1


def test_other_users_cannot_touch_project(client, project):
    intruder = User(email="intruder@example.com", display_name="Intruder")
    intruder.set_password("password123")
    db.session.add(intruder)
    db.session.commit()
    _login(client, intruder)

    assert client.get(f"/projects/{project.id}/lorebook").status_code == 403
    response = client.post(f"/projects/{project.id}/lorebook/match", json={"context": "dragon"})
    assert response.status_code == 403


def test_suggestions_endpoint(client, user, project):
    entry = _add_entry(
        project,
        key="Citadel",
        value='The Silver Citadel hosts the "Moonlit Council".',
        category="Places",
    )
    _login(client, user)

    response = client.get(f"/projects/{project.id}/lorebook/{entry.id}/suggestions")

    assert response.status_code == 200
    assert response.get_json()["suggestions"] == [
        "Silver",
        "Citadel",
        "Moonlit",
        "Council",
        "Moonlit Council",
        "places",
    ]


def test_global_lorebook_lists_entries_across_projects(client, user, project):
    second = Project(title="Second Book", owner=user)
    db.session.add(second)
    db.session.commit()
    _add_entry(project, key="Arden", category="Places")
    _add_entry(second, key="Mira", category="People")
    _login(client, user)

    response = client.get("/lorebook")
    payload = response.get_json()
    assert sorted(item["key"] for item in payload) == ["Arden", "Mira"]
    assert {item["project"]["title"] for item in payload} == {"Ember Chronicles", "Second Book"}

    response = client.get("/lorebook?category=People")
    assert [item["key"] for item in response.get_json()] == ["Mira"]

    response = client.get("/lorebook?category=all")
    assert len(response.get_json()) == 2


def test_record_usage_increments_each_entry(app_instance, project):
    first = _add_entry(project, key="Arden")
    second = _add_entry(project, key="Mira", use_count=4)

    record_lorebook_usage([first.id, second.id])
    record_lorebook_usage([first.id])

    db.session.expire_all()
    assert db.session.get(LorebookEntry, first.id).use_count == 2
    assert db.session.get(LorebookEntry, second.id).use_count == 5
    assert db.session.get(LorebookEntry, second.id).last_used is not None


def test_record_usage_swallows_store_errors(monkeypatch, app_instance, project, caplog):
    entry = _add_entry(project)

    def failing_commit():
        raise SQLAlchemyError("database is locked")

    monkeypatch.setattr(db.session, "commit", failing_commit)

    with caplog.at_level("ERROR"):
        record_lorebook_usage([entry.id])

    monkeypatch.undo()
    db.session.expire_all()
    assert db.session.get(LorebookEntry, entry.id).use_count == 0
    assert "Failed to record lorebook usage" in caplog.text
