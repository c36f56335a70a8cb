from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from loguru import logger

from taleweaver import EngineSettings, FileStorageAdapter, Story
from taleweaver.api import SessionManager, create_app


@pytest.fixture(autouse=True)
def _reset_log_sinks() -> Iterator[None]:
    yield
    logger.remove()


@pytest.fixture()
def client(quest_story: Story) -> TestClient:
    app = create_app(SessionManager(quest_story), settings=EngineSettings())
    return TestClient(app)


def _new_session(client: TestClient, **payload: object) -> dict:
    response = client.post("/api/sessions", json=payload or None)
    assert response.status_code == 201
    return response.json()


def test_create_session_reports_node_and_choice_availability(client: TestClient) -> None:
    session = _new_session(client)

    assert session["node"] == {"id": "gate", "text": "The city gate looms.", "is_terminal": False}
    assert [(choice["text"], choice["available"]) for choice in session["choices"]] == [
        ("Enter", True),
        ("Bribe the guard", False),
    ]
    assert session["choices"][1]["reason"].startswith("Insufficient inventory")
    assert session["history"] == ["gate"]
    assert session["can_undo"] is False

    listed = client.get("/api/sessions").json()
    assert listed["data"] == [session["session_id"]]


def test_make_choice_advances_the_session(client: TestClient) -> None:
    session_id = _new_session(client)["session_id"]

    response = client.post(f"/api/sessions/{session_id}/choices", json={"index": 0})

    assert response.status_code == 200
    body = response.json()
    assert body["node"]["id"] == "square"
    assert body["flags"] == {"entered": True}
    assert body["can_undo"] is True

    choices = client.get(f"/api/sessions/{session_id}/choices").json()
    assert [choice["text"] for choice in choices] == ["Visit the smith", "Closed shop", "Go back"]


def test_invalid_choice_index_is_a_bad_request(client: TestClient) -> None:
    session_id = _new_session(client)["session_id"]

    response = client.post(f"/api/sessions/{session_id}/choices", json={"index": 9})

    assert response.status_code == 400
    assert "Invalid choice index" in response.json()["detail"]


def test_rejected_choice_returns_conflict(vault_story: Story) -> None:
    client = TestClient(create_app(SessionManager(vault_story), settings=EngineSettings()))
    session_id = _new_session(client)["session_id"]

    rejected = client.post(f"/api/sessions/{session_id}/choices", json={"index": 0})

    assert rejected.status_code == 409
    body = rejected.json()
    assert body["failed_rule"] == "flag-conditions"
    assert body["failed_conditions"] == ["hasKey"]
    assert body["available_choices"] == []

    flagged = client.put(f"/api/sessions/{session_id}/flags/hasKey", json={"value": True})
    assert flagged.status_code == 200
    assert flagged.json()["choices"][0]["available"] is True

    accepted = client.post(f"/api/sessions/{session_id}/choices", json={"index": 0})
    assert accepted.status_code == 200
    assert accepted.json()["is_complete"] is True


def test_unknown_sessions_and_nodes_return_not_found(client: TestClient) -> None:
    assert client.get("/api/sessions/missing").status_code == 404
    assert client.post("/api/sessions/missing/undo").status_code == 404

    session_id = _new_session(client)["session_id"]
    response = client.post(f"/api/sessions/{session_id}/navigate", json={"node_id": "nowhere"})
    assert response.status_code == 404

    moved = client.post(f"/api/sessions/{session_id}/navigate", json={"node_id": "palace"})
    assert moved.json()["node"]["is_terminal"] is True


def test_undo_redo_and_reset(client: TestClient) -> None:
    session_id = _new_session(client)["session_id"]
    client.post(f"/api/sessions/{session_id}/choices", json={"index": 0})

    undone = client.post(f"/api/sessions/{session_id}/undo").json()
    assert undone["success"] is True
    assert undone["session"]["node"]["id"] == "gate"
    assert (undone["undo_count"], undone["redo_count"]) == (0, 1)

    redone = client.post(f"/api/sessions/{session_id}/redo").json()
    assert redone["session"]["node"]["id"] == "square"

    empty = client.post(f"/api/sessions/{session_id}/redo").json()
    assert empty["success"] is False
    assert empty["error"] == "No operations to redo"

    reset = client.post(f"/api/sessions/{session_id}/reset").json()
    assert reset["node"]["id"] == "gate"
    assert reset["flags"] == {}


def test_checkpoints_can_be_created_listed_and_restored(client: TestClient) -> None:
    session_id = _new_session(client)["session_id"]
    client.post(f"/api/sessions/{session_id}/choices", json={"index": 0})

    created = client.post(
        f"/api/sessions/{session_id}/checkpoints",
        json={"name": "market", "description": "before shopping", "tags": ["hub"]},
    )
    assert created.status_code == 201
    checkpoint = created.json()
    assert checkpoint["node_id"] == "square"
    assert checkpoint["tags"] == ["hub"]
    assert checkpoint["metadata"]["choiceCount"] == 3

    client.post(f"/api/sessions/{session_id}/reset")
    listed = client.get(f"/api/sessions/{session_id}/checkpoints").json()
    assert [entry["name"] for entry in listed["data"]] == ["market"]

    restored = client.post(
        f"/api/sessions/{session_id}/checkpoints/{checkpoint['id']}/restore"
    )
    assert restored.status_code == 200
    assert restored.json()["node"]["id"] == "square"

    missing = client.post(f"/api/sessions/{session_id}/checkpoints/cp-missing/restore")
    assert missing.status_code == 404


def test_saves_are_shared_between_sessions(quest_story: Story, tmp_path: Path) -> None:
    manager = SessionManager(quest_story, storage=FileStorageAdapter(tmp_path))
    client = TestClient(create_app(manager, settings=EngineSettings()))
    first = _new_session(client)["session_id"]
    client.post(f"/api/sessions/{first}/choices", json={"index": 0})

    saved = client.post(f"/api/sessions/{first}/saves/slot-1")
    assert saved.status_code == 200
    assert saved.json()["data"]["key"] == "slot-1"
    assert (tmp_path / "slot-1.json").is_file()

    second = _new_session(client)["session_id"]
    loaded = client.post(f"/api/sessions/{second}/saves/slot-1/load")
    assert loaded.status_code == 200
    assert client.get(f"/api/sessions/{second}").json()["node"]["id"] == "square"

    assert client.post(f"/api/sessions/{second}/saves/slot-9/load").status_code == 404


def test_export_and_import_envelopes(client: TestClient) -> None:
    first = _new_session(client)["session_id"]
    client.post(f"/api/sessions/{first}/choices", json={"index": 0})

    envelope = client.get(f"/api/sessions/{first}/export").json()
    assert envelope["state"]["currentNodeId"] == "square"
    assert envelope["metadata"]["checksum"]

    second = _new_session(client)["session_id"]
    imported = client.post(f"/api/sessions/{second}/import", json=envelope)
    assert imported.status_code == 200
    assert imported.json()["success"] is True

    envelope["metadata"]["storyId"] = "story-1-0000000000000000"
    rejected = client.post(f"/api/sessions/{second}/import", json=envelope)
    assert rejected.status_code == 422
    assert rejected.json()["detail"].startswith("Story mismatch")


def test_sessions_can_enable_autosave_and_be_deleted(client: TestClient) -> None:
    session_id = _new_session(client, autosave=True)["session_id"]
    client.post(f"/api/sessions/{session_id}/choices", json={"index": 0})

    checkpoints = client.get(f"/api/sessions/{session_id}/checkpoints").json()["data"]
    assert len(checkpoints) == 1
    assert "autosave" in checkpoints[0]["tags"]

    assert client.delete(f"/api/sessions/{session_id}").status_code == 204
    assert client.get(f"/api/sessions/{session_id}").status_code == 404
    assert client.delete(f"/api/sessions/{session_id}").status_code == 404


def test_create_app_loads_story_from_settings(tmp_path: Path, quest_story: Story) -> None:
    import json

    story_file = tmp_path / "story.json"
    story_file.write_text(json.dumps(quest_story.to_payload()), encoding="utf-8")
    settings = EngineSettings(story_path=story_file, save_dir=tmp_path / "saves")

    client = TestClient(create_app(settings=settings))
    session = _new_session(client)

    assert session["node"]["id"] == "gate"
    client.post(f"/api/sessions/{session['session_id']}/saves/first")
    assert (tmp_path / "saves" / "first.json").is_file()


def test_create_app_defaults_to_demo_story() -> None:
    client = TestClient(create_app(settings=EngineSettings()))

    session = _new_session(client)

    assert session["node"]["id"] == "start"


def test_create_app_applies_configured_log_level(
    quest_story: Story, capsys: pytest.CaptureFixture[str]
) -> None:
    app = create_app(SessionManager(quest_story), settings=EngineSettings(log_level="WARNING"))

    logger.info("routine detail")
    logger.warning("needs attention")

    assert len(app.state.log_handler_ids) == 1
    output = capsys.readouterr().err
    assert "needs attention" in output
    assert "routine detail" not in output
    assert "| WARNING | " in output
