"""Tests for the HTTP and websocket API."""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from roundtable.app import create_app
from roundtable.models import CharacterRecord, SceneRecord
from roundtable.storage import JsonStorage


@pytest.fixture
def client(tmp_path, llm):
    storage = JsonStorage(tmp_path)

    async def seed():
        await storage.save_character(CharacterRecord(id="ava", name="Ava"))
        await storage.create_scene(SceneRecord(id="harbor", active_characters=["ava"]))

    asyncio.run(seed())
    with TestClient(create_app(tmp_path, llm=llm)) as client:
        yield client


def test_submit_input(client, llm):
    llm.script("director", '{"characters": ["Ava"]}')
    llm.script("character", json.dumps({"response": "Ahoy!", "characterState": {}}))

    resp = client.post("/api/scenes/harbor/input", json={"message": "Hello"})

    assert resp.status_code == 200
    assert resp.json() == {"responses": [{"sender": "Ava", "content": "Ahoy!"}], "lore": []}


def test_submit_input_unknown_scene(client):
    resp = client.post("/api/scenes/nowhere/input", json={"message": "Hello"})
    assert resp.status_code == 404


def test_storage_failure_is_503(client, tmp_path):
    (tmp_path / "scenes" / "broken.json").write_text("{oops")
    resp = client.post("/api/scenes/broken/input", json={"message": "Hello"})
    assert resp.status_code == 503


def test_round_lifecycle(client):
    assert client.get("/api/scenes/harbor/round").json()["round_number"] == 1

    resp = client.post("/api/scenes/harbor/complete")
    assert resp.json() == {"next_round_number": 2}

    resp = client.post("/api/scenes/harbor/complete", json={"active_characters": ["Ava"]})
    assert resp.json() == {"next_round_number": 3}
    assert client.get("/api/scenes/harbor/round").json()["round_number"] == 3


def test_complete_unknown_scene(client):
    assert client.post("/api/scenes/nowhere/complete").status_code == 404


def test_continue(client, llm):
    llm.script("director", '{"characters": ["Ava"]}')
    llm.script("character", json.dumps({"response": "Onward.", "characterState": {}}))

    resp = client.post("/api/scenes/harbor/continue")

    assert resp.status_code == 200
    body = resp.json()
    assert body["responses"] == [{"sender": "Ava", "content": "Onward."}]
    assert body["round_number"] == 2


def test_messages(client, llm):
    llm.script("director", '{"characters": ["Ava"]}')
    llm.script("character", json.dumps({"response": "Ahoy!", "characterState": {}}))
    client.post("/api/scenes/harbor/input", json={"message": "Hello", "persona": "Wanderer"})
    client.post("/api/scenes/harbor/complete")

    messages = client.get("/api/scenes/harbor/messages").json()
    assert [(m["sender"], m["content"]) for m in messages] == [("Default", "Hello"), ("Ava", "Ahoy!")]
    assert client.get("/api/scenes/harbor/messages", params={"round_number": 2}).json() == []
    assert client.get("/api/scenes/nowhere/messages").status_code == 404


def test_event_stream(client):
    with client.websocket_connect("/api/scenes/harbor/events") as ws:
        client.post("/api/scenes/harbor/complete")
        message = ws.receive_json()
    assert message["event"] == "roundCompleted"
    assert message["payload"]["next_round_number"] == 2
