"""Tests for services/storage.py and the conversations API."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from chatrelay.schemas.conversation import Attachment, Conversation, Message
from chatrelay.services.errors import BadRequest, ConversationNotFound, StorageFailure
from chatrelay.services.storage import ConversationRepository

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _conversation(conv_id="conv_1", updated=T0, **extra):
    return Conversation(
        id=conv_id,
        title="Trip planning",
        model="gpt-4o",
        messages=(
            Message(id="m1", role="user", content="Plan a trip", created_at=T0,
                    attachments=(Attachment(id="a1", type="image", name="map.png",
                                            mime_type="image/png", data="aGk=", preview="blob:x"),)),
            Message(id="m2", role="assistant", content="Sure!", created_at=T0),
        ),
        system_prompt="Be concise",
        created_at=T0,
        updated_at=updated,
        **extra,
    )


@pytest.fixture
def repo(tmp_path):
    return ConversationRepository(tmp_path / "store")


def test_put_then_get_round_trip(repo):
    conv = _conversation(is_pinned=True)
    repo.put(conv)
    loaded = repo.get("conv_1")
    assert loaded is not None
    assert loaded.id == conv.id
    assert loaded.title == conv.title
    assert [(m.id, m.role, m.content) for m in loaded.messages] == [("m1", "user", "Plan a trip"), ("m2", "assistant", "Sure!")]
    assert loaded.model == "gpt-4o"
    assert loaded.system_prompt == "Be concise"
    assert loaded.is_pinned is True
    assert loaded.is_archived is False
    assert loaded.updated_at == T0


def test_document_format_on_disk(repo):
    repo.put(_conversation())
    data = json.loads((repo.storage_dir / "conv_1.json").read_text(encoding="utf-8"))
    assert data["createdAt"].startswith("2024-05-01T12:00:00")
    assert data["isPinned"] is False
    assert data["messages"][0]["attachments"][0]["mimeType"] == "image/png"
    assert "preview" not in data["messages"][0]["attachments"][0]


def test_list_sorted_by_updated_desc(repo):
    repo.put(_conversation("conv_old", updated=T0))
    repo.put(_conversation("conv_new", updated=T0 + timedelta(hours=1)))
    assert [c.id for c in repo.list()] == ["conv_new", "conv_old"]


def test_corrupt_document_skipped(repo, caplog):
    repo.put(_conversation("conv_ok"))
    (repo.storage_dir / "conv_bad.json").write_text("{not json", encoding="utf-8")
    assert [c.id for c in repo.list()] == ["conv_ok"]
    assert "conv_bad.json" in caplog.text
    assert repo.get("conv_bad") is None


def _write_raw(repo, name, document):
    repo.storage_dir.mkdir(parents=True, exist_ok=True)
    (repo.storage_dir / name).write_text(json.dumps(document), encoding="utf-8")


def test_offset_less_timestamps_read_as_utc(repo):
    _write_raw(repo, "conv_a.json", {
        "id": "conv_a", "title": "Naive", "model": "gpt-4o",
        "messages": [{"id": "m1", "role": "user", "content": "hi", "createdAt": "2024-05-01T10:00:00"}],
        "createdAt": "2024-05-01T10:00:00", "updatedAt": "2024-05-01T10:00:00",
    })
    repo.put(_conversation("conv_b", updated=T0))

    listed = repo.list()
    assert [c.id for c in listed] == ["conv_b", "conv_a"]
    naive = repo.get("conv_a")
    assert naive.updated_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert naive.messages[0].created_at.tzinfo is not None


def test_document_with_unusable_id_skipped(repo, caplog):
    repo.put(_conversation("conv_ok"))
    _write_raw(repo, "chat_1.json", {"id": "chat 1", "title": "Kept", "model": "gpt-4o"})
    assert [c.id for c in repo.list()] == ["conv_ok"]
    assert "chat_1.json" in caplog.text
    assert repo.get("chat_1") is None


def test_put_overwrites(repo):
    repo.put(_conversation())
    repo.put(_conversation().model_copy(update={"title": "Renamed"}))
    assert repo.get("conv_1").title == "Renamed"
    assert len(repo.list()) == 1


def test_delete(repo):
    repo.put(_conversation())
    repo.delete("conv_1")
    assert not repo.exists("conv_1")
    with pytest.raises(ConversationNotFound):
        repo.delete("conv_1")


def test_get_missing_returns_none(repo):
    assert repo.get("conv_missing") is None


@pytest.mark.parametrize("bad_id", ["../etc/passwd", "a/b", "", ".hidden"])
def test_unsafe_ids_rejected(repo, bad_id):
    with pytest.raises(BadRequest):
        repo.get(bad_id)


def test_write_failure_is_storage_failure(repo):
    with patch("chatrelay.services.storage.os.replace", side_effect=PermissionError(13, "Permission denied")):
        with pytest.raises(StorageFailure):
            repo.put(_conversation())
    assert list(repo.storage_dir.glob(".tmp-*")) == []


# ── API ───────────────────────────────────────────────────────────────────────

@pytest.fixture
def client():
    from chatrelay.main import app
    return TestClient(app)


def test_api_crud(client):
    payload = _conversation().to_json_dict()
    resp = client.post("/api/v1/conversations/", json=payload)
    assert resp.status_code == 200
    assert resp.json()["id"] == "conv_1"

    listed = client.get("/api/v1/conversations/").json()
    assert [c["id"] for c in listed] == ["conv_1"]
    assert listed[0]["systemPrompt"] == "Be concise"

    fetched = client.get("/api/v1/conversations/conv_1/")
    assert fetched.status_code == 200
    assert fetched.json()["messages"][1]["content"] == "Sure!"

    assert client.delete("/api/v1/conversations/conv_1/").status_code == 204
    missing = client.get("/api/v1/conversations/conv_1/")
    assert missing.status_code == 404
    assert client.delete("/api/v1/conversations/conv_1/").status_code == 404


def test_api_rejects_document_without_id(client):
    payload = _conversation().to_json_dict()
    del payload["id"]
    resp = client.post("/api/v1/conversations/", json=payload)
    assert resp.status_code == 400


def test_api_put_normalises_offset_less_timestamps(client):
    payload = _conversation().to_json_dict()
    payload["updatedAt"] = "2024-05-01T10:00:00"
    assert client.post("/api/v1/conversations/", json=payload).status_code == 200
    other = _conversation("conv_2", updated=T0).to_json_dict()
    assert client.post("/api/v1/conversations/", json=other).status_code == 200

    listed = client.get("/api/v1/conversations/").json()
    assert [c["id"] for c in listed] == ["conv_2", "conv_1"]
    assert listed[1]["updatedAt"] == "2024-05-01T10:00:00Z"
