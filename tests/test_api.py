"""
Integration tests for the chat HTTP endpoints.

The chat service is overridden with one built on a temporary database and fake
LLM / search capabilities, so tests do not require OpenAI, HF API or Milvus.
"""

import json

import pytest
from fastapi.testclient import TestClient

from conftest import PLANNER, RECOVERY, SNIPPET, TITLE, FakeLLM, FakeSearch, add_document, echo_first_chunk, hit
from refchat.main import app
from refchat.services.chat_service import ChatService, get_chat_service

OWNER = {"X-Owner-Id": "owner-1"}


@pytest.fixture
def service(store, documents) -> ChatService:
    add_document(documents, "doc-1", "owner-1")
    llm = FakeLLM(
        {
            PLANNER: json.dumps({"specific": ["What is ATP?"], "generic": []}),
            SNIPPET: echo_first_chunk,
            TITLE: "ATP basics",
            RECOVERY: "Recovered answer.",
        },
        chunks=["ATP stores energy.", '[REF]{"id": 1}[/REF]'],
    )
    search = FakeSearch(default=lambda q, d: [hit(d or "doc-1", "ATP stores energy in phosphate bonds.")])
    return ChatService(store, documents, llm, search)


@pytest.fixture
def client(service):
    app.dependency_overrides[get_chat_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def _create(client: TestClient, documents=None) -> str:
    response = client.post("/chat/sessions", json={"document_ids": documents or []}, headers=OWNER)
    assert response.status_code == 200
    return response.json()["id"]


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_create_and_list_sessions(client: TestClient) -> None:
    first = _create(client)
    second = _create(client, ["doc-1"])
    response = client.get("/chat/sessions", headers=OWNER)
    assert response.status_code == 200
    sessions = response.json()["sessions"]
    assert [s["id"] for s in sessions] == [second, first]
    assert sessions[0]["active_document_ids"] == ["doc-1"]


def test_owner_header_is_required(client: TestClient) -> None:
    response = client.get("/chat/sessions")
    assert response.status_code == 422


def test_history_of_foreign_or_unknown_session_is_404(client: TestClient) -> None:
    session_id = _create(client)
    assert client.get(f"/chat/sessions/{session_id}/history", headers={"X-Owner-Id": "intruder"}).status_code == 404
    assert client.get("/chat/sessions/missing/history", headers=OWNER).status_code == 404


def test_set_documents(client: TestClient) -> None:
    session_id = _create(client)
    response = client.put(f"/chat/sessions/{session_id}/documents", json={"document_ids": ["doc-1"]}, headers=OWNER)
    assert response.status_code == 200
    assert response.json()["active_document_ids"] == ["doc-1"]


def test_stream_message_and_history(client: TestClient) -> None:
    session_id = _create(client, ["doc-1"])
    response = client.post(f"/chat/sessions/{session_id}/messages/stream", json={"message": "What is ATP?"}, headers=OWNER)
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    body = response.text
    assert body.startswith("[USER_MESSAGE_ID]")
    assert 'ATP stores energy.[REF]{"id": 1}[/REF]' in body
    assert body.endswith("[/ASSISTANT_MESSAGE_ID]")

    history = client.get(f"/chat/sessions/{session_id}/history", headers=OWNER).json()
    assert history["session"]["title"] == "ATP basics"
    roles = [m["role"] for m in history["messages"]]
    assert roles == ["user", "assistant"]
    assert history["messages"][1]["citations"] == [
        {"reference_id": "1", "display_text": "doc-1.pdf", "document_id": "doc-1"}
    ]


def test_empty_message_is_400(client: TestClient) -> None:
    session_id = _create(client)
    response = client.post(f"/chat/sessions/{session_id}/messages/stream", json={"message": "   "}, headers=OWNER)
    assert response.status_code == 400


def test_exhausted_quota_is_429(client: TestClient, meter) -> None:
    meter.create_record("owner-1", message_limit=0)
    session_id = _create(client)
    response = client.post(f"/chat/sessions/{session_id}/messages/stream", json={"message": "hi"}, headers=OWNER)
    assert response.status_code == 429


def test_integrity_endpoint_recovers_orphan(client: TestClient, store) -> None:
    session_id = _create(client)
    orphan = store.add_user_message(session_id, "lost question")
    response = client.post(f"/chat/sessions/{session_id}/integrity", headers=OWNER)
    assert response.status_code == 200
    data = response.json()
    assert data["orphans"] == [orphan.id]
    assert len(data["recovered"]) == 1
    again = client.post(f"/chat/sessions/{session_id}/integrity", headers=OWNER).json()
    assert again["recovered"] == []
