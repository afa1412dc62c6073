from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from apps.backend.main import app, get_assistant


@pytest.fixture
def client(assistant):
    app.dependency_overrides[get_assistant] = lambda: assistant
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def ingest(client, text: str, **extra):
    payload = {"name": "keeper.txt", "text": text, **extra}
    return client.post("/documents", json=payload)


def test_health_reports_embedding_state(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["documents"] == 0
    assert body["degraded"] is True


def test_document_lifecycle(client, sample_text):
    resp = ingest(client, sample_text, id="keeper")
    assert resp.status_code == 201
    summary = resp.json()
    assert summary["id"] == "keeper"
    assert summary["chunk_count"] > 0
    assert summary["skipped_chunks"] == []

    assert [d["id"] for d in client.get("/documents").json()] == ["keeper"]
    assert client.get("/documents/keeper").json()["name"] == "keeper.txt"

    assert client.delete("/documents/keeper").json() == {"deleted": True}
    assert client.delete("/documents/keeper").json() == {"deleted": False}
    assert client.get("/documents/keeper").status_code == 404


def test_query_returns_hits_without_vectors(client, sample_text):
    ingest(client, sample_text, id="keeper")
    resp = client.post("/query", json={"question": sample_text[:300], "k": 2})
    assert resp.status_code == 200
    hits = resp.json()
    assert 1 <= len(hits) <= 2
    assert hits[0]["document_id"] == "keeper"
    assert "embedding" not in hits[0]
    assert hits[0]["score"] >= hits[-1]["score"]


def test_prompt_with_and_without_evidence(client, sample_text):
    resp = client.post(
        "/prompt",
        json={"message": "Hi", "history": [{"role": "user", "content": "Hello"}], "template": "gemma"},
    )
    body = resp.json()
    assert resp.status_code == 200
    assert body["sources"] == []
    assert body["prompt"].endswith("<start_of_turn>model\n")

    ingest(client, sample_text, id="keeper")
    body = client.post("/prompt", json={"message": sample_text[:300]}).json()
    assert body["prompt"].endswith("ANSWER: ")
    assert [s["document_id"] for s in body["sources"]] == ["keeper"]
    assert body["documents_available"] is True


def test_unknown_template_is_rejected(client):
    resp = client.post("/prompt", json={"message": "Hi", "template": "mistral"})
    assert resp.status_code == 422


def test_corrupt_store_returns_503(client, settings):
    settings.store_path.parent.mkdir(parents=True, exist_ok=True)
    settings.store_path.write_text("[]", encoding="utf-8")

    assert client.get("/documents").status_code == 503
    assert client.get("/documents/keeper").status_code == 503
    assert client.get("/health").json()["status"] == "degraded"

    resp = client.post("/prompt", json={"message": "Hi"})
    assert resp.status_code == 200
    assert resp.json()["documents_available"] is False
