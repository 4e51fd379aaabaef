# =============================================================================
# API Tests: FastAPI Routers
# =============================================================================
#
# Runs the real application (lifespan included) through TestClient with a
# throwaway SQLite file, a scripted model and a stub processor. Background
# work happens on the client's event loop, so tests poll until it settles.
# =============================================================================

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from docflow.agents import prompts
from docflow.config import Settings
from docflow.main import create_app
from fakes import ScriptedLLM, StubProcessor, as_json


def _reply(system: str, user: str) -> str:
    if system == prompts.INTENT_SYSTEM_PROMPT:
        return as_json(taskName="Tone index", intent="Score tone", indexName="tone")
    if system == prompts.SCORING_SYSTEM_PROMPT:
        return as_json(score_name="tone", score_value=-0.2, quotes=["q"], rationale="r")
    return "unexpected call"


@pytest.fixture
def client(tmp_path, db_url):
    settings = Settings(
        database_url=db_url,
        upload_dir=str(tmp_path / "uploads"),
        extracted_text_dir=str(tmp_path / "extracted"),
        articles_dir=str(tmp_path / "articles"),
        memory_max_length=20000,
        memory_shrink_mode="truncate",
        ingest_concurrency=1,
    )
    processor = StubProcessor(
        tmp_path / "extracted",
        dates={"jan.md": "2024-01-10", "feb.md": "2024-02-10"},
    )
    app = create_app(settings, llm=ScriptedLLM(_reply), processor=processor)
    with TestClient(app) as test_client:
        yield test_client


def _wait_for(fetch, done, attempts: int = 100, delay: float = 0.05):
    """Poll `fetch()` until `done(result)` holds; returns the last result."""
    result = fetch()
    for _ in range(attempts):
        if done(result):
            return result
        time.sleep(delay)
        result = fetch()
    return result


def _upload(client: TestClient, filename: str, text: str) -> str:
    response = client.post("/ingest", files={"file": (filename, text.encode(), "text/markdown")})
    assert response.status_code == 202
    return response.json()["task_id"]


def _upload_and_wait(client: TestClient, filename: str, text: str) -> dict:
    task_id = _upload(client, filename, text)
    task = _wait_for(
        lambda: client.get(f"/ingest/tasks/{task_id}").json(),
        lambda body: body["status"] in ("completed", "failed"),
    )
    assert task["status"] == "completed"
    return task


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestIngestApi:
    """Tests for the ingestion router."""

    def test_upload_is_processed(self, client):
        task = _upload_and_wait(client, "jan.md", "January text")
        assert task["filename"] == "jan.md"
        assert task["result"]["metadata"]["inferred_timestamp"] == "2024-01-10"

        listed = client.get("/ingest/tasks").json()
        assert [item["id"] for item in listed] == [task["id"]]

        stats = _wait_for(
            lambda: client.get("/ingest/stats").json(),
            lambda body: body["auto_reorder_completed"],
        )
        assert stats["total_processed"] == 1
        assert stats["database"]["document_tasks"] == 1

    def test_unsupported_file_is_rejected(self, client):
        response = client.post("/ingest", files={"file": ("notes.txt", b"plain", "text/plain")})
        assert response.status_code == 400
        assert client.get("/ingest/tasks").json() == []

    def test_empty_file_is_rejected(self, client):
        response = client.post("/ingest", files={"file": ("empty.md", b"", "text/markdown")})
        assert response.status_code == 400

    def test_unknown_task_is_404(self, client):
        assert client.get("/ingest/tasks/missing").status_code == 404
        assert client.delete("/ingest/tasks/missing").status_code == 404
        assert client.post("/ingest/tasks/missing/regenerate").status_code == 404

    def test_reorder_is_locked_before_auto_reorder(self, client):
        response = client.post("/ingest/reorder", json={"ordered_ids": ["anything"]})
        assert response.status_code == 409
        assert client.get("/ingest/auto-reorder-status").json() == {"auto_reorder_completed": False}

    def test_reorder_after_auto_reorder(self, client):
        feb = _upload_and_wait(client, "feb.md", "February text")
        jan = _upload_and_wait(client, "jan.md", "January text")
        _wait_for(
            lambda: client.get("/ingest/auto-reorder-status").json(),
            lambda body: body["auto_reorder_completed"],
        )

        response = client.post("/ingest/reorder", json={"ordered_ids": [feb["id"], jan["id"]]})
        assert response.status_code == 200
        assert [item["id"] for item in client.get("/ingest/tasks").json()] == [feb["id"], jan["id"]]

        response = client.post("/ingest/reorder", json={"ordered_ids": [feb["id"], "missing"]})
        assert response.status_code == 400

    def test_pause_resume_and_clear(self, client):
        assert client.post("/ingest/pause").status_code == 200
        assert client.get("/ingest/stats").json()["paused"] is True
        assert client.post("/ingest/resume").status_code == 200

        _upload_and_wait(client, "jan.md", "January text")
        response = client.delete("/ingest/tasks/completed")
        assert response.status_code == 200
        assert client.get("/ingest/tasks").json() == []


class TestAgentsApi:
    """Tests for the agents and indices routers."""

    def test_scoring_run_end_to_end(self, client):
        _upload_and_wait(client, "feb.md", "February text")
        _upload_and_wait(client, "jan.md", "January text")

        response = client.post("/agents", json={"agent_type": "indices", "user_query": "How is the tone?"})
        assert response.status_code == 202
        key = response.json()["queue_key"]

        run = _wait_for(
            lambda: client.get(f"/agents/{key}").json(),
            lambda body: body["status"] in ("completed", "failed"),
        )
        assert run["status"] == "completed"
        assert run["index_name"] == "tone"

        tasks = client.get(f"/agents/{key}/tasks").json()
        assert len(tasks) == 2
        assert [task["metadata"]["filename"] for task in tasks] == ["jan.md", "feb.md"]

        detail = client.get(f"/agents/{key}/tasks/{tasks[1]['id']}").json()
        assert detail["payload"]["previous_article"]["text"] == "January text"

        entries = client.get("/indices", params={"index_name": "tone"}).json()
        assert len(entries) == 2
        assert client.get("/indices/stats").json()["total_indices"] == 2

        corrected = client.patch(f"/indices/entries/{entries[0]['id']}", json={"score_value": 0.9})
        assert corrected.status_code == 200
        assert corrected.json()["corrected"] is True
        assert client.patch(f"/indices/entries/{entries[0]['id']}", json={"score_value": 1.5}).status_code == 422
        assert client.patch("/indices/entries/missing", json={"score_value": 0.1}).status_code == 404

        snapshots = client.get(f"/agents/memory/{run['memory_id']}").json()
        assert snapshots[0]["task_id"] == "initiation"
        one = client.get(f"/agents/memory/{run['memory_id']}/{snapshots[-1]['version']}")
        assert one.status_code == 200

        finish = client.post(f"/agents/{key}/check-finish").json()
        assert finish["state"] == "succeeded"

        assert client.delete(f"/agents/{key}").json()["ok"] is True
        assert client.delete(f"/agents/{key}").json()["ok"] is False
        assert client.get(f"/agents/{key}").status_code == 404
        assert client.get("/indices", params={"queue_key": key}).json() == []

    def test_restart_endpoint_resets_tasks(self, client):
        _upload_and_wait(client, "jan.md", "January text")
        key = client.post("/agents", json={"agent_type": "indices", "user_query": "Tone?"}).json()["queue_key"]
        _wait_for(
            lambda: client.get(f"/agents/{key}").json(),
            lambda body: body["status"] == "completed",
        )
        task_id = client.get(f"/agents/{key}/tasks").json()[0]["id"]

        response = client.post(f"/agents/{key}/tasks/{task_id}/restart")
        assert response.status_code == 202
        assert response.json()["affected"] == [task_id]
        run = _wait_for(
            lambda: client.get(f"/agents/{key}").json(),
            lambda body: body["status"] == "completed",
        )
        assert run["status"] == "completed"

        assert client.post(f"/agents/{key}/tasks/missing/restart").status_code == 404

    def test_start_without_documents_is_rejected(self, client):
        response = client.post("/agents", json={"agent_type": "indices", "user_query": "Tone?"})
        assert response.status_code == 400

    def test_invalid_agent_type_is_422(self, client):
        response = client.post("/agents", json={"agent_type": "horoscope", "user_query": "Tone?"})
        assert response.status_code == 422

    def test_unknown_run_is_404(self, client):
        assert client.get("/agents/missing").status_code == 404
        assert client.get("/agents/missing/tasks").status_code == 404
        assert client.post("/agents/missing/pause").status_code == 404
        assert client.get("/agents/memory/memory-missing/1").status_code == 404
