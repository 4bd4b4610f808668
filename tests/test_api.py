"""Tests for the HTTP API."""

import time

import pytest
from fastapi.testclient import TestClient

from codewiki.errors import (
    CodeWikiError,
    ConcurrencyConflictError,
    EmbeddingProviderError,
    RepoNotFoundError,
    TransientStoreError,
    ValidationError,
)
from codewiki.pipeline.repo_url import repo_id_for
from codewiki.server import create_app, status_for

REPO_URL = "https://github.com/acme/widget"


@pytest.fixture
def client(make_services):
    services = make_services()
    app = create_app(settings=services.settings, services=services)
    with TestClient(app) as test_client:
        yield test_client


def wait_for_stage(client: TestClient, repo_id: str, stages=("complete", "error"), timeout: float = 10.0) -> dict:
    deadline = time.time() + timeout
    while time.time() < deadline:
        body = client.get(f"/repos/{repo_id}/status").json()
        if body["status"] in stages:
            return body
        time.sleep(0.05)
    raise AssertionError(f"repository {repo_id} never reached {stages}")


# =============================================================================
# Error mapping
# =============================================================================


class TestErrorMapping:
    """Domain errors to HTTP status codes."""

    def test_status_for(self):
        assert status_for(ValidationError("bad")) == 400
        assert status_for(RepoNotFoundError("x")) == 404
        assert status_for(ConcurrencyConflictError("x")) == 409
        assert status_for(EmbeddingProviderError("down")) == 502
        assert status_for(TransientStoreError("down")) == 502
        assert status_for(CodeWikiError("other")) == 500


# =============================================================================
# Endpoints
# =============================================================================


class TestRepoEndpoints:
    """Registration, status and error bodies."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_register_repo(self, client):
        response = client.post("/repos", json={"repo_url": REPO_URL})

        assert response.status_code == 200
        body = response.json()
        assert body["id"] == repo_id_for("acme", "widget")
        assert body["owner"] == "acme"
        assert body["name"] == "widget"
        assert body["canonical_url"] == REPO_URL

        again = client.post("/repos", json={"repo_url": REPO_URL + ".git"})
        assert again.json()["id"] == body["id"]
        assert len(client.get("/repos").json()) == 1

    def test_invalid_url_is_400(self, client):
        response = client.post("/repos", json={"repo_url": "https://gitlab.com/acme/widget"})
        assert response.status_code == 400
        assert "error" in response.json()

    def test_missing_body_field_is_400(self, client):
        response = client.post("/repos", json={})
        assert response.status_code == 400
        assert "repo_url" in response.json()["error"]

    def test_unknown_repo_is_404(self, client):
        for path in ("/repos/unknown", "/repos/unknown/status", "/repos/unknown/wiki"):
            response = client.get(path)
            assert response.status_code == 404
            assert response.json() == {"error": "Repository not found: unknown"}

        response = client.post("/repos/unknown/index")
        assert response.status_code == 404

    def test_manifest_before_indexing_is_404(self, client):
        repo_id = client.post("/repos", json={"repo_url": REPO_URL}).json()["id"]
        response = client.get(f"/repos/{repo_id}/manifest")
        assert response.status_code == 404
        assert "no published manifest" in response.json()["error"]

    def test_wiki_refresh_before_indexing_is_409(self, client):
        repo_id = client.post("/repos", json={"repo_url": REPO_URL}).json()["id"]
        response = client.post(f"/repos/{repo_id}/wiki/summary")
        assert response.status_code == 409
        assert "not been indexed" in response.json()["error"]

    def test_registered_status(self, client):
        repo_id = client.post("/repos", json={"repo_url": REPO_URL}).json()["id"]
        body = client.get(f"/repos/{repo_id}/status").json()
        assert body["status"] == "registered"
        assert body["generation"] == 0


class TestIndexAndSearch:
    """Ingestion through the API, then search."""

    def test_index_then_search(self, client):
        repo_id = client.post("/repos", json={"repo_url": REPO_URL}).json()["id"]

        started = client.post(f"/repos/{repo_id}/index")
        assert started.status_code == 200
        assert started.json()["status"] == "cloning"
        final = wait_for_stage(client, repo_id)
        assert final["status"] == "complete"
        assert final["progress"] == 1.0

        manifest = client.get(f"/repos/{repo_id}/manifest").json()
        assert manifest["file_count"] == 4
        assert manifest["schema_version"] == 1

        wiki = client.get(f"/repos/{repo_id}/wiki").json()
        assert wiki["state"] == "ready"
        assert wiki["summary"] == "acme/widget is a small widget library."
        assert [entry["version"] for entry in wiki["history"]] == [1]

        response = client.post("/search", json={"query": "parse_config", "search_mode": "keyword", "repo_filter": repo_id})
        assert response.status_code == 200
        results = response.json()["results"]
        assert results
        assert results[0]["repo_id"] == repo_id
        assert results[0]["file_path"] == "src/widget/config.py"
        assert results[0]["line_start"] >= 1

        refreshed = client.post(f"/repos/{repo_id}/wiki/summary")
        assert refreshed.status_code == 200
        assert [entry["version"] for entry in refreshed.json()["history"]] == [1, 2]

    def test_events_stream_ends_with_final_status(self, client):
        repo_id = client.post("/repos", json={"repo_url": REPO_URL}).json()["id"]
        client.post(f"/repos/{repo_id}/index")
        wait_for_stage(client, repo_id)

        response = client.get(f"/repos/{repo_id}/events")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert "event: status" in response.text
        assert '"status": "complete"' in response.text

    def test_search_with_nonexistent_filter_is_empty(self, client):
        response = client.post("/search", json={"query": "anything", "repo_filter": "nonexistent-id"})
        assert response.status_code == 200
        assert response.json() == {"results": []}

    def test_search_with_unknown_mode_is_400(self, client):
        response = client.post("/search", json={"query": "anything", "search_mode": "fuzzy"})
        assert response.status_code == 400
        assert "fuzzy" in response.json()["error"]

    def test_search_with_invalid_top_k_is_400(self, client):
        response = client.post("/search", json={"query": "anything", "top_k": 0})
        assert response.status_code == 400
