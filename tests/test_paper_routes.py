"""Tests for the paper registry and per-paper stage endpoints."""

import json

import pytest
from fastapi.testclient import TestClient

from evidentia.main import app
from evidentia.routers.papers import _trigger_response
from evidentia.services import coordinator as coordinator_module
from evidentia.services.stage_executor import StageOutput


class StageRunner:
    """Stands in for run_stage inside the coordinator."""

    def __init__(self, outputs):
        self.outputs = dict(outputs)
        self.calls = []

    async def __call__(self, definition, evidence, client):
        self.calls.append(definition.name)
        outcome = self.outputs[definition.name]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def runner(monkeypatch, claims_payload):
    fake = StageRunner({"claims": StageOutput(text=claims_payload.text, structured=claims_payload.structured)})
    monkeypatch.setattr(coordinator_module, "run_stage", fake)
    return fake


@pytest.fixture
def api():
    with TestClient(app) as client:
        yield client


@pytest.fixture
def paper_id(api, sample_paper):
    response = api.post("/api/papers", json={
        "storagePath": "papers/method-y.pdf",
        "fileName": "method-y.pdf",
        "paper": sample_paper.model_dump(by_alias=True),
        "text": "--- Page 1 ---\n\nMethod Y body",
    })
    assert response.status_code == 201
    return response.json()["id"]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class TestRegistry:

    def test_create_and_list(self, api, paper_id):
        response = api.get("/api/papers")
        assert response.status_code == 200
        data = response.json()
        assert data["totalCount"] == 1
        assert data["papers"][0]["id"] == paper_id
        assert data["papers"][0]["title"] == "Method Y for Efficient Catalysis"

    def test_create_requires_text(self, api):
        response = api.post("/api/papers", json={"text": " "})
        assert response.status_code == 400
        assert response.json() == {"error": "Missing extracted text."}

    def test_duplicate_storage_path(self, api, paper_id):
        response = api.post("/api/papers", json={"storagePath": "papers/method-y.pdf", "text": "other"})
        assert response.status_code == 400
        assert "already registered" in response.json()["error"]

    def test_detail_lists_every_stage_pending(self, api, paper_id):
        response = api.get(f"/api/papers/{paper_id}")
        assert response.status_code == 200
        stages = response.json()["stages"]
        assert len(stages) == 7
        assert {stage["status"] for stage in stages.values()} == {"pending"}

    def test_unknown_paper(self, api):
        response = api.get("/api/papers/does-not-exist")
        assert response.status_code == 404
        assert response.json() == {"error": "Paper not found: does-not-exist"}


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

class TestStageTriggers:

    def test_trigger_claims(self, api, paper_id, runner):
        response = api.post(f"/api/papers/{paper_id}/stages/claims")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "success"
        assert data["cached"] is False
        assert data["structured"]["claims"][0]["id"] == "C1"

        detail = api.get(f"/api/papers/{paper_id}").json()
        assert detail["stages"]["claims"]["status"] == "success"

    def test_trigger_with_unmet_dependency(self, api, paper_id, runner):
        response = api.post(f"/api/papers/{paper_id}/stages/patents")
        assert response.status_code == 400
        assert response.json() == {"error": "Claims must complete before patents can run."}
        assert runner.calls == []

    def test_unknown_stage(self, api, paper_id, runner):
        response = api.post(f"/api/papers/{paper_id}/stages/summaries")
        assert response.status_code == 400
        assert response.json() == {"error": "Unknown stage: summaries"}

    def test_activate_serves_cached_results(self, sample_paper, runner, claims_payload):
        """Results persisted in one app lifetime are served from the cache in the next."""
        with TestClient(app) as client:
            created = client.post("/api/papers", json={
                "storagePath": "papers/cached.pdf",
                "paper": sample_paper.model_dump(by_alias=True),
                "text": "Body",
            }).json()
            client.post(f"/api/papers/{created['id']}/stages/claims")

        with TestClient(app) as client:
            response = client.post(f"/api/papers/{created['id']}/activate", params={"runMissing": "false"})

        assert response.status_code == 200
        claims = response.json()["stages"]["claims"]
        assert claims["status"] == "success"
        assert claims["cached"] is True
        assert runner.calls == ["claims"]

    def test_retry_after_error(self, api, paper_id, runner, claims_payload):
        from evidentia.errors import UpstreamError

        runner.outputs["claims"] = UpstreamError("rate limited", upstream_status=429)
        failed = api.post(f"/api/papers/{paper_id}/stages/claims").json()
        assert failed["status"] == "error"
        assert failed["retryable"] is True

        runner.outputs["claims"] = StageOutput(text=claims_payload.text, structured=claims_payload.structured)
        retried = api.post(f"/api/papers/{paper_id}/stages/claims/retry").json()
        assert retried["status"] == "success"

    def test_trigger_downstream_stage(self, api, paper_id, runner):
        runner.outputs["patents"] = StageOutput(text="patents", structured={"patents": []})
        assert api.post(f"/api/papers/{paper_id}/stages/claims").status_code == 200

        response = api.post(f"/api/papers/{paper_id}/stages/patents")
        assert response.status_code == 200
        assert response.json()["status"] == "success"
        assert runner.calls == ["claims", "patents"]

    def test_downstream_trigger_after_restart_uses_cached_claims(self, sample_paper, runner):
        """A dependency persisted in an earlier app lifetime is loaded, not recomputed."""
        runner.outputs["similar-papers"] = StageOutput(text="similar", structured={"similarPapers": []})
        with TestClient(app) as client:
            created = client.post("/api/papers", json={
                "storagePath": "papers/restart.pdf",
                "paper": sample_paper.model_dump(by_alias=True),
                "text": "Body",
            }).json()
            assert client.post(f"/api/papers/{created['id']}/stages/claims").status_code == 200

        with TestClient(app) as client:
            response = client.post(f"/api/papers/{created['id']}/stages/similar-papers")
            detail = client.get(f"/api/papers/{created['id']}").json()

        assert response.status_code == 200
        assert response.json()["status"] == "success"
        assert detail["stages"]["claims"]["cached"] is True
        assert runner.calls == ["claims", "similar-papers"]

    def test_error_is_kept_until_retry(self, api, paper_id, runner, claims_payload):
        from evidentia.errors import UpstreamError

        runner.outputs["claims"] = UpstreamError("boom")
        assert api.post(f"/api/papers/{paper_id}/stages/claims").json()["status"] == "error"

        runner.outputs["claims"] = StageOutput(text=claims_payload.text, structured=claims_payload.structured)
        again = api.post(f"/api/papers/{paper_id}/stages/claims")
        assert again.status_code == 200
        assert again.json()["status"] == "error"
        assert again.json()["error"] == "boom"
        assert runner.calls == ["claims"]

        retried = api.post(f"/api/papers/{paper_id}/stages/claims/retry")
        assert retried.json()["status"] == "success"
        assert runner.calls == ["claims", "claims"]

    def test_in_flight_trigger_is_accepted(self):
        response = _trigger_response("claims", None)
        assert response.status_code == 202
        assert json.loads(response.body) == {"stage": "claims", "status": "loading"}


class TestDelete:

    def test_delete_removes_paper_and_cache(self, api, paper_id, runner):
        api.post(f"/api/papers/{paper_id}/stages/claims")

        response = api.delete(f"/api/papers/{paper_id}")
        assert response.status_code == 204

        assert api.get(f"/api/papers/{paper_id}").status_code == 404
        assert api.get("/api/papers").json()["totalCount"] == 0
