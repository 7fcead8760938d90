"""Tests for the stateless stage endpoints and PDF text extraction."""

import json

import pytest
from fastapi.testclient import TestClient

from evidentia.config import settings
from evidentia.dependencies import get_client_provider
from evidentia.errors import UpstreamError
from evidentia.main import app
from evidentia.routers import stages as stages_router
from evidentia.services.pdf_extractor import ExtractedPdf


class FakeProvider:
    """Hands out a FakeModelClient and counts how often one was requested."""

    def __init__(self):
        self.client = None
        self.gets = 0

    def get(self):
        self.gets += 1
        return self.client


@pytest.fixture
def provider():
    fake = FakeProvider()
    app.dependency_overrides[get_client_provider] = lambda: fake
    yield fake
    app.dependency_overrides.clear()


@pytest.fixture
def api(provider):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def claims_body(sample_paper, claims_payload):
    return {
        "paper": sample_paper.model_dump(by_alias=True),
        "claims": claims_payload.model_dump(by_alias=True),
    }


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------

class TestClaimsEndpoint:

    def test_missing_text(self, api, provider):
        """Validation fails before any model client is created."""
        response = api.post("/api/claims", json={"text": "   "})
        assert response.status_code == 400
        assert response.json() == {"error": "Missing extracted text."}
        assert provider.gets == 0

    def test_success(self, api, provider, make_client, claims_brief):
        cleanup = json.dumps({"text": "Formatted brief", "structured": claims_brief})
        provider.client = make_client(["analyst notes", cleanup])

        response = api.post("/api/claims", json={"text": "Paper body", "paper": {"title": "Paper X"}})

        assert response.status_code == 200
        data = response.json()
        assert data["text"] == "Formatted brief"
        assert [claim["id"] for claim in data["structured"]["claims"]] == ["C1", "C2"]
        assert "Title: Paper X" in provider.client.calls[0]["prompt"]

    def test_upstream_failure_maps_to_502(self, api, provider, make_client):
        provider.client = make_client([UpstreamError("model unavailable", upstream_status=503)])
        response = api.post("/api/claims", json={"text": "Paper body"})
        assert response.status_code == 502
        assert response.json() == {"error": "Claims discovery failed: model unavailable"}

    def test_malformed_json_body(self, api):
        response = api.post("/api/claims", content="{not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid request body."}

    def test_wrong_field_type(self, api):
        response = api.post("/api/claims", json={"text": 5})
        assert response.status_code == 400
        assert response.json()["error"].startswith("Invalid field 'text'")


class TestMissingApiKey:

    def test_configuration_error_is_500(self, monkeypatch):
        """Without an API key a valid request fails with a configuration error."""
        monkeypatch.setattr(settings, "openai_api_key", "")
        with TestClient(app) as client:
            response = client.post("/api/claims", json={"text": "Paper body"})
        assert response.status_code == 500
        assert response.json() == {"error": "OpenAI API key is not configured."}


# ---------------------------------------------------------------------------
# Downstream stages
# ---------------------------------------------------------------------------

class TestUpstreamRequirements:

    def test_similar_papers_requires_claims(self, api, provider):
        response = api.post("/api/similar-papers", json={"text": "Paper body"})
        assert response.status_code == 400
        assert response.json()["error"] == (
            "Claims analysis is required for similar papers generation. Please wait for claims to complete first."
        )
        assert provider.gets == 0

    def test_similar_papers_requires_structured_claims(self, api):
        body = {"text": "Paper body", "claims": {"text": "C1: something", "structured": None}}
        response = api.post("/api/similar-papers", json=body)
        assert response.json()["error"] == "Claims structured data is required. The claims analysis may have failed."

    def test_research_groups_requires_similar_papers(self, api, claims_body):
        response = api.post("/api/research-groups", json={**claims_body, "text": "Paper body"})
        assert response.status_code == 400
        assert response.json()["error"].startswith("Similar papers analysis is required for research groups generation.")

    def test_contacts_requires_text(self, api):
        response = api.post("/api/research-group-contacts", json={"text": ""})
        assert response.json() == {"error": "Missing research group text."}

    def test_theses_requires_contacts(self, api):
        response = api.post("/api/researcher-theses", json={})
        assert response.status_code == 400
        assert response.json() == {"error": "Missing contacts array."}

    def test_patents_requires_claims(self, api):
        response = api.post("/api/patents", json={"paper": {"title": "Paper X"}})
        assert response.status_code == 400
        assert response.json() == {"error": "Claims data is required."}


class TestDownstreamStages:

    def test_contacts_from_research_groups_payload(self, api, provider, make_client):
        """The research-groups payload text is used when no text is given."""
        provider.client = make_client([json.dumps({"contacts": [
            {"group": "Lab A", "people": [{"name": "Ann", "email": "ann@a.org"}]},
        ]})])
        response = api.post("/api/research-group-contacts", json={"researchGroups": {"text": "Lab A is led by Ann."}})

        assert response.status_code == 200
        assert response.json()["structured"]["contacts"][0]["people"][0]["email"] == "ann@a.org"
        assert "Lab A is led by Ann." in provider.client.calls[0]["prompt"]

    def test_contacts_strict_json(self, api, provider, make_client):
        """Unparseable contacts output fails the request instead of degrading."""
        provider.client = make_client(["Here are the contacts: Ann"])
        response = api.post("/api/research-group-contacts", json={"text": "Lab A is led by Ann."})
        assert response.status_code == 502
        assert response.json() == {"error": "Research group contacts cleanup returned malformed or truncated JSON."}

    def test_theses_without_named_people(self, api, provider, make_client):
        provider.client = make_client([])
        response = api.post("/api/researcher-theses", json={"contacts": [{"group": "Lab A", "people": []}]})
        assert response.status_code == 200
        assert response.json()["structured"] == {"researchers": []}
        assert provider.client.calls == []

    def test_verified_claims_with_claims_only(self, api, provider, make_client, claims_body):
        """Verification runs with only claims; absent evidence is stated in the prompt."""
        cleanup = json.dumps({"claims": [{"claimId": "C1", "verificationStatus": "Verified", "confidenceLevel": "High"}]})
        provider.client = make_client(["verification notes", cleanup])

        response = api.post("/api/verified-claims", json=claims_body)

        assert response.status_code == 200
        claim = response.json()["structured"]["claims"][0]
        assert claim["verificationStatus"] == "Verified"
        assert claim["originalClaim"] == "Method Y improves efficiency"
        assert "SIMILAR PAPERS: None available" in provider.client.calls[0]["prompt"]


# ---------------------------------------------------------------------------
# Text extraction
# ---------------------------------------------------------------------------

class TestExtractText:

    def test_no_input(self, api):
        response = api.post("/api/extract-text", data={"fileUrl": " "})
        assert response.status_code == 400
        assert response.json() == {"error": "No PDF data provided for extraction"}

    def test_failed_fetch_without_file(self, api, monkeypatch):
        """A failed URL fetch with no uploaded file is a missing-input error."""
        def failing_fetch(url):
            raise ValueError("Failed to fetch PDF: 404")

        monkeypatch.setattr(stages_router, "fetch_pdf", failing_fetch)
        response = api.post("/api/extract-text", data={"fileUrl": "https://example.org/paper.pdf"})
        assert response.status_code == 400

    def test_non_pdf_content_type(self, api):
        response = api.post("/api/extract-text", files={"file": ("notes.txt", b"hello", "text/plain")})
        assert response.status_code == 415
        assert response.json() == {"error": "Only PDF files are accepted"}

    def test_non_pdf_bytes(self, api):
        response = api.post("/api/extract-text", files={"file": ("paper.pdf", b"hello", "application/pdf")})
        assert response.status_code == 415

    def test_file_too_large(self, api, monkeypatch):
        monkeypatch.setattr(settings, "max_file_size_mb", 0)
        response = api.post("/api/extract-text", files={"file": ("paper.pdf", b"%PDF-1.4", "application/pdf")})
        assert response.status_code == 413

    def test_extraction(self, api, monkeypatch):
        extracted = ExtractedPdf(pages=1, info={"Title": "Paper X"}, text="--- Page 1 ---\n\nBody", doi="10.1234/x.1")
        monkeypatch.setattr(stages_router, "extract_pdf", lambda data: extracted)

        response = api.post("/api/extract-text", files={"file": ("paper.pdf", b"%PDF-1.4 body", "application/pdf")})

        assert response.status_code == 200
        assert response.json() == {
            "pages": 1,
            "info": {"Title": "Paper X"},
            "text": "--- Page 1 ---\n\nBody",
            "doi": "10.1234/x.1",
        }

    def test_unreadable_pdf(self, api, monkeypatch):
        def failing_extract(data):
            raise ValueError("No text could be extracted from the PDF")

        monkeypatch.setattr(stages_router, "extract_pdf", failing_extract)
        response = api.post("/api/extract-text", files={"file": ("paper.pdf", b"%PDF-1.4", "application/pdf")})
        assert response.status_code == 400
        assert response.json() == {"error": "No text could be extracted from the PDF"}


class TestHealth:

    def test_health(self, api):
        response = api.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
