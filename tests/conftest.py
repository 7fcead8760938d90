"""Shared pytest fixtures for the Evidentia test suite."""

import pytest

from evidentia.config import settings
from evidentia.models import PaperMetadata, StagePayload


class FakeModelClient:
    """Stands in for ModelClient: replays canned responses and records every call."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    async def generate(self, prompt, **kwargs):
        self.calls.append({"prompt": prompt, **kwargs})
        if not self.responses:
            raise AssertionError("Unexpected model call")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """Point every test at its own sqlite file and a dummy API key."""
    monkeypatch.setattr(settings, "database_path", str(tmp_path / "evidentia-test.db"))
    monkeypatch.setattr(settings, "openai_api_key", "test-key")
    monkeypatch.setattr(settings, "cache_backend", "sqlite")


@pytest.fixture
def make_client():
    """Factory for FakeModelClient instances."""
    return FakeModelClient


@pytest.fixture
def sample_paper():
    return PaperMetadata(
        title="Method Y for Efficient Catalysis",
        doi="10.1234/source.2024",
        authors=["Ada Lovelace", "Grace Hopper*", "Alan Turing"],
        abstract="We present Method Y, which improves catalytic efficiency.",
    )


@pytest.fixture
def claims_brief():
    """A validated claims brief as the claims stage would store it."""
    return {
        "executiveSummary": ["Method Y improves efficiency by 20%.", "Evidence strength is moderate."],
        "claims": [
            {
                "id": "C1",
                "claim": "Method Y improves efficiency",
                "evidenceSummary": None,
                "keyNumbers": ["20%"],
                "source": "Fig. 2",
                "strength": "Moderate",
                "assumptions": None,
                "evidenceType": "Experimental",
            },
            {
                "id": "C2",
                "claim": "Method Y is stable over 100 cycles",
                "evidenceSummary": "Cycling test over 100 runs",
                "keyNumbers": [],
                "source": "Table 1",
                "strength": "High",
                "assumptions": None,
                "evidenceType": "Experimental",
            },
        ],
        "gaps": [{"category": "Sample size", "detail": "Only 3 batches", "relatedClaimIds": ["C1"]}],
        "methodsSnapshot": ["Batch reactor at 300 K", "GC-MS quantification"],
        "riskChecklist": [{"item": "Blinding", "status": "missing", "note": None}],
        "openQuestions": ["Does Method Y scale?"],
    }


@pytest.fixture
def claims_payload(claims_brief):
    return StagePayload(text="C1: Method Y improves efficiency", structured=claims_brief)
