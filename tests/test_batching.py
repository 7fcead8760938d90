"""Tests for author selection, the contact paper list and batched discovery."""

import asyncio

import pytest

from evidentia.errors import StageFailure, UpstreamError
from evidentia.models import PaperMetadata, StagePayload
from evidentia.services.batching import (
    BATCH_SEPARATOR,
    ContactPaper,
    build_contact_papers,
    parse_author_entries,
    run_batched_discovery,
    select_contact_authors,
    split_batches,
)


# ---------------------------------------------------------------------------
# Author selection
# ---------------------------------------------------------------------------

class TestSelectContactAuthors:

    def test_first_three_without_marker(self):
        """With no corresponding author marked, the first three are taken."""
        assert select_contact_authors(["A", "B", "C", "D"]) == ["A", "B", "C"]

    def test_first_last_and_corresponding(self):
        """A marked corresponding author adds the first and last authors."""
        authors = ["A", "B", "C*", "D", "E"]
        assert select_contact_authors(authors) == ["A", "E", "C"]

    def test_marker_variants(self):
        """Envelope, dagger and explicit labels all mark corresponding authors."""
        envelope = "B" + chr(0x2709)
        dagger = "C" + chr(0x2020)
        entries = parse_author_entries(["A", envelope, dagger, "D (corresponding)"])
        assert entries == [("A", False), ("B", True), ("C", True), ("D", True)]

    def test_object_entries(self):
        authors = [{"name": "A"}, {"name": "B", "corresponding": True}, {"name": "C"}]
        assert select_contact_authors(authors) == ["A", "C", "B"]

    def test_raw_string(self):
        """Raw strings split on commas, semicolons, pipes and 'and'."""
        assert select_contact_authors("A One, B Two and C Three; D Four") == ["A One", "B Two", "C Three"]

    def test_deduplicates_when_corresponding_is_first(self):
        assert select_contact_authors(["A*", "B", "C"]) == ["A", "C"]

    def test_empty(self):
        assert select_contact_authors(None) == []


# ---------------------------------------------------------------------------
# Contact paper list
# ---------------------------------------------------------------------------

class TestBuildContactPapers:

    def test_source_first_and_duplicates_dropped(self, sample_paper, claims_payload):
        """The source paper leads; similar papers matching it or each other are skipped."""
        similar = StagePayload(structured={"similarPapers": [
            {"title": "Copy of source", "doi": "https://doi.org/10.1234/SOURCE.2024"},
            {"title": "Paper A", "doi": "10.1/a"},
            {"title": "paper a!", "url": "https://example.org/a-mirror"},
            {"title": "No identifier"},
            {"title": "Paper B", "identifier": "https://example.org/b"},
        ]})
        papers = build_contact_papers(sample_paper, claims_payload, similar)

        assert [paper.title for paper in papers] == ["Method Y for Efficient Catalysis", "Paper A", "Paper B"]
        assert papers[0].is_source is True
        assert papers[0].identifier == "10.1234/source.2024"
        assert papers[0].summary == "Method Y improves efficiency by 20%. Evidence strength is moderate."
        assert papers[1].identifier == "DOI: 10.1/a"
        assert papers[2].identifier == "URL: https://example.org/b"

    def test_similar_papers_capped(self, sample_paper):
        entries = [{"title": f"Paper {i}", "doi": f"10.1/{i}"} for i in range(8)]
        papers = build_contact_papers(sample_paper, None, StagePayload(structured={"similarPapers": entries}), max_similar=5)
        assert len(papers) == 6

    def test_unstructured_similar_papers(self):
        """Without structured similar papers only the source paper remains."""
        papers = build_contact_papers(PaperMetadata(abstract="Abstract."), None, StagePayload(text="notes"))
        assert len(papers) == 1
        assert papers[0].identifier == "Not provided"
        assert papers[0].summary == "Abstract."


# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------

class TestSplitBatches:

    def test_pairs_with_remainder(self):
        assert split_batches([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            split_batches([1], 0)


class TestRunBatchedDiscovery:

    @staticmethod
    def papers(count):
        return [ContactPaper(title=f"P{i}", identifier=f"id{i}", is_source=(i == 0)) for i in range(count)]

    @staticmethod
    def build_prompt(batch, start_index):
        return f"start={start_index} titles={','.join(paper.title for paper in batch)}"

    def test_outputs_joined_in_order(self, make_client):
        """Batches run in order with continued numbering; outputs join with the separator."""
        client = make_client(["one", "two", "three"])
        combined = asyncio.run(run_batched_discovery(self.papers(5), client, self.build_prompt, batch_size=2))

        assert combined == BATCH_SEPARATOR.join(["one", "two", "three"])
        assert [call["prompt"] for call in client.calls] == [
            "start=1 titles=P0,P1",
            "start=3 titles=P2,P3",
            "start=5 titles=P4",
        ]
        assert all(call["web_search"] for call in client.calls)
        assert client.calls[1]["label"] == "Batch 2"

    def test_failure_names_batch(self, make_client):
        """A failing batch stops the run and names its batch number."""
        client = make_client(["one", UpstreamError("boom")])
        with pytest.raises(StageFailure) as exc_info:
            asyncio.run(run_batched_discovery(self.papers(5), client, self.build_prompt, batch_size=2))
        assert exc_info.value.message == "Batch 2/3 failed: boom"
        assert len(client.calls) == 2
