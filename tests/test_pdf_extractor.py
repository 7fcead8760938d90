"""Tests for PDF text extraction."""

from io import BytesIO

import pytest
import requests
from pypdf import PdfWriter

from evidentia.services import pdf_extractor
from evidentia.services.pdf_extractor import extract_pdf, fetch_pdf, is_pdf


def blank_pdf():
    writer = PdfWriter()
    writer.add_blank_page(width=200, height=200)
    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


class TestIsPdf:

    def test_magic_bytes(self):
        assert is_pdf(b"%PDF-1.7\n...")
        assert is_pdf(b"\n  %PDF-1.4")
        assert not is_pdf(b"<html>")


class TestExtractPdf:

    def test_blank_pdf_has_no_text(self):
        with pytest.raises(ValueError, match="No text could be extracted"):
            extract_pdf(blank_pdf())

    def test_corrupt_pdf(self):
        with pytest.raises(ValueError, match="Error extracting text from PDF"):
            extract_pdf(b"%PDF-1.4 this is not really a pdf")


class TestFetchPdf:

    def test_request_errors_become_value_errors(self, monkeypatch):
        def failing_get(url, timeout):
            raise requests.exceptions.ConnectionError("unreachable")

        monkeypatch.setattr(pdf_extractor.requests, "get", failing_get)
        with pytest.raises(ValueError, match="Failed to fetch PDF"):
            fetch_pdf("https://example.org/paper.pdf")
