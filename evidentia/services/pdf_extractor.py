"""
PDF text extraction for uploaded papers.

Produces the page-delimited text the claims stage reads, plus the PDF
document info and a DOI detected from the text.
"""

import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Dict, Optional

import requests
from pypdf import PdfReader
from pypdf.errors import PyPdfError

from evidentia.services.text_utils import collapse_whitespace, extract_doi

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF"


@dataclass
class ExtractedPdf:
    pages: int
    info: Optional[Dict[str, Any]]
    text: str
    doi: Optional[str] = None


def is_pdf(data: bytes) -> bool:
    return data.lstrip()[:4] == PDF_MAGIC


def _document_info(reader: PdfReader) -> Optional[Dict[str, Any]]:
    metadata = reader.metadata
    if not metadata:
        return None
    # Keys come back as "/Title", "/Author", ...; values may be indirect objects
    return {str(key).lstrip("/"): str(value) for key, value in metadata.items()}


def extract_pdf(data: bytes) -> ExtractedPdf:
    """
    Extract text from a PDF.

    Each page becomes "--- Page N ---" followed by its text with whitespace
    collapsed; pages are separated by blank lines.

    Args:
        data: Raw PDF bytes

    Returns:
        ExtractedPdf with page count, document info, text and detected DOI

    Raises:
        ValueError: If the PDF cannot be read or holds no text
    """
    try:
        reader = PdfReader(BytesIO(data))
        page_texts = [collapse_whitespace(page.extract_text() or "") for page in reader.pages]
        info = _document_info(reader)
    except (PyPdfError, OSError) as e:
        raise ValueError(f"Error extracting text from PDF: {str(e)}")

    if not any(page_texts):
        raise ValueError("No text could be extracted from the PDF")

    text = "\n\n".join(
        f"--- Page {number} ---\n\n{page_text}"
        for number, page_text in enumerate(page_texts, start=1)
    )

    doi = extract_doi(text)
    if doi is None and info:
        doi = extract_doi("\n".join(f"{key}: {value}" for key, value in info.items()))

    logger.info(f"Extracted {len(page_texts)} pages ({len(text)} characters, DOI {doi or 'not found'})")
    return ExtractedPdf(pages=len(page_texts), info=info, text=text, doi=doi)


def fetch_pdf(url: str, timeout: float = 30.0) -> bytes:
    """
    Download a PDF from a URL.

    Args:
        url: Reachable file URL
        timeout: Request timeout in seconds

    Returns:
        Raw PDF bytes

    Raises:
        ValueError: If the download fails
    """
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise ValueError(f"Failed to fetch PDF: {str(e)}")

    return response.content
