"""
Text helpers shared by the prompt builders, the stage executor and the routers.

Everything here is a pure function over strings or loosely typed JSON values.
"""

import hashlib
import re
from typing import Any, Iterable, List, Optional, Tuple

# Punctuation that models echo back into JSON and that has broken parsing before
_UNICODE_REPLACEMENTS = [
    (re.compile("[\u2018\u2019\u201a\u201b]"), "'"),
    (re.compile("[\u201c\u201d\u201e\u201f]"), '"'),
    (re.compile("[\u2013\u2014\u2015\u2212]"), "-"),
    (re.compile("\u2026"), "..."),
    (re.compile("\u00a0"), " "),
    (re.compile("[\u200b-\u200f\ufeff]"), ""),
]

_LEADING_FENCE = re.compile(r"^\s*```[a-zA-Z]*[ \t]*\n?")
_TRAILING_FENCE = re.compile(r"\n?```\s*$")

DOI_PATTERN = re.compile(r"10\.\d{4,9}/[-._;()/:A-Z0-9]+", re.IGNORECASE)
_DOI_VALID = re.compile(r"^10\.\d{4,9}/\S+$")
_DOI_PREFIX = re.compile(r"^(?:https?://(?:dx\.)?doi\.org/|doi:\s*)", re.IGNORECASE)
_DOI_METADATA_LINE = re.compile(r"doi\s*[:=]|^doi\b|identifier\s*[:=]", re.IGNORECASE)

DEFAULT_TRUNCATION_MARKER = "\n\n[Truncated input to {limit} characters for the request]"


def sanitize_unicode(text: str) -> str:
    """Replace curly quotes, dashes, ellipses and invisible spaces with ASCII equivalents."""
    text = text.replace("\r\n", "\n")
    for pattern, replacement in _UNICODE_REPLACEMENTS:
        text = pattern.sub(replacement, text)
    return text


def clean_plain_text(value: Any) -> str:
    """
    Normalize an externally sourced value into trimmed plain text.

    Args:
        value: Anything pulled out of a JSON payload

    Returns:
        Sanitized, stripped string ("" for non-strings)
    """
    if not isinstance(value, str):
        return ""
    return sanitize_unicode(value).strip()


def collapse_whitespace(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


def truncate_text(text: str, limit: int, marker: Optional[str] = None) -> Tuple[str, bool]:
    """
    Cap text at `limit` characters, appending a visible marker when cut.

    Args:
        text: Text to cap
        limit: Maximum number of characters kept from the input
        marker: Suffix to append; `{limit}` is substituted. Defaults to the
            request truncation notice.

    Returns:
        Tuple of (possibly truncated text, whether it was truncated)
    """
    if len(text) <= limit:
        return text, False
    if marker is None:
        marker = DEFAULT_TRUNCATION_MARKER
    return text[:limit] + marker.replace("{limit}", str(limit)), True


def strip_markdown_fences(text: str) -> str:
    """Remove a leading ```json (or bare ```) fence and a trailing ``` fence."""
    text = _LEADING_FENCE.sub("", text.strip())
    text = _TRAILING_FENCE.sub("", text)
    return text.strip()


def extract_json_candidate(text: str) -> Optional[str]:
    """
    Find the outermost JSON object or array embedded in surrounding prose.

    Args:
        text: Raw model output

    Returns:
        The slice from the first opening bracket to its matching last closing
        bracket, or None when no bracket pair exists
    """
    starts = [idx for idx in (text.find("{"), text.find("[")) if idx >= 0]
    if not starts:
        return None
    start = min(starts)
    closing = "}" if text[start] == "{" else "]"
    end = text.rfind(closing)
    if end <= start:
        return None
    return text[start:end + 1]


def normalize_doi(value: Any) -> Optional[str]:
    """
    Normalize a DOI or doi.org URL to its lowercase bare form.

    Args:
        value: Raw identifier (DOI, doi.org URL, "doi:" prefixed string)

    Returns:
        Normalized DOI like "10.1000/xyz", or None if the value is not a DOI
    """
    text = clean_plain_text(value)
    if not text:
        return None
    text = _DOI_PREFIX.sub("", text).strip()
    text = re.sub(r"[\s<>\]).,;:]+$", "", text)
    text = re.sub(r"^[\s\"'(<\[]+", "", text)
    if not _DOI_VALID.match(text):
        return None
    return text.lower()


def normalize_title(value: Any) -> str:
    """Lowercased alphanumeric form of a title, used for duplicate detection."""
    text = clean_plain_text(value).lower()
    text = re.sub(r"[^a-z0-9]+", " ", text)
    return text.strip()


def generate_search_phrase(text: Any) -> str:
    """
    Derive a short web-search phrase from claim text.

    Keeps the first five unique tokens longer than three characters.
    """
    cleaned = clean_plain_text(text).lower()
    cleaned = re.sub(r"[^a-z0-9\s-]+", " ", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    if not cleaned:
        return ""

    unique: List[str] = []
    for token in cleaned.split(" "):
        if len(token) <= 3 or token in unique:
            continue
        unique.append(token)
        if len(unique) >= 5:
            break
    return " ".join(unique)


def author_names(authors: Any) -> List[str]:
    """
    Flatten an author field into a list of names.

    Accepts a list of strings or {"name": ...} objects, or a raw string
    separated by commas, semicolons or pipes.
    """
    if isinstance(authors, str):
        return [part.strip() for part in re.split(r"[,;|]", authors) if part.strip()]
    if not isinstance(authors, (list, tuple)):
        return []

    names = []
    for entry in authors:
        if isinstance(entry, str):
            name = entry.strip()
        elif isinstance(entry, dict):
            name = clean_plain_text(entry.get("name"))
        else:
            name = ""
        if name:
            names.append(name)
    return names


def format_authors(authors: Any) -> str:
    names = author_names(authors)
    if not names:
        if isinstance(authors, str) and authors.strip():
            return authors.strip()
        return "Not provided"
    return ", ".join(names)


def unique_strings(values: Iterable[str]) -> List[str]:
    """Deduplicate while preserving first-seen order."""
    seen = set()
    result = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            result.append(value)
    return result


def extract_doi(text: str) -> Optional[str]:
    """
    Detect the first DOI in extracted paper text.

    Tries a direct match across the text first, then falls back to a line
    that looks like a "DOI:" or "identifier=" metadata entry.

    Args:
        text: Extracted document text

    Returns:
        Normalized DOI or None
    """
    if not text:
        return None

    match = DOI_PATTERN.search(text)
    if match:
        return normalize_doi(match.group(0))

    for line in text.splitlines():
        line = line.strip()
        if line and _DOI_METADATA_LINE.search(line):
            line_match = DOI_PATTERN.search(line)
            if line_match:
                return normalize_doi(line_match.group(0))
    return None


def extract_title_from_text(text: str) -> str:
    """
    Guess a paper title from extracted text when no metadata title is supplied.

    Looks for an explicit "Title:" line first, then the first short line
    that is not a page separator.

    Args:
        text: The full document text

    Returns:
        Extracted title or "Untitled paper"
    """
    lines = [
        line.strip() for line in text.split("\n")
        if line.strip() and not line.strip().startswith("--- Page")
    ]

    if not lines:
        return "Untitled paper"

    for line in lines[:10]:
        if re.match(r"^Title:\s*(.+)", line, re.IGNORECASE):
            return re.sub(r"^Title:\s*", "", line, flags=re.IGNORECASE).strip()

    for line in lines[:5]:
        candidate = line.strip("*#-_= ")
        if candidate and len(candidate) < 200 and not candidate.endswith((".", ",", ";", ":")):
            return candidate

    return lines[0][:100] + ("..." if len(lines[0]) > 100 else "")


def compute_content_hash(text: str) -> str:
    """SHA256 of the normalized document text, used to spot duplicate uploads."""
    normalized = " ".join(text.split())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()
