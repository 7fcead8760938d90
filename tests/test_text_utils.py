"""Tests for the shared text helpers."""

import pytest

from evidentia.services.text_utils import (
    author_names,
    clean_plain_text,
    extract_doi,
    extract_json_candidate,
    extract_title_from_text,
    generate_search_phrase,
    normalize_doi,
    normalize_title,
    sanitize_unicode,
    strip_markdown_fences,
    truncate_text,
)


# ---------------------------------------------------------------------------
# Unicode and plain text
# ---------------------------------------------------------------------------

class TestSanitizeUnicode:

    def test_curly_quotes_become_ascii(self):
        """Smart quotes are replaced with straight quotes."""
        text = f"{chr(0x201C)}quoted{chr(0x201D)} and {chr(0x2018)}single{chr(0x2019)}"
        assert sanitize_unicode(text) == "\"quoted\" and 'single'"

    def test_dashes_and_ellipsis(self):
        """En/em dashes become hyphens; the ellipsis character becomes three dots."""
        text = f"a{chr(0x2013)}b{chr(0x2014)}c{chr(0x2026)}"
        assert sanitize_unicode(text) == "a-b-c..."

    def test_invisible_characters_removed(self):
        """Zero-width characters vanish and non-breaking spaces become spaces."""
        text = f"a{chr(0x200B)}b{chr(0x00A0)}c{chr(0xFEFF)}"
        assert sanitize_unicode(text) == "ab c"

    def test_clean_plain_text_rejects_non_strings(self):
        """Non-string values clean to an empty string."""
        assert clean_plain_text(None) == ""
        assert clean_plain_text(42) == ""
        assert clean_plain_text("  padded  ") == "padded"


# ---------------------------------------------------------------------------
# Truncation
# ---------------------------------------------------------------------------

class TestTruncateText:

    def test_short_text_untouched(self):
        """Text within the limit is returned unchanged."""
        assert truncate_text("short", 10) == ("short", False)

    def test_long_text_carries_marker(self):
        """Truncated text ends with a visible marker naming the limit."""
        text, truncated = truncate_text("x" * 50, 10)
        assert truncated is True
        assert text.startswith("x" * 10)
        assert "[Truncated input to 10 characters for the request]" in text

    def test_custom_marker(self):
        """A caller-provided marker replaces the default notice."""
        text, truncated = truncate_text("abcdefghij", 4, marker="...")
        assert (text, truncated) == ("abcd...", True)


# ---------------------------------------------------------------------------
# JSON recovery
# ---------------------------------------------------------------------------

class TestJsonRecovery:

    def test_strip_json_fence(self):
        """A ```json fence and its closing fence are removed."""
        assert strip_markdown_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_strip_bare_fence(self):
        """A bare ``` fence is removed as well."""
        assert strip_markdown_fences('```\n[1, 2]\n```') == "[1, 2]"

    def test_extract_candidate_from_prose(self):
        """The outermost object is sliced out of surrounding prose."""
        text = 'Here you go: {"a": {"b": 2}} Hope this helps.'
        assert extract_json_candidate(text) == '{"a": {"b": 2}}'

    def test_extract_candidate_none_without_brackets(self):
        assert extract_json_candidate("no json here") is None


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------

class TestIdentifiers:

    @pytest.mark.parametrize("raw", [
        "10.1234/ABC.def",
        "https://doi.org/10.1234/abc.def",
        "doi: 10.1234/abc.def.",
    ])
    def test_normalize_doi_variants(self, raw):
        """DOIs, doi.org URLs and doi: prefixes normalize to one lowercase form."""
        assert normalize_doi(raw) == "10.1234/abc.def"

    def test_normalize_doi_rejects_non_doi(self):
        assert normalize_doi("https://example.org/paper") is None
        assert normalize_doi("") is None

    def test_extract_doi_from_page_text(self):
        """The first DOI in extracted text is detected and normalized."""
        text = "--- Page 1 ---\n\nSome Title https://doi.org/10.5555/XYZ.123 more text"
        assert extract_doi(text) == "10.5555/xyz.123"

    def test_normalize_title_ignores_case_and_punctuation(self):
        assert normalize_title("Method Y: A Study!") == normalize_title("method y a study")

    def test_author_names_from_string_and_objects(self):
        """Authors may be a delimited string or a list of {name} objects."""
        assert author_names("A. One; B. Two | C. Three") == ["A. One", "B. Two", "C. Three"]
        assert author_names([{"name": "A. One"}, "B. Two", 3]) == ["A. One", "B. Two"]


class TestSearchPhraseAndTitle:

    def test_search_phrase_keeps_five_long_tokens(self):
        """Short tokens and repeats are skipped; at most five tokens are kept."""
        phrase = generate_search_phrase("The method improves the catalytic efficiency of reactors using heat and heat")
        assert phrase == "method improves catalytic efficiency reactors"

    def test_title_from_explicit_line(self):
        text = "--- Page 1 ---\nTitle: Method Y Revisited\nAbstract follows."
        assert extract_title_from_text(text) == "Method Y Revisited"

    def test_title_fallback(self):
        assert extract_title_from_text("") == "Untitled paper"
