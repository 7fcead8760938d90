"""
Batch splitter for the research-groups stage.

Researching authors for many papers in one model call makes the model stall
and ask for confirmation, so the paper list is cut into small batches that
run one after another. The batch outputs are joined with a visible
separator before the single cleanup call.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Tuple

from evidentia.errors import EvidentiaError, StageFailure
from evidentia.models import PaperMetadata, StagePayload
from evidentia.services.model_client import ModelClient
from evidentia.services.text_utils import clean_plain_text, normalize_doi, normalize_title

logger = logging.getLogger(__name__)

BATCH_SEPARATOR = "\n\n---\n\n"

_CORRESPONDING_MARKERS = ("*", "\u2709", "\u2020")
_CORRESPONDING_LABEL = re.compile(r"\(\s*corresponding(?: author)?\s*\)", re.IGNORECASE)
_AUTHOR_SPLIT = re.compile(r"[,;|]|\s+and\s+", re.IGNORECASE)


@dataclass
class ContactPaper:
    """One paper whose authors need contact discovery"""
    title: str
    identifier: str
    authors: List[str] = field(default_factory=list)
    summary: Optional[str] = None
    method_signals: List[str] = field(default_factory=list)
    is_source: bool = False


# ============================================================================
# AUTHOR SELECTION
# ============================================================================

def _strip_markers(name: str) -> Tuple[str, bool]:
    flagged = False
    if _CORRESPONDING_LABEL.search(name):
        flagged = True
        name = _CORRESPONDING_LABEL.sub("", name)
    for marker in _CORRESPONDING_MARKERS:
        if marker in name:
            flagged = True
            name = name.replace(marker, "")
    return name.strip(), flagged


def parse_author_entries(authors: Any) -> List[Tuple[str, bool]]:
    """
    Parse an author field into (name, is_corresponding) pairs.

    Args:
        authors: List of names or {name, corresponding} objects, or a raw
            string separated by commas, semicolons, pipes or "and"

    Returns:
        Names in paper order with their corresponding-author flag
    """
    if isinstance(authors, str):
        raw = [(part, False) for part in _AUTHOR_SPLIT.split(authors)]
    elif isinstance(authors, (list, tuple)):
        raw = []
        for entry in authors:
            if isinstance(entry, str):
                raw.append((entry, False))
            elif isinstance(entry, dict) and isinstance(entry.get("name"), str):
                raw.append((entry["name"], entry.get("corresponding") is True))
    else:
        return []

    entries = []
    for name, explicit in raw:
        cleaned, marked = _strip_markers(clean_plain_text(name))
        if cleaned:
            entries.append((cleaned, explicit or marked))
    return entries


def select_contact_authors(authors: Any) -> List[str]:
    """
    Pick the authors worth contacting for one paper.

    Best effort: author lists rarely mark the corresponding author. When one
    is marked, take the first, last and corresponding authors; otherwise the
    first three.
    """
    entries = parse_author_entries(authors)
    if not entries:
        return []

    corresponding = [name for name, flagged in entries if flagged]
    if not corresponding:
        return [name for name, _ in entries[:3]]

    selected = []
    for name in (entries[0][0], entries[-1][0], *corresponding):
        if name not in selected:
            selected.append(name)
    return selected


# ============================================================================
# PAPER LIST
# ============================================================================

def _similar_identifier(entry: dict) -> Optional[str]:
    doi = clean_plain_text(entry.get("doi"))
    if doi:
        return f"DOI: {doi}"
    url = clean_plain_text(entry.get("url"))
    if url:
        return f"URL: {url}"
    identifier = clean_plain_text(entry.get("identifier"))
    if identifier and normalize_doi(identifier):
        return f"DOI: {identifier}"
    if identifier.startswith(("http://", "https://")):
        return f"URL: {identifier}"
    return None


def build_contact_papers(
    paper: PaperMetadata,
    claims: Optional[StagePayload],
    similar_papers: Optional[StagePayload],
    max_similar: int = 5,
) -> List[ContactPaper]:
    """
    Build the deduplicated paper list for contact discovery.

    The source paper always comes first. Similar papers follow, deduplicated
    against the source and each other by normalized DOI, then normalized
    title; entries without a DOI or URL are skipped.

    Args:
        paper: Source paper metadata
        claims: Claims stage payload (summary and method cues)
        similar_papers: Similar papers stage payload (may lack structure)
        max_similar: Cap on similar papers forwarded

    Returns:
        Papers in prompt order
    """
    brief = claims.structured if claims is not None and isinstance(claims.structured, dict) else {}

    summary_lines = [clean_plain_text(line) for line in brief.get("executiveSummary") or [] if isinstance(line, str)]
    summary_lines = [line for line in summary_lines if line][:3]
    summary = " ".join(summary_lines) or clean_plain_text(paper.abstract) or "Summary not provided in claims brief."

    method_signals = [clean_plain_text(line) for line in brief.get("methodsSnapshot") or [] if isinstance(line, str)]

    source = ContactPaper(
        title=clean_plain_text(paper.title) or "Unknown title",
        identifier=clean_plain_text(paper.doi) or "Not provided",
        authors=select_contact_authors(paper.authors),
        summary=summary,
        method_signals=[line for line in method_signals if line][:5],
        is_source=True,
    )

    papers = [source]
    seen_dois = {normalize_doi(paper.doi)} - {None}
    seen_titles = {normalize_title(paper.title)} - {""}

    structured = similar_papers.structured if similar_papers is not None else None
    entries = structured.get("similarPapers") if isinstance(structured, dict) else None

    for entry in entries if isinstance(entries, list) else []:
        if len(papers) > max_similar:
            break
        if not isinstance(entry, dict):
            continue

        identifier = _similar_identifier(entry)
        if identifier is None:
            logger.warning(f"[research-groups] Skipping similar paper without identifier: {entry.get('title')!r}")
            continue

        doi = normalize_doi(entry.get("doi")) or normalize_doi(entry.get("identifier"))
        title_key = normalize_title(entry.get("title"))
        if (doi and doi in seen_dois) or (title_key and title_key in seen_titles):
            logger.warning(f"[research-groups] Skipping duplicate similar paper: {identifier}")
            continue
        if doi:
            seen_dois.add(doi)
        if title_key:
            seen_titles.add(title_key)

        papers.append(ContactPaper(
            title=clean_plain_text(entry.get("title")) or "Unknown title",
            identifier=identifier,
            authors=select_contact_authors(entry.get("authors")),
        ))

    return papers


def split_batches(items: Sequence, size: int = 2) -> List[list]:
    """Split items into consecutive batches of at most `size`."""
    if size < 1:
        raise ValueError("Batch size must be at least 1")
    return [list(items[start:start + size]) for start in range(0, len(items), size)]


# ============================================================================
# BATCHED DISCOVERY
# ============================================================================

async def run_batched_discovery(
    papers: List[ContactPaper],
    client: ModelClient,
    build_prompt: Callable[[List[ContactPaper], int], str],
    *,
    batch_size: int = 2,
    max_output_tokens: int = 16384,
    search_context_size: str = "medium",
    timeout: Optional[float] = None,
    tag: str = "[research-groups]",
) -> str:
    """
    Run discovery for each batch strictly in order and join the outputs.

    Args:
        papers: Full paper list from build_contact_papers
        client: Model client
        build_prompt: Renders one batch; receives the batch and the 1-based
            number of its first paper
        batch_size: Papers per call
        max_output_tokens: Token budget per batch call
        search_context_size: Web search context size
        timeout: Per-call timeout override
        tag: Log prefix

    Returns:
        Batch outputs joined with BATCH_SEPARATOR

    Raises:
        StageFailure: A batch call failed; the message names the batch
    """
    batches = split_batches(papers, batch_size)
    total = len(batches)
    logger.info(f"{tag} Processing {len(papers)} papers in {total} batches of {batch_size}")

    outputs = []
    for index, batch in enumerate(batches):
        number = index + 1
        prompt = build_prompt(batch, index * batch_size + 1)
        logger.info(f"{tag} Starting batch {number}/{total} discovery")
        try:
            output = await client.generate(
                prompt,
                max_output_tokens=max_output_tokens,
                web_search=True,
                search_context_size=search_context_size,
                timeout=timeout,
                label=f"Batch {number}",
            )
        except EvidentiaError as e:
            logger.error(f"{tag} Batch {number}/{total} failed: {e.message}")
            raise StageFailure(f"Batch {number}/{total} failed: {e.message}", e)
        logger.info(f"{tag} Batch {number}/{total} completed")
        outputs.append(output)

    combined = BATCH_SEPARATOR.join(outputs)
    logger.info(f"{tag} All {total} batches completed (combined length {len(combined)})")
    return combined
