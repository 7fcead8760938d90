"""
Similar papers stage: find 3-5 papers with executable method overlap.

The discovery prompt is assembled from signals derived from the claims
brief (summary lines, method signals, search queries, gaps, risk notes).
The validation pass drops entries without a usable identifier and any
entry that is the source paper itself.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from evidentia.errors import StageParseError
from evidentia.services.stage_executor import StageDefinition, StageEvidence, StageOutput
from evidentia.services.text_utils import (
    clean_plain_text,
    format_authors,
    generate_search_phrase,
    normalize_doi,
    normalize_title,
    unique_strings,
)
from evidentia.stages.claims import ClaimsBrief, claim_text, load_brief
from evidentia.stages.structured import SimilarPaper, SimilarPapersResult

logger = logging.getLogger(__name__)

PLACEHOLDER_IDENTIFIERS = {
    "no identifier",
    "not provided",
    "not reported",
    "not available",
    "not found",
    "unknown",
    "none",
    "n/a",
    "na",
    "-",
}

CLUSTER_LABELS = ("Sample and model", "Field deployments", "Insight primers")


@dataclass
class DerivedSignals:
    """Prompt-ready lines derived from a claims brief"""
    summary_lines: List[str] = field(default_factory=list)
    method_signals: List[str] = field(default_factory=list)
    search_queries: List[str] = field(default_factory=list)
    claims_overview: List[str] = field(default_factory=list)
    gap_highlights: List[str] = field(default_factory=list)
    methods_snapshot: List[str] = field(default_factory=list)
    risk_items: List[str] = field(default_factory=list)
    open_questions: List[str] = field(default_factory=list)


def derive_signals(brief: ClaimsBrief) -> DerivedSignals:
    """
    Derive the bounded signal lists used by the discovery prompt.

    Args:
        brief: Validated claims brief

    Returns:
        DerivedSignals with every list already capped
    """
    claims = brief.claims

    method_signals = [
        f"{claim.id or 'Claim'}: {claim.evidence_summary or claim.claim or ''}".strip()
        for claim in claims[:4]
    ]

    claims_overview = []
    for claim in claims[:6]:
        strength = f" [{claim.strength}]" if claim.strength else ""
        claims_overview.append(f"{claim.id or 'Claim'}{strength}: {claim_text(claim)}")

    search_queries = unique_strings(generate_search_phrase(claim_text(claim)) for claim in claims)[:5]

    gap_highlights = []
    for gap in brief.gaps[:4]:
        related = f" (claims: {', '.join(gap.related_claim_ids)})" if gap.related_claim_ids else ""
        gap_highlights.append(f"{gap.category or 'Gap'}: {gap.detail or 'Detail not provided'}{related}")

    risk_items = []
    for item in brief.risk_checklist[:4]:
        note = f" ({item.note})" if item.note else ""
        risk_items.append(f"{item.item or 'Assessment'} - {item.status or 'unclear'}{note}")

    return DerivedSignals(
        summary_lines=brief.executive_summary[:3],
        method_signals=method_signals,
        search_queries=search_queries,
        claims_overview=claims_overview,
        gap_highlights=gap_highlights,
        methods_snapshot=brief.methods_snapshot[:4],
        risk_items=risk_items,
        open_questions=brief.open_questions[:5],
    )


def source_identifier(evidence: StageEvidence) -> str:
    paper = evidence.paper
    for candidate in (paper.doi, paper.scraped_url, paper.url):
        cleaned = clean_plain_text(candidate)
        if cleaned:
            return cleaned
    return "Not provided"


# ============================================================================
# PROMPTS
# ============================================================================

PAPER_TEMPLATE = """1. Identifier: <DOI or stable URL>
   Title: <paper title>
   Authors: <comma-separated names>
   Year: <year or 'Not reported'>
   Venue: <journal/conference or 'Not reported'>
   Cluster: <Sample and model | Field deployments | Insight primers>
   Why relevant: <2 sentences focusing on method overlap>
   Overlap highlights:
   - <short fragment 1>
   - <short fragment 2>
   - <short fragment 3>
   Method matrix:
   - Sample / model: <text>
   - Materials: <text>
   - Equipment: <text>
   - Procedure: <text>
   - Controls: <text>
   - Outputs / metrics: <text>
   - Quality checks: <text>
   - Outcome summary: <text>
   Gaps or uncertainties: <note if something is missing or risky>"""

DISCOVERY_GUIDELINES = """Guidelines:
- Anchor recommendations to the claims brief: pull method cues, evidence strength, and gaps directly from the provided sections.
- Pick papers with executable method overlap (instrumentation, controls, sample handling).
- Every paper MUST have a real DOI or stable URL. Skip papers you cannot identify.
- Never list the source paper itself.
- Where possible, map each similar paper back to the brief: cite which claim/gap/next-step it supports or extends.
- If information is missing, write 'Not reported' inside the relevant bullet.
- Keep each method matrix bullet to ~12-18 words.

Respond using these headings exactly. No JSON yet."""

CLEANUP_PROMPT_HEADER = """You are a cleanup agent. Convert the analyst's notes into strict JSON for Evidentia's Similar Papers view.

Output requirements:
- Return a single JSON object with keys: sourcePaper, similarPapers, promptNotes (optional).
- sourcePaper fields:
  - summary: string (two sentences max)
  - keyMethodSignals: array of 3-5 short strings (no numbering)
  - searchQueries: array of 3-5 search phrases
  - methodMatrix: object with keys (sampleModel, materialsSetup, equipmentSetup, procedureSteps, controls, outputsMetrics, qualityChecks, outcomeSummary), taken from the source paper's claims brief.
- similarPapers: array of 3-5 objects. Each object must include:
  identifier (string), title (string), doi (string|null), url (string|null),
  authors (array of strings), year (number|null), venue (string|null),
  clusterLabel ("Sample and model" | "Field deployments" | "Insight primers"),
  whyRelevant (string), overlapHighlights (array of exactly 3 short strings),
  methodMatrix (object with the same 8 keys as above),
  gapsOrUncertainties (string|null).
- Use "Not reported" inside methodMatrix when information is missing. Use null for unknown scalars.
- Preserve factual content; do not invent new details.
- Output raw JSON only: no markdown fences, comments, trailing prose, or extra keys. Double quotes only."""


def _bullets(lines: List[str], indent: str = "  ") -> List[str]:
    return [f"{indent}- {line}" for line in lines]


def build_reference_addon(signals: DerivedSignals) -> str:
    sections = []
    for heading, lines in (
        ("Claims brief references:", signals.claims_overview),
        ("Gaps & limitations to address:", signals.gap_highlights),
        ("Methods snapshot cues:", signals.methods_snapshot),
        ("Risk / quality notes:", signals.risk_items),
        ("Open questions to pursue:", signals.open_questions),
    ):
        if lines:
            if sections:
                sections.append("")
            sections.append(heading)
            sections.extend(_bullets(lines, indent=""))
    return "\n".join(sections)


def build_discovery_prompt(evidence: StageEvidence) -> str:
    """
    Render the similar-papers discovery prompt.

    Claim lines render as "<id>: <evidence summary or claim>" so each
    recommendation can be traced back to the brief.
    """
    paper = evidence.paper
    brief = load_brief(evidence.claims)
    signals = derive_signals(brief)
    title = clean_plain_text(paper.title) or "Unknown title"

    summary_lines = signals.summary_lines or [
        clean_plain_text(paper.abstract) or "Summary not provided in claims brief."
    ]
    method_signals = signals.method_signals or [
        "No method signals extracted from claims brief. Focus on method-level overlap."
    ]
    search_queries = signals.search_queries or unique_strings(
        [generate_search_phrase(title), "similar research methods"]
    )

    lines = [
        "You are powering Evidentia's Similar Papers feature. Collect the research notes we need before a cleanup agent converts them to JSON.",
        "You do not have a live user in the loop. Do not ask clarifying questions or offer option menus. Decide and move straight to the notes.",
        "You are provided with a structured claims brief (executive summary, claims, gaps, methods, risk, next steps). Use it as the authoritative context.",
        "When you reference the brief, note the section (e.g. Key Claims C1/C2, Gaps, Methods Snapshot) so downstream systems can trace provenance.",
        "Use the exact headings and bullet structure below for your output. Keep language plain and concrete.",
        "",
        "Source Paper (claims brief synthesis):",
        f"- Title: {title}",
        f"- Identifier: {source_identifier(evidence)}",
        f"- Authors: {format_authors(paper.authors)}",
        "- Summary:",
        *_bullets(summary_lines[:3]),
        "- Key method signals:",
        *_bullets(method_signals[:5]),
        "- Search queries:",
        *_bullets([query for query in search_queries if query][:5]),
        "",
        "Similar Papers (3-5 entries):",
        "For each entry use this template (start each paper with its number):",
        PAPER_TEMPLATE,
        "",
        DISCOVERY_GUIDELINES,
    ]

    sections = ["\n".join(lines)]
    addon = build_reference_addon(signals)
    if addon:
        sections.append(addon)
    claims_text = clean_plain_text(evidence.claims.text if evidence.claims else None)
    if claims_text:
        sections.append("Claims brief (verbatim for reference):\n" + claims_text)
    return "\n\n".join(sections)


def build_cleanup_prompt(discovery_text: str, evidence: StageEvidence) -> str:
    return f"{CLEANUP_PROMPT_HEADER}\n\nAnalyst's similar papers notes:\n\n{discovery_text}"


# ============================================================================
# VALIDATION
# ============================================================================

def resolve_identifier(entry: SimilarPaper) -> Optional[str]:
    """First non-placeholder value among identifier, doi and url."""
    for candidate in (entry.identifier, entry.doi, entry.url):
        cleaned = clean_plain_text(candidate)
        if cleaned and not is_placeholder_identifier(cleaned):
            return cleaned
    return None


def is_placeholder_identifier(value: str) -> bool:
    return value.strip().strip(".").lower() in PLACEHOLDER_IDENTIFIERS


def filter_similar_papers(entries: List[SimilarPaper], evidence: StageEvidence) -> List[SimilarPaper]:
    """
    Drop entries without identifiers, the source paper, and duplicates.

    Identity is the normalized DOI when one can be found, falling back to
    the normalized title.
    """
    source_doi = normalize_doi(evidence.paper.doi)
    source_title = normalize_title(evidence.paper.title)

    kept = []
    seen_dois = set()
    seen_titles = set()
    for entry in entries:
        identifier = resolve_identifier(entry)
        if not identifier:
            logger.warning(f"[similar-papers] Dropping entry without identifier: {entry.title!r}")
            continue

        # doi and identifier may disagree; either one matching counts
        dois = {doi for doi in (normalize_doi(entry.doi), normalize_doi(identifier)) if doi}
        title_key = normalize_title(entry.title)

        if (source_doi and source_doi in dois) or (source_title and title_key == source_title):
            logger.warning(f"[similar-papers] Dropping source paper from results: {identifier}")
            continue
        if (dois & seen_dois) or (title_key and title_key in seen_titles):
            logger.warning(f"[similar-papers] Dropping duplicate entry: {identifier}")
            continue

        seen_dois.update(dois)
        if title_key:
            seen_titles.add(title_key)

        highlights = entry.overlap_highlights
        if len(highlights) != 3:
            logger.warning(f"[similar-papers] {identifier} has {len(highlights)} overlap highlights (expected 3)")

        cluster = entry.cluster_label
        if cluster and cluster not in CLUSTER_LABELS:
            logger.warning(f"[similar-papers] {identifier} has unknown cluster label {cluster!r}")

        kept.append(entry.model_copy(update={"identifier": identifier, "overlap_highlights": highlights[:3]}))

    return kept


def normalize(parsed: Any, evidence: StageEvidence, discovery_text: str) -> StageOutput:
    if not isinstance(parsed, dict):
        raise ValueError("Similar papers cleanup output must be a JSON object")

    result = SimilarPapersResult.model_validate(parsed)
    kept = filter_similar_papers(result.similar_papers, evidence)

    if result.similar_papers and not kept:
        raise StageParseError("Similar papers cleanup returned no papers with a usable identifier.")
    if not kept:
        raise StageParseError("Similar papers cleanup returned no papers.")

    structured = result.model_copy(update={"similar_papers": kept}).to_payload()
    logger.info(f"[similar-papers] Kept {len(kept)} of {len(result.similar_papers)} papers")
    return StageOutput(text=discovery_text, structured=structured)


SIMILAR_PAPERS_STAGE = StageDefinition(
    name="similar-papers",
    title="Similar papers",
    build_discovery=build_discovery_prompt,
    build_cleanup=build_cleanup_prompt,
    normalize=normalize,
    discovery_tokens=6144,
    cleanup_tokens=8192,
    web_search=True,
    search_context_size="medium",
    strict_json=False,
    cache_suffix="-similar.json",
    requires=("claims",),
)
