"""
Claims stage: extract the paper's top claims, evidence and gaps.

Discovery works only from the extracted paper text (no web search). Cleanup
turns the analyst brief into the ClaimsBrief structure every downstream
stage reads.
"""

import logging
from typing import Any, List

from evidentia.config import settings
from evidentia.services.stage_executor import StageDefinition, StageEvidence, StageOutput
from evidentia.services.text_utils import clean_plain_text, format_authors, truncate_text
from evidentia.stages.structured import ClaimsBrief

logger = logging.getLogger(__name__)

VALID_STRENGTHS = ("High", "Moderate", "Low", "Unclear")
VALID_RISK_STATUSES = ("met", "partial", "missing", "unclear")


# ============================================================================
# PROMPTS
# ============================================================================

CLAIMS_PROMPT_TEMPLATE = """Objective: Produce a rigorous, concise, text-only claims analysis of a single scientific paper, stating its top 3 claims, the evidence behind them, and their gaps or limitations.

Context: You will receive raw text extracted from one scientific PDF. Work strictly from this text (no external sources). Proceed under reasonable assumptions without asking for clarification, and stop once the acceptance criteria are met.

Audience and Tone: Research analysts and domain experts. Neutral, precise, evidence-centred.

Inputs:

Raw PDF text: $PAPER_TEXT

Constraints:
- Text-only output (no JSON).
- Base all findings strictly on the provided text.
- Attribute every claim and evidence item to page/section/figure/table references where available.
- Extract numerical results exactly as written (effect sizes, CIs, p-values, N, timeframes).
- Flag OCR artefacts or ambiguities with [UNCLEAR]; state assumptions explicitly.

Output Format:

Executive Summary: main findings, headline numbers, overall evidence strength (High/Moderate/Low).

Top 3 Claims and Evidence (C1-C3 only), each with:
- One-sentence claim.
- Evidence summary (design, sample, measures, analysis).
- Key numbers (effect size, CI, p, N, timeframe).
- Source location (page/section/figure/table).
- Strength rating (High/Moderate/Low/Unclear) and key assumptions/conditions.
- Evidence type (e.g. RCT, observational, simulation, qualitative, prior work).

Gaps & Limitations: identify weaknesses and link each to C1-C3.

Methods Snapshot: brief overview of study design and approach.

Risk-of-Bias/Quality Checklist: brief assessment.

Open Questions & Next Steps: specific, testable follow-ups.

Acceptance Criteria:
1. Parse and segment the raw text; note missing sections explicitly.
2. Rank claims by centrality (abstract/conclusion presence, frequency, emphasis); keep the top 3 only.
3. For C1-C3, summarise direct supporting evidence with precise locations and key numbers.
4. Rate strength: High (appropriate design, adequate N, consistent results, clear statistics); Moderate (some limitations); Low (weak support/speculative); Unclear (insufficient detail).
5. QA: all sections present; numbers match the text exactly; each claim has a strength rating and a location reference or [DETAIL NEEDED]."""

CLEANUP_PROMPT_HEADER = """Objective: Convert the single-paper claims summary into strict JSON for Evidentia's claims view (up to 3 claims: C1-C3).

Context: Deterministic ETL. Preserve content exactly, validate the schema, avoid extra keys or prose.

Schema Requirements:
- Return a single JSON object with keys: text (string), structured (object), promptNotes (optional string).
- text: reproduce the analyst's formatted summary exactly (headings and bullet markers included), escaped as a JSON string.
- structured.executiveSummary: array of strings.
- structured.claims (max 3 items): array of objects { id, claim, evidenceSummary, keyNumbers (array of strings), source, strength, assumptions, evidenceType }. strength is one of "High", "Moderate", "Low", "Unclear". Use [] for missing keyNumbers and null for unknown scalars.
- structured.gaps: array of objects { category, detail, relatedClaimIds (array of strings limited to ["C1","C2","C3"]) }.
- structured.methodsSnapshot: array of strings.
- structured.riskChecklist: array of objects { item, status, note }, where status is one of "met", "partial", "missing", "unclear" (lowercase).
- structured.openQuestions: array of strings.

Output raw JSON only: no markdown fences, comments, or trailing prose. Do not invent claims or numbers; use "[DETAIL NEEDED]" exactly when details are missing."""


def build_metadata_lines(evidence: StageEvidence) -> List[str]:
    paper = evidence.paper
    lines = []
    title = clean_plain_text(paper.title)
    if title:
        lines.append(f"Title: {title}")
    if paper.authors:
        lines.append(f"Authors: {format_authors(paper.authors)}")
    doi = clean_plain_text(paper.doi)
    if doi:
        lines.append(f"DOI: {doi}")
    return lines


def build_discovery_prompt(evidence: StageEvidence) -> str:
    """
    Render the claims analysis prompt.

    The paper text is capped at `claims_max_text_length` characters with a
    visible truncation marker.
    """
    paper_text, truncated = truncate_text(clean_plain_text(evidence.text), settings.claims_max_text_length)
    if truncated:
        logger.info(f"[claims] Paper text truncated to {settings.claims_max_text_length} characters")

    # Plain replacement: the paper text may contain braces
    prompt = CLAIMS_PROMPT_TEMPLATE.replace("$PAPER_TEXT", paper_text)

    metadata = build_metadata_lines(evidence)
    if metadata:
        prompt += "\n\nPaper metadata:\n" + "\n".join(metadata)
    return prompt


def build_cleanup_prompt(discovery_text: str, evidence: StageEvidence) -> str:
    return f"{CLEANUP_PROMPT_HEADER}\n\nAnalyst's claims summary:\n\n{discovery_text}"


# ============================================================================
# VALIDATION
# ============================================================================

def _canonical(value: Any, allowed, default: str) -> str:
    text = clean_plain_text(value)
    for option in allowed:
        if text.lower() == option.lower():
            return option
    return default


def normalize_brief(structured: Any) -> dict:
    """
    Validate a ClaimsBrief payload and normalize its fields.

    Claim ids are unique (duplicates dropped, blanks numbered), strengths and
    risk statuses are canonical, and gap claim references only point at
    claims that exist.

    Args:
        structured: Parsed `structured` object from the cleanup output

    Returns:
        Camel-cased ClaimsBrief dict

    Raises:
        ValueError: If `structured` is not an object
    """
    if not isinstance(structured, dict):
        raise ValueError("Claims cleanup output has no structured object")

    brief = ClaimsBrief.model_validate(structured)

    seen = set()
    claims = []
    for index, claim in enumerate(brief.claims):
        claim_id = claim.id or f"C{index + 1}"
        if claim_id in seen:
            logger.warning(f"[claims] Dropping duplicate claim id {claim_id}")
            continue
        if not claim.claim and not claim.evidence_summary:
            logger.warning(f"[claims] Dropping claim {claim_id} with no text")
            continue
        seen.add(claim_id)
        claims.append(claim.model_copy(update={
            "id": claim_id,
            "strength": _canonical(claim.strength, VALID_STRENGTHS, "Unclear"),
        }))

    gaps = [
        gap.model_copy(update={"related_claim_ids": [cid for cid in gap.related_claim_ids if cid in seen]})
        for gap in brief.gaps
    ]
    risks = [
        item.model_copy(update={"status": _canonical(item.status, VALID_RISK_STATUSES, "unclear")})
        for item in brief.risk_checklist
    ]

    return brief.model_copy(update={"claims": claims, "gaps": gaps, "risk_checklist": risks}).to_payload()


def normalize(parsed: Any, evidence: StageEvidence, discovery_text: str) -> StageOutput:
    if not isinstance(parsed, dict):
        raise ValueError("Claims cleanup output must be a JSON object")

    # Some cleanups skip the wrapper and return the brief itself
    structured = parsed.get("structured") if "structured" in parsed else parsed
    if structured is None:
        return StageOutput(text=clean_plain_text(parsed.get("text")) or discovery_text, structured=None)

    brief = normalize_brief(structured)
    text = clean_plain_text(parsed.get("text")) or discovery_text
    return StageOutput(text=text, structured=brief)


CLAIMS_STAGE = StageDefinition(
    name="claims",
    title="Claims",
    build_discovery=build_discovery_prompt,
    build_cleanup=build_cleanup_prompt,
    normalize=normalize,
    discovery_tokens=8192,
    cleanup_tokens=8192,
    web_search=False,
    strict_json=False,
    cache_suffix="-claims.json",
)


def load_brief(payload) -> ClaimsBrief:
    """Read the ClaimsBrief out of an upstream claims payload (empty if absent)."""
    structured = payload.structured if payload is not None else None
    if not isinstance(structured, dict):
        return ClaimsBrief()
    return ClaimsBrief.model_validate(structured)


def claim_text(claim, fallback: str = "") -> str:
    """Claim sentence, falling back to its evidence summary."""
    return claim.claim or claim.evidence_summary or fallback
