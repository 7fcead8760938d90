"""
Patents stage: granted patents and published applications that overlap the
paper's claims.

Patents feed a structured UI that cannot render from raw text, so cleanup
parsing is strict.
"""

import logging
import re
from typing import Any, List

from evidentia.services.stage_executor import StageDefinition, StageEvidence, StageOutput
from evidentia.services.text_utils import clean_plain_text, truncate_text
from evidentia.stages.claims import load_brief
from evidentia.stages.structured import Claim, Patent, PatentsResult

logger = logging.getLogger(__name__)

GOOGLE_PATENTS_URL = "https://patents.google.com/patent/{number}"
ABSTRACT_LIMIT = 1200
MAX_CLAIMS = 12


# ============================================================================
# PROMPTS
# ============================================================================

PATENT_CONSTRAINTS = """Constraints:

- Return 3-5 patents with the strongest technical overlap (quality over quantity).
- Include both granted patents and published applications.
- Bias toward recent filings (last 10 years) when relevance is comparable.
- Focus on substantive technical overlap, not just keyword matches.
- For each patent, explain HOW the patent claims map to specific paper methods (be specific about the technical elements that overlap).

Output Format:

For each patent provide:
- Patent number (e.g., US1234567B2, WO2020123456A1)
- Title
- Assignee (company/institution)
- Filing date and grant date (if granted)
- Brief abstract (1-2 sentences)
- Which paper claims this patent relates to (e.g., C1, C3)
- Technical overlap summary: 2-3 sentences explaining HOW the patent's technical claims map to specific methods/techniques in the paper. Be specific about algorithms, materials, apparatus, or applications that overlap.
- URL to patent document (Google Patents link)

Steps:

1. Extract specific technical elements from each paper claim: algorithms, compositions, materials, apparatus, methods, or applications.
2. Search patent databases (Google Patents, USPTO, EPO, WIPO) using these technical elements.
3. For each candidate patent, read the claims section and identify which patent claims cover similar technical approaches.
4. Map patent claim language to the paper's technical elements and note the overlap.
5. Select the 3-5 patents with the most substantive technical overlap to the paper's claims.
6. For each selected patent, write a 2-3 sentence technical summary explaining the specific overlap.
7. If fewer than 3 patents have substantive overlap, return what you find and note which claims lack patent coverage."""

CLEANUP_PROMPT_HEADER = """You are a cleanup agent. Convert the analyst's patent search notes into strict JSON for Evidentia's patent view.

Context: You should receive notes for 3-5 patents that validate the paper's claims through substantive technical overlap.

Output requirements:
- Return a single JSON object with keys: patents (array of 3-5 items), promptNotes (optional string).
- Each patent object must include: patentNumber (string), title (string), assignee (string|null), filingDate (string|null), grantDate (string|null), abstract (string|null), overlapWithPaper (object with claimIds array and summary string), url (string).
- Use null for unknown scalars. Use empty arrays for missing claimIds arrays only.
- Every patent MUST have a url field. Construct it as: https://patents.google.com/patent/{PATENT_NUMBER}
  Example: US7729863B2 -> https://patents.google.com/patent/US7729863B2
- Dates should be in YYYY-MM-DD format when available.
- overlapWithPaper.claimIds references the paper claim IDs (e.g., ["C1", "C3"]).
- overlapWithPaper.summary is a 2-3 sentence explanation of HOW the patent's technical claims map to specific methods in the paper.
- Preserve factual content from the notes; do not invent new patents.
- Output raw JSON only: no markdown fences, comments, trailing prose, or extra keys. Double quotes only."""


def claim_line(claim: Claim, index: int) -> str:
    segments = [f"{claim.id or f'C{index + 1}'}: {claim.claim or claim.evidence_summary or 'Claim text not provided.'}"]
    if claim.evidence_type:
        segments.append(f"Evidence type: {claim.evidence_type}")
    if claim.strength:
        segments.append(f"Strength: {claim.strength}")
    return "\n".join(segments)


def build_discovery_prompt(evidence: StageEvidence) -> str:
    """
    Render the patent search prompt from paper metadata and the claims brief.

    The abstract is capped at 1,200 characters and at most 12 claims are
    listed.
    """
    paper = evidence.paper
    brief = load_brief(evidence.claims)

    lines = [
        "Objective: Identify 3-5 patents that validate the paper's claims through substantive technical overlap.",
        "",
        "Context: You have a claims brief from a scientific paper. Search patent databases to find granted patents and published applications that cover similar technical approaches. Focus on validation evidence: patents that demonstrate the paper's methods have been independently developed and claimed in the patent literature.",
        "",
        "Inputs:",
        "",
        f"Paper: {clean_plain_text(paper.title) or 'Unknown paper'}",
    ]

    doi = clean_plain_text(paper.doi)
    if doi:
        lines.append(f"DOI: {doi}")

    abstract = clean_plain_text(paper.abstract)
    if abstract:
        abstract, _ = truncate_text(abstract, ABSTRACT_LIMIT, marker="...")
        lines.extend(["", "Abstract:", abstract, ""])

    if brief.methods_snapshot:
        lines.append("Method snapshot (claims brief cues):")
        lines.extend(f"- {entry}" for entry in brief.methods_snapshot[:5])
        lines.append("")

    if brief.executive_summary:
        lines.append("Claims brief summary cues:")
        lines.extend(f"- {entry}" for entry in brief.executive_summary[:3])
        lines.append("")

    lines.extend(["Claims from the paper:", ""])
    if not brief.claims:
        lines.append("No structured claims were provided. Abort if you cannot proceed.")
    for index, claim in enumerate(brief.claims[:MAX_CLAIMS]):
        lines.extend([claim_line(claim, index), ""])

    lines.append(PATENT_CONSTRAINTS)

    claims_text = clean_plain_text(evidence.claims.text if evidence.claims else None)
    if claims_text:
        lines.extend(["", "Claims brief (verbatim for reference):", claims_text])

    return "\n".join(lines).strip()


def build_cleanup_prompt(discovery_text: str, evidence: StageEvidence) -> str:
    return f"{CLEANUP_PROMPT_HEADER}\n\nAnalyst's patent research notes:\n\n{discovery_text}"


# ============================================================================
# VALIDATION
# ============================================================================

def normalize_patent_number(value: Any) -> str:
    return re.sub(r"\s+", "", clean_plain_text(value)).upper()


def patent_url(number: str) -> str:
    return GOOGLE_PATENTS_URL.format(number=number)


def normalize_patents(entries: List[Patent], known_claim_ids: set) -> List[Patent]:
    """
    Drop entries without a patent number and fill in derived fields.

    Numbers are uppercased with whitespace removed, missing URLs point at
    Google Patents, and claim references are limited to known claim ids.
    """
    patents = []
    seen = set()
    for entry in entries:
        number = normalize_patent_number(entry.patent_number)
        if not number:
            logger.warning(f"[patents] Dropping patent without a number: {entry.title!r}")
            continue
        if number in seen:
            logger.warning(f"[patents] Dropping duplicate patent {number}")
            continue
        seen.add(number)

        overlap = entry.overlap_with_paper
        claim_ids = [cid for cid in overlap.claim_ids if cid in known_claim_ids]
        if len(claim_ids) < len(overlap.claim_ids):
            logger.warning(f"[patents] {number} references unknown claim ids: {overlap.claim_ids}")

        patents.append(entry.model_copy(update={
            "patent_number": number,
            "url": entry.url or patent_url(number),
            "overlap_with_paper": overlap.model_copy(update={"claim_ids": claim_ids}),
        }))
    return patents


def normalize(parsed: Any, evidence: StageEvidence, discovery_text: str) -> StageOutput:
    if not isinstance(parsed, dict) or not isinstance(parsed.get("patents"), list):
        raise ValueError("Patents cleanup output has no patents array")

    result = PatentsResult.model_validate(parsed)
    known_ids = {claim.id for claim in load_brief(evidence.claims).claims if claim.id}
    patents = normalize_patents(result.patents, known_ids)

    if not patents:
        logger.warning("[patents] Cleanup returned no usable patents")

    structured = result.model_copy(update={"patents": patents}).to_payload()
    return StageOutput(text=discovery_text, structured=structured)


PATENTS_STAGE = StageDefinition(
    name="patents",
    title="Patents",
    build_discovery=build_discovery_prompt,
    build_cleanup=build_cleanup_prompt,
    normalize=normalize,
    discovery_tokens=6144,
    cleanup_tokens=8192,
    web_search=True,
    search_context_size="medium",
    strict_json=True,
    cache_suffix="-patents.json",
    requires=("claims",),
)
