"""
Verified claims stage: cross-check each claim against every other stage's
evidence.

The discovery prompt summarises similar papers, research groups, theses and
patents (each section reads "None available" when absent). Cleanup output is
normalised hard: evidence sources are canonicalised, placeholders dropped,
and the final text is re-rendered from the structured form.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from evidentia.services.stage_executor import StageDefinition, StageEvidence, StageOutput
from evidentia.services.text_utils import clean_plain_text, collapse_whitespace
from evidentia.stages.claims import claim_text, load_brief
from evidentia.stages.structured import (
    Evidence,
    PatentsResult,
    ResearchGroupsResult,
    SimilarPapersResult,
    ThesesResult,
    VerifiedClaim,
    VerifiedClaimsResult,
)

logger = logging.getLogger(__name__)

VALID_STATUSES = ("Verified", "Partially Verified", "Contradicted", "Insufficient Evidence")
VALID_CONFIDENCE = ("High", "Moderate", "Low")

EVIDENCE_SOURCE_ALIASES = {
    "similar paper": "Similar Paper",
    "similar papers": "Similar Paper",
    "paper": "Similar Paper",
    "research group": "Research Group",
    "research groups": "Research Group",
    "group": "Research Group",
    "patent": "Patent",
    "patents": "Patent",
    "thesis": "Thesis",
    "phd thesis": "Thesis",
    "theses": "Thesis",
}

_PLACEHOLDER = re.compile(
    r"^(?:none(?:\s+found)?|no\s+(?:relevant\s+)?(?:evidence|contradictions?)|not\s+(?:provided|reported)|n/?a)$",
    re.IGNORECASE,
)
_BRACKET_PREFIX = re.compile(r"^\[(Similar Paper|Research Group|Patent|Thesis)\]\s*", re.IGNORECASE)
_LABEL_PREFIX = re.compile(r"^(Similar Paper|Research Group|Patent|Thesis)\s*(?:-|:)\s*", re.IGNORECASE)
_LEADING_MARKER = re.compile("^(?:[-*\u2022]+|\\d+\\.)\\s*")


# ============================================================================
# EVIDENCE SUMMARIES
# ============================================================================

def summarize_similar_papers(structured: Any) -> List[str]:
    if not isinstance(structured, dict):
        return ["SIMILAR PAPERS: None available"]
    papers = SimilarPapersResult.model_validate(structured).similar_papers
    if not papers:
        return ["SIMILAR PAPERS: None available"]

    lines = ["SIMILAR PAPERS:"]
    for index, paper in enumerate(papers, start=1):
        lines.append(f"Paper {index}: {paper.title or 'Untitled'}")
        if paper.authors:
            lines.append(f"  Authors: {', '.join(paper.authors)}")
        if paper.year:
            lines.append(f"  Year: {paper.year}")
        if paper.why_relevant:
            lines.append(f"  Relevance: {paper.why_relevant}")
        if paper.overlap_highlights:
            lines.append(f"  Key Findings: {'; '.join(paper.overlap_highlights)}")
        lines.append("")
    return lines


def summarize_research_groups(structured: Any) -> List[str]:
    if not isinstance(structured, dict):
        return ["RESEARCH GROUPS: None available"]
    papers = ResearchGroupsResult.model_validate(structured).papers
    if not papers:
        return ["RESEARCH GROUPS: None available"]

    lines = ["RESEARCH GROUPS:"]
    for index, paper in enumerate(papers, start=1):
        lines.append(f"Research Context {index}: {paper.title or 'Unknown paper'}")
        for group in paper.groups:
            lines.append(f"  Group: {group.name or 'Unnamed'}")
            if group.institution:
                lines.append(f"    Institution: {group.institution}")
            if group.notes:
                lines.append(f"    Focus: {group.notes}")
        lines.append("")
    return lines


def summarize_theses(structured: Any) -> List[str]:
    if isinstance(structured, list):
        structured = {"researchers": structured}
    if not isinstance(structured, dict):
        return ["PHD THESES: None available"]
    records = ThesesResult.model_validate(structured).researchers
    if not records:
        return ["PHD THESES: None available"]

    lines = ["PHD THESES:"]
    for index, record in enumerate(records, start=1):
        lines.append(f"Researcher {index}: {record.name or 'Unknown'}")
        thesis = record.phd_thesis
        if thesis is not None:
            lines.append(f"  Thesis: {thesis.title or 'Not found'}")
            if thesis.year:
                lines.append(f"  Year: {thesis.year}")
            if thesis.institution:
                lines.append(f"  Institution: {thesis.institution}")
        if record.latest_publication.title:
            lines.append(f"  Latest Publication: {record.latest_publication.title}")
        lines.append(f"  Data Available: {record.data_publicly_available}")
        lines.append("")
    return lines


def summarize_patents(structured: Any) -> List[str]:
    if not isinstance(structured, dict):
        return ["RELATED PATENTS: None available"]
    patents = PatentsResult.model_validate(structured).patents
    if not patents:
        return ["RELATED PATENTS: None available"]

    lines = ["RELATED PATENTS:"]
    for index, patent in enumerate(patents, start=1):
        lines.append(f"Patent {index}: {patent.patent_number or 'Unknown'}")
        lines.append(f"  Title: {patent.title or 'Untitled'}")
        if patent.assignee:
            lines.append(f"  Assignee: {patent.assignee}")
        overlap = patent.overlap_with_paper
        if overlap.claim_ids:
            lines.append(f"  Overlaps with claims: {', '.join(overlap.claim_ids)}")
        if overlap.summary:
            lines.append(f"  Technical Overlap: {overlap.summary}")
        lines.append("")
    return lines


def _structured(payload) -> Any:
    return payload.structured if payload is not None else None


# ============================================================================
# PROMPTS
# ============================================================================

VERIFICATION_METHODOLOGY = """=== VERIFICATION METHODOLOGY ===

CRITICAL STANCE: Be skeptical and rigorous. Assume claims are UNVERIFIED until proven otherwise.
Default to 'Partially Verified' - most claims should have caveats. 'Verified' status is RARE.

For each claim (C1, C2, etc.):

1. INDEPENDENCE CHECK:
   - Evidence from the SAME research group or authors = NOT independent validation
   - Require 3+ INDEPENDENT sources (different groups/institutions) for 'Verified' status
   - Same-group evidence can only support 'Partially Verified' at best

2. DATA AVAILABILITY CHECK:
   - Is raw data publicly available? (GitHub, Zenodo, institutional repository)
   - Is code/analysis pipeline shared?
   - NO public data/code = automatic downgrade from 'Verified' to 'Partially Verified'

3. STATISTICAL RIGOR CHECK:
   - Adequate sample size (N)? Proper controls and randomization?
   - P-values reported and appropriate? Effect sizes meaningful?
   - Missing any of these = note as limitation

4. REPLICATION CHECK:
   - Has the finding been replicated by another group?
   - Do similar papers CONFIRM or CONTRADICT?
   - No independent replication = 'Partially Verified' at best

5. METHODOLOGICAL SOUNDNESS:
   - Appropriate study design for the claim? Potential confounders addressed?
   - Look for gaps in reasoning or methodology

6. CONTRADICTION SEARCH (CRITICAL):
   - Actively look for contradicting evidence
   - Patents showing prior art = potential contradiction
   - If ANY contradictions found, cannot be 'Verified'

7. VERIFICATION STATUS ASSIGNMENT (STRICT CRITERIA):
   VERIFIED (rare): 3+ independent sources, no contradictions, data and code public, replicated, statistically rigorous
   PARTIALLY VERIFIED (most common): 1-2 supporting sources, minor gaps or limitations, not independently replicated
   CONTRADICTED: evidence actively refutes the claim or replication failed
   INSUFFICIENT EVIDENCE: no supporting source, or the claim is too vague to verify

8. CONFIDENCE LEVEL ASSIGNMENT:
   - High: Only for 'Verified' claims with overwhelming evidence
   - Moderate: For 'Partially Verified' with reasonable support
   - Low: For 'Partially Verified' with minimal support or 'Insufficient Evidence'

9. EVIDENCE DOCUMENTATION:
   - List ALL supporting and contradicting evidence with specific relevance notes

10. VERIFICATION SUMMARY:
    - 2-3 sentences explaining status and reasoning, with limitations and what would strengthen verification

IMPORTANT: Most claims should be 'Partially Verified'. If you mark everything as 'Verified', you are NOT being critical enough.

=== DELIVERABLE ===

For each claim, provide:
- Claim ID (C1, C2, etc.)
- Original Claim (verbatim)
- Verification Status (Verified/Partially Verified/Contradicted/Insufficient Evidence)
- Supporting Evidence: source type (Similar Paper/Patent/Research Group/Thesis), title/identifier, brief relevance note
- Contradicting Evidence (if any): source type, title/identifier, brief relevance note
- Verification Summary (2-3 sentences explaining status and reasoning)
- Confidence Level (High/Moderate/Low)

Also provide:
- Overall Assessment: Brief paragraph on the paper's overall claim validity"""

CLEANUP_PROMPT_HEADER = """You convert the analyst's verified-claims notes into strict JSON for Evidentia's review view.

Return exactly one JSON object with these keys:
- "claims": array ordered as in the notes (use [] if the analyst supplied none).
- "overallAssessment": string summarising the entire paper ("" if not provided).
- "promptNotes": optional string with any remaining analyst cautions. Omit the key when nothing meaningful remains.

Each element in "claims" must include:
- "claimId": string such as "C1".
- "originalClaim": the verbatim claim text.
- "verificationStatus": one of "Verified", "Partially Verified", "Contradicted", "Insufficient Evidence".
- "confidenceLevel": one of "High", "Moderate", "Low".
- "supportingEvidence": array of objects with { "source": "Similar Paper" | "Research Group" | "Patent" | "Thesis", "title": string, "relevance": string }. Use [] when nothing is cited.
- "contradictingEvidence": same schema; emit [] when the analyst reported none.
- "verificationSummary": a 2-3 sentence user-facing explanation of the status and reasoning.

Normalise as you parse:
- Preserve analyst wording but trim whitespace and strip markdown or bullet symbols.
- Map bracketed prefixes such as "[Similar Paper]" or "[Patent]" into the "source" field and remove them from titles.
- Drop placeholder strings like "None found" or "No contradictions" and output empty arrays instead.
- Collapse multi-line relevance notes into a single sentence per evidence item.

Respond with raw JSON only (double quotes, no code fences) and never invent evidence or conclusions."""


def build_claims_section(evidence: StageEvidence) -> List[str]:
    claims = load_brief(evidence.claims).claims
    if not claims:
        return ["No structured claims were provided. Abort if you cannot proceed."]

    lines = []
    for claim in claims:
        lines.append(f"{claim.id or 'Unnamed claim'}: {claim_text(claim, 'Claim text not provided.')}")
        if claim.strength:
            lines.append(f"   Original Strength: {claim.strength}")
        if claim.evidence_summary:
            lines.append(f"   Evidence: {claim.evidence_summary}")
        lines.append("")
    return lines


def build_discovery_prompt(evidence: StageEvidence) -> str:
    paper = evidence.paper
    lines = [
        "You are a scientific claim verification analyst.",
        "",
        "Verify Paper Claims Against All Available Evidence",
        "",
        f"Paper: {clean_plain_text(paper.title) or 'Unknown paper'}",
    ]
    doi = clean_plain_text(paper.doi)
    if doi:
        lines.append(f"DOI: {doi}")

    lines.extend([
        "",
        "Task: Cross-reference each claim below against ALL available evidence from similar papers, research groups, PhD theses, and patents. Determine verification status, identify supporting and contradicting evidence, and assess confidence level.",
        "",
        "=== CLAIMS TO VERIFY ===",
        "",
        *build_claims_section(evidence),
        "=== AVAILABLE EVIDENCE ===",
        "",
        *summarize_similar_papers(_structured(evidence.similar_papers)),
        "",
        *summarize_research_groups(_structured(evidence.research_groups)),
        "",
        *summarize_theses(_structured(evidence.theses)),
        "",
        *summarize_patents(_structured(evidence.patents)),
        "",
        VERIFICATION_METHODOLOGY,
    ])

    claims_text = clean_plain_text(evidence.claims.text if evidence.claims else None)
    if claims_text:
        lines.extend(["", "Claims brief (verbatim for reference):", claims_text])
    return "\n".join(lines)


def build_cleanup_prompt(discovery_text: str, evidence: StageEvidence) -> str:
    return "\n".join([
        CLEANUP_PROMPT_HEADER,
        "The analyst notes are provided below. Do not copy them into the JSON; only use them for reference.",
        "--- ANALYST NOTES ---",
        discovery_text.strip(),
        "---",
        "Return the JSON object now.",
    ])


# ============================================================================
# VALIDATION
# ============================================================================

def canonical_source(value: Optional[str]) -> Optional[str]:
    text = (value or "").replace("[", "").replace("]", "").strip()
    if not text:
        return None
    return EVIDENCE_SOURCE_ALIASES.get(text.lower(), text[0].upper() + text[1:])


def is_placeholder(value: str) -> bool:
    return bool(_PLACEHOLDER.match(value.strip()))


def normalize_evidence(entry: Any) -> Optional[Evidence]:
    """
    Clean one evidence item, or return None when it carries nothing.

    A "[Patent] Title" or "Patent: Title" prefix moves into `source` when
    no explicit source was given. Unlabelled evidence counts as a similar
    paper.
    """
    if not isinstance(entry, dict):
        return None

    source = clean_plain_text(entry.get("source"))
    title = clean_plain_text(entry.get("title"))
    relevance = collapse_whitespace(clean_plain_text(entry.get("relevance")))

    for pattern in (_BRACKET_PREFIX, _LABEL_PREFIX):
        match = pattern.match(title)
        if match:
            source = source or match.group(1)
            title = title[match.end():].strip()

    title = collapse_whitespace(_LEADING_MARKER.sub("", title))
    if not title or is_placeholder(title):
        return None

    return Evidence(
        source=canonical_source(source) or "Similar Paper",
        title=title,
        relevance=relevance if relevance and not is_placeholder(relevance) else None,
    )


def _pick(value: Any, allowed, default: str) -> str:
    text = clean_plain_text(value).lower()
    for option in allowed:
        if option.lower() == text:
            return option
    return default


def normalize_claim(entry: Any, brief_claims: Dict[str, str]) -> Optional[VerifiedClaim]:
    if not isinstance(entry, dict):
        return None

    claim_id = clean_plain_text(entry.get("claimId") or entry.get("claim_id"))
    if not claim_id:
        return None
    if brief_claims and claim_id not in brief_claims:
        logger.warning(f"[verified-claims] Dropping claim with unknown id {claim_id}")
        return None

    original = clean_plain_text(entry.get("originalClaim")) or brief_claims.get(claim_id, "")
    if not original:
        return None

    supporting = [item for item in map(normalize_evidence, entry.get("supportingEvidence") or []) if item]
    contradicting = [item for item in map(normalize_evidence, entry.get("contradictingEvidence") or []) if item]

    return VerifiedClaim(
        claim_id=claim_id,
        original_claim=original,
        verification_status=_pick(entry.get("verificationStatus"), VALID_STATUSES, "Insufficient Evidence"),
        supporting_evidence=supporting,
        contradicting_evidence=contradicting,
        verification_summary=clean_plain_text(entry.get("verificationSummary")) or None,
        confidence_level=_pick(entry.get("confidenceLevel"), VALID_CONFIDENCE, "Low"),
    )


def format_verified_claims(result: VerifiedClaimsResult) -> str:
    """Render the normalised result as the stage's display text."""
    lines = []
    if result.overall_assessment:
        lines.extend(["=== OVERALL ASSESSMENT ===", result.overall_assessment, ""])

    lines.extend(["=== VERIFIED CLAIMS ===", ""])
    for claim in result.claims:
        lines.extend([
            f"Claim: {claim.claim_id}",
            f"Original: {claim.original_claim}",
            f"Status: {claim.verification_status}",
            f"Confidence: {claim.confidence_level}",
            "",
        ])
        for heading, items in (
            ("Supporting Evidence:", claim.supporting_evidence),
            ("Contradicting Evidence:", claim.contradicting_evidence),
        ):
            if not items:
                continue
            lines.append(heading)
            for item in items:
                lines.append(f"  - [{item.source}] {item.title}")
                if item.relevance:
                    lines.append(f"    {item.relevance}")
            lines.append("")
        if claim.verification_summary:
            lines.append(f"Summary: {claim.verification_summary}")
        lines.append("")

    if result.prompt_notes:
        lines.extend(["=== NOTES ===", result.prompt_notes])
    return "\n".join(lines).strip()


def normalize(parsed: Any, evidence: StageEvidence, discovery_text: str) -> StageOutput:
    if not isinstance(parsed, dict):
        raise ValueError("Verified claims cleanup output must be a JSON object")
    if not isinstance(parsed.get("claims"), list):
        raise ValueError("Verified claims cleanup output has no claims array")

    brief_claims = {
        claim.id: claim_text(claim)
        for claim in load_brief(evidence.claims).claims
        if claim.id
    }
    claims = [claim for claim in (normalize_claim(entry, brief_claims) for entry in parsed["claims"]) if claim]
    if not claims:
        raise ValueError("No valid verified claims after normalization")

    result = VerifiedClaimsResult(
        claims=claims,
        overall_assessment=clean_plain_text(parsed.get("overallAssessment")) or None,
        prompt_notes=clean_plain_text(parsed.get("promptNotes")) or None,
    )
    return StageOutput(text=format_verified_claims(result), structured=result.to_payload())


VERIFIED_CLAIMS_STAGE = StageDefinition(
    name="verified-claims",
    title="Verified claims",
    build_discovery=build_discovery_prompt,
    build_cleanup=build_cleanup_prompt,
    normalize=normalize,
    discovery_tokens=9216,
    cleanup_tokens=9216,
    web_search=False,
    strict_json=False,
    cache_suffix="-verified-claims.json",
    requires=("claims", "similar-papers", "research-groups", "researcher-theses", "patents"),
)
