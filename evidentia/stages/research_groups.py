"""
Research groups stage: contact details for the authors of the source paper
and its similar papers.

Discovery runs through the batch splitter (two papers per web-search call).
The cleanup prompt is told how many papers to expect, and the validation
pass compares the parsed count against it.
"""

import logging
from typing import Any, List

from evidentia.config import settings
from evidentia.errors import StageParseError
from evidentia.services.batching import ContactPaper, build_contact_papers, run_batched_discovery
from evidentia.services.model_client import ModelClient
from evidentia.services.stage_executor import StageDefinition, StageEvidence, StageOutput
from evidentia.services.text_utils import normalize_doi, normalize_title
from evidentia.stages.structured import GroupPaper, ResearchGroupsResult

logger = logging.getLogger(__name__)

DISCOVERY_TOKENS = 16384


# ============================================================================
# PROMPTS
# ============================================================================

DISCOVERY_PROMPT_TEMPLATE = """Objective: For EACH paper below, find the research groups behind the listed authors and gather their contact information.

Context: You're building a collaboration pipeline for research analysts. The authors to research have already been selected for each paper. You have web search tools enabled; use them immediately. There is no live user in the loop: do not ask clarifying questions or for permission.

Papers to analyze:
[PAPERS_SECTION]

Task:

For each paper:
1. Identify the lab or research group each listed author belongs to (group name, institution, group website).
2. For each author, use web search to gather:
   - Full name (as listed on the paper)
   - Institutional email (university directories, lab pages)
   - Current role/position (PI, Professor, Postdoc, PhD Student, etc.)
   - ORCID identifier (search orcid.org by author name)
   - Academic profiles (Google Scholar, LinkedIn, personal website)

Output Format:

Paper 1: <Paper Title> (<Identifier or 'Source'>)

Group: <Lab or group name or 'Not found'>
  Institution: <institution or 'Not found'>
  Website: <URL or 'Not found'>
  Notes: <one line on the group's focus>
  Researchers:
    - <Full Name>
      Email: <institutional.email@university.edu or 'Not found'>
      Role: <Current Position or 'Not found'>
      ORCID: <0000-0000-0000-0000 or 'Not found'>
      Profiles:
        - Google Scholar: <URL or 'Not found'>
        - LinkedIn: <URL or 'Not found'>
        - Website: <URL or 'Not found'>

[Repeat Group blocks when authors belong to different groups]

Paper 2: <Next Paper Title> (<Identifier>)
...

[Repeat for all papers in this batch]

Important:
- Cover every paper listed above, in order, even when little can be found
- Use 'Not found' when information genuinely can't be located after a thorough search
- ORCID format: 0000-0000-0000-0000 (16 digits with hyphens)
- Only include profiles that are publicly accessible
- Prioritize institutional emails over personal emails

Begin web search and research immediately."""

CLEANUP_PROMPT_HEADER = """You are a cleanup agent. Convert the analyst's notes into strict JSON for Evidentia's Research Groups view.

Output requirements:
- Return a single JSON object with keys: papers (array), promptNotes (optional string).
- Each paper object must include: title (string), identifier (string|null), groups (array).
- Each group object must include: name (string), institution (string|null), website (string|null), notes (string|null), researchers (array).
- Each researcher object must include: name (string), email (string|null), role (string|null), orcid (string|null), profiles (array).
- Each profile object must include: platform (string), url (string).
- Use null for unknown scalars. Do not write "Not found"; use null instead.
- For ORCID: use format "0000-0000-0000-0000" or null.
- For profiles: only include profiles that have actual URLs. Common platforms: "Google Scholar", "LinkedIn", "Personal Website", "ResearchGate", "Twitter".
- Preserve factual content; do not invent new people or emails.
- Output raw JSON only: no markdown fences, comments, trailing prose, or extra keys. Double quotes only."""


def render_paper_section(papers: List[ContactPaper], start_index: int) -> str:
    """
    Render numbered paper blocks for one batch.

    Numbering continues across batches: the source paper is always 1 and
    similar paper n is n + 1.
    """
    lines = []
    for offset, paper in enumerate(papers):
        number = start_index + offset
        label = "SOURCE PAPER" if paper.is_source else f"SIMILAR PAPER {number - 1}"

        lines.append(f"{number}. {label}:")
        lines.append(f"   Title: {paper.title}")
        lines.append(f"   Identifier: {paper.identifier}")
        lines.append("   Authors to research (in paper order):")
        if paper.authors:
            lines.extend(f"     {idx}. {name}" for idx, name in enumerate(paper.authors, start=1))
        else:
            lines.append("     Authors not reported")
        if paper.summary:
            lines.append(f"   Summary: {paper.summary}")
        if paper.method_signals:
            lines.append("   Method signals:")
            lines.extend(f"     - {signal}" for signal in paper.method_signals)
        lines.append("")

    return "\n".join(lines)


def build_batch_prompt(papers: List[ContactPaper], start_index: int) -> str:
    return DISCOVERY_PROMPT_TEMPLATE.replace("[PAPERS_SECTION]", render_paper_section(papers, start_index))


def contact_papers(evidence: StageEvidence) -> List[ContactPaper]:
    return build_contact_papers(
        evidence.paper,
        evidence.claims,
        evidence.similar_papers,
        max_similar=settings.max_similar_papers_for_contacts,
    )


def build_discovery_prompt(evidence: StageEvidence) -> str:
    """Single prompt covering every paper (used for previews; execution is batched)."""
    return build_batch_prompt(contact_papers(evidence), 1)


def build_cleanup_prompt(discovery_text: str, evidence: StageEvidence) -> str:
    expected = len(contact_papers(evidence))
    return (
        f"{CLEANUP_PROMPT_HEADER}\n"
        f"- The notes cover exactly {expected} papers. Return exactly {expected} paper objects, "
        f"in the order they appear in the notes.\n\n"
        f"Analyst's research group notes:\n\n{discovery_text}"
    )


async def discover(evidence: StageEvidence, client: ModelClient) -> str:
    return await run_batched_discovery(
        contact_papers(evidence),
        client,
        build_batch_prompt,
        batch_size=settings.research_group_batch_size,
        max_output_tokens=DISCOVERY_TOKENS,
        search_context_size="medium",
    )


# ============================================================================
# VALIDATION
# ============================================================================

def _coerce_paper(entry: Any) -> Any:
    """Older cleanups list `authors` per paper; wrap them in one group."""
    if isinstance(entry, dict) and "groups" not in entry and isinstance(entry.get("authors"), list):
        entry = dict(entry)
        entry["groups"] = [{"name": None, "researchers": entry.pop("authors")}]
    return entry


def _paper_key(paper: GroupPaper) -> str:
    doi = normalize_doi(paper.identifier)
    if doi:
        return doi
    return normalize_title(paper.title) or (paper.identifier or "").lower()


def normalize(parsed: Any, evidence: StageEvidence, discovery_text: str) -> StageOutput:
    """
    Validate research-group papers against the expected paper count.

    A shortfall is logged and the partial result kept. Extra or duplicate
    papers are dropped so the count never exceeds the paper list. Zero
    papers for a non-empty paper list fails the stage.
    """
    if isinstance(parsed, list):
        parsed = {"papers": parsed}
    if not isinstance(parsed, dict):
        raise ValueError("Research groups cleanup output must be a JSON object")

    raw_papers = parsed.get("papers")
    if isinstance(raw_papers, list):
        parsed = {**parsed, "papers": [_coerce_paper(entry) for entry in raw_papers]}

    result = ResearchGroupsResult.model_validate(parsed)
    expected = len(contact_papers(evidence))

    papers = []
    seen = set()
    for paper in result.papers:
        key = _paper_key(paper)
        if not key:
            logger.warning("[research-groups] Dropping paper entry without title or identifier")
            continue
        if key in seen:
            logger.warning(f"[research-groups] Dropping duplicate paper entry: {paper.title or paper.identifier}")
            continue
        seen.add(key)
        papers.append(paper)

    if len(papers) > expected:
        logger.warning(f"[research-groups] Cleanup returned {len(papers)} papers, expected {expected}; keeping the first {expected}")
        papers = papers[:expected]
    elif len(papers) < expected:
        logger.warning(f"[research-groups] Paper count shortfall: parsed {len(papers)} of {expected} expected papers")

    if expected >= 1 and not papers:
        raise StageParseError("Research groups cleanup returned no papers.")

    structured = result.model_copy(update={
        "papers": papers,
        "papers_processed": len(papers),
        "expected_paper_count": expected,
    }).to_payload()

    researcher_count = sum(len(group.researchers) for paper in papers for group in paper.groups)
    logger.info(f"[research-groups] Parsed {len(papers)}/{expected} papers with {researcher_count} researchers")
    return StageOutput(text=discovery_text, structured=structured)


RESEARCH_GROUPS_STAGE = StageDefinition(
    name="research-groups",
    title="Research groups",
    build_discovery=build_discovery_prompt,
    build_cleanup=build_cleanup_prompt,
    normalize=normalize,
    discovery_tokens=DISCOVERY_TOKENS,
    cleanup_tokens=16384,
    web_search=True,
    search_context_size="medium",
    strict_json=False,
    cache_suffix="-groups.json",
    requires=("claims", "similar-papers"),
    discover=discover,
)
