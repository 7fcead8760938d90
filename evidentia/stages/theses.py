"""
Researcher theses stage: latest publication, PhD thesis and data availability
for each named contact.

Single pass with a short web-search budget. When the contact list holds no
named people the stage answers without calling the model.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from evidentia.config import settings
from evidentia.services.stage_executor import StageDefinition, StageEvidence, StageOutput
from evidentia.services.text_utils import clean_plain_text
from evidentia.stages.structured import ThesesResult, ThesisRecord

logger = logging.getLogger(__name__)

THESES_PROMPT = """You will receive a JSON array describing research group members. Each item contains a researcher name, an optional email and their group label.

Task (keep the answer short):
1. For each researcher, identify their most recent publication (2022 or later when possible). Provide title, year, venue, and URL when available.
2. Identify their PhD thesis if verifiable (title, year, institution, URL). If none is found, set phdThesis to null.
3. State whether data for their latest publication is publicly available ("yes", "no", or "unknown").

Guidelines:
- Use web search only when necessary; prefer official records and repositories.
- If you cannot confirm a field, leave it null rather than inventing details.
- Keep reasoning minimal; focus on the final JSON.

Output format:
Return a JSON object {"researchers": [...]} where each researcher object is shaped as:
{
  "name": string,
  "email": string | null,
  "group": string | null,
  "latestPublication": {
    "title": string | null,
    "year": number | null,
    "venue": string | null,
    "url": string | null
  },
  "phdThesis": {
    "title": string | null,
    "year": number | null,
    "institution": string | null,
    "url": string | null
  } | null,
  "dataPubliclyAvailable": "yes" | "no" | "unknown"
}
Return valid JSON with double-quoted keys and no markdown fences."""


def select_researchers(contacts: Any, limit: int) -> List[Dict[str, Optional[str]]]:
    """
    Flatten contact groups into at most `limit` named researchers.

    Args:
        contacts: List of {group, people[{name, email}]} objects
        limit: Cap applied per group and overall

    Returns:
        List of {name, email, group} dicts
    """
    if not isinstance(contacts, list):
        return []

    researchers = []
    for entry in contacts:
        if not isinstance(entry, dict) or not isinstance(entry.get("people"), list):
            continue
        group = clean_plain_text(entry.get("group")) or None
        named = [
            person for person in entry["people"]
            if isinstance(person, dict) and clean_plain_text(person.get("name"))
        ]
        for person in named[:limit]:
            researchers.append({
                "name": clean_plain_text(person.get("name")),
                "email": clean_plain_text(person.get("email")) or None,
                "group": group,
            })
    return researchers[:limit]


def evidence_researchers(evidence: StageEvidence) -> List[Dict[str, Optional[str]]]:
    payload = evidence.contacts
    structured = payload.structured if payload is not None else None
    contacts = structured.get("contacts") if isinstance(structured, dict) else structured
    return select_researchers(contacts, settings.max_researchers)


def build_discovery_prompt(evidence: StageEvidence) -> str:
    researchers = evidence_researchers(evidence)
    return f"{THESES_PROMPT}\n\nResearch group JSON:\n{json.dumps(researchers, indent=2)}"


def skip_when_empty(evidence: StageEvidence) -> Optional[StageOutput]:
    if evidence_researchers(evidence):
        return None
    return StageOutput(text=format_theses([]), structured={"researchers": []})


def format_theses(records: List[ThesisRecord]) -> str:
    if not records:
        return "No named researchers to look up."
    blocks = []
    for record in records:
        lines = [record.name or "Unknown researcher"]
        if record.group:
            lines.append(f"  Group: {record.group}")
        publication = record.latest_publication
        if publication.title:
            year = f" ({publication.year})" if publication.year else ""
            lines.append(f"  Latest publication: {publication.title}{year}")
        thesis = record.phd_thesis
        if thesis and thesis.title:
            where = ", ".join(str(part) for part in (thesis.institution, thesis.year) if part)
            lines.append(f"  PhD thesis: {thesis.title}" + (f" ({where})" if where else ""))
        else:
            lines.append("  PhD thesis: not found")
        lines.append(f"  Data publicly available: {record.data_publicly_available}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def normalize(parsed: Any, evidence: StageEvidence, discovery_text: str) -> StageOutput:
    if isinstance(parsed, list):
        parsed = {"researchers": parsed}
    if not isinstance(parsed, dict) or not isinstance(parsed.get("researchers"), list):
        raise ValueError("Theses output is neither an array nor an object with a researchers array")

    result = ThesesResult.model_validate(parsed)
    records = [record for record in result.researchers if record.name]
    if len(records) < len(result.researchers):
        logger.warning(f"[researcher-theses] Dropped {len(result.researchers) - len(records)} unnamed records")

    structured = result.model_copy(update={"researchers": records}).to_payload()
    return StageOutput(text=format_theses(records), structured=structured)


THESES_STAGE = StageDefinition(
    name="researcher-theses",
    title="Researcher theses",
    build_discovery=build_discovery_prompt,
    build_cleanup=None,
    normalize=normalize,
    discovery_tokens=2048,
    web_search=True,
    search_context_size="low",
    max_tool_calls=10,
    timeout=lambda: settings.theses_timeout_seconds,
    strict_json=True,
    cache_suffix="-theses.json",
    requires=("research-group-contacts",),
    shortcut=skip_when_empty,
)
