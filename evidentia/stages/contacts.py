"""
Research group contacts stage: pull named people and emails out of the
research-groups write-up.

Single pass: the model answers directly in JSON, so there is no separate
cleanup call. Parsing is strict.
"""

import logging
from typing import Any, List

from evidentia.config import settings
from evidentia.services.stage_executor import StageDefinition, StageEvidence, StageOutput
from evidentia.services.text_utils import clean_plain_text, truncate_text
from evidentia.stages.structured import ContactGroup, ContactsResult

logger = logging.getLogger(__name__)

CONTACT_PROMPT = """You will receive a write-up describing up to five research groups, including brief descriptions of their activities.

Task:
- For each distinct research group mentioned, list researchers, leaders, staff, or students affiliated with it whenever their names appear in the text.
- If an email address is provided, include it. If no email is present, set the email field to null (do not invent addresses).
- If a name is missing but an email is present, leave the name as null.
- If neither name nor email is present for a person, omit them.

Output format:
Return a JSON object {"contacts": [...]}. Each item must be an object with the shape:
{
  "group": string,
  "people": [
    { "name": string | null, "email": string | null }
  ]
}
Only include groups that appear in the source text. Make sure the output is valid JSON with double-quoted keys. No markdown fences or commentary."""


def source_text(evidence: StageEvidence) -> str:
    payload = evidence.research_groups
    return clean_plain_text(payload.text if payload is not None else None)


def build_discovery_prompt(evidence: StageEvidence) -> str:
    context, truncated = truncate_text(source_text(evidence), settings.contacts_max_text_length)
    if truncated:
        logger.info(f"[research-group-contacts] Write-up truncated to {settings.contacts_max_text_length} characters")
    return f"{CONTACT_PROMPT}\n\nResearch group write-up:\n{context}"


def format_contacts(groups: List[ContactGroup]) -> str:
    """Plain-text rendering of the contact list."""
    if not groups:
        return "No contacts found in the research group write-up."
    blocks = []
    for group in groups:
        lines = [f"{group.group}:"]
        for person in group.people:
            name = person.name or "Name not provided"
            lines.append(f"- {name} ({person.email})" if person.email else f"- {name}")
        if not group.people:
            lines.append("- No named contacts")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def normalize(parsed: Any, evidence: StageEvidence, discovery_text: str) -> StageOutput:
    if isinstance(parsed, list):
        parsed = {"contacts": parsed}
    if not isinstance(parsed, dict) or not isinstance(parsed.get("contacts"), list):
        raise ValueError("Contacts output is neither an array nor an object with a contacts array")

    result = ContactsResult.model_validate(parsed)
    groups = []
    for group in result.contacts:
        people = [person for person in group.people if person.name or person.email]
        dropped = len(group.people) - len(people)
        if dropped:
            logger.warning(f"[research-group-contacts] Dropped {dropped} people without name or email from {group.group!r}")
        groups.append(group.model_copy(update={"people": people}))

    structured = result.model_copy(update={"contacts": groups}).to_payload()
    return StageOutput(text=format_contacts(groups), structured=structured)


CONTACTS_STAGE = StageDefinition(
    name="research-group-contacts",
    title="Research group contacts",
    build_discovery=build_discovery_prompt,
    build_cleanup=None,
    normalize=normalize,
    discovery_tokens=4000,
    web_search=True,
    search_context_size="low",
    strict_json=True,
    cache_suffix="-contacts.json",
    requires=("research-groups",),
)
