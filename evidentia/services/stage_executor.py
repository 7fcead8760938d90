"""
Stage executor: the two-phase discovery -> cleanup protocol.

Discovery is a free-text model call (optionally with web search). Cleanup
is a second call, without tools, that converts the discovery text into
strict JSON. The cleanup output is fence-stripped, sanitized, parsed and
handed to the stage's normalizer.

Parse policy is per stage. Strict stages fail with StageParseError when
the cleanup output is not usable JSON; tolerant stages degrade to
`{text: discovery_text, structured: None}` and log the failure.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple

from evidentia.errors import EvidentiaError, StageFailure, StageParseError
from evidentia.models import PaperMetadata, StagePayload
from evidentia.services.model_client import ModelClient
from evidentia.services.text_utils import extract_json_candidate, sanitize_unicode, strip_markdown_fences

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageEvidence:
    """Inputs available to a stage's prompt builders"""
    paper: PaperMetadata
    text: str = ""
    claims: Optional[StagePayload] = None
    similar_papers: Optional[StagePayload] = None
    research_groups: Optional[StagePayload] = None
    contacts: Optional[StagePayload] = None
    theses: Optional[StagePayload] = None
    patents: Optional[StagePayload] = None


@dataclass(frozen=True)
class StageOutput:
    text: str
    structured: Optional[Any] = None

    def to_payload(self) -> dict:
        return {"text": self.text, "structured": self.structured}


@dataclass(frozen=True)
class StageDefinition:
    """
    Everything the executor needs to run one stage.

    `build_cleanup` may be None for single-pass stages whose discovery call
    already answers in JSON. `discover` replaces the default single
    discovery call (used by the batched research-groups stage). `shortcut`
    can answer without any model call (e.g. nothing to look up).
    """
    name: str
    title: str
    build_discovery: Callable[[StageEvidence], str]
    build_cleanup: Optional[Callable[[str, StageEvidence], str]]
    normalize: Callable[[Any, StageEvidence, str], StageOutput]
    discovery_tokens: int
    cleanup_tokens: int = 8192
    web_search: bool = False
    search_context_size: str = "medium"
    max_tool_calls: Optional[int] = None
    timeout: Optional[Callable[[], float]] = None
    strict_json: bool = False
    cache_suffix: str = ""
    requires: Tuple[str, ...] = ()
    discover: Optional[Callable[[StageEvidence, ModelClient], Awaitable[str]]] = None
    shortcut: Optional[Callable[[StageEvidence], Optional[StageOutput]]] = None


def parse_json_output(raw_output: str) -> Any:
    """
    Parse model output as JSON after fence stripping and unicode sanitization.

    Args:
        raw_output: Raw cleanup text

    Returns:
        Parsed JSON value

    Raises:
        ValueError: If no JSON value can be recovered
    """
    text = sanitize_unicode(strip_markdown_fences(raw_output))
    if not text:
        raise ValueError("Cleanup output was empty")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        candidate = extract_json_candidate(text)
        if candidate is None or candidate == text:
            raise
        return json.loads(candidate)


def finish_stage(definition: StageDefinition, evidence: StageEvidence, discovery_text: str, raw_output: str) -> StageOutput:
    """Parse cleanup output and run the stage validation pass."""
    tag = f"[{definition.name}]"
    try:
        parsed = parse_json_output(raw_output)
        return definition.normalize(parsed, evidence, discovery_text)
    except StageParseError:
        raise
    except ValueError as e:
        logger.error(f"{tag} Failed to parse cleanup output: {e}")
        logger.error(f"{tag} Raw cleanup output: {raw_output[:1000]}")
        if definition.strict_json:
            raise StageParseError(f"{definition.title} cleanup returned malformed or truncated JSON.")
        return StageOutput(text=discovery_text, structured=None)


async def run_stage(definition: StageDefinition, evidence: StageEvidence, client: ModelClient) -> StageOutput:
    """
    Run one stage invocation end to end.

    Args:
        definition: The stage to run
        evidence: Paper metadata, text and upstream stage payloads
        client: Model client used for every call

    Returns:
        StageOutput with raw text and the structured payload (or None)

    Raises:
        StageFailure: A model call failed (message names the phase)
        StageParseError: Cleanup output unusable for a strict stage, or the
            validation pass left nothing meaningful
    """
    tag = f"[{definition.name}]"

    if definition.shortcut is not None:
        shortcut = definition.shortcut(evidence)
        if shortcut is not None:
            logger.info(f"{tag} Nothing to look up; skipping model calls")
            return shortcut

    timeout = definition.timeout() if definition.timeout else None

    try:
        if definition.discover is not None:
            discovery_text = await definition.discover(evidence, client)
        else:
            prompt = definition.build_discovery(evidence)
            logger.info(f"{tag} Starting discovery (prompt length {len(prompt)}, web search {definition.web_search})")
            discovery_text = await client.generate(
                prompt,
                max_output_tokens=definition.discovery_tokens,
                web_search=definition.web_search,
                search_context_size=definition.search_context_size,
                max_tool_calls=definition.max_tool_calls,
                timeout=timeout,
                label=f"{definition.title} discovery",
            )
    except EvidentiaError as e:
        logger.error(f"{tag} Discovery failed: {e.message}")
        raise StageFailure(f"{definition.title} discovery failed: {e.message}", e)

    if definition.build_cleanup is None:
        return finish_stage(definition, evidence, discovery_text, discovery_text)

    cleanup_prompt = definition.build_cleanup(discovery_text, evidence)
    logger.info(f"{tag} Starting cleanup (prompt length {len(cleanup_prompt)})")
    try:
        raw_output = await client.generate(
            cleanup_prompt,
            max_output_tokens=definition.cleanup_tokens,
            timeout=timeout,
            label=f"{definition.title} cleanup",
        )
    except EvidentiaError as e:
        logger.error(f"{tag} Cleanup failed: {e.message}")
        raise StageFailure(f"{definition.title} cleanup failed: {e.message}", e)

    output = finish_stage(definition, evidence, discovery_text, raw_output)
    logger.info(f"{tag} Completed (structured={'yes' if output.structured is not None else 'no'})")
    return output
