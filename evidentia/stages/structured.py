"""
Pydantic models for the structured payload of every stage.

Model output is never trusted: every field is coerced on the way in (stray
types become None or [], non-object list items are dropped) so that a
validated model can always be rendered. Keys are camelCase on the wire and
snake_case in Python.
"""

from typing import Annotated, Any, List, Optional

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel

from evidentia.services.text_utils import clean_plain_text

NOT_REPORTED = "Not reported"


def _to_opt_str(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    cleaned = clean_plain_text(value)
    return cleaned or None


def _to_str_list(value: Any) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return []
    items = []
    for entry in value:
        if isinstance(entry, dict):
            entry = entry.get("name")
        cleaned = _to_opt_str(entry)
        if cleaned:
            items.append(cleaned)
    return items


def _to_opt_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    text = clean_plain_text(value)
    if text.isdigit():
        return int(text)
    return None


def _to_reported(value: Any) -> str:
    return _to_opt_str(value) or NOT_REPORTED


def _dict_list(value: Any) -> List[dict]:
    if not isinstance(value, list):
        return []
    return [entry for entry in value if isinstance(entry, dict)]


def _dict_or_empty(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _dict_or_none(value: Any) -> Optional[dict]:
    return value if isinstance(value, dict) else None


OptStr = Annotated[Optional[str], BeforeValidator(_to_opt_str)]
StrList = Annotated[List[str], BeforeValidator(_to_str_list)]
OptInt = Annotated[Optional[int], BeforeValidator(_to_opt_int)]
ReportedStr = Annotated[str, BeforeValidator(_to_reported)]
Count = Annotated[int, BeforeValidator(lambda v: _to_opt_int(v) or 0)]


def ModelList(model):
    return Annotated[List[model], BeforeValidator(_dict_list)]


class StructuredModel(BaseModel):
    """Lenient base: camelCase aliases, unknown keys ignored"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# ============================================================================
# CLAIMS
# ============================================================================

class Claim(StructuredModel):
    id: OptStr = None
    claim: OptStr = Field(default=None, validation_alias=AliasChoices("claim", "claimText", "claim_text"))
    evidence_summary: OptStr = None
    key_numbers: StrList = Field(default_factory=list)
    source: OptStr = None
    strength: OptStr = None  # High, Moderate, Low, Unclear
    assumptions: OptStr = None
    evidence_type: OptStr = None


class Gap(StructuredModel):
    category: OptStr = None
    detail: OptStr = None
    related_claim_ids: StrList = Field(default_factory=list)


class RiskItem(StructuredModel):
    item: OptStr = None
    status: OptStr = None  # met, partial, missing, unclear
    note: OptStr = None


class ClaimsBrief(StructuredModel):
    executive_summary: StrList = Field(default_factory=list)
    claims: ModelList(Claim) = Field(default_factory=list)
    gaps: ModelList(Gap) = Field(default_factory=list)
    methods_snapshot: StrList = Field(default_factory=list)
    risk_checklist: ModelList(RiskItem) = Field(default_factory=list)
    open_questions: StrList = Field(default_factory=list)


# ============================================================================
# SIMILAR PAPERS
# ============================================================================

class MethodMatrix(StructuredModel):
    sample_model: ReportedStr = NOT_REPORTED
    materials_setup: ReportedStr = NOT_REPORTED
    equipment_setup: ReportedStr = NOT_REPORTED
    procedure_steps: ReportedStr = NOT_REPORTED
    controls: ReportedStr = NOT_REPORTED
    outputs_metrics: ReportedStr = NOT_REPORTED
    quality_checks: ReportedStr = NOT_REPORTED
    outcome_summary: ReportedStr = NOT_REPORTED


MatrixField = Annotated[MethodMatrix, BeforeValidator(_dict_or_empty)]


class SourcePaper(StructuredModel):
    summary: OptStr = None
    key_method_signals: StrList = Field(default_factory=list)
    search_queries: StrList = Field(default_factory=list)
    method_matrix: MatrixField = Field(default_factory=MethodMatrix)


class SimilarPaper(StructuredModel):
    identifier: OptStr = None
    title: OptStr = None
    doi: OptStr = None
    url: OptStr = None
    authors: StrList = Field(default_factory=list)
    year: OptInt = None
    venue: OptStr = None
    cluster_label: OptStr = None  # Sample and model, Field deployments, Insight primers
    why_relevant: OptStr = None
    overlap_highlights: StrList = Field(default_factory=list)
    method_matrix: MatrixField = Field(default_factory=MethodMatrix)
    gaps_or_uncertainties: OptStr = None


class SimilarPapersResult(StructuredModel):
    source_paper: Annotated[Optional[SourcePaper], BeforeValidator(_dict_or_none)] = None
    similar_papers: ModelList(SimilarPaper) = Field(default_factory=list)
    prompt_notes: OptStr = None


# ============================================================================
# RESEARCH GROUPS
# ============================================================================

class Profile(StructuredModel):
    platform: OptStr = None
    url: OptStr = None


class Researcher(StructuredModel):
    name: OptStr = None
    email: OptStr = None
    role: OptStr = None
    orcid: OptStr = None
    profiles: ModelList(Profile) = Field(default_factory=list)


class ResearchGroup(StructuredModel):
    name: OptStr = None
    institution: OptStr = None
    website: OptStr = None
    notes: OptStr = None
    researchers: ModelList(Researcher) = Field(default_factory=list)


class GroupPaper(StructuredModel):
    title: OptStr = None
    identifier: OptStr = None
    groups: ModelList(ResearchGroup) = Field(default_factory=list)


class ResearchGroupsResult(StructuredModel):
    papers: ModelList(GroupPaper) = Field(default_factory=list)
    papers_processed: Count = 0
    expected_paper_count: Count = 0
    prompt_notes: OptStr = None


# ============================================================================
# CONTACTS
# ============================================================================

class ContactPerson(StructuredModel):
    name: OptStr = None
    email: OptStr = None


class ContactGroup(StructuredModel):
    group: Annotated[str, BeforeValidator(lambda v: _to_opt_str(v) or "Unknown group")] = "Unknown group"
    people: ModelList(ContactPerson) = Field(default_factory=list)


class ContactsResult(StructuredModel):
    contacts: ModelList(ContactGroup) = Field(default_factory=list)


# ============================================================================
# THESES
# ============================================================================

class Publication(StructuredModel):
    title: OptStr = None
    year: OptInt = None
    venue: OptStr = None
    url: OptStr = None


class Thesis(StructuredModel):
    title: OptStr = None
    year: OptInt = None
    institution: OptStr = None
    url: OptStr = None


def _to_availability(value: Any) -> str:
    text = clean_plain_text(value).lower()
    return text if text in ("yes", "no") else "unknown"


class ThesisRecord(StructuredModel):
    name: OptStr = None
    email: OptStr = None
    group: OptStr = None
    latest_publication: Annotated[Publication, BeforeValidator(_dict_or_empty)] = Field(default_factory=Publication)
    phd_thesis: Annotated[Optional[Thesis], BeforeValidator(_dict_or_none)] = None
    data_publicly_available: Annotated[str, BeforeValidator(_to_availability)] = "unknown"


class ThesesResult(StructuredModel):
    researchers: ModelList(ThesisRecord) = Field(default_factory=list)


# ============================================================================
# PATENTS
# ============================================================================

class PatentOverlap(StructuredModel):
    claim_ids: StrList = Field(default_factory=list)
    summary: OptStr = None


class Patent(StructuredModel):
    patent_number: OptStr = None
    title: OptStr = None
    assignee: OptStr = None
    filing_date: OptStr = None
    grant_date: OptStr = None
    abstract: OptStr = None
    url: OptStr = None
    overlap_with_paper: Annotated[PatentOverlap, BeforeValidator(_dict_or_empty)] = Field(default_factory=PatentOverlap)


class PatentsResult(StructuredModel):
    patents: ModelList(Patent) = Field(default_factory=list)
    prompt_notes: OptStr = None


# ============================================================================
# VERIFIED CLAIMS
# ============================================================================

class Evidence(StructuredModel):
    source: str
    title: str
    relevance: Optional[str] = None


class VerifiedClaim(StructuredModel):
    claim_id: str
    original_claim: str
    verification_status: str = "Insufficient Evidence"
    supporting_evidence: List[Evidence] = Field(default_factory=list)
    contradicting_evidence: List[Evidence] = Field(default_factory=list)
    verification_summary: Optional[str] = None
    confidence_level: str = "Low"


class VerifiedClaimsResult(StructuredModel):
    claims: List[VerifiedClaim] = Field(default_factory=list)
    overall_assessment: Optional[str] = None
    prompt_notes: Optional[str] = None
