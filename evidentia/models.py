"""
Pydantic models for the Evidentia API.

These models define the structure of API requests and responses, plus the
per-stage result record owned by the pipeline coordinator.
"""

import enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# SHARED MODELS
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    database: str


class PaperMetadata(ApiModel):
    """Bibliographic metadata attached to an upload"""
    title: Optional[str] = None
    doi: Optional[str] = None
    authors: Union[str, List[Union[str, Dict[str, Any]]], None] = None  # names, {name} objects, or raw string
    abstract: Optional[str] = None
    url: Optional[str] = None
    scraped_url: Optional[str] = None


class StagePayload(ApiModel):
    """Output of an upstream stage, as passed back in by the caller"""
    text: Optional[str] = None
    structured: Optional[Any] = None


class StageResponse(ApiModel):
    """Successful stage output"""
    text: str
    structured: Optional[Any] = None


# ============================================================================
# STAGE REQUEST MODELS
# ============================================================================

class ClaimsRequest(ApiModel):
    text: Optional[str] = None
    paper: Optional[PaperMetadata] = None


class SimilarPapersRequest(ApiModel):
    text: Optional[str] = None
    paper: Optional[PaperMetadata] = None
    claims: Optional[StagePayload] = None


class ResearchGroupsRequest(ApiModel):
    text: Optional[str] = None
    paper: Optional[PaperMetadata] = None
    claims: Optional[StagePayload] = None
    similar_papers: Optional[StagePayload] = None


class ContactsRequest(ApiModel):
    text: Optional[str] = None  # research-groups write-up
    research_groups: Optional[StagePayload] = None


class ThesesRequest(ApiModel):
    contacts: Optional[List[Dict[str, Any]]] = None


class PatentsRequest(ApiModel):
    paper: Optional[PaperMetadata] = None
    claims: Optional[StagePayload] = None


class VerifiedClaimsRequest(ApiModel):
    paper: Optional[PaperMetadata] = None
    claims: Optional[StagePayload] = None
    similar_papers: Optional[StagePayload] = None
    research_groups: Optional[StagePayload] = None
    theses: Optional[StagePayload] = None
    patents: Optional[StagePayload] = None


class ExtractTextResponse(ApiModel):
    pages: int
    info: Optional[Dict[str, Any]] = None  # PDF document info dictionary
    text: str
    doi: Optional[str] = None


# ============================================================================
# PIPELINE STATE MODELS
# ============================================================================

class StageStatus(str, enum.Enum):
    PENDING = "pending"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class StageResult(ApiModel):
    """Immutable snapshot of one (paper, stage) pair"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    status: StageStatus = StageStatus.PENDING
    text: Optional[str] = None
    structured: Optional[Any] = None
    error: Optional[str] = None
    retryable: bool = False
    cached: bool = False  # loaded from the cache store rather than computed
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_success(self) -> bool:
        return self.status == StageStatus.SUCCESS


# ============================================================================
# PAPER REGISTRY MODELS
# ============================================================================

class PaperCreate(ApiModel):
    """Register an uploaded paper with the pipeline"""
    storage_path: Optional[str] = None
    file_name: Optional[str] = None
    paper: PaperMetadata = Field(default_factory=PaperMetadata)
    text: str


class PaperRecord(ApiModel):
    id: str  # UUID
    storage_path: str
    file_name: Optional[str] = None
    paper: PaperMetadata
    text: str
    content_hash: str
    created_at: datetime


class PaperSummary(ApiModel):
    id: str
    title: Optional[str] = None
    doi: Optional[str] = None
    storage_path: str
    created_at: datetime


class PaperListResponse(ApiModel):
    papers: List[PaperSummary]
    total_count: int


class PaperDetail(ApiModel):
    id: str
    storage_path: str
    file_name: Optional[str] = None
    paper: PaperMetadata
    created_at: datetime
    stages: Dict[str, StageResult]


class StageTriggerResponse(ApiModel):
    """Returned when a trigger is short-circuited by an in-flight run"""
    stage: str
    status: StageStatus
