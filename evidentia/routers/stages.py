"""
Stateless stage endpoints.

Each endpoint validates its body, runs one stage through the executor and
returns `{text, structured}`. Callers pass upstream stage outputs back in;
nothing is cached here. Failures surface through the EvidentiaError handler
registered in main.py.
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from evidentia.config import settings
from evidentia.dependencies import ModelClientProvider, get_client_provider
from evidentia.errors import InputValidationError
from evidentia.models import (
    ClaimsRequest,
    ContactsRequest,
    ExtractTextResponse,
    PaperMetadata,
    PatentsRequest,
    ResearchGroupsRequest,
    SimilarPapersRequest,
    StagePayload,
    StageResponse,
    ThesesRequest,
    VerifiedClaimsRequest,
)
from evidentia.services.pdf_extractor import extract_pdf, fetch_pdf, is_pdf
from evidentia.services.stage_executor import StageEvidence, run_stage
from evidentia.stages.registry import (
    CLAIMS,
    CONTACTS,
    PATENTS,
    RESEARCH_GROUPS,
    SIMILAR_PAPERS,
    THESES,
    VERIFIED_CLAIMS,
    get_stage,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["stages"])


# ============================================================================
# HELPERS
# ============================================================================

def _require_text(text: Optional[str], message: str = "Missing extracted text.") -> str:
    if not text or not text.strip():
        raise InputValidationError(message, field="text")
    return text


def _require_claims_for(claims: Optional[StagePayload], purpose: str) -> StagePayload:
    """Upstream claims checks used by the discovery stages."""
    if claims is None:
        raise InputValidationError(
            f"Claims analysis is required for {purpose} generation. Please wait for claims to complete first.",
            field="claims",
        )
    if not (claims.text or "").strip():
        raise InputValidationError("Claims text is required. The claims analysis may have failed.", field="claims")
    if not isinstance(claims.structured, dict):
        raise InputValidationError(
            "Claims structured data is required. The claims analysis may have failed.",
            field="claims",
        )
    return claims


def _require_claims(claims: Optional[StagePayload]) -> StagePayload:
    """Upstream claims checks used by the patents and verification stages."""
    if claims is None:
        raise InputValidationError("Claims data is required.", field="claims")
    if not (claims.text or "").strip():
        raise InputValidationError("Claims text is required.", field="claims")
    if not isinstance(claims.structured, dict):
        raise InputValidationError("Structured claims are required.", field="claims")
    return claims


async def _run(stage: str, evidence: StageEvidence, provider: ModelClientProvider) -> StageResponse:
    output = await run_stage(get_stage(stage), evidence, provider.get())
    return StageResponse(text=output.text, structured=output.structured)


# ============================================================================
# STAGE ENDPOINTS
# ============================================================================

@router.post("/claims", response_model=StageResponse)
async def generate_claims(body: ClaimsRequest, provider: ModelClientProvider = Depends(get_client_provider)):
    """Claims brief for a paper's extracted text."""
    text = _require_text(body.text)
    evidence = StageEvidence(paper=body.paper or PaperMetadata(), text=text)
    return await _run(CLAIMS, evidence, provider)


@router.post("/similar-papers", response_model=StageResponse)
async def generate_similar_papers(
    body: SimilarPapersRequest,
    provider: ModelClientProvider = Depends(get_client_provider)
):
    """Cross-domain similar papers, anchored on the claims brief."""
    text = _require_text(body.text)
    claims = _require_claims_for(body.claims, "similar papers")
    evidence = StageEvidence(paper=body.paper or PaperMetadata(), text=text, claims=claims)
    return await _run(SIMILAR_PAPERS, evidence, provider)


@router.post("/research-groups", response_model=StageResponse)
async def generate_research_groups(
    body: ResearchGroupsRequest,
    provider: ModelClientProvider = Depends(get_client_provider)
):
    """Research groups behind the source paper and its similar papers."""
    text = _require_text(body.text)
    claims = _require_claims_for(body.claims, "research groups")

    similar = body.similar_papers
    if similar is None or (not similar.text and not similar.structured):
        raise InputValidationError(
            "Similar papers analysis is required for research groups generation. "
            "Please wait for similar papers to complete first.",
            field="similarPapers",
        )

    evidence = StageEvidence(
        paper=body.paper or PaperMetadata(),
        text=text,
        claims=claims,
        similar_papers=StagePayload(text=similar.text or "", structured=similar.structured),
    )
    return await _run(RESEARCH_GROUPS, evidence, provider)


@router.post("/research-group-contacts", response_model=StageResponse)
async def generate_research_group_contacts(
    body: ContactsRequest,
    provider: ModelClientProvider = Depends(get_client_provider)
):
    """Contact details for every group in a research-groups write-up."""
    text = body.text
    if not (text or "").strip() and body.research_groups is not None:
        text = body.research_groups.text
    text = _require_text(text, "Missing research group text.")

    evidence = StageEvidence(paper=PaperMetadata(), research_groups=StagePayload(text=text))
    return await _run(CONTACTS, evidence, provider)


@router.post("/researcher-theses", response_model=StageResponse)
async def generate_researcher_theses(
    body: ThesesRequest,
    provider: ModelClientProvider = Depends(get_client_provider)
):
    """Latest publication and PhD thesis for each named researcher."""
    if body.contacts is None:
        raise InputValidationError("Missing contacts array.", field="contacts")

    evidence = StageEvidence(
        paper=PaperMetadata(),
        contacts=StagePayload(structured={"contacts": body.contacts}),
    )
    return await _run(THESES, evidence, provider)


@router.post("/patents", response_model=StageResponse)
async def generate_patents(body: PatentsRequest, provider: ModelClientProvider = Depends(get_client_provider)):
    """Patents overlapping the paper's claims."""
    claims = _require_claims(body.claims)
    evidence = StageEvidence(paper=body.paper or PaperMetadata(), claims=claims)
    return await _run(PATENTS, evidence, provider)


@router.post("/verified-claims", response_model=StageResponse)
async def generate_verified_claims(
    body: VerifiedClaimsRequest,
    provider: ModelClientProvider = Depends(get_client_provider)
):
    """
    Cross-check each claim against whatever evidence the caller supplies.

    Only claims are required; missing evidence sections render as
    "None available" in the prompt.
    """
    claims = _require_claims(body.claims)
    evidence = StageEvidence(
        paper=body.paper or PaperMetadata(),
        claims=claims,
        similar_papers=body.similar_papers,
        research_groups=body.research_groups,
        theses=body.theses,
        patents=body.patents,
    )
    return await _run(VERIFIED_CLAIMS, evidence, provider)


# ============================================================================
# TEXT EXTRACTION
# ============================================================================

@router.post("/extract-text", response_model=ExtractTextResponse)
async def extract_text(
    file: Optional[UploadFile] = File(None),
    file_url: Optional[str] = Form(None, alias="fileUrl")
):
    """
    Extract page-delimited text from an uploaded PDF, or from a PDF URL.

    Raises:
        400: No PDF supplied, or the PDF holds no readable text
        413: File exceeds the upload size limit
        415: Not a PDF
    """
    data: Optional[bytes] = None

    if file is None and file_url and file_url.strip():
        try:
            data = await asyncio.to_thread(fetch_pdf, file_url.strip())
        except ValueError as e:
            logger.warning(f"[extract-text] Remote fetch failed: {e}")

    if data is None:
        if file is None:
            raise InputValidationError("No PDF data provided for extraction", field="file")
        if file.content_type != "application/pdf":
            raise HTTPException(status_code=415, detail="Only PDF files are accepted")
        data = await file.read()

    if len(data) > settings.max_file_size_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds the {settings.max_file_size_mb} MB upload limit"
        )

    if not is_pdf(data):
        raise HTTPException(status_code=415, detail="Only PDF files are accepted")

    try:
        extracted = await asyncio.to_thread(extract_pdf, data)
    except ValueError as e:
        raise InputValidationError(str(e), field="file")

    return ExtractTextResponse(
        pages=extracted.pages,
        info=extracted.info,
        text=extracted.text,
        doi=extracted.doi,
    )
