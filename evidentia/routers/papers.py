"""
Papers API router.

Registers uploaded papers with the pipeline coordinator and exposes the
per-stage state machine: activation (cache load plus optional background
run), single-stage triggers, user retries and deletion.
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Response, status
from fastapi.responses import JSONResponse

from evidentia.database import get_db
from evidentia.dependencies import get_coordinator
from evidentia.models import (
    PaperCreate,
    PaperDetail,
    PaperListResponse,
    PaperRecord,
    StageResult,
    StageStatus,
    StageTriggerResponse,
)
from evidentia.services.coordinator import PipelineCoordinator
from evidentia.services.paper_store import create_paper, delete_paper, get_paper, list_papers

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/papers", tags=["papers"])


def _ensure_registered(paper_id: str, coordinator: PipelineCoordinator) -> None:
    """Register a stored paper with the coordinator, or 404."""
    if coordinator.is_registered(paper_id):
        return

    with get_db() as conn:
        record = get_paper(conn, paper_id)

    if record is None:
        raise HTTPException(
            status_code=404,
            detail=f"Paper not found: {paper_id}"
        )
    coordinator.register(record)


def _detail(paper_id: str, coordinator: PipelineCoordinator) -> PaperDetail:
    with get_db() as conn:
        record = get_paper(conn, paper_id)

    if record is None:
        raise HTTPException(
            status_code=404,
            detail=f"Paper not found: {paper_id}"
        )

    return PaperDetail(
        id=record.id,
        storage_path=record.storage_path,
        file_name=record.file_name,
        paper=record.paper,
        created_at=record.created_at,
        stages=coordinator.snapshot(paper_id),
    )


def _trigger_response(stage: str, result: Optional[StageResult]):
    if result is None:
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=StageTriggerResponse(stage=stage, status=StageStatus.LOADING).model_dump(mode="json", by_alias=True)
        )
    return result


@router.post("", response_model=PaperRecord, status_code=status.HTTP_201_CREATED)
async def register_paper(body: PaperCreate, coordinator: PipelineCoordinator = Depends(get_coordinator)):
    """Store an uploaded paper's metadata and extracted text."""
    with get_db() as conn:
        record = create_paper(conn, body)

    coordinator.register(record)
    logger.info(f"Registered paper {record.id} at {record.storage_path}")
    return record


@router.get("", response_model=PaperListResponse)
async def get_papers(
    limit: Optional[int] = Query(50, description="Maximum number of papers to return (default: 50)"),
    offset: int = Query(0, description="Number of papers to skip")
):
    """List registered papers, newest first."""
    with get_db() as conn:
        papers, total_count = list_papers(conn, limit=limit, offset=offset)

    return PaperListResponse(papers=papers, total_count=total_count)


@router.get("/{paper_id}", response_model=PaperDetail)
async def get_paper_detail(paper_id: str, coordinator: PipelineCoordinator = Depends(get_coordinator)):
    """Paper metadata plus the current state of every stage."""
    _ensure_registered(paper_id, coordinator)
    return _detail(paper_id, coordinator)


@router.post("/{paper_id}/activate", response_model=PaperDetail)
async def activate_paper(
    paper_id: str,
    background_tasks: BackgroundTasks,
    run_missing: bool = Query(True, alias="runMissing", description="Run stages with no cached result"),
    coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    """
    Load cached stage results for a paper.

    With runMissing (the default) the remaining stages run in the
    background after the response is sent; poll the paper detail for
    progress.
    """
    _ensure_registered(paper_id, coordinator)
    await coordinator.activate(paper_id, run_missing=False)

    if run_missing:
        background_tasks.add_task(coordinator.run_pipeline, paper_id)

    return _detail(paper_id, coordinator)


@router.post("/{paper_id}/stages/{stage}", response_model=StageResult)
async def trigger_stage(paper_id: str, stage: str, coordinator: PipelineCoordinator = Depends(get_coordinator)):
    """
    Run one stage for a paper.

    Returns the stage result, or 202 when the stage is already running.
    """
    _ensure_registered(paper_id, coordinator)
    result = await coordinator.trigger(paper_id, stage)
    return _trigger_response(stage, result)


@router.post("/{paper_id}/stages/{stage}/retry", response_model=StageResult)
async def retry_stage(paper_id: str, stage: str, coordinator: PipelineCoordinator = Depends(get_coordinator)):
    """Reset a failed or stuck stage and run it again."""
    _ensure_registered(paper_id, coordinator)
    result = await coordinator.retry(paper_id, stage)
    return _trigger_response(stage, result)


@router.delete("/{paper_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_paper(paper_id: str, coordinator: PipelineCoordinator = Depends(get_coordinator)):
    """Delete a paper and every cached stage result derived from it."""
    _ensure_registered(paper_id, coordinator)
    await coordinator.purge(paper_id)

    with get_db() as conn:
        delete_paper(conn, paper_id)

    logger.info(f"Deleted paper {paper_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
