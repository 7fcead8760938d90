"""
Pipeline coordinator: per-(paper, stage) state machine over the stage
executor.

The coordinator owns every StageResult. It enforces stage dependencies,
refuses duplicate concurrent invocations, loads cached results before
computing anything, persists successes without blocking the caller, and
discards completions that a user retry has superseded.

All bookkeeping happens on the event loop thread. `trigger` re-enters itself
after every cache-load await, and the in-flight marker is set with no await
between the final in-flight check and the marking, so no locking is needed.
"""

import asyncio
import logging
from typing import Callable, Dict, Iterable, Optional, Set, Tuple

from evidentia.errors import EvidentiaError, InputValidationError
from evidentia.models import PaperRecord, StagePayload, StageResult, StageStatus
from evidentia.services.cache_store import CACHE_ERRORS, CacheStore
from evidentia.services.model_client import ModelClient
from evidentia.services.stage_executor import StageDefinition, StageEvidence, run_stage
from evidentia.stages.registry import (
    CLAIMS,
    CONTACTS,
    PATENTS,
    RESEARCH_GROUPS,
    SIMILAR_PAPERS,
    STAGE_ORDER,
    STAGES,
    THESES,
    VERIFIED_CLAIMS,
    cache_key,
    cache_keys,
)

logger = logging.getLogger(__name__)

StageKey = Tuple[str, str]

ALLOWED_TRANSITIONS = {
    StageStatus.PENDING: {StageStatus.LOADING, StageStatus.SUCCESS},  # SUCCESS: cache load
    StageStatus.LOADING: {StageStatus.SUCCESS, StageStatus.ERROR, StageStatus.PENDING},  # PENDING: retry
    StageStatus.ERROR: {StageStatus.PENDING},
    StageStatus.SUCCESS: set(),
}

EVIDENCE_FIELDS = {
    CLAIMS: "claims",
    SIMILAR_PAPERS: "similar_papers",
    RESEARCH_GROUPS: "research_groups",
    CONTACTS: "contacts",
    THESES: "theses",
    PATENTS: "patents",
}


# ============================================================================
# DEPENDENCY CHECKS
# ============================================================================

def _check_claims(result: StageResult) -> Optional[str]:
    structured = result.structured
    claims = structured.get("claims") if isinstance(structured, dict) else None
    if not isinstance(claims, list) or not claims:
        return "Claims structured data is required. The claims analysis may have failed."
    return None


def _check_similar_papers(result: StageResult) -> Optional[str]:
    if not result.text and not result.structured:
        return "Similar papers analysis returned nothing to work from."
    return None


def _check_research_groups(result: StageResult) -> Optional[str]:
    if not (result.text or "").strip():
        return "Research groups analysis returned no text."
    return None


def _check_contacts(result: StageResult) -> Optional[str]:
    structured = result.structured
    if not isinstance(structured, dict) or not isinstance(structured.get("contacts"), list):
        return "Research group contacts returned no contacts list."
    return None


STRUCTURAL_CHECKS: Dict[str, Callable[[StageResult], Optional[str]]] = {
    CLAIMS: _check_claims,
    SIMILAR_PAPERS: _check_similar_papers,
    RESEARCH_GROUPS: _check_research_groups,
    CONTACTS: _check_contacts,
}


class PipelineCoordinator:
    """
    Runs and tracks pipeline stages for registered papers.

    Args:
        cache_store: Where stage results are loaded from and persisted to
        client_factory: Builds the model client on first use; a missing API
            key surfaces as a stage error rather than at startup
    """

    def __init__(self, cache_store: CacheStore, client_factory: Callable[[], ModelClient]):
        self._cache = cache_store
        self._client_factory = client_factory
        self._client: Optional[ModelClient] = None

        self._papers: Dict[str, PaperRecord] = {}
        self._results: Dict[StageKey, StageResult] = {}
        self._in_flight: Dict[StageKey, int] = {}  # key -> attempt generation
        self._generations: Dict[StageKey, int] = {}
        self._cache_loads: Dict[StageKey, asyncio.Future] = {}
        self._cache_checked: Set[StageKey] = set()
        self._persist_tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Registration and inspection
    # ------------------------------------------------------------------

    def register(self, paper: PaperRecord) -> None:
        self._papers[paper.id] = paper

    def is_registered(self, paper_id: str) -> bool:
        return paper_id in self._papers

    def snapshot(self, paper_id: str) -> Dict[str, StageResult]:
        """Read-only view of every stage result for a paper."""
        self._require_paper(paper_id)
        return {stage: self._results.get((paper_id, stage), StageResult()) for stage in STAGE_ORDER}

    def is_in_flight(self, paper_id: str, stage: str) -> bool:
        return (paper_id, stage) in self._in_flight

    def forget(self, paper_id: str) -> None:
        """Drop all in-memory state for a deleted paper."""
        self._papers.pop(paper_id, None)
        for stage in STAGE_ORDER:
            key = (paper_id, stage)
            self._results.pop(key, None)
            self._in_flight.pop(key, None)
            self._generations.pop(key, None)
            self._cache_checked.discard(key)

    async def purge(self, paper_id: str) -> None:
        """Delete every cached stage blob for a paper, then forget it."""
        paper = self._require_paper(paper_id)
        await self.wait_for_persistence()
        for key in cache_keys(paper.storage_path).values():
            await self._cache.delete(key)
        self.forget(paper_id)

    async def wait_for_persistence(self) -> None:
        """Wait for outstanding fire-and-forget cache writes."""
        while self._persist_tasks:
            await asyncio.gather(*list(self._persist_tasks))

    async def close(self) -> None:
        await self.wait_for_persistence()
        if self._client is not None:
            await self._client.close()
            self._client = None

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _require_paper(self, paper_id: str) -> PaperRecord:
        paper = self._papers.get(paper_id)
        if paper is None:
            raise KeyError(paper_id)
        return paper

    def _definition(self, stage: str) -> StageDefinition:
        definition = STAGES.get(stage)
        if definition is None:
            raise InputValidationError(f"Unknown stage: {stage}", field="stage")
        return definition

    def _transition(self, key: StageKey, result: StageResult) -> StageResult:
        current = self._results.get(key, StageResult())
        if result.status not in ALLOWED_TRANSITIONS[current.status]:
            raise RuntimeError(f"Invalid stage transition for {key}: {current.status.value} -> {result.status.value}")
        self._results[key] = result
        return result

    def _get_client(self) -> ModelClient:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    def _build_evidence(self, paper: PaperRecord, definition: StageDefinition) -> StageEvidence:
        """
        Gather upstream payloads, refusing to start when a dependency is
        missing, unsuccessful or structurally incomplete.

        Raises:
            InputValidationError: Naming the first unmet dependency
        """
        if definition.name == CLAIMS and not paper.text.strip():
            raise InputValidationError("Missing extracted text.", field="text")

        for required in definition.requires:
            result = self._results.get((paper.id, required))
            if result is None or not result.is_success:
                raise InputValidationError(
                    f"{STAGES[required].title} must complete before {definition.title.lower()} can run.",
                    field=required,
                )
            check = STRUCTURAL_CHECKS.get(required)
            problem = check(result) if check else None
            if problem:
                raise InputValidationError(problem, field=required)

        upstream = {}
        for stage, field in EVIDENCE_FIELDS.items():
            result = self._results.get((paper.id, stage))
            if result is not None and result.is_success:
                upstream[field] = StagePayload(text=result.text, structured=result.structured)

        return StageEvidence(paper=paper.paper, text=paper.text, **upstream)

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _start_cache_load(self, paper: PaperRecord, stage: str) -> asyncio.Future:
        key = (paper.id, stage)
        load = self._cache_loads.get(key)
        if load is None:
            load = asyncio.ensure_future(self._load_cached(paper, stage))
            self._cache_loads[key] = load
        return load

    def _dependency_cache_loads(self, paper: PaperRecord, definition: StageDefinition) -> list:
        """Cache loads for required stages that are pending and not yet checked."""
        loads = []
        for required in definition.requires:
            key = (paper.id, required)
            current = self._results.get(key, StageResult())
            if current.status != StageStatus.PENDING or key in self._cache_checked or key in self._in_flight:
                continue
            loads.append(self._start_cache_load(paper, required))
        return loads

    async def _load_cached(self, paper: PaperRecord, stage: str) -> None:
        key = (paper.id, stage)
        try:
            blob = await self._cache.get(cache_key(paper.storage_path, stage))
        except CACHE_ERRORS as e:
            logger.warning(f"[{stage}] Cache load failed for paper {paper.id}: {e}")
            blob = None
        finally:
            self._cache_loads.pop(key, None)

        if paper.id not in self._papers:
            return
        self._cache_checked.add(key)

        current = self._results.get(key, StageResult())
        if blob is None or current.status != StageStatus.PENDING or key in self._in_flight:
            return
        self._transition(key, StageResult(
            status=StageStatus.SUCCESS,
            text=blob["text"],
            structured=blob["structured"],
            cached=True,
        ))
        logger.info(f"[{stage}] Loaded cached result for paper {paper.id}")

    def _schedule_persist(self, paper: PaperRecord, stage: str, result: StageResult) -> None:
        task = asyncio.create_task(self._persist(paper, stage, result))
        self._persist_tasks.add(task)
        task.add_done_callback(self._persist_tasks.discard)

    async def _persist(self, paper: PaperRecord, stage: str, result: StageResult) -> None:
        try:
            await self._cache.put(
                cache_key(paper.storage_path, stage),
                {"text": result.text, "structured": result.structured},
            )
        except CACHE_ERRORS as e:
            # The in-memory success stands; the next activation recomputes
            logger.error(f"[{stage}] Failed to persist result for paper {paper.id}: {e}")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def activate(self, paper_id: str, run_missing: bool = True) -> Dict[str, StageResult]:
        """
        Load every stage's cached result, then optionally run what is missing.

        Args:
            paper_id: Registered paper
            run_missing: Run the pipeline for stages still pending afterwards

        Returns:
            Snapshot of all stage results
        """
        paper = self._require_paper(paper_id)
        loads = []
        for stage in STAGE_ORDER:
            key = (paper_id, stage)
            current = self._results.get(key, StageResult())
            if current.status != StageStatus.PENDING or key in self._in_flight:
                continue
            loads.append(self._start_cache_load(paper, stage))

        if loads:
            await asyncio.gather(*loads)

        if run_missing:
            await self.run_pipeline(paper_id)
        return self.snapshot(paper_id)

    async def trigger(self, paper_id: str, stage: str) -> Optional[StageResult]:
        """
        Run one stage unless it is already running or already finished.

        Cached results of required stages are loaded before the dependency
        check. A failed stage stays failed until retry().

        Args:
            paper_id: Registered paper
            stage: Stage name

        Returns:
            The stage result (success or error), or None when an invocation
            for this (paper, stage) is already in flight

        Raises:
            KeyError: Unknown paper
            InputValidationError: Unknown stage, or an unmet dependency; no
                model call is made
        """
        definition = self._definition(stage)
        paper = self._require_paper(paper_id)
        key = (paper_id, stage)

        if key in self._in_flight:
            logger.debug(f"[{stage}] Duplicate invocation for paper {paper_id} ignored")
            return None

        current = self._results.get(key, StageResult())
        if current.is_success:
            return current
        if current.status == StageStatus.ERROR:
            # Only retry() resets a failed stage
            return current

        if current.status == StageStatus.PENDING and key not in self._cache_checked:
            await asyncio.shield(self._start_cache_load(paper, stage))
            return await self.trigger(paper_id, stage)

        dependency_loads = self._dependency_cache_loads(paper, definition)
        if dependency_loads:
            await asyncio.shield(asyncio.gather(*dependency_loads))
            return await self.trigger(paper_id, stage)

        evidence = self._build_evidence(paper, definition)

        generation = self._generations.get(key, 0)
        self._in_flight[key] = generation
        if current.status != StageStatus.PENDING:
            self._transition(key, StageResult(status=StageStatus.PENDING))
        self._transition(key, StageResult(status=StageStatus.LOADING))
        logger.info(f"[{stage}] Starting for paper {paper_id}")

        try:
            output = await run_stage(definition, evidence, self._get_client())
            result = StageResult(status=StageStatus.SUCCESS, text=output.text, structured=output.structured)
        except EvidentiaError as e:
            logger.error(f"[{stage}] Failed for paper {paper_id}: {e.message}")
            result = StageResult(status=StageStatus.ERROR, error=e.message, retryable=e.retryable)
        except asyncio.CancelledError:
            self._finish(key, generation, StageResult(status=StageStatus.ERROR, error="Stage was cancelled.", retryable=True))
            raise
        except Exception as e:
            logger.exception(f"[{stage}] Unexpected failure for paper {paper_id}")
            self._finish(key, generation, StageResult(status=StageStatus.ERROR, error=f"Unexpected error: {e}"))
            raise

        if not self._finish(key, generation, result):
            return self._results.get(key)

        if result.is_success:
            self._schedule_persist(paper, stage, result)
        return result

    def _finish(self, key: StageKey, generation: int, result: StageResult) -> bool:
        """Record a completion unless a retry or deletion superseded it."""
        paper_id, stage = key
        if paper_id not in self._papers or self._generations.get(key, 0) != generation:
            logger.info(f"[{stage}] Discarding stale completion for paper {paper_id}")
            return False
        self._in_flight.pop(key, None)
        self._transition(key, result)
        return True

    async def retry(self, paper_id: str, stage: str) -> Optional[StageResult]:
        """
        User-triggered retry: reset a failed, pending or stuck stage and run it.

        A run still in flight is superseded; its completion is discarded.
        """
        self._definition(stage)
        self._require_paper(paper_id)
        key = (paper_id, stage)

        current = self._results.get(key, StageResult())
        if current.is_success:
            return current

        self._generations[key] = self._generations.get(key, 0) + 1
        self._in_flight.pop(key, None)
        if current.status != StageStatus.PENDING:
            self._transition(key, StageResult(status=StageStatus.PENDING))
        logger.info(f"[{stage}] Retry requested for paper {paper_id}")
        return await self.trigger(paper_id, stage)

    async def _run_if_ready(self, paper_id: str, stage: str, selected: Optional[Set[str]]) -> None:
        if selected is not None and stage not in selected:
            return
        loads = self._dependency_cache_loads(self._require_paper(paper_id), STAGES[stage])
        if loads:
            await asyncio.gather(*loads)
        for required in STAGES[stage].requires:
            result = self._results.get((paper_id, required))
            if result is None or not result.is_success:
                logger.info(f"[{stage}] Skipped for paper {paper_id}: {required} did not succeed")
                return
        try:
            await self.trigger(paper_id, stage)
        except InputValidationError as e:
            logger.info(f"[{stage}] Skipped for paper {paper_id}: {e.message}")

    async def _run_chain(self, paper_id: str, stages: Iterable[str], selected: Optional[Set[str]]) -> None:
        for stage in stages:
            await self._run_if_ready(paper_id, stage, selected)

    async def run_pipeline(self, paper_id: str, stages: Optional[Iterable[str]] = None) -> Dict[str, StageResult]:
        """
        Trigger stages in dependency order.

        After claims, the patents branch runs concurrently with the similar
        papers -> research groups -> contacts -> theses chain. Verified
        claims runs last. Stages whose dependencies did not succeed are
        skipped.

        Args:
            paper_id: Registered paper
            stages: Optional subset of stage names to run

        Returns:
            Snapshot of all stage results
        """
        self._require_paper(paper_id)
        selected = set(stages) if stages is not None else None
        if selected is not None:
            for stage in selected:
                self._definition(stage)

        await self._run_if_ready(paper_id, CLAIMS, selected)
        await asyncio.gather(
            self._run_chain(paper_id, (SIMILAR_PAPERS, RESEARCH_GROUPS, CONTACTS, THESES), selected),
            self._run_if_ready(paper_id, PATENTS, selected),
        )
        await self._run_if_ready(paper_id, VERIFIED_CLAIMS, selected)
        return self.snapshot(paper_id)
