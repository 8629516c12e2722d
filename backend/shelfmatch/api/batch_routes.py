"""
Batch resolution and contextual-correction routes.

The two batch endpoints stream the progress channel as Server-Sent Events.
Closing the connection sets the run's cancellation signal.
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from shelfmatch.api.deps import get_jobs, get_store
from shelfmatch.models.domain import CorrectionMode
from shelfmatch.models.progress_models import ErrorEvent, ItemResult, to_sse
from shelfmatch.services.batch_jobs import BatchJobs
from shelfmatch.services.errors import PersistenceError, ShelfMatchError
from shelfmatch.services.result_store import ResultStore

logger = logging.getLogger("shelfmatch-api.batch")

router = APIRouter(prefix="/api", tags=["Resolution"])

# Runs outlive a disconnected stream until they observe the cancel signal
_background: set = set()


class ResolveBatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    project_id: str = Field(..., alias="projectId")
    concurrency: Optional[int] = None


class ContextualBatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    project_id: str = Field(..., alias="projectId")
    concurrency: Optional[int] = None
    mode: CorrectionMode = CorrectionMode.IMPROVE_ONLY


class ContextualRequest(BaseModel):
    mode: CorrectionMode = CorrectionMode.IMPROVE_ONLY


def _sse_response(job) -> StreamingResponse:
    """Run ``job(emit, cancel)`` in a task and stream every event it emits."""
    queue: asyncio.Queue = asyncio.Queue()
    cancel = asyncio.Event()

    async def runner():
        try:
            await job(queue.put, cancel)
        except Exception as e:
            logger.exception("Batch run failed before completion")
            await queue.put(ErrorEvent(message=str(e)))
        finally:
            await queue.put(None)

    async def stream():
        task = asyncio.create_task(runner())
        _background.add(task)
        task.add_done_callback(_background.discard)
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield to_sse(event)
        finally:
            if not task.done():
                logger.info("Client disconnected — cancelling batch run")
            cancel.set()

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


@router.post("/batch/resolve")
async def batch_resolve(body: ResolveBatchRequest, jobs: BatchJobs = Depends(get_jobs)):
    """Stream product resolution for every unanalyzed detection of a project."""
    return _sse_response(
        lambda emit, cancel: jobs.resolve_project(
            body.project_id, concurrency=body.concurrency, emit=emit, cancel=cancel
        )
    )


@router.post("/batch/contextual")
async def batch_contextual(body: ContextualBatchRequest, jobs: BatchJobs = Depends(get_jobs)):
    """Stream contextual correction for every low-confidence detection of a project."""
    return _sse_response(
        lambda emit, cancel: jobs.correct_project(
            body.project_id, mode=body.mode, concurrency=body.concurrency, emit=emit, cancel=cancel
        )
    )


@router.post("/detections/{detection_id}/contextual")
async def contextual_one(
    detection_id: str,
    body: Optional[ContextualRequest] = None,
    jobs: BatchJobs = Depends(get_jobs),
):
    mode = body.mode if body else CorrectionMode.IMPROVE_ONLY
    try:
        outcome = await jobs.correct_detection(detection_id, mode)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ShelfMatchError as e:
        raise HTTPException(status_code=502, detail=f"{type(e).__name__}: {e}")
    return ItemResult(
        detection_id=outcome.detection_id,
        detection_index=outcome.detection_index,
        status=outcome.status.value,
        reason_code=outcome.reason_code.value,
        reason=outcome.reason,
        selected_key=outcome.selected_key,
    ).model_dump(by_alias=True)


@router.get("/detections/{detection_id}/stage-results")
async def stage_results(detection_id: str, store: ResultStore = Depends(get_store)):
    try:
        rows = await store.list_stage_results(detection_id)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {
        "detectionId": detection_id,
        "results": [
            {
                "candidateKey": r.candidate_key,
                "stage": r.stage.value,
                "title": r.candidate.title if r.candidate else None,
                "brand": r.candidate.brand if r.candidate else None,
                "size": r.candidate.size if r.candidate else None,
                "imageUrl": r.candidate.image_url if r.candidate else None,
                "searchTerm": r.search_term,
                "resultRank": r.result_rank,
                "similarityScore": r.similarity_score,
                "matchStatus": r.match_status.value if r.match_status else None,
                "confidence": r.confidence,
                "visualSimilarity": r.visual_similarity,
                "arbitrationSimilarity": r.arbitration_similarity,
                "reason": r.reason,
                "isSelected": r.is_selected,
            }
            for r in rows
        ],
    }
