import asyncio
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from hybrid_categorizer.api.dependencies import get_feedback
from hybrid_categorizer.api.schemas import BulkFeedbackRequest
from hybrid_categorizer.errors import TransactionNotFound, UnknownCategory
from hybrid_categorizer.logger import get_logger
from hybrid_categorizer.models import (
    BulkFeedbackResult,
    FeedbackRecord,
    FeedbackStats,
    StoredFeedback,
)
from hybrid_categorizer.services.feedback import FeedbackProcessor

logger = get_logger(__name__)

router = APIRouter(prefix="/feedback")


@router.post("", response_model=StoredFeedback)
async def submit_feedback(
    req: FeedbackRecord,
    processor: Annotated[FeedbackProcessor, Depends(get_feedback)],
) -> StoredFeedback:
    try:
        return await asyncio.to_thread(processor.submit, req)
    except TransactionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except UnknownCategory as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.post("/bulk", response_model=BulkFeedbackResult)
async def submit_bulk_feedback(
    req: BulkFeedbackRequest,
    processor: Annotated[FeedbackProcessor, Depends(get_feedback)],
) -> BulkFeedbackResult:
    logger.info("[FEEDBACK] Bulk submission of %d items", len(req.feedbacks))
    return await asyncio.to_thread(processor.submit_bulk, req.feedbacks)


@router.get("/history", response_model=list[StoredFeedback])
async def feedback_history(
    processor: Annotated[FeedbackProcessor, Depends(get_feedback)],
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[StoredFeedback]:
    return processor.history(limit=limit, offset=offset)


@router.get("/stats", response_model=FeedbackStats)
async def feedback_stats(
    processor: Annotated[FeedbackProcessor, Depends(get_feedback)],
) -> FeedbackStats:
    return processor.stats()
