from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from hybrid_categorizer.api.dependencies import get_pipeline, get_service
from hybrid_categorizer.api.schemas import CategorizeBatchRequest, CategorizeRequest
from hybrid_categorizer.errors import BatchTooLarge
from hybrid_categorizer.manager import CategorizerService
from hybrid_categorizer.models import CategorizationResult
from hybrid_categorizer.services.categorization import CategorizationPipeline

router = APIRouter()


@router.post("/categorize", response_model=CategorizationResult)
async def categorize_transaction(
    req: CategorizeRequest,
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> CategorizationResult:
    return await pipeline.classify(req.transaction)


@router.post("/categorize/batch", response_model=list[CategorizationResult])
async def categorize_batch(
    req: CategorizeBatchRequest,
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> list[CategorizationResult]:
    try:
        return await pipeline.classify_batch(req.transactions)
    except BatchTooLarge as exc:
        raise HTTPException(status_code=413, detail=str(exc)) from exc


@router.get("/categories")
async def get_categories(
    service: Annotated[CategorizerService, Depends(get_service)],
) -> list[str]:
    return service.available_categories()
