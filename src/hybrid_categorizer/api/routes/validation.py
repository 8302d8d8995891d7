import asyncio
from typing import Annotated

from fastapi import APIRouter, Depends

from hybrid_categorizer.api.dependencies import get_validation
from hybrid_categorizer.api.schemas import ValidationRunRequest
from hybrid_categorizer.models import ValidationSuiteReport
from hybrid_categorizer.services.validation import ValidationHarness

router = APIRouter(prefix="/validation")


@router.post("/run", response_model=ValidationSuiteReport)
async def run_validation_suite(
    harness: Annotated[ValidationHarness, Depends(get_validation)],
    req: ValidationRunRequest | None = None,
) -> ValidationSuiteReport:
    req = req or ValidationRunRequest()
    return await asyncio.to_thread(
        harness.run_full_suite, baseline_size=req.baseline_size, cost_size=req.cost_size
    )
