from typing import Any

from pydantic import BaseModel, Field

from hybrid_categorizer.models import FeedbackRecord


class CategorizeRequest(BaseModel):
    transaction: dict[str, Any]


class CategorizeBatchRequest(BaseModel):
    transactions: list[dict[str, Any]]


class BulkFeedbackRequest(BaseModel):
    feedbacks: list[FeedbackRecord] = Field(min_length=1)


class ValidationRunRequest(BaseModel):
    baseline_size: int = Field(default=5000, ge=1, le=20000)
    cost_size: int = Field(default=10000, ge=1, le=20000)
