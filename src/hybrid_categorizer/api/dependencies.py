from fastapi import HTTPException, Request

from hybrid_categorizer.manager import CategorizerService
from hybrid_categorizer.services.alerting import AlertEngine
from hybrid_categorizer.services.categorization import CategorizationPipeline
from hybrid_categorizer.services.feedback import FeedbackProcessor
from hybrid_categorizer.services.metrics import MetricsRecorder
from hybrid_categorizer.services.monitoring import MonitoringService
from hybrid_categorizer.services.validation import ValidationHarness


def _require(request: Request, name: str) -> object:
    component = getattr(request.app.state, name, None)
    if not component:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return component


def get_service(request: Request) -> CategorizerService:
    return _require(request, "service")


def get_pipeline(request: Request) -> CategorizationPipeline:
    return _require(request, "pipeline")


def get_feedback(request: Request) -> FeedbackProcessor:
    return _require(request, "feedback")


def get_metrics(request: Request) -> MetricsRecorder:
    return _require(request, "metrics")


def get_alerts(request: Request) -> AlertEngine:
    return _require(request, "alerts")


def get_monitoring(request: Request) -> MonitoringService:
    return _require(request, "monitoring")


def get_validation(request: Request) -> ValidationHarness:
    return _require(request, "validation")
