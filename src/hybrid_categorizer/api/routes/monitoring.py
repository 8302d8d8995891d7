from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse

from hybrid_categorizer.api.dependencies import get_alerts, get_metrics, get_monitoring
from hybrid_categorizer.errors import ConfigurationError
from hybrid_categorizer.models import (
    Alert,
    AlertThresholds,
    MonitoringDashboard,
    PerformanceReport,
    Period,
)
from hybrid_categorizer.services.alerting import AlertEngine
from hybrid_categorizer.services.metrics import MetricsRecorder
from hybrid_categorizer.services.monitoring import MonitoringService

router = APIRouter(prefix="/monitoring")


@router.get("/alerts", response_model=list[Alert])
async def list_active_alerts(
    alerts: Annotated[AlertEngine, Depends(get_alerts)],
) -> list[Alert]:
    return alerts.active_alerts()


@router.get("/alerts/history", response_model=list[Alert])
async def list_alert_history(
    alerts: Annotated[AlertEngine, Depends(get_alerts)],
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
) -> list[Alert]:
    return alerts.alert_history(limit=limit)


@router.post("/alerts/{alert_id}/resolve")
async def resolve_alert(
    alert_id: str,
    alerts: Annotated[AlertEngine, Depends(get_alerts)],
) -> dict[str, str]:
    if not alerts.resolve_alert(alert_id):
        raise HTTPException(status_code=404, detail=f"Alert '{alert_id}' not found")
    return {"status": "resolved", "id": alert_id}


@router.get("/thresholds", response_model=AlertThresholds)
async def get_thresholds(
    alerts: Annotated[AlertEngine, Depends(get_alerts)],
) -> AlertThresholds:
    return alerts.thresholds


@router.put("/thresholds", response_model=AlertThresholds)
async def update_thresholds(
    partial: Annotated[dict[str, Any], Body()],
    alerts: Annotated[AlertEngine, Depends(get_alerts)],
) -> AlertThresholds:
    try:
        return alerts.update_thresholds(partial)
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.get("/performance", response_model=PerformanceReport)
async def performance_report(
    metrics: Annotated[MetricsRecorder, Depends(get_metrics)],
    period: Period = "day",
) -> PerformanceReport:
    return metrics.report(period)


@router.get("/dashboard", response_model=MonitoringDashboard)
async def dashboard(
    monitoring: Annotated[MonitoringService, Depends(get_monitoring)],
) -> MonitoringDashboard:
    return monitoring.dashboard()


@router.get("/metrics/prometheus", response_class=PlainTextResponse)
async def prometheus_metrics(
    monitoring: Annotated[MonitoringService, Depends(get_monitoring)],
) -> str:
    return monitoring.render_prometheus()
