import asyncio
import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from hybrid_categorizer.errors import CategorizerError, StoreUnavailable
from hybrid_categorizer.logger import get_logger
from hybrid_categorizer.models import (
    Alert,
    AlertEvaluation,
    AlertMetrics,
    MonitoringDashboard,
    PerformanceTrends,
    SystemHealth,
)
from hybrid_categorizer.services.alerting import AlertEngine
from hybrid_categorizer.services.feedback import FeedbackProcessor
from hybrid_categorizer.services.metrics import (
    AI_CALLS_KEY,
    OPERATION_CACHE_LOOKUP,
    RULE_HITS_KEY,
    MetricsRecorder,
)
from hybrid_categorizer.storage.kv import KeyValueStore
from hybrid_categorizer.storage.records import RecordStore, utcnow

logger = get_logger(__name__)

MONITORING_PREFIX = "categorization:monitoring:"
TREND_PREFIX = f"{MONITORING_PREFIX}trends:"
TREND_RETENTION_SECONDS = 7 * 24 * 60 * 60
TREND_DATA_POINTS = 24
TRANSACTIONS_PER_STATEMENT = 50
DEFAULT_INTERVAL_SECONDS = 300.0

# (name, help, type) in export order
PROMETHEUS_METRICS: tuple[tuple[str, str, str], ...] = (
    ("categorization_accuracy_percentage", "Current categorization accuracy percentage", "gauge"),
    ("categorization_cost_per_statement_dollars", "Cost per statement in dollars", "gauge"),
    ("categorization_error_rate_percentage", "Error rate percentage", "gauge"),
    ("categorization_latency_milliseconds", "Average latency in milliseconds", "gauge"),
    ("categorization_throughput_per_minute", "Throughput per minute", "gauge"),
    ("categorization_cache_hit_rate_percentage", "Cache hit rate percentage", "gauge"),
    ("categorization_active_alerts_count", "Number of active alerts", "gauge"),
    ("categorization_ai_api_calls_total", "Total AI API calls", "counter"),
    ("categorization_rule_based_hits_total", "Total rule-based hits", "counter"),
)


def format_metric_value(value: float | int | None) -> str:
    if not value:
        return "0"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        # shortest round-trip digits, always in positional notation
        return format(Decimal(repr(value)), "f")
    return str(value)


def render_prometheus(values: dict[str, float | int | None]) -> str:
    lines: list[str] = []
    for name, help_text, metric_type in PROMETHEUS_METRICS:
        lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} {metric_type}")
        lines.append(f"{name} {format_metric_value(values.get(name))}")
        lines.append("")
    return "\n".join(lines)


def hour_bucket(moment: datetime) -> int:
    return int(moment.timestamp()) // 3600


class MonitoringService:
    def __init__(
        self,
        metrics: MetricsRecorder,
        alerts: AlertEngine,
        store: KeyValueStore,
        feedback: FeedbackProcessor | None = None,
        records: RecordStore | None = None,
        classifier_enabled: Callable[[], bool] = lambda: False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.metrics = metrics
        self.alerts = alerts
        self.store = store
        self.feedback = feedback
        self.records = records
        self.classifier_enabled = classifier_enabled
        self._clock = clock

    def _accuracy(self, since: datetime) -> float:
        """Share of last-hour classifications that no user had to correct."""
        classified = sum(
            1 for s in self.metrics.samples_since(since) if s.operation == OPERATION_CACHE_LOOKUP
        )
        if not classified or self.feedback is None:
            return 100.0
        corrected = min(self.feedback.corrections_since(since), classified)
        return round(100.0 * (1 - corrected / classified), 2)

    def collect_current_metrics(self) -> AlertMetrics:
        now = self._clock()
        report = self.metrics.report("hour")
        return AlertMetrics(
            accuracy=self._accuracy(now - timedelta(hours=1)),
            cost_per_statement=report.average_cost_per_transaction * TRANSACTIONS_PER_STATEMENT,
            error_rate=report.error_rate * 100,
            average_latency=report.average_latency_ms,
            throughput=report.total_transactions / 60,
            timestamp=now,
        )

    def store_trend_point(self, metrics: AlertMetrics) -> None:
        key = f"{TREND_PREFIX}{hour_bucket(metrics.timestamp)}"
        point = {
            "accuracy": metrics.accuracy,
            "cost": metrics.cost_per_statement,
            "error_rate": metrics.error_rate,
            "latency": metrics.average_latency,
            "throughput": metrics.throughput,
            "timestamp": metrics.timestamp.isoformat(),
        }
        try:
            self.store.setex(key, TREND_RETENTION_SECONDS, json.dumps(point))
        except StoreUnavailable as exc:
            logger.error("[MONITOR] Error storing trend point: %s", exc)

    def perform_scheduled_check(self) -> AlertEvaluation:
        logger.info("[MONITOR] Starting scheduled monitoring check")
        try:
            metrics = self.collect_current_metrics()
            self.store_trend_point(metrics)
            evaluation = self.alerts.evaluate(metrics)
        except CategorizerError as exc:
            logger.error("[MONITOR] Error during scheduled monitoring: %s", exc)
            return AlertEvaluation()

        logger.info(
            "[MONITOR] Completed monitoring check: %d opened, %d resolved",
            len(evaluation.opened),
            len(evaluation.resolved),
        )
        return evaluation

    def performance_trends(self) -> PerformanceTrends:
        trends = PerformanceTrends()
        current_hour = hour_bucket(self._clock())
        for offset in range(TREND_DATA_POINTS - 1, -1, -1):
            bucket = current_hour - offset
            try:
                raw = self.store.get(f"{TREND_PREFIX}{bucket}")
            except StoreUnavailable:
                raw = None

            if raw:
                point = json.loads(raw)
                trends.accuracy.append(point["accuracy"])
                trends.cost.append(point["cost"])
                trends.latency.append(point["latency"])
                trends.throughput.append(point["throughput"])
                trends.timestamps.append(datetime.fromisoformat(point["timestamp"]))
            else:
                trends.accuracy.append(0.0)
                trends.cost.append(0.0)
                trends.latency.append(0.0)
                trends.throughput.append(0.0)
                trends.timestamps.append(datetime.fromtimestamp(bucket * 3600, tz=timezone.utc))
        return trends

    def system_health(self) -> SystemHealth:
        health = SystemHealth()
        try:
            health.store = bool(self.store.ping())
        except StoreUnavailable as exc:
            logger.warning("[MONITOR] Store health check failed: %s", exc)

        health.database = self.records is not None and bool(self.records.list_categories())
        health.ai_service = bool(self.classifier_enabled())

        healthy = sum((health.store, health.database, health.ai_service))
        if healthy == 3:
            health.overall_status = "healthy"
        elif healthy == 2:
            health.overall_status = "degraded"
        else:
            health.overall_status = "unhealthy"
        return health

    @staticmethod
    def recommendations(metrics: AlertMetrics, alerts: list[Alert]) -> list[str]:
        recommendations: list[str] = []
        if metrics.accuracy < 85:
            recommendations.append("Consider reviewing and updating categorization rules")
            recommendations.append("Analyze recent user feedback for pattern improvements")
        if metrics.cost_per_statement > 0.08:
            recommendations.append("Review AI API usage and consider increasing cache TTL")
            recommendations.append("Optimize rule-based categorization to reduce AI calls")
        if metrics.error_rate > 0.5:
            recommendations.append("Investigate recent error patterns and API failures")
            recommendations.append("Consider implementing additional fallback mechanisms")
        if metrics.average_latency > 400:
            recommendations.append("Review cache hit rates and optimize store performance")
            recommendations.append("Consider implementing request batching for better throughput")
        if any(alert.severity == "critical" for alert in alerts):
            recommendations.append(
                "Address critical alerts immediately to prevent service degradation"
            )
        if not recommendations:
            recommendations.append("System is performing within acceptable parameters")
            recommendations.append("Continue monitoring for any performance degradation")
        return recommendations

    def dashboard(self) -> MonitoringDashboard:
        current = self.collect_current_metrics()
        active = self.alerts.active_alerts()
        return MonitoringDashboard(
            current_metrics=current,
            active_alerts=active,
            system_health=self.system_health(),
            performance_trends=self.performance_trends(),
            cache_statistics=self.metrics.cache_statistics(),
            recommendations=self.recommendations(current, active),
        )

    def prometheus_values(self) -> dict[str, float | int | None]:
        current = self.collect_current_metrics()
        cache_stats = self.metrics.cache_statistics()
        return {
            "categorization_accuracy_percentage": current.accuracy,
            "categorization_cost_per_statement_dollars": current.cost_per_statement,
            "categorization_error_rate_percentage": current.error_rate,
            "categorization_latency_milliseconds": current.average_latency,
            "categorization_throughput_per_minute": current.throughput,
            "categorization_cache_hit_rate_percentage": cache_stats.hit_rate * 100,
            "categorization_active_alerts_count": len(self.alerts.active_alerts()),
            "categorization_ai_api_calls_total": self.metrics.counter(AI_CALLS_KEY),
            "categorization_rule_based_hits_total": self.metrics.counter(RULE_HITS_KEY),
        }

    def render_prometheus(self) -> str:
        return render_prometheus(self.prometheus_values())

    async def run_forever(self, interval_seconds: float = DEFAULT_INTERVAL_SECONDS) -> None:
        logger.info("[MONITOR] Scheduled checks every %.0f seconds", interval_seconds)
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await asyncio.to_thread(self.perform_scheduled_check)
            except Exception:
                logger.exception("[MONITOR] Scheduled monitoring check failed")
