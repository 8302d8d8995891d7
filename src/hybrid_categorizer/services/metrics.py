from collections.abc import Callable
from datetime import date, datetime, timedelta

from pydantic import ValidationError

from hybrid_categorizer.core.configuration import MetricsConfig
from hybrid_categorizer.errors import StoreUnavailable
from hybrid_categorizer.logger import get_logger
from hybrid_categorizer.models import (
    CacheStatistics,
    CostBreakdown,
    MetricSample,
    PerformanceReport,
    Period,
)
from hybrid_categorizer.storage.kv import KeyValueStore
from hybrid_categorizer.storage.records import utcnow

logger = get_logger(__name__)

METRICS_PREFIX = "categorization:metrics"
CACHE_HITS_KEY = f"{METRICS_PREFIX}:cache:hits"
CACHE_MISSES_KEY = f"{METRICS_PREFIX}:cache:misses"
CACHE_LOOKUP_TIME_KEY = f"{METRICS_PREFIX}:cache:lookup_time"
RULE_HITS_KEY = f"{METRICS_PREFIX}:rules:hits"
AI_CALLS_KEY = f"{METRICS_PREFIX}:ai:calls"
CACHE_COUNTER_TTL_SECONDS = 24 * 60 * 60

OPERATION_CACHE_LOOKUP = "cache_lookup"
OPERATION_RULE = "rule_categorization"
OPERATION_AI = "ai_categorization"

DEFAULT_INPUT_TOKEN_COST = 0.0005 / 1000
DEFAULT_OUTPUT_TOKEN_COST = 0.0015 / 1000

PERIOD_SECONDS: dict[str, int] = {
    "hour": 3600,
    "day": 86400,
    "week": 604800,
    "month": 2592000,
}

# Operational targets behind the optimization recommendations.
TARGET_COST_PER_TRANSACTION = 0.10
TARGET_CACHE_HIT_RATE = 0.30
TARGET_LATENCY_MS = 500
TARGET_ERROR_RATE = 0.01
TARGET_THROUGHPUT_PER_SECOND = 16.67  # 1000 transactions per minute


def partition_key(day: date) -> str:
    return f"{METRICS_PREFIX}:{day.isoformat()}"


def derive_recommendations(report: PerformanceReport) -> list[str]:
    recommendations: list[str] = []
    if report.average_cost_per_transaction > TARGET_COST_PER_TRANSACTION:
        recommendations.append(
            f"Cost per transaction ({report.average_cost_per_transaction:.4f}) exceeds target of "
            "$0.10. Consider increasing cache TTL or improving rule-based matching."
        )
    if report.cache_hit_rate < TARGET_CACHE_HIT_RATE:
        recommendations.append(
            f"Cache hit rate ({report.cache_hit_rate * 100:.1f}%) is below 30% target. "
            "Consider extending cache TTL or improving merchant normalization."
        )
    if report.average_latency_ms > TARGET_LATENCY_MS:
        recommendations.append(
            f"Average latency ({report.average_latency_ms:.0f}ms) exceeds 500ms target. "
            "Consider optimizing batch sizes or increasing parallel processing."
        )
    if report.error_rate > TARGET_ERROR_RATE:
        recommendations.append(
            f"Error rate ({report.error_rate * 100:.2f}%) exceeds 1% target. "
            "Review error logs and improve error handling."
        )
    if report.throughput < TARGET_THROUGHPUT_PER_SECOND:
        recommendations.append(
            f"Current throughput ({report.throughput:.2f} tx/sec) is below target of "
            "16.67 tx/sec (1000/min). Consider increasing batch sizes or parallel processing."
        )
    return recommendations


class MetricsRecorder:
    """Append-only telemetry partitioned by UTC day, aggregated on read."""

    def __init__(
        self,
        store: KeyValueStore,
        input_token_cost: float = DEFAULT_INPUT_TOKEN_COST,
        output_token_cost: float = DEFAULT_OUTPUT_TOKEN_COST,
        retention_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.input_token_cost = input_token_cost
        self.output_token_cost = output_token_cost
        self.retention_seconds = retention_days * 24 * 60 * 60
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        store: KeyValueStore,
        config: MetricsConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> "MetricsRecorder":
        return cls(
            store,
            input_token_cost=config.input_token_cost,
            output_token_cost=config.output_token_cost,
            retention_days=config.retention_days,
            clock=clock,
        )

    def now(self) -> datetime:
        return self._clock()

    def calculate_cost(self, input_tokens: int, output_tokens: int) -> float:
        return input_tokens * self.input_token_cost + output_tokens * self.output_token_cost

    def record(self, sample: MetricSample) -> None:
        key = partition_key(sample.timestamp.date())
        try:
            self.store.lpush(key, sample.model_dump_json())
            self.store.expire(key, self.retention_seconds)
            self._update_counters(sample)
        except StoreUnavailable as exc:
            logger.warning("[METRICS] Dropped %s sample: %s", sample.operation, exc)
            return
        logger.debug("[METRICS] Recorded %s - %.1fms", sample.operation, sample.duration_ms)

    def _update_counters(self, sample: MetricSample) -> None:
        if sample.cache_hit is not None:
            key = CACHE_HITS_KEY if sample.cache_hit else CACHE_MISSES_KEY
            self.store.incr(key)
            self.store.expire(key, CACHE_COUNTER_TTL_SECONDS)
            if sample.cache_hit:
                self.store.incrbyfloat(CACHE_LOOKUP_TIME_KEY, sample.duration_ms)
                self.store.expire(CACHE_LOOKUP_TIME_KEY, CACHE_COUNTER_TTL_SECONDS)

        if sample.operation == OPERATION_RULE and sample.success:
            self.store.incr(RULE_HITS_KEY)
        elif sample.operation == OPERATION_AI:
            self.store.incr(AI_CALLS_KEY)

    def counter(self, key: str) -> int:
        try:
            raw = self.store.get(key)
        except StoreUnavailable:
            return 0
        return int(float(raw)) if raw else 0

    def samples_since(self, start: datetime) -> list[MetricSample]:
        end = self.now()
        samples: list[MetricSample] = []
        day = start.date()
        while day <= end.date():
            samples.extend(self._read_partition(day))
            day += timedelta(days=1)
        return [s for s in samples if start <= s.timestamp <= end]

    def _read_partition(self, day: date) -> list[MetricSample]:
        try:
            raw_samples = self.store.lrange(partition_key(day), 0, -1)
        except StoreUnavailable as exc:
            logger.warning("[METRICS] Could not read partition %s: %s", day.isoformat(), exc)
            return []

        samples = []
        for raw in raw_samples:
            try:
                samples.append(MetricSample.model_validate_json(raw))
            except ValidationError:
                logger.warning("[METRICS] Skipping unreadable sample in %s", day.isoformat())
        return samples

    def samples_for_period(self, period: Period) -> list[MetricSample]:
        return self.samples_since(self.now() - timedelta(seconds=PERIOD_SECONDS[period]))

    @staticmethod
    def _cost_breakdown(
        samples: list[MetricSample], period: Period
    ) -> CostBreakdown:
        ai_samples = [s for s in samples if s.operation == OPERATION_AI and s.success]
        total_cost = sum(s.cost or 0.0 for s in ai_samples)
        return CostBreakdown(
            period=period,
            ai_api_calls=len(ai_samples),
            total_tokens=sum(s.tokens.total for s in ai_samples if s.tokens),
            input_tokens=sum(s.tokens.input for s in ai_samples if s.tokens),
            output_tokens=sum(s.tokens.output for s in ai_samples if s.tokens),
            total_cost=total_cost,
            average_cost_per_transaction=total_cost / max(len(samples), 1),
        )

    def cost_breakdown(self, period: Period = "day") -> CostBreakdown:
        return self._cost_breakdown(self.samples_for_period(period), period)

    def report(self, period: Period = "day") -> PerformanceReport:
        samples = self.samples_for_period(period)
        total = len(samples)
        breakdown = self._cost_breakdown(samples, period)

        cache_samples = [s for s in samples if s.cache_hit is not None]
        cache_hits = sum(1 for s in cache_samples if s.cache_hit)
        latencies = [s.duration_ms for s in samples if s.success]
        errors = sum(1 for s in samples if not s.success)

        report = PerformanceReport(
            period=period,
            total_transactions=total,
            total_cost=breakdown.total_cost,
            average_cost_per_transaction=breakdown.average_cost_per_transaction,
            cache_hit_rate=cache_hits / len(cache_samples) if cache_samples else 0.0,
            average_latency_ms=sum(latencies) / len(latencies) if latencies else 0.0,
            error_rate=errors / total if total else 0.0,
            throughput=total / PERIOD_SECONDS[period],
            cost_breakdown=breakdown,
        )
        report.recommendations = derive_recommendations(report)
        return report

    def recommendations(self) -> list[str]:
        return self.report("day").recommendations

    def cache_statistics(self) -> CacheStatistics:
        try:
            hits_raw = self.store.get(CACHE_HITS_KEY)
            misses_raw = self.store.get(CACHE_MISSES_KEY)
            lookup_time_raw = self.store.get(CACHE_LOOKUP_TIME_KEY)
        except StoreUnavailable as exc:
            logger.warning("[METRICS] Cache statistics unavailable: %s", exc)
            return CacheStatistics()

        hits = int(hits_raw or 0)
        misses = int(misses_raw or 0)
        total = hits + misses
        return CacheStatistics(
            hit_rate=hits / total if total else 0.0,
            total_requests=total,
            hit_count=hits,
            miss_count=misses,
            avg_lookup_time_ms=float(lookup_time_raw or 0.0) / hits if hits else 0.0,
        )
