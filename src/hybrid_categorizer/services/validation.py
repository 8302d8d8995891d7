import random
import time
from collections.abc import Callable, Sequence
from datetime import datetime, timezone

from hybrid_categorizer.logger import get_logger
from hybrid_categorizer.manager import CategorizerService
from hybrid_categorizer.models import (
    CategoryAccuracy,
    SourceAccuracy,
    ValidationItemResult,
    ValidationPerformance,
    ValidationReport,
    ValidationSuiteReport,
    ValidationSummary,
    ValidationTransaction,
)
from hybrid_categorizer.services.metrics import MetricsRecorder
from hybrid_categorizer.storage.records import utcnow

logger = get_logger(__name__)

TRANSACTIONS_PER_STATEMENT = 50
ESTIMATED_COST_BY_SOURCE = {"cache": 0.0001, "rule": 0.0005, "error": 0.0}
ESTIMATED_AI_COST = 0.002

TARGET_ACCURACY = 85.0
TARGET_COST_PER_STATEMENT = 0.10
TARGET_ERROR_RATE = 1.0
TARGET_CACHE_HIT_RATE = 30.0

BASELINE_SIZE = 5000
COST_EFFICIENCY_SIZE = 10000

DATASET_START = datetime(2024, 1, 1, tzinfo=timezone.utc)

MERCHANT_CATALOGUE: tuple[tuple[str, str, tuple[float, ...]], ...] = (
    ("LOBLAWS SUPERSTORE #123", "Groceries", (25.50, 45.67, 78.32)),
    ("METRO GROCERY STORE", "Groceries", (15.24, 32.18, 56.90)),
    ("SOBEYS URBAN FRESH", "Groceries", (20.75, 48.33, 65.21)),
    ("WALMART SUPERCENTER", "Groceries", (35.44, 67.89, 89.12)),
    ("COSTCO WHOLESALE", "Groceries", (125.67, 234.78, 345.89)),
    ("TIM HORTONS #456", "Dining Out", (4.25, 8.50, 12.75)),
    ("STARBUCKS COFFEE", "Dining Out", (5.65, 11.30, 16.95)),
    ("MCDONALDS RESTAURANT", "Dining Out", (8.99, 15.25, 22.50)),
    ("BOSTON PIZZA", "Dining Out", (45.67, 78.90, 125.45)),
    ("SWISS CHALET", "Dining Out", (25.99, 48.75, 65.20)),
    ("TTC PRESTO RELOAD", "Transportation", (20.00, 40.00, 60.00)),
    ("UBER TRIP FARE", "Transportation", (12.45, 25.67, 45.89)),
    ("PETRO CANADA GAS", "Transportation", (45.67, 78.90, 125.34)),
    ("GO TRANSIT MONTHLY", "Transportation", (150.00, 165.50, 180.75)),
    ("TORONTO PARKING AUTH", "Transportation", (8.00, 15.00, 25.00)),
    ("HYDRO ONE NETWORKS", "Utilities", (75.45, 125.67, 189.23)),
    ("BELL CANADA MONTHLY", "Utilities", (85.99, 105.75, 125.50)),
    ("ROGERS COMMUNICATIONS", "Utilities", (95.25, 115.80, 135.99)),
    ("ENBRIDGE GAS BILL", "Utilities", (125.45, 234.67, 345.89)),
    ("SHOPPERS DRUG MART", "Health & Wellness", (15.67, 32.45, 67.89)),
    ("REXALL PHARMACY", "Health & Wellness", (12.34, 28.90, 45.67)),
    ("GOODLIFE FITNESS", "Health & Wellness", (45.99, 89.99, 125.99)),
    ("AMAZON.CA PURCHASE", "Shopping", (25.99, 67.45, 125.67)),
    ("CANADIAN TIRE STORE", "Shopping", (35.67, 78.90, 156.78)),
    ("BEST BUY CANADA", "Shopping", (99.99, 299.99, 599.99)),
    ("CINEPLEX ENTERTAINMENT", "Entertainment", (15.99, 31.98, 47.97)),
    ("SPOTIFY PREMIUM", "Entertainment", (9.99, 14.99, 19.99)),
    ("NETFLIX SUBSCRIPTION", "Entertainment", (16.49, 20.99, 24.99)),
)

EDGE_CASES: tuple[tuple[str, float, str], ...] = (
    ("UNKNOWN MERCHANT XYZ", 25.99, "Other"),
    ("REFUND - TIM HORTONS", -4.25, "Dining Out"),
    ("1234567890 ABCDEFGHIJ", 100.00, "Other"),
    ("PAYPAL *AMAZONCAFR", 45.67, "Shopping"),
    ("E-TRANSFER DEPOSIT", 500.00, "Transfers"),
)


def estimated_cost(source: str) -> float:
    return ESTIMATED_COST_BY_SOURCE.get(source, ESTIMATED_AI_COST)


def percentile(sorted_values: Sequence[float], fraction: float) -> float:
    if not sorted_values:
        return 0.0
    index = int(len(sorted_values) * fraction)
    if index >= len(sorted_values):
        return 0.0
    return sorted_values[index]


def _percent(part: int, whole: int) -> float:
    return part / whole * 100 if whole else 0.0


class ValidationHarness:
    def __init__(
        self,
        service: CategorizerService,
        metrics: MetricsRecorder | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.service = service
        self.metrics = metrics
        self.rng = rng or random.Random()
        self._clock = clock

    def _random_date(self) -> datetime:
        now = self._clock()
        span = max((now - DATASET_START).total_seconds(), 0.0)
        return datetime.fromtimestamp(
            DATASET_START.timestamp() + self.rng.random() * span, tz=timezone.utc
        )

    def generate_synthetic_dataset(self, count: int) -> list[ValidationTransaction]:
        transactions = []
        for index in range(count):
            name, category, amounts = self.rng.choice(MERCHANT_CATALOGUE)
            amount = self.rng.choice(amounts)

            description = name
            variation = self.rng.randrange(100)
            if variation < 20:
                description += " TORONTO ON"
            elif variation < 40:
                description += f" #{self.rng.randrange(100, 1099)}"

            transactions.append(
                ValidationTransaction(
                    id=f"synthetic-{index + 1}",
                    description=description,
                    amount=round(amount + (self.rng.random() - 0.5) * 5, 2),
                    date=self._random_date(),
                    ground_truth_category=category,
                    source="synthetic",
                )
            )
        return transactions

    def generate_edge_case_dataset(self) -> list[ValidationTransaction]:
        now = self._clock()
        return [
            ValidationTransaction(
                id=f"edge-{index}",
                description=description,
                amount=amount,
                date=now,
                ground_truth_category=category,
                source="edge_case",
            )
            for index, (description, amount, category) in enumerate(EDGE_CASES, start=1)
        ]

    def _cache_counts(self) -> tuple[int, int]:
        if self.metrics is None:
            return 0, 0
        stats = self.metrics.cache_statistics()
        return stats.hit_count, stats.total_requests

    def run_validation(
        self, dataset: Sequence[ValidationTransaction], scenario_name: str
    ) -> ValidationReport:
        logger.info(
            "[VALIDATION] Starting scenario: %s with %d transactions", scenario_name, len(dataset)
        )
        results: list[ValidationItemResult] = []
        errors = 0
        hits_before, requests_before = self._cache_counts()
        started = time.perf_counter()

        for item in dataset:
            item_started = time.perf_counter()
            result = self.service.classify(
                {
                    "id": item.id,
                    "description": item.description,
                    "amount": item.amount,
                    "date": item.date,
                }
            )
            elapsed_ms = (time.perf_counter() - item_started) * 1000

            if result.is_error:
                logger.warning(
                    "[VALIDATION] Error processing transaction %s: %s", item.id, result.error
                )
                errors += 1

            results.append(
                ValidationItemResult(
                    transaction_id=item.id,
                    predicted_category=result.category,
                    actual_category=item.ground_truth_category,
                    confidence=result.confidence,
                    is_correct=not result.is_error
                    and result.category == item.ground_truth_category,
                    processing_time_ms=elapsed_ms,
                    cost_usd=estimated_cost(result.source),
                    source=result.source,
                )
            )

        total_ms = (time.perf_counter() - started) * 1000
        hits_after, requests_after = self._cache_counts()
        if self.metrics is not None:
            cache_hit_rate = _percent(hits_after - hits_before, requests_after - requests_before)
        else:
            cache_hit_rate = _percent(sum(1 for r in results if r.source == "cache"), len(results))

        report = self._build_report(scenario_name, results, errors, total_ms, cache_hit_rate)
        logger.info(
            "[VALIDATION] %s completed: %.2f%% accuracy, $%.4f per statement",
            scenario_name,
            report.overall_accuracy,
            report.average_cost_per_statement,
        )
        return report

    @staticmethod
    def _build_report(
        scenario_name: str,
        results: list[ValidationItemResult],
        errors: int,
        total_ms: float,
        cache_hit_rate: float,
    ) -> ValidationReport:
        total = len(results)
        correct = sum(1 for r in results if r.is_correct)
        total_cost = sum(r.cost_usd for r in results)
        average_cost = total_cost / total if total else 0.0

        category_breakdown: dict[str, CategoryAccuracy] = {}
        for category in dict.fromkeys(r.actual_category for r in results):
            subset = [r for r in results if r.actual_category == category]
            subset_correct = sum(1 for r in subset if r.is_correct)
            category_breakdown[category] = CategoryAccuracy(
                accuracy=_percent(subset_correct, len(subset)),
                total_transactions=len(subset),
                correct_predictions=subset_correct,
            )

        source_breakdown: dict[str, SourceAccuracy] = {}
        for source in ("rule", "ai", "hybrid", "cache", "fallback"):
            subset = [r for r in results if r.source == source]
            if not subset:
                source_breakdown[source] = SourceAccuracy()
                continue
            source_breakdown[source] = SourceAccuracy(
                count=len(subset),
                accuracy=_percent(sum(1 for r in subset if r.is_correct), len(subset)),
                avg_cost=sum(r.cost_usd for r in subset) / len(subset),
            )

        latencies = sorted(r.processing_time_ms for r in results)
        error_rate = _percent(errors, total)
        accuracy = _percent(correct, total)
        cost_per_statement = average_cost * TRANSACTIONS_PER_STATEMENT

        return ValidationReport(
            scenario_name=scenario_name,
            overall_accuracy=accuracy,
            total_transactions=total,
            correct_predictions=correct,
            errors=errors,
            total_cost_usd=total_cost,
            average_cost_per_transaction=average_cost,
            average_cost_per_statement=cost_per_statement,
            average_processing_time_ms=sum(latencies) / total if total else 0.0,
            cache_hit_rate_delta=cache_hit_rate,
            category_breakdown=category_breakdown,
            source_breakdown=source_breakdown,
            performance=ValidationPerformance(
                throughput_per_minute=total / (total_ms / 60000) if total_ms > 0 else 0.0,
                error_rate=error_rate,
                p95_latency_ms=percentile(latencies, 0.95),
                p99_latency_ms=percentile(latencies, 0.99),
            ),
            production_ready=(
                accuracy >= TARGET_ACCURACY
                and cost_per_statement <= TARGET_COST_PER_STATEMENT
                and error_rate <= TARGET_ERROR_RATE
            ),
        )

    def run_full_suite(
        self,
        baseline_size: int = BASELINE_SIZE,
        cost_size: int = COST_EFFICIENCY_SIZE,
    ) -> ValidationSuiteReport:
        logger.info("[VALIDATION] Starting full validation suite...")
        baseline = self.run_validation(
            self.generate_synthetic_dataset(baseline_size), "Baseline Accuracy"
        )
        cost_efficiency = self.run_validation(
            self.generate_synthetic_dataset(cost_size), "Cost Efficiency"
        )
        edge_cases = self.run_validation(self.generate_edge_case_dataset(), "Edge Cases")

        overall_accuracy = (baseline.overall_accuracy + cost_efficiency.overall_accuracy) / 2
        average_cost = (
            baseline.average_cost_per_statement + cost_efficiency.average_cost_per_statement
        ) / 2
        baseline_error_rate = baseline.performance.error_rate

        recommendations = []
        if overall_accuracy < TARGET_ACCURACY:
            recommendations.append(
                "Improve categorization accuracy through enhanced rules or prompt engineering"
            )
        if average_cost > TARGET_COST_PER_STATEMENT:
            recommendations.append(
                "Optimize costs through improved caching or reduced token usage"
            )
        if baseline_error_rate > TARGET_ERROR_RATE:
            recommendations.append(
                "Reduce error rate through improved error handling and validation"
            )
        if baseline.cache_hit_rate_delta < TARGET_CACHE_HIT_RATE:
            recommendations.append(
                "Improve cache hit rate through better key generation or longer TTL"
            )

        return ValidationSuiteReport(
            baseline_accuracy=baseline,
            cost_efficiency=cost_efficiency,
            edge_cases=edge_cases,
            summary=ValidationSummary(
                overall_accuracy=overall_accuracy,
                average_cost_per_statement=average_cost,
                production_ready=(
                    overall_accuracy >= TARGET_ACCURACY
                    and average_cost <= TARGET_COST_PER_STATEMENT
                    and baseline_error_rate <= TARGET_ERROR_RATE
                ),
                recommendations=recommendations,
            ),
        )
