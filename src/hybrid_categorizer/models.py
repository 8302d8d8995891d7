from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

CATEGORIES: tuple[str, ...] = (
    "Groceries",
    "Transportation",
    "Housing",
    "Utilities",
    "Dining Out",
    "Entertainment",
    "Shopping",
    "Health & Wellness",
    "Services",
    "Income",
    "Transfers",
    "Other",
)

OTHER_CATEGORY = "Other"
PREPROCESSING_FAILED_CATEGORY = "Error: Preprocessing Failed"
CATEGORIZATION_FAILED_CATEGORY = "Error: Categorization Failed"


def is_valid_category(name: str | None) -> bool:
    return name in CATEGORIES


ResultSource = Literal["cache", "rule", "ai", "hybrid", "fallback", "error"]
Period = Literal["hour", "day", "week", "month"]
AlertType = Literal["accuracy", "cost", "error_rate", "latency", "throughput"]
AlertSeverity = Literal["low", "medium", "high", "critical"]
NotificationChannel = Literal["log", "webhook", "email"]
ProvenanceType = Literal["ai_suggested", "user_corrected"]


class Transaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    description: str = ""
    amount: float
    date: datetime
    merchant: str | None = None


class CategorizationResult(BaseModel):
    transaction_id: str
    category: str
    confidence: float = Field(ge=0.0, le=1.0)  # 0.0 to 1.0
    source: ResultSource
    tier: str | None = None  # rule tier that produced or informed the result
    error: str | None = None  # annotation when a fallback path was taken

    @property
    def is_error(self) -> bool:
        return self.source == "error"


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0
    total: int = 0


class MetricSample(BaseModel):
    timestamp: datetime
    operation: str
    duration_ms: float
    success: bool
    cost: float | None = None
    tokens: TokenUsage | None = None
    cache_hit: bool | None = None
    batch_size: int | None = None
    error: str | None = None


class CostBreakdown(BaseModel):
    period: Period
    ai_api_calls: int = 0
    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_cost: float = 0.0
    average_cost_per_transaction: float = 0.0


class CacheStatistics(BaseModel):
    hit_rate: float = 0.0
    total_requests: int = 0
    hit_count: int = 0
    miss_count: int = 0
    avg_lookup_time_ms: float = 0.0


class PerformanceReport(BaseModel):
    period: Period
    total_transactions: int = 0
    total_cost: float = 0.0
    average_cost_per_transaction: float = 0.0
    cache_hit_rate: float = 0.0
    average_latency_ms: float = 0.0
    error_rate: float = 0.0
    throughput: float = 0.0  # operations per second
    cost_breakdown: CostBreakdown
    recommendations: list[str] = Field(default_factory=list)


class AlertThresholds(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    accuracy_threshold: float = Field(default=85.0, ge=0, le=100)  # percent
    cost_per_statement_threshold: float = Field(default=0.10, gt=0)  # dollars
    error_rate_threshold: float = Field(default=1.0, gt=0, le=100)  # percent
    latency_threshold: float = Field(default=500.0, gt=0)  # milliseconds
    throughput_threshold: float = Field(default=1000.0, gt=0)  # per minute


class AlertMetrics(BaseModel):
    accuracy: float
    cost_per_statement: float
    error_rate: float
    average_latency: float
    throughput: float
    timestamp: datetime


class Alert(BaseModel):
    id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    current_value: float
    threshold: float
    created_at: datetime
    resolved: bool = False
    resolved_at: datetime | None = None


class AlertEvaluation(BaseModel):
    opened: list[Alert] = Field(default_factory=list)
    resolved: list[Alert] = Field(default_factory=list)


class PerformanceTrends(BaseModel):
    accuracy: list[float] = Field(default_factory=list)
    cost: list[float] = Field(default_factory=list)
    latency: list[float] = Field(default_factory=list)
    throughput: list[float] = Field(default_factory=list)
    timestamps: list[datetime] = Field(default_factory=list)


class SystemHealth(BaseModel):
    store: bool = False
    database: bool = False
    ai_service: bool = False
    overall_status: Literal["healthy", "degraded", "unhealthy"] = "unhealthy"


class MonitoringDashboard(BaseModel):
    current_metrics: AlertMetrics
    active_alerts: list[Alert]
    system_health: SystemHealth
    performance_trends: PerformanceTrends
    cache_statistics: CacheStatistics
    recommendations: list[str]


class TransactionRecord(BaseModel):
    id: str
    description: str
    amount: float
    date: datetime
    merchant: str | None = None
    category: str | None = None
    user_verified: bool = False


class FeedbackRecord(BaseModel):
    transaction_id: str = Field(min_length=1)
    corrected_category: str
    original_category: str | None = None
    confidence_rating: int | None = Field(default=None, ge=1, le=5)
    feedback_type: str = "category_correction"
    source: str = "manual"
    notes: str | None = None
    user_id: str | None = None


class StoredFeedback(BaseModel):
    id: str
    transaction_id: str
    original_category: str | None
    corrected_category: str
    feedback_type: str
    source: str
    confidence_rating: int | None = None
    notes: str | None = None
    user_id: str | None = None
    transaction_description: str
    merchant_name: str
    created_at: datetime
    processed: bool = False
    processed_at: datetime | None = None


class BulkFeedbackResult(BaseModel):
    processed: int = 0
    failed: int = 0


class FeedbackStats(BaseModel):
    total_feedback: int = 0
    feedback_last_24h: int = 0
    feedback_last_7_days: int = 0
    average_confidence: float = 0.0
    processed: int = 0
    pending: int = 0


class LearningPattern(BaseModel):
    pattern_type: Literal["merchant_category", "description_keyword"]
    pattern_key: str
    category: str
    occurrence_count: int = 0
    success_count: int = 0
    confidence_score: float = 0.0
    last_seen_at: datetime | None = None


class ValidationTransaction(BaseModel):
    id: str
    description: str
    amount: float
    date: datetime
    ground_truth_category: str
    source: Literal["real", "synthetic", "edge_case"]


class ValidationItemResult(BaseModel):
    transaction_id: str
    predicted_category: str
    actual_category: str
    confidence: float
    is_correct: bool
    processing_time_ms: float
    cost_usd: float
    source: ResultSource


class CategoryAccuracy(BaseModel):
    accuracy: float
    total_transactions: int
    correct_predictions: int


class SourceAccuracy(BaseModel):
    count: int = 0
    accuracy: float = 0.0
    avg_cost: float = 0.0


class ValidationPerformance(BaseModel):
    throughput_per_minute: float = 0.0
    error_rate: float = 0.0  # percent
    p95_latency_ms: float = 0.0
    p99_latency_ms: float = 0.0


class ValidationReport(BaseModel):
    scenario_name: str
    overall_accuracy: float  # percent
    total_transactions: int
    correct_predictions: int
    errors: int
    total_cost_usd: float
    average_cost_per_transaction: float
    average_cost_per_statement: float
    average_processing_time_ms: float
    cache_hit_rate_delta: float  # percent of lookups during the run that hit
    category_breakdown: dict[str, CategoryAccuracy]
    source_breakdown: dict[str, SourceAccuracy]
    performance: ValidationPerformance
    production_ready: bool


class ValidationSummary(BaseModel):
    overall_accuracy: float
    average_cost_per_statement: float
    production_ready: bool
    recommendations: list[str]


class ValidationSuiteReport(BaseModel):
    baseline_accuracy: ValidationReport
    cost_efficiency: ValidationReport
    edge_cases: ValidationReport
    summary: ValidationSummary
