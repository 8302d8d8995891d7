import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import ValidationError

from hybrid_categorizer.core import settings
from hybrid_categorizer.domain.text import parse_list
from hybrid_categorizer.errors import ConfigurationError
from hybrid_categorizer.logger import get_logger
from hybrid_categorizer.models import AlertThresholds

ValueType = Literal["string", "int", "float"]

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConfigField:
    key: str
    description: str
    value_type: ValueType = "string"
    default: str | int | float | None = None
    sensitive: bool = False
    options: tuple[str, ...] | None = None
    min_value: float | int | None = None
    max_value: float | int | None = None


CONFIG_FIELDS: tuple[ConfigField, ...] = (
    ConfigField(
        key="LOG_LEVEL",
        description="Logging verbosity for the application.",
        default="INFO",
        options=("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"),
    ),
    ConfigField(key="LOG_DIR", description="Directory for application logs (app.log)."),
    ConfigField(key="DATA_DIR", description="Directory for learning patterns.", default="."),
    ConfigField(
        key="OPENAI_API_KEY",
        description="API key for the remote classifier. Unset disables AI fallback.",
        sensitive=True,
    ),
    ConfigField(
        key="OPENAI_MODEL",
        description="Model name for the OpenAI-compatible client.",
        default="gpt-3.5-turbo",
    ),
    ConfigField(key="OPENAI_BASE_URL", description="Override base URL for compatible providers."),
    ConfigField(
        key="OPENAI_TEMPERATURE",
        description="Sampling temperature for classification requests.",
        value_type="float",
        default=0.2,
        min_value=0.0,
        max_value=2.0,
    ),
    ConfigField(
        key="OPENAI_MAX_TOKENS",
        description="Maximum completion tokens per classification.",
        value_type="int",
        default=20,
        min_value=1,
    ),
    ConfigField(
        key="CLASSIFIER_TIMEOUT_SECONDS",
        description="Timeout for one remote classification call.",
        value_type="float",
        default=10.0,
        min_value=0.1,
    ),
    ConfigField(
        key="CLASSIFIER_CONCURRENCY",
        description="Concurrent remote calls allowed while classifying a batch.",
        value_type="int",
        default=4,
        min_value=1,
    ),
    ConfigField(
        key="MAX_BATCH_SIZE",
        description="Largest batch accepted by classify_batch.",
        value_type="int",
        default=100,
        min_value=1,
    ),
    ConfigField(
        key="AI_SUGGESTED_CATEGORY_TTL_SECONDS",
        description="Cache lifetime of rule/AI suggested categories.",
        value_type="int",
        default=604800,
        min_value=1,
    ),
    ConfigField(
        key="USER_CORRECTED_CATEGORY_TTL_SECONDS",
        description="Cache lifetime of user corrected categories.",
        value_type="int",
        default=7776000,
        min_value=1,
    ),
    ConfigField(
        key="OPENAI_INPUT_TOKEN_COST",
        description="Dollar price per input token.",
        value_type="float",
        default=0.0005 / 1000,
        min_value=0.0,
    ),
    ConfigField(
        key="OPENAI_OUTPUT_TOKEN_COST",
        description="Dollar price per output token.",
        value_type="float",
        default=0.0015 / 1000,
        min_value=0.0,
    ),
    ConfigField(
        key="METRICS_RETENTION_DAYS",
        description="Days each daily metrics partition is kept.",
        value_type="int",
        default=30,
        min_value=1,
    ),
    ConfigField(
        key="ALERT_RETENTION_DAYS",
        description="Days an alert is kept after creation or resolution.",
        value_type="int",
        default=30,
        min_value=1,
    ),
    ConfigField(
        key="ALERT_ACCURACY_THRESHOLD",
        description="Minimum accuracy percentage.",
        value_type="float",
        default=85.0,
        min_value=0,
        max_value=100,
    ),
    ConfigField(
        key="ALERT_COST_THRESHOLD",
        description="Maximum dollar cost per statement.",
        value_type="float",
        default=0.10,
    ),
    ConfigField(
        key="ALERT_ERROR_RATE_THRESHOLD",
        description="Maximum error rate percentage.",
        value_type="float",
        default=1.0,
    ),
    ConfigField(
        key="ALERT_LATENCY_THRESHOLD",
        description="Maximum average latency in milliseconds.",
        value_type="float",
        default=500.0,
    ),
    ConfigField(
        key="ALERT_THROUGHPUT_THRESHOLD",
        description="Minimum throughput in transactions per minute.",
        value_type="float",
        default=1000.0,
    ),
    ConfigField(key="ALERT_WEBHOOK_URL", description="Webhook for high and critical alerts."),
    ConfigField(
        key="ALERT_WEBHOOK_AUTH",
        description="Authorization header sent with webhook alerts.",
        sensitive=True,
    ),
    ConfigField(
        key="ALERT_EMAIL_RECIPIENTS",
        description="Comma-separated recipients for critical alerts.",
    ),
    ConfigField(
        key="MONITORING_INTERVAL_SECONDS",
        description="Seconds between scheduled monitoring checks.",
        value_type="float",
        default=300.0,
        min_value=1,
    ),
)

_FIELDS_BY_KEY = {field.key: field for field in CONFIG_FIELDS}


@dataclass(frozen=True)
class ClassifierConfig:
    api_key: str | None
    model: str
    base_url: str | None
    temperature: float
    max_tokens: int
    timeout_seconds: float
    concurrency: int

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)


@dataclass(frozen=True)
class CacheConfig:
    ai_suggested_ttl_seconds: int
    user_corrected_ttl_seconds: int


@dataclass(frozen=True)
class MetricsConfig:
    retention_days: int
    input_token_cost: float
    output_token_cost: float


@dataclass(frozen=True)
class NotificationConfig:
    webhook_url: str | None = None
    webhook_auth: str | None = None
    email_recipients: tuple[str, ...] = ()

    @property
    def webhook_enabled(self) -> bool:
        return bool(self.webhook_url)

    @property
    def email_enabled(self) -> bool:
        return bool(self.email_recipients)


@dataclass(frozen=True)
class AppConfig:
    log_level: str
    log_dir: str | None
    data_dir: str
    max_batch_size: int
    monitoring_interval_seconds: float
    alert_retention_days: int
    classifier: ClassifierConfig
    cache: CacheConfig
    metrics: MetricsConfig
    thresholds: AlertThresholds
    notifications: NotificationConfig


def _validate_value(field: ConfigField, raw_value: str) -> tuple[Any, str | None]:
    value = raw_value.strip()
    if not value:
        return field.default, None

    if "\n" in value or "\r" in value:
        return value, "Value must be a single line."

    if field.options:
        normalized = value.upper()
        if normalized not in field.options:
            return value, f"Must be one of: {', '.join(field.options)}."
        return normalized, None

    if field.value_type == "int":
        try:
            parsed_int = int(value)
        except ValueError:
            return value, "Must be a whole number."
        if field.min_value is not None and parsed_int < field.min_value:
            return value, f"Must be at least {field.min_value}."
        if field.max_value is not None and parsed_int > field.max_value:
            return value, f"Must be at most {field.max_value}."
        return parsed_int, None

    if field.value_type == "float":
        try:
            parsed = float(value)
        except ValueError:
            return value, "Must be a number."
        if field.min_value is not None and parsed < field.min_value:
            return value, f"Must be at least {field.min_value}."
        if field.max_value is not None and parsed > field.max_value:
            return value, f"Must be at most {field.max_value}."
        return parsed, None

    return value, None


def collect_raw_values(
    file_values: Mapping[str, str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Merge config file values with the environment; the environment wins."""
    if file_values is None:
        file_values = settings.get_config_file_values()
        logger.info(
            "[CONFIG] Read %d keys from %s", len(file_values), settings.get_config_path()
        )
    if environ is None:
        environ = os.environ

    unknown = sorted(key for key in file_values if key not in _FIELDS_BY_KEY)
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")

    merged = dict(file_values)
    for key in _FIELDS_BY_KEY:
        if key in environ:
            merged[key] = environ[key]
    return merged


def load_app_config(
    file_values: Mapping[str, str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    raw_values = collect_raw_values(file_values, environ)

    errors: dict[str, str] = {}
    values: dict[str, Any] = {}
    for field in CONFIG_FIELDS:
        value, error = _validate_value(field, raw_values.get(field.key, ""))
        if error:
            errors[field.key] = error
            continue
        values[field.key] = value

    if errors:
        details = "; ".join(f"{key}: {message}" for key, message in errors.items())
        logger.error("[CONFIG] Rejected configuration: %s", details)
        raise ConfigurationError(f"Invalid configuration: {details}")

    if values["USER_CORRECTED_CATEGORY_TTL_SECONDS"] < values["AI_SUGGESTED_CATEGORY_TTL_SECONDS"]:
        raise ConfigurationError(
            "USER_CORRECTED_CATEGORY_TTL_SECONDS must not be shorter than "
            "AI_SUGGESTED_CATEGORY_TTL_SECONDS."
        )

    try:
        thresholds = AlertThresholds(
            accuracy_threshold=values["ALERT_ACCURACY_THRESHOLD"],
            cost_per_statement_threshold=values["ALERT_COST_THRESHOLD"],
            error_rate_threshold=values["ALERT_ERROR_RATE_THRESHOLD"],
            latency_threshold=values["ALERT_LATENCY_THRESHOLD"],
            throughput_threshold=values["ALERT_THROUGHPUT_THRESHOLD"],
        )
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid alert thresholds: {exc}") from exc

    return AppConfig(
        log_level=values["LOG_LEVEL"],
        log_dir=values["LOG_DIR"],
        data_dir=values["DATA_DIR"],
        max_batch_size=values["MAX_BATCH_SIZE"],
        monitoring_interval_seconds=values["MONITORING_INTERVAL_SECONDS"],
        alert_retention_days=values["ALERT_RETENTION_DAYS"],
        classifier=ClassifierConfig(
            api_key=values["OPENAI_API_KEY"],
            model=values["OPENAI_MODEL"],
            base_url=values["OPENAI_BASE_URL"],
            temperature=values["OPENAI_TEMPERATURE"],
            max_tokens=values["OPENAI_MAX_TOKENS"],
            timeout_seconds=values["CLASSIFIER_TIMEOUT_SECONDS"],
            concurrency=values["CLASSIFIER_CONCURRENCY"],
        ),
        cache=CacheConfig(
            ai_suggested_ttl_seconds=values["AI_SUGGESTED_CATEGORY_TTL_SECONDS"],
            user_corrected_ttl_seconds=values["USER_CORRECTED_CATEGORY_TTL_SECONDS"],
        ),
        metrics=MetricsConfig(
            retention_days=values["METRICS_RETENTION_DAYS"],
            input_token_cost=values["OPENAI_INPUT_TOKEN_COST"],
            output_token_cost=values["OPENAI_OUTPUT_TOKEN_COST"],
        ),
        thresholds=thresholds,
        notifications=NotificationConfig(
            webhook_url=values["ALERT_WEBHOOK_URL"],
            webhook_auth=values["ALERT_WEBHOOK_AUTH"],
            email_recipients=tuple(parse_list(values["ALERT_EMAIL_RECIPIENTS"])),
        ),
    )


def default_app_config() -> AppConfig:
    """Configuration built from defaults only, ignoring the file and environment."""
    return load_app_config(file_values={}, environ={})
