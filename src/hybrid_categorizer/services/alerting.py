import uuid
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from hybrid_categorizer.core.configuration import NotificationConfig
from hybrid_categorizer.errors import ConfigurationError, StoreUnavailable
from hybrid_categorizer.logger import get_logger
from hybrid_categorizer.models import (
    Alert,
    AlertEvaluation,
    AlertMetrics,
    AlertSeverity,
    AlertThresholds,
    AlertType,
    NotificationChannel,
)
from hybrid_categorizer.storage.kv import KeyValueStore
from hybrid_categorizer.storage.records import utcnow

logger = get_logger(__name__)

ALERT_PREFIX = "categorization:alerts:"
ACTIVE_ALERTS_KEY = f"{ALERT_PREFIX}active"
SERVICE_NAME = "hybrid-categorizer"
WEBHOOK_TIMEOUT_SECONDS = 5.0

ALERT_TYPES: tuple[AlertType, ...] = ("accuracy", "cost", "error_rate", "latency", "throughput")

# Multiplicative severity bands, checked from most to least severe.
ACCURACY_BANDS = ((10, "critical"), (5, "high"), (2, "medium"))
COST_BANDS = ((2.0, "critical"), (1.5, "high"), (1.2, "medium"))
ERROR_RATE_BANDS = ((5.0, "critical"), (3.0, "high"), (2.0, "medium"))
LATENCY_BANDS = COST_BANDS
THROUGHPUT_BANDS = ((0.5, "critical"), (0.7, "high"), (0.85, "medium"))


def threshold_for(alert_type: AlertType, thresholds: AlertThresholds) -> float:
    return {
        "accuracy": thresholds.accuracy_threshold,
        "cost": thresholds.cost_per_statement_threshold,
        "error_rate": thresholds.error_rate_threshold,
        "latency": thresholds.latency_threshold,
        "throughput": thresholds.throughput_threshold,
    }[alert_type]


def metric_value(alert_type: AlertType, metrics: AlertMetrics) -> float:
    return {
        "accuracy": metrics.accuracy,
        "cost": metrics.cost_per_statement,
        "error_rate": metrics.error_rate,
        "latency": metrics.average_latency,
        "throughput": metrics.throughput,
    }[alert_type]


def is_breach(alert_type: AlertType, value: float, threshold: float) -> bool:
    # Accuracy and throughput alert when too low, the rest when too high.
    if alert_type in ("accuracy", "throughput"):
        return value < threshold
    return value > threshold


def alert_severity(alert_type: AlertType, value: float, threshold: float) -> AlertSeverity:
    if alert_type == "accuracy":
        for points, severity in ACCURACY_BANDS:
            if value < threshold - points:
                return severity
        return "low"

    if alert_type == "throughput":
        for factor, severity in THROUGHPUT_BANDS:
            if value < threshold * factor:
                return severity
        return "low"

    bands = {"cost": COST_BANDS, "error_rate": ERROR_RATE_BANDS, "latency": LATENCY_BANDS}[alert_type]
    for factor, severity in bands:
        if value > threshold * factor:
            return severity
    return "low"


def select_channels(
    severity: AlertSeverity, notifications: NotificationConfig
) -> list[NotificationChannel]:
    channels: list[NotificationChannel] = ["log"]
    if severity in ("high", "critical") and notifications.webhook_enabled:
        channels.append("webhook")
    if severity == "critical" and notifications.email_enabled:
        channels.append("email")
    return channels


def alert_message(alert_type: AlertType, value: float, threshold: float) -> str:
    if alert_type == "accuracy":
        return f"Categorization accuracy dropped to {value:.2f}% (threshold: {threshold:g}%)"
    if alert_type == "cost":
        return f"Cost per statement exceeded ${value:.4f} (threshold: ${threshold:g})"
    if alert_type == "error_rate":
        return f"Error rate increased to {value:.2f}% (threshold: {threshold:g}%)"
    if alert_type == "latency":
        return f"Average latency increased to {value:.0f}ms (threshold: {threshold:g}ms)"
    return f"Throughput dropped to {value:.0f} transactions/minute (threshold: {threshold:g})"


def webhook_payload(alert: Alert) -> dict[str, Any]:
    return {
        "alert_type": alert.type,
        "severity": alert.severity,
        "message": alert.message,
        "current_value": alert.current_value,
        "threshold": alert.threshold,
        "timestamp": alert.created_at.isoformat(),
        "service": SERVICE_NAME,
    }


class NotificationTransport(Protocol):
    def send(self, channel: NotificationChannel, alert: Alert) -> bool: ...


class HttpNotificationTransport:
    """Best-effort delivery: log always, webhook over httpx, email is logged only."""

    def __init__(
        self,
        config: NotificationConfig,
        client: httpx.Client | None = None,
        timeout: float = WEBHOOK_TIMEOUT_SECONDS,
    ) -> None:
        self.config = config
        self.timeout = timeout
        self._client = client

    def send(self, channel: NotificationChannel, alert: Alert) -> bool:
        if channel == "log":
            return self._send_log(alert)
        if channel == "webhook":
            return self._send_webhook(alert)
        if channel == "email":
            return self._send_email(alert)
        return False

    @staticmethod
    def _send_log(alert: Alert) -> bool:
        log = logger.error if alert.severity == "critical" else logger.warning
        log(
            "[ALERT] [%s] %s: %s (id=%s, value=%s, threshold=%s)",
            alert.severity.upper(),
            alert.type,
            alert.message,
            alert.id,
            alert.current_value,
            alert.threshold,
        )
        return True

    def _send_webhook(self, alert: Alert) -> bool:
        if not self.config.webhook_url:
            return False
        headers = {"Content-Type": "application/json"}
        if self.config.webhook_auth:
            headers["Authorization"] = self.config.webhook_auth

        try:
            if self._client is not None:
                response = self._client.post(
                    self.config.webhook_url,
                    json=webhook_payload(alert),
                    headers=headers,
                    timeout=self.timeout,
                )
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(
                        self.config.webhook_url, json=webhook_payload(alert), headers=headers
                    )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("[ALERT] Failed to send webhook notification for %s: %s", alert.id, exc)
            return False

        logger.info("[ALERT] Webhook notification sent for alert: %s", alert.id)
        return True

    def _send_email(self, alert: Alert) -> bool:
        if not self.config.email_recipients:
            return False
        logger.info(
            "[ALERT] Email notification would be sent to: %s",
            ", ".join(self.config.email_recipients),
        )
        logger.info("[ALERT] Alert: %s", alert.message)
        return True


class AlertEngine:
    """
    Threshold evaluation and alert lifecycle.
    Each alert type is either idle or has exactly one open alert; a breach
    while idle opens a new alert and a healthy value while open resolves it.
    """

    def __init__(
        self,
        store: KeyValueStore,
        thresholds: AlertThresholds | None = None,
        notifications: NotificationConfig | None = None,
        transport: NotificationTransport | None = None,
        retention_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self._thresholds = thresholds or AlertThresholds()
        self.notifications = notifications or NotificationConfig()
        self.transport = transport or HttpNotificationTransport(self.notifications)
        self.retention_seconds = retention_days * 24 * 60 * 60
        self._clock = clock

    @property
    def thresholds(self) -> AlertThresholds:
        return self._thresholds

    def update_thresholds(self, partial: Mapping[str, Any]) -> AlertThresholds:
        unknown = sorted(set(partial) - set(AlertThresholds.model_fields))
        if unknown:
            raise ConfigurationError(f"Unknown threshold keys: {', '.join(unknown)}")
        merged = {**self._thresholds.model_dump(), **partial}
        try:
            updated = AlertThresholds.model_validate(merged)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid alert thresholds: {exc}") from exc

        self._thresholds = updated
        logger.info("[ALERT] Alert thresholds updated: %s", dict(partial))
        return updated

    def _new_alert_id(self) -> str:
        millis = int(self._clock().timestamp() * 1000)
        return f"alert_{millis}_{uuid.uuid4().hex[:9]}"

    def evaluate(self, metrics: AlertMetrics) -> AlertEvaluation:
        evaluation = AlertEvaluation()
        open_by_type = {alert.type: alert for alert in self.active_alerts()}

        for alert_type in ALERT_TYPES:
            threshold = threshold_for(alert_type, self._thresholds)
            value = metric_value(alert_type, metrics)
            breached = is_breach(alert_type, value, threshold)
            existing = open_by_type.get(alert_type)

            if breached and existing is None:
                alert = self._open_alert(alert_type, value, threshold, metrics.timestamp)
                if alert is not None:
                    evaluation.opened.append(alert)
            elif not breached and existing is not None:
                if self.resolve_alert(existing.id):
                    logger.info("[ALERT] Auto-resolved alert: %s (%s)", existing.id, alert_type)
                    evaluation.resolved.append(existing)

        for alert in evaluation.opened:
            self.notify(alert)

        if evaluation.opened:
            logger.warning("[ALERT] Triggered %d alerts.", len(evaluation.opened))
        return evaluation

    def _open_alert(
        self, alert_type: AlertType, value: float, threshold: float, created_at: datetime
    ) -> Alert | None:
        alert = Alert(
            id=self._new_alert_id(),
            type=alert_type,
            severity=alert_severity(alert_type, value, threshold),
            message=alert_message(alert_type, value, threshold),
            current_value=value,
            threshold=threshold,
            created_at=created_at,
        )
        try:
            self.store.setex(f"{ALERT_PREFIX}{alert.id}", self.retention_seconds, alert.model_dump_json())
            self.store.sadd(ACTIVE_ALERTS_KEY, alert.id)
        except StoreUnavailable as exc:
            logger.error("[ALERT] Failed to store alert %s: %s", alert.id, exc)
            return None

        logger.warning("[ALERT] Alert created: %s - %s", alert.type, alert.message)
        return alert

    def notify(self, alert: Alert) -> dict[str, bool]:
        """Deliver over every selected channel; one failing channel never blocks another."""
        delivered: dict[str, bool] = {}
        for channel in select_channels(alert.severity, self.notifications):
            try:
                delivered[channel] = self.transport.send(channel, alert)
            except Exception:
                logger.exception("[ALERT] Failed to send %s notification for %s", channel, alert.id)
                delivered[channel] = False
        return delivered

    def resolve_alert(self, alert_id: str) -> bool:
        key = f"{ALERT_PREFIX}{alert_id}"
        try:
            raw = self.store.get(key)
            if not raw:
                return False
            alert = Alert.model_validate_json(raw)
            if alert.resolved:
                return False
            resolved = alert.model_copy(update={"resolved": True, "resolved_at": self._clock()})
            self.store.setex(key, self.retention_seconds, resolved.model_dump_json())
            self.store.srem(ACTIVE_ALERTS_KEY, alert_id)
        except StoreUnavailable as exc:
            logger.error("[ALERT] Failed to resolve alert %s: %s", alert_id, exc)
            return False

        logger.info("[ALERT] Alert resolved: %s", alert_id)
        return True

    def _load(self, key: str) -> Alert | None:
        raw = self.store.get(key)
        if not raw:
            return None
        try:
            return Alert.model_validate_json(raw)
        except ValidationError:
            logger.warning("[ALERT] Skipping unreadable alert at %s", key)
            return None

    def active_alerts(self) -> list[Alert]:
        try:
            alert_ids = self.store.smembers(ACTIVE_ALERTS_KEY)
            alerts = [self._load(f"{ALERT_PREFIX}{alert_id}") for alert_id in alert_ids]
        except StoreUnavailable as exc:
            logger.error("[ALERT] Failed to get active alerts: %s", exc)
            return []
        return sorted((a for a in alerts if a), key=lambda a: a.created_at, reverse=True)

    def alert_history(self, limit: int = 100) -> list[Alert]:
        try:
            keys = [k for k in self.store.scan_prefix(ALERT_PREFIX) if k != ACTIVE_ALERTS_KEY]
            alerts = [self._load(key) for key in keys]
        except StoreUnavailable as exc:
            logger.error("[ALERT] Failed to get alert history: %s", exc)
            return []
        ordered = sorted((a for a in alerts if a), key=lambda a: a.created_at, reverse=True)
        return ordered[:limit]
