from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import httpx
import pytest

from hybrid_categorizer.core.configuration import NotificationConfig
from hybrid_categorizer.errors import ConfigurationError
from hybrid_categorizer.models import Alert, AlertMetrics, AlertThresholds
from hybrid_categorizer.services.alerting import (
    AlertEngine,
    HttpNotificationTransport,
    alert_severity,
    select_channels,
    webhook_payload,
)
from hybrid_categorizer.storage.kv import InMemoryKeyValueStore

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _metrics(**overrides: float) -> AlertMetrics:
    values = {
        "accuracy": 95.0,
        "cost_per_statement": 0.01,
        "error_rate": 0.0,
        "average_latency": 100.0,
        "throughput": 2000.0,
    }
    values.update(overrides)
    return AlertMetrics(timestamp=NOW, **values)


def _alert(severity: str = "critical") -> Alert:
    return Alert(
        id="alert_1_abc",
        type="error_rate",
        severity=severity,
        message="Error rate increased to 6.00% (threshold: 1%)",
        current_value=6.0,
        threshold=1.0,
        created_at=NOW,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(NOW)


@pytest.fixture
def transport() -> MagicMock:
    mock = MagicMock()
    mock.send.return_value = True
    return mock


@pytest.fixture
def engine(clock: FakeClock, transport: MagicMock) -> AlertEngine:
    return AlertEngine(InMemoryKeyValueStore(), transport=transport, clock=clock)


@pytest.mark.parametrize(
    ("alert_type", "value", "threshold", "severity"),
    [
        ("accuracy", 84.0, 85.0, "low"),
        ("accuracy", 82.0, 85.0, "medium"),
        ("accuracy", 79.0, 85.0, "high"),
        ("accuracy", 70.0, 85.0, "critical"),
        ("cost", 0.11, 0.10, "low"),
        ("cost", 0.13, 0.10, "medium"),
        ("cost", 0.16, 0.10, "high"),
        ("cost", 0.25, 0.10, "critical"),
        ("error_rate", 2.5, 1.0, "medium"),
        ("error_rate", 6.0, 1.0, "critical"),
        ("latency", 800.0, 500.0, "high"),
        ("throughput", 900.0, 1000.0, "low"),
        ("throughput", 600.0, 1000.0, "high"),
        ("throughput", 400.0, 1000.0, "critical"),
    ],
)
def test_alert_severity(alert_type: str, value: float, threshold: float, severity: str) -> None:
    assert alert_severity(alert_type, value, threshold) == severity


def test_select_channels() -> None:
    full = NotificationConfig(webhook_url="http://hooks.test/alerts", email_recipients=("ops@example.com",))
    assert select_channels("low", full) == ["log"]
    assert select_channels("medium", full) == ["log"]
    assert select_channels("high", full) == ["log", "webhook"]
    assert select_channels("critical", full) == ["log", "webhook", "email"]
    assert select_channels("critical", NotificationConfig()) == ["log"]


def test_healthy_metrics_open_nothing(engine: AlertEngine) -> None:
    evaluation = engine.evaluate(_metrics())
    assert evaluation.opened == []
    assert evaluation.resolved == []
    assert engine.active_alerts() == []


def test_breach_opens_single_alert_per_type(engine: AlertEngine, transport: MagicMock) -> None:
    first = engine.evaluate(_metrics(error_rate=6.0))
    second = engine.evaluate(_metrics(error_rate=7.0))

    assert [a.type for a in first.opened] == ["error_rate"]
    assert second.opened == []
    active = engine.active_alerts()
    assert len(active) == 1
    alert = active[0]
    assert alert.severity == "critical"
    assert alert.message == "Error rate increased to 6.00% (threshold: 1%)"
    assert alert.id.startswith(f"alert_{int(NOW.timestamp() * 1000)}_")
    transport.send.assert_called_once()


def test_recovery_auto_resolves(engine: AlertEngine, clock: FakeClock) -> None:
    opened = engine.evaluate(_metrics(accuracy=70.0, throughput=100.0)).opened
    assert {a.type for a in opened} == {"accuracy", "throughput"}

    clock.now = NOW + timedelta(minutes=5)
    evaluation = engine.evaluate(_metrics(throughput=100.0))

    assert [a.type for a in evaluation.resolved] == ["accuracy"]
    assert [a.type for a in engine.active_alerts()] == ["throughput"]

    history = engine.alert_history()
    resolved = next(a for a in history if a.type == "accuracy")
    assert resolved.resolved is True
    assert resolved.resolved_at == clock.now

    # A later breach opens a fresh alert.
    reopened = engine.evaluate(_metrics(accuracy=80.0, throughput=100.0)).opened
    assert [a.type for a in reopened] == ["accuracy"]
    assert reopened[0].id != resolved.id


def test_manual_resolve(engine: AlertEngine) -> None:
    alert = engine.evaluate(_metrics(average_latency=900.0)).opened[0]

    assert engine.resolve_alert(alert.id) is True
    assert engine.resolve_alert(alert.id) is False
    assert engine.resolve_alert("alert_missing") is False
    assert engine.active_alerts() == []


def test_alert_history_limit(engine: AlertEngine, clock: FakeClock) -> None:
    for minute in range(3):
        clock.now = NOW + timedelta(minutes=minute)
        metrics = _metrics(cost_per_statement=0.5).model_copy(update={"timestamp": clock.now})
        alert = engine.evaluate(metrics).opened[0]
        engine.resolve_alert(alert.id)

    history = engine.alert_history(limit=2)
    assert len(history) == 2
    assert history[0].created_at > history[1].created_at


def test_update_thresholds(engine: AlertEngine) -> None:
    updated = engine.update_thresholds({"latency_threshold": 1000})
    assert updated.latency_threshold == 1000
    assert updated.accuracy_threshold == 85.0
    assert engine.evaluate(_metrics(average_latency=900.0)).opened == []

    with pytest.raises(ConfigurationError):
        engine.update_thresholds({"bogus_threshold": 1})
    with pytest.raises(ConfigurationError):
        engine.update_thresholds({"accuracy_threshold": 150})
    assert engine.thresholds.latency_threshold == 1000


def test_notification_failure_is_isolated(clock: FakeClock) -> None:
    transport = MagicMock()
    transport.send.side_effect = [True, RuntimeError("smtp down"), True]
    notifications = NotificationConfig(
        webhook_url="http://hooks.test/alerts", email_recipients=("ops@example.com",)
    )
    engine = AlertEngine(
        InMemoryKeyValueStore(), notifications=notifications, transport=transport, clock=clock
    )

    delivered = engine.notify(_alert())

    assert delivered == {"log": True, "webhook": False, "email": True}
    assert transport.send.call_count == 3


def test_store_outage_opens_and_notifies_nothing(clock: FakeClock, transport: MagicMock) -> None:
    store = InMemoryKeyValueStore()
    engine = AlertEngine(store, transport=transport, clock=clock)
    store.available = False

    evaluation = engine.evaluate(_metrics(error_rate=6.0))

    assert evaluation.opened == []
    transport.send.assert_not_called()
    assert engine.active_alerts() == []
    assert engine.alert_history() == []

    store.available = True
    evaluation = engine.evaluate(_metrics(error_rate=6.0))

    assert [a.type for a in evaluation.opened] == ["error_rate"]
    assert transport.send.call_count == 1


def test_webhook_transport_posts_payload() -> None:
    client = MagicMock()
    config = NotificationConfig(webhook_url="http://hooks.test/alerts", webhook_auth="Bearer abc")
    transport = HttpNotificationTransport(config, client=client)

    assert transport.send("webhook", _alert()) is True

    args, kwargs = client.post.call_args
    assert args[0] == "http://hooks.test/alerts"
    assert kwargs["json"] == webhook_payload(_alert())
    assert kwargs["json"]["service"] == "hybrid-categorizer"
    assert kwargs["headers"]["Authorization"] == "Bearer abc"
    assert kwargs["timeout"] == 5.0


def test_webhook_transport_http_error() -> None:
    client = MagicMock()
    client.post.side_effect = httpx.ConnectError("refused")
    transport = HttpNotificationTransport(
        NotificationConfig(webhook_url="http://hooks.test/alerts"), client=client
    )

    assert transport.send("webhook", _alert()) is False


def test_email_and_log_channels() -> None:
    transport = HttpNotificationTransport(NotificationConfig(email_recipients=("ops@example.com",)))
    assert transport.send("log", _alert()) is True
    assert transport.send("email", _alert()) is True
    assert transport.send("webhook", _alert()) is False


def test_default_thresholds() -> None:
    thresholds = AlertThresholds()
    assert thresholds.accuracy_threshold == 85.0
    assert thresholds.cost_per_statement_threshold == 0.10
    assert thresholds.error_rate_threshold == 1.0
    assert thresholds.latency_threshold == 500.0
    assert thresholds.throughput_threshold == 1000.0
