from collections.abc import Generator
from datetime import datetime, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from hybrid_categorizer.app import create_app
from hybrid_categorizer.core.configuration import load_app_config
from hybrid_categorizer.models import AlertMetrics

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def client(tmp_path: Path) -> Generator[TestClient, None, None]:
    config = load_app_config({}, {"DATA_DIR": str(tmp_path), "MAX_BATCH_SIZE": "3"})
    with TestClient(create_app(config)) as test_client:
        yield test_client


def _tx(tx_id: str, description: str, amount: float) -> dict:
    return {"id": tx_id, "description": description, "amount": amount, "date": NOW.isoformat()}


def test_categorize(client: TestClient) -> None:
    response = client.post("/categorize", json={"transaction": _tx("tx-1", "TIM HORTONS #123", 5.50)})

    assert response.status_code == 200
    data = response.json()
    assert data["transaction_id"] == "tx-1"
    assert data["category"] == "Dining Out"
    assert data["source"] == "rule"
    assert data["confidence"] == 0.93


def test_categorize_invalid_payload_returns_error_result(client: TestClient) -> None:
    response = client.post(
        "/categorize", json={"transaction": {"id": "tx-2", "description": "x", "amount": "abc"}}
    )

    assert response.status_code == 200
    assert response.json()["category"] == "Error: Preprocessing Failed"
    assert response.json()["source"] == "error"


def test_categorize_batch(client: TestClient) -> None:
    response = client.post(
        "/categorize/batch",
        json={"transactions": [_tx("a", "HYDRO ONE", 90.10), _tx("b", "UNKNOWN MERCHANT XYZ", 25.99)]},
    )

    assert response.status_code == 200
    data = response.json()
    assert [item["transaction_id"] for item in data] == ["a", "b"]
    assert data[1]["category"] == "Other"
    assert data[1]["source"] == "fallback"


def test_categorize_batch_too_large(client: TestClient) -> None:
    batch = [_tx(str(i), "HYDRO ONE", 90.10) for i in range(4)]
    response = client.post("/categorize/batch", json={"transactions": batch})

    assert response.status_code == 413


def test_categories(client: TestClient) -> None:
    response = client.get("/categories")

    assert response.status_code == 200
    assert "Health & Wellness" in response.json()
    assert len(response.json()) == 12


def test_feedback_flow(client: TestClient) -> None:
    client.post("/categorize", json={"transaction": _tx("tx-1", "UNKNOWN MERCHANT XYZ", 25.99)})

    response = client.post(
        "/feedback",
        json={"transaction_id": "tx-1", "corrected_category": "Shopping", "confidence_rating": 4},
    )
    assert response.status_code == 200
    assert response.json()["processed"] is True
    assert response.json()["original_category"] == "Other"

    again = client.post("/categorize", json={"transaction": _tx("tx-2", "unknown merchant xyz", 12.00)})
    assert again.json()["category"] == "Shopping"
    assert again.json()["source"] == "cache"

    history = client.get("/feedback/history", params={"limit": 5})
    assert [item["transaction_id"] for item in history.json()] == ["tx-1"]

    stats = client.get("/feedback/stats").json()
    assert stats["total_feedback"] == 1
    assert stats["average_confidence"] == 4.0


def test_feedback_errors(client: TestClient) -> None:
    missing = client.post(
        "/feedback", json={"transaction_id": "nope", "corrected_category": "Shopping"}
    )
    assert missing.status_code == 404

    client.post("/categorize", json={"transaction": _tx("tx-1", "TIM HORTONS", 4.25)})
    bad_category = client.post(
        "/feedback", json={"transaction_id": "tx-1", "corrected_category": "Pets"}
    )
    assert bad_category.status_code == 400


def test_feedback_bulk(client: TestClient) -> None:
    client.post("/categorize", json={"transaction": _tx("tx-1", "TIM HORTONS", 4.25)})

    response = client.post(
        "/feedback/bulk",
        json={
            "feedbacks": [
                {"transaction_id": "tx-1", "corrected_category": "Groceries"},
                {"transaction_id": "nope", "corrected_category": "Groceries"},
            ]
        },
    )

    assert response.status_code == 200
    assert response.json() == {"processed": 1, "failed": 1}


def test_thresholds(client: TestClient) -> None:
    assert client.get("/monitoring/thresholds").json()["latency_threshold"] == 500.0

    updated = client.put("/monitoring/thresholds", json={"latency_threshold": 750})
    assert updated.status_code == 200
    assert updated.json()["latency_threshold"] == 750.0

    assert client.put("/monitoring/thresholds", json={"nope": 1}).status_code == 422
    assert client.put("/monitoring/thresholds", json={"accuracy_threshold": -5}).status_code == 422


def test_alert_lifecycle(client: TestClient) -> None:
    alerts = client.app.state.alerts
    opened = alerts.evaluate(
        AlertMetrics(
            accuracy=95.0,
            cost_per_statement=0.01,
            error_rate=6.0,
            average_latency=100.0,
            throughput=2000.0,
            timestamp=NOW,
        )
    ).opened
    alert_id = opened[0].id

    active = client.get("/monitoring/alerts").json()
    assert [item["id"] for item in active] == [alert_id]

    assert client.post(f"/monitoring/alerts/{alert_id}/resolve").status_code == 200
    assert client.post(f"/monitoring/alerts/{alert_id}/resolve").status_code == 404
    assert client.get("/monitoring/alerts").json() == []

    history = client.get("/monitoring/alerts/history").json()
    assert history[0]["resolved"] is True


def test_performance_report(client: TestClient) -> None:
    client.post("/categorize", json={"transaction": _tx("tx-1", "TIM HORTONS", 4.25)})

    response = client.get("/monitoring/performance", params={"period": "hour"})

    assert response.status_code == 200
    assert response.json()["period"] == "hour"
    assert response.json()["total_transactions"] == 2
    assert client.get("/monitoring/performance", params={"period": "year"}).status_code == 422


def test_dashboard(client: TestClient) -> None:
    response = client.get("/monitoring/dashboard")

    assert response.status_code == 200
    data = response.json()
    assert data["system_health"]["overall_status"] == "degraded"
    assert len(data["performance_trends"]["accuracy"]) == 24


def test_prometheus(client: TestClient) -> None:
    response = client.get("/monitoring/metrics/prometheus")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert response.text.startswith(
        "# HELP categorization_accuracy_percentage Current categorization accuracy percentage\n"
    )
    assert "categorization_active_alerts_count 0\n" in response.text


def test_validation_run(client: TestClient) -> None:
    response = client.post("/validation/run", json={"baseline_size": 20, "cost_size": 10})

    assert response.status_code == 200
    data = response.json()
    assert data["baseline_accuracy"]["total_transactions"] == 20
    assert data["cost_efficiency"]["total_transactions"] == 10
    assert data["edge_cases"]["total_transactions"] == 5
    assert "production_ready" in data["summary"]


def test_service_not_initialized() -> None:
    bare = TestClient(create_app(load_app_config({}, {})))

    assert bare.get("/categories").status_code == 500
