from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from hybrid_categorizer.cache import CategoryCache, cache_key
from hybrid_categorizer.classifiers.base import ClassifierResponse
from hybrid_categorizer.classifiers.rules import RuleMatch, RuleTier
from hybrid_categorizer.errors import (
    ClassifierUnavailable,
    FeedbackError,
    InvalidClassifierResponse,
    UnknownCategory,
)
from hybrid_categorizer.manager import CategorizerService, resolve_hybrid
from hybrid_categorizer.models import TokenUsage
from hybrid_categorizer.services.metrics import AI_CALLS_KEY, RULE_HITS_KEY, MetricsRecorder
from hybrid_categorizer.storage.kv import InMemoryKeyValueStore

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _tx(description: str, amount: float, tx_id: str = "tx-1", **extra) -> dict:
    return {"id": tx_id, "description": description, "amount": amount, "date": NOW, **extra}


def _ai(category: str) -> ClassifierResponse:
    return ClassifierResponse(category=category, tokens=TokenUsage(input=40, output=5, total=45))


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def cache(store: InMemoryKeyValueStore) -> CategoryCache:
    return CategoryCache(store)


@pytest.fixture
def metrics(store: InMemoryKeyValueStore) -> MetricsRecorder:
    return MetricsRecorder(store, clock=lambda: NOW)


@pytest.fixture
def gateway() -> MagicMock:
    mock = MagicMock()
    mock.enabled = True
    return mock


@pytest.fixture
def service(cache: CategoryCache, gateway: MagicMock, metrics: MetricsRecorder) -> CategorizerService:
    return CategorizerService(cache, gateway=gateway, metrics=metrics, clock=lambda: NOW)


def test_cache_hit_short_circuits(
    service: CategorizerService, cache: CategoryCache, gateway: MagicMock
) -> None:
    cache.set("unknown merchant xyz", "Shopping")

    result = service.classify(_tx("Unknown Merchant XYZ", 25.99))

    assert result.category == "Shopping"
    assert result.source == "cache"
    assert result.confidence == 1.0
    gateway.classify.assert_not_called()


def test_high_confidence_rule_skips_ai_and_caches(
    service: CategorizerService, cache: CategoryCache, gateway: MagicMock
) -> None:
    result = service.classify(_tx("TIM HORTONS #123 TORONTO ON", 5.50))

    assert result.category == "Dining Out"
    assert result.source == "rule"
    assert result.confidence == 0.93
    assert result.tier == "merchant"
    gateway.classify.assert_not_called()
    assert cache.get("tim hortons #123 toronto on") == "Dining Out"

    again = service.classify(_tx("tim hortons #123   toronto on", 5.50, tx_id="tx-2"))
    assert again.source == "cache"
    assert again.transaction_id == "tx-2"


def test_ai_only_when_no_rule(
    service: CategorizerService, cache: CategoryCache, gateway: MagicMock
) -> None:
    gateway.classify.return_value = _ai("Shopping")

    result = service.classify(_tx("Unknown Merchant XYZ", 25.99))

    assert result.category == "Shopping"
    assert result.source == "ai"
    assert result.confidence == 0.85
    assert result.tier is None
    gateway.classify.assert_called_once_with("unknown merchant xyz")
    assert cache.get("unknown merchant xyz") == "Shopping"


def test_rule_and_ai_agree(service: CategorizerService, gateway: MagicMock) -> None:
    gateway.classify.return_value = _ai("Transfers")

    result = service.classify(_tx("E-TRANSFER DEPOSIT", 500.00))

    assert result.category == "Transfers"
    assert result.source == "hybrid"
    assert result.confidence == 0.95
    assert result.tier == "description"


def test_rule_and_ai_disagree_low_rule_confidence(
    service: CategorizerService, cache: CategoryCache, gateway: MagicMock
) -> None:
    gateway.classify.return_value = _ai("Income")

    result = service.classify(_tx("E-TRANSFER DEPOSIT", 500.00))

    assert result.category == "Income"
    assert result.source == "ai"
    assert result.confidence == 0.85
    assert cache.get("e-transfer deposit") == "Income"


def test_resolve_hybrid() -> None:
    strong = RuleMatch(category="Utilities", confidence=90, tier=RuleTier.MERCHANT)
    assert resolve_hybrid(strong, "Shopping") == ("Utilities", 0.9, "rule")
    assert resolve_hybrid(strong, "Utilities") == ("Utilities", 0.95, "hybrid")

    weak = RuleMatch(category="Transfers", confidence=60, tier=RuleTier.AMOUNT)
    assert resolve_hybrid(weak, "Housing") == ("Housing", 0.85, "ai")
    assert resolve_hybrid(weak, "Transfers") == ("Transfers", 0.95, "hybrid")

    assert resolve_hybrid(None, "Other") == ("Other", 0.85, "ai")


def test_ai_failure_falls_back_to_rule(
    service: CategorizerService, cache: CategoryCache, gateway: MagicMock
) -> None:
    gateway.classify.side_effect = ClassifierUnavailable("timeout")

    result = service.classify(_tx("E-TRANSFER DEPOSIT", 500.00))

    assert result.category == "Transfers"
    assert result.source == "rule"
    assert result.confidence == 0.8
    assert result.error == "AI failed, used rule fallback: timeout"
    assert cache.get("e-transfer deposit") == "Transfers"


def test_ai_failure_without_rule_returns_other(
    service: CategorizerService, cache: CategoryCache, gateway: MagicMock
) -> None:
    gateway.classify.side_effect = ClassifierUnavailable("connection refused")

    result = service.classify(_tx("Unknown Merchant XYZ", 25.99))

    assert result.category == "Other"
    assert result.source == "fallback"
    assert result.confidence == 0.5
    assert result.error == "connection refused"
    assert cache.get("unknown merchant xyz") is None


def test_invalid_label_goes_through_fallback(
    service: CategorizerService, gateway: MagicMock
) -> None:
    gateway.classify.side_effect = InvalidClassifierResponse(
        "Category 'Pets' is outside the taxonomy", raw_payload='{"category": "Pets"}'
    )

    result = service.classify(_tx("Unknown Merchant XYZ", 25.99))

    assert result.category == "Other"
    assert result.source == "fallback"


def test_disabled_classifier_uses_rule_without_caching(cache: CategoryCache) -> None:
    service = CategorizerService(cache)
    assert service.classifier_enabled is False

    result = service.classify(_tx("E-TRANSFER DEPOSIT", 500.00))

    assert result.category == "Transfers"
    assert result.source == "rule"
    assert result.error is not None
    assert cache.get("e-transfer deposit") is None

    other = service.classify(_tx("Unknown Merchant XYZ", 25.99))
    assert other.category == "Other"
    assert other.source == "fallback"


def test_merchant_field_drives_fingerprint(
    service: CategorizerService, gateway: MagicMock
) -> None:
    result = service.classify(_tx("POS PURCHASE 000123", 7.25, merchant="Starbucks"))

    assert result.category == "Dining Out"
    assert result.source == "rule"
    gateway.classify.assert_not_called()


@pytest.mark.parametrize(
    "raw",
    [
        {"id": "bad-1", "description": "coffee", "amount": "abc", "date": NOW},
        {"id": "bad-1", "description": "coffee", "amount": 4.5},
        {"id": "bad-1", "description": "coffee", "amount": True, "date": NOW},
    ],
)
def test_preprocessing_failure(service: CategorizerService, raw: dict) -> None:
    result = service.classify(raw)

    assert result.transaction_id == "bad-1"
    assert result.category == "Error: Preprocessing Failed"
    assert result.source == "error"
    assert result.confidence == 0.0
    assert result.is_error


def test_unexpected_error_is_contained(service: CategorizerService, gateway: MagicMock) -> None:
    gateway.classify.side_effect = RuntimeError("boom")

    result = service.classify(_tx("Unknown Merchant XYZ", 25.99))

    assert result.category == "Error: Categorization Failed"
    assert result.source == "error"
    assert result.error == "boom"


def test_store_outage_does_not_break_classification(
    service: CategorizerService, store: InMemoryKeyValueStore, gateway: MagicMock
) -> None:
    store.available = False
    gateway.classify.return_value = _ai("Shopping")

    rule_result = service.classify(_tx("TIM HORTONS", 4.25))
    ai_result = service.classify(_tx("Unknown Merchant XYZ", 25.99, tx_id="tx-2"))

    assert rule_result.source == "rule"
    assert ai_result.source == "ai"


def test_metrics_are_recorded(
    service: CategorizerService, metrics: MetricsRecorder, gateway: MagicMock
) -> None:
    gateway.classify.return_value = _ai("Shopping")

    service.classify(_tx("TIM HORTONS", 4.25))
    service.classify(_tx("Unknown Merchant XYZ", 25.99, tx_id="tx-2"))
    service.classify(_tx("Unknown Merchant XYZ", 25.99, tx_id="tx-3"))

    stats = metrics.cache_statistics()
    assert stats.hit_count == 1
    assert stats.miss_count == 2
    assert metrics.counter(RULE_HITS_KEY) == 1
    assert metrics.counter(AI_CALLS_KEY) == 1

    breakdown = metrics.cost_breakdown("day")
    assert breakdown.ai_api_calls == 1
    assert breakdown.input_tokens == 40
    assert breakdown.output_tokens == 5


def test_classify_all_keeps_order(service: CategorizerService, gateway: MagicMock) -> None:
    gateway.classify.return_value = _ai("Other")

    results = service.classify_all(
        [_tx("TIM HORTONS", 4.25, tx_id="a"), _tx("HYDRO ONE", 90.10, tx_id="b")]
    )

    assert [r.transaction_id for r in results] == ["a", "b"]
    assert [r.category for r in results] == ["Dining Out", "Utilities"]


def test_apply_user_correction(
    service: CategorizerService, store: InMemoryKeyValueStore, gateway: MagicMock
) -> None:
    service.apply_user_correction("  Unknown   Merchant XYZ ", "Entertainment")

    assert store.ttl(cache_key("unknown merchant xyz")) == 90 * 24 * 60 * 60
    result = service.classify(_tx("Unknown Merchant XYZ", 25.99))
    assert result.category == "Entertainment"
    assert result.source == "cache"
    gateway.classify.assert_not_called()


def test_apply_user_correction_validation(service: CategorizerService) -> None:
    with pytest.raises(UnknownCategory):
        service.apply_user_correction("tim hortons", "Pets")
    with pytest.raises(FeedbackError):
        service.apply_user_correction("   ", "Dining Out")


def test_available_categories(service: CategorizerService) -> None:
    categories = service.available_categories()
    assert len(categories) == 12
    assert "Other" in categories
