import threading
import time
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from hybrid_categorizer.cache import CategoryCache
from hybrid_categorizer.classifiers.base import ClassifierResponse
from hybrid_categorizer.errors import BatchTooLarge
from hybrid_categorizer.manager import CategorizerService
from hybrid_categorizer.models import TokenUsage
from hybrid_categorizer.services.categorization import CategorizationPipeline
from hybrid_categorizer.storage.kv import InMemoryKeyValueStore
from hybrid_categorizer.storage.records import InMemoryRecordStore

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _tx(tx_id: str, description: str, amount: float = 25.99) -> dict:
    return {"id": tx_id, "description": description, "amount": amount, "date": NOW}


@pytest.fixture
def gateway() -> MagicMock:
    mock = MagicMock()
    mock.enabled = True
    mock.classify.return_value = ClassifierResponse(
        category="Shopping", tokens=TokenUsage(input=10, output=2, total=12)
    )
    return mock


@pytest.fixture
def records() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def pipeline(gateway: MagicMock, records: InMemoryRecordStore) -> CategorizationPipeline:
    service = CategorizerService(CategoryCache(InMemoryKeyValueStore()), gateway=gateway)
    return CategorizationPipeline(service, records, max_batch_size=5, concurrency=2)


@pytest.mark.anyio
async def test_classify_single(pipeline: CategorizationPipeline, records: InMemoryRecordStore) -> None:
    result = await pipeline.classify(_tx("tx-1", "TIM HORTONS", 4.25))

    assert result.category == "Dining Out"
    record = records.get_transaction("tx-1")
    assert record is not None
    assert record.category == "Dining Out"
    assert record.description == "tim hortons"


@pytest.mark.anyio
async def test_batch_preserves_order(pipeline: CategorizationPipeline) -> None:
    batch = [
        _tx("a", "TIM HORTONS", 4.25),
        _tx("b", "mystery shop 1"),
        {"id": "c", "description": "broken", "amount": "n/a", "date": NOW},
        _tx("d", "HYDRO ONE", 80.10),
    ]

    results = await pipeline.classify_batch(batch)

    assert [r.transaction_id for r in results] == ["a", "b", "c", "d"]
    assert [r.source for r in results] == ["rule", "ai", "error", "rule"]


@pytest.mark.anyio
async def test_errors_are_not_saved(
    pipeline: CategorizationPipeline, records: InMemoryRecordStore
) -> None:
    await pipeline.classify_batch([{"id": "c", "description": "broken", "amount": "n/a", "date": NOW}])

    assert records.get_transaction("c") is None


@pytest.mark.anyio
async def test_batch_too_large(pipeline: CategorizationPipeline, gateway: MagicMock) -> None:
    batch = [_tx(str(i), f"store {i}") for i in range(6)]

    with pytest.raises(BatchTooLarge) as excinfo:
        await pipeline.classify_batch(batch)

    assert excinfo.value.limit == 5
    gateway.classify.assert_not_called()
    assert len(await pipeline.classify_batch(batch, max_batch_size=10)) == 6


@pytest.mark.anyio
async def test_concurrency_is_bounded(gateway: MagicMock) -> None:
    lock = threading.Lock()
    active = 0
    peak = 0

    def slow_classify(description: str) -> ClassifierResponse:
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.02)
        with lock:
            active -= 1
        return ClassifierResponse(category="Other", tokens=TokenUsage())

    gateway.classify.side_effect = slow_classify
    service = CategorizerService(CategoryCache(InMemoryKeyValueStore()), gateway=gateway)
    pipeline = CategorizationPipeline(service, max_batch_size=20, concurrency=3)

    results = await pipeline.classify_batch([_tx(str(i), f"vendor {i}") for i in range(9)])

    assert len(results) == 9
    assert gateway.classify.call_count == 9
    assert peak <= 3


@pytest.mark.anyio
async def test_batch_isolates_classifier_failure(
    pipeline: CategorizationPipeline, gateway: MagicMock
) -> None:
    def classify(description: str) -> ClassifierResponse:
        if description == "vendor 2":
            raise RuntimeError("provider exploded")
        return ClassifierResponse(category="Shopping", tokens=TokenUsage())

    gateway.classify.side_effect = classify

    results = await pipeline.classify_batch(
        [_tx("1", "vendor 1"), _tx("2", "vendor 2"), _tx("3", "vendor 3")]
    )

    assert len(results) == 3
    assert [r.source for r in results] == ["ai", "error", "ai"]
    assert results[1].category == "Error: Categorization Failed"
    assert results[1].error == "provider exploded"
