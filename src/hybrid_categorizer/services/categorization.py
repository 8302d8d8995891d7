import asyncio
from collections.abc import Mapping, Sequence
from typing import Any

from hybrid_categorizer.domain.transactions import preprocess_transaction
from hybrid_categorizer.errors import BatchTooLarge, PreprocessingError
from hybrid_categorizer.logger import get_logger
from hybrid_categorizer.manager import CategorizerService
from hybrid_categorizer.models import CategorizationResult, Transaction
from hybrid_categorizer.storage.records import RecordStore

logger = get_logger(__name__)

DEFAULT_MAX_BATCH_SIZE = 100
DEFAULT_CONCURRENCY = 4


class CategorizationPipeline:
    """Async entry point: runs the synchronous orchestrator off the event loop."""

    def __init__(
        self,
        service: CategorizerService,
        records: RecordStore | None = None,
        *,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        self.service = service
        self.records = records
        self.max_batch_size = max_batch_size
        self.concurrency = max(1, concurrency)

    async def classify(self, transaction: Transaction | Mapping[str, Any]) -> CategorizationResult:
        result = await asyncio.to_thread(self.service.classify, transaction)
        self._remember(transaction, result)
        return result

    async def classify_batch(
        self,
        transactions: Sequence[Transaction | Mapping[str, Any]],
        *,
        max_batch_size: int | None = None,
    ) -> list[CategorizationResult]:
        limit = max_batch_size or self.max_batch_size
        if len(transactions) > limit:
            raise BatchTooLarge(len(transactions), limit)

        logger.info("[CLASSIFY] Received %d transactions for categorization.", len(transactions))
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(item: Transaction | Mapping[str, Any]) -> CategorizationResult:
            async with semaphore:
                return await self.classify(item)

        # gather keeps input order, so results line up with transactions
        results = await asyncio.gather(*(run(item) for item in transactions))
        failed = sum(1 for result in results if result.is_error)
        logger.info(
            "[CLASSIFY] Batch finished: %d results, %d errors.", len(results), failed
        )
        return list(results)

    def _remember(
        self, raw: Transaction | Mapping[str, Any], result: CategorizationResult
    ) -> None:
        if self.records is None or result.is_error:
            return
        try:
            transaction = preprocess_transaction(raw)
        except PreprocessingError:
            return
        self.records.save_transaction(transaction, result.category)
