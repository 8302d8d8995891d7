from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from hybrid_categorizer.cache import CategoryCache
from hybrid_categorizer.domain.text import extract_keywords, normalize_description
from hybrid_categorizer.errors import FeedbackError, TransactionNotFound, UnknownCategory
from hybrid_categorizer.logger import get_logger
from hybrid_categorizer.models import (
    BulkFeedbackResult,
    FeedbackRecord,
    FeedbackStats,
    StoredFeedback,
    TransactionRecord,
)
from hybrid_categorizer.storage.patterns import PatternStore
from hybrid_categorizer.storage.records import RecordStore, utcnow

logger = get_logger(__name__)


def _merchant_name(record: TransactionRecord) -> str:
    if record.merchant and record.merchant.strip():
        return normalize_description(record.merchant)
    return normalize_description(record.description)


class FeedbackProcessor:
    def __init__(
        self,
        records: RecordStore,
        cache: CategoryCache,
        patterns: PatternStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.records = records
        self.cache = cache
        self.patterns = patterns
        self._clock = clock

    def submit(self, feedback: FeedbackRecord) -> StoredFeedback:
        logger.info("[FEEDBACK] Processing feedback for transaction %s", feedback.transaction_id)

        transaction = self.records.get_transaction(feedback.transaction_id)
        if transaction is None:
            raise TransactionNotFound(f"Transaction '{feedback.transaction_id}' not found")
        if not self.records.category_exists(feedback.corrected_category):
            raise UnknownCategory(f"Invalid category '{feedback.corrected_category}'")

        merchant_name = _merchant_name(transaction)
        stored = self.records.create_feedback(
            feedback,
            original_category=feedback.original_category or transaction.category,
            transaction_description=transaction.description,
            merchant_name=merchant_name,
        )
        self.records.update_transaction_category(
            transaction.id, feedback.corrected_category, user_verified=True
        )

        # Must land before returning: the next classify() of this merchant reads it.
        self.cache.set(merchant_name, feedback.corrected_category, is_user_correction=True)

        try:
            self._update_learning_patterns(stored)
        except (OSError, ValueError) as exc:
            logger.error(
                "[FEEDBACK] Learning pattern update failed for %s: %s", stored.transaction_id, exc
            )
            return stored

        processed_at = self._clock()
        self.records.mark_feedback_processed(stored.id, processed_at)
        logger.info("[FEEDBACK] Feedback processed for transaction %s", feedback.transaction_id)
        return stored.model_copy(update={"processed": True, "processed_at": processed_at})

    def submit_bulk(self, feedbacks: Iterable[FeedbackRecord]) -> BulkFeedbackResult:
        result = BulkFeedbackResult()
        for feedback in feedbacks:
            try:
                self.submit(feedback)
                result.processed += 1
            except FeedbackError as exc:
                logger.error(
                    "[FEEDBACK] Failed to process feedback for transaction %s: %s",
                    feedback.transaction_id,
                    exc,
                )
                result.failed += 1

        logger.info(
            "[FEEDBACK] Bulk feedback completed: %d processed, %d failed",
            result.processed,
            result.failed,
        )
        return result

    def _update_learning_patterns(self, feedback: StoredFeedback) -> None:
        category = feedback.corrected_category
        if feedback.merchant_name:
            self.patterns.record_correction("merchant_category", feedback.merchant_name, category)
        for keyword in extract_keywords(feedback.transaction_description):
            self.patterns.record_correction("description_keyword", keyword, category)

    def history(self, limit: int = 50, offset: int = 0) -> list[StoredFeedback]:
        return self.records.list_feedback(limit=limit, offset=offset)

    def corrections_since(self, start: datetime) -> int:
        return sum(1 for f in self.records.all_feedback() if f.created_at >= start)

    def stats(self) -> FeedbackStats:
        now = self._clock()
        feedback = self.records.all_feedback()
        ratings = [f.confidence_rating for f in feedback if f.confidence_rating is not None]
        processed = sum(1 for f in feedback if f.processed)
        return FeedbackStats(
            total_feedback=len(feedback),
            feedback_last_24h=sum(1 for f in feedback if f.created_at >= now - timedelta(days=1)),
            feedback_last_7_days=sum(
                1 for f in feedback if f.created_at >= now - timedelta(days=7)
            ),
            average_confidence=round(sum(ratings) / len(ratings), 2) if ratings else 0.0,
            processed=processed,
            pending=len(feedback) - processed,
        )
