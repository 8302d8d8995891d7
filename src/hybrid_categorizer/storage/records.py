import threading
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Protocol

from hybrid_categorizer.models import (
    CATEGORIES,
    FeedbackRecord,
    StoredFeedback,
    Transaction,
    TransactionRecord,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordStore(Protocol):
    """Relational data the core reads and writes: transactions, taxonomy, feedback."""

    def get_transaction(self, transaction_id: str) -> TransactionRecord | None: ...

    def save_transaction(self, transaction: Transaction, category: str | None) -> TransactionRecord: ...

    def update_transaction_category(
        self, transaction_id: str, category: str, *, user_verified: bool
    ) -> None: ...

    def category_exists(self, name: str) -> bool: ...

    def list_categories(self) -> list[str]: ...

    def create_feedback(
        self,
        feedback: FeedbackRecord,
        *,
        original_category: str | None,
        transaction_description: str,
        merchant_name: str,
    ) -> StoredFeedback: ...

    def mark_feedback_processed(self, feedback_id: str, processed_at: datetime) -> None: ...

    def list_feedback(self, *, limit: int, offset: int) -> list[StoredFeedback]: ...

    def all_feedback(self) -> list[StoredFeedback]: ...


class InMemoryRecordStore:
    def __init__(
        self,
        categories: Iterable[str] = CATEGORIES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._categories = list(categories)
        self._transactions: dict[str, TransactionRecord] = {}
        self._feedback: dict[str, StoredFeedback] = {}

    def get_transaction(self, transaction_id: str) -> TransactionRecord | None:
        with self._lock:
            return self._transactions.get(transaction_id)

    def save_transaction(self, transaction: Transaction, category: str | None) -> TransactionRecord:
        record = TransactionRecord(
            id=transaction.id,
            description=transaction.description,
            amount=transaction.amount,
            date=transaction.date,
            merchant=transaction.merchant,
            category=category,
        )
        with self._lock:
            existing = self._transactions.get(transaction.id)
            # A user-verified category is never overwritten by a machine suggestion
            if existing and existing.user_verified:
                record = record.model_copy(
                    update={"category": existing.category, "user_verified": True}
                )
            self._transactions[transaction.id] = record
        return record

    def update_transaction_category(
        self, transaction_id: str, category: str, *, user_verified: bool
    ) -> None:
        with self._lock:
            record = self._transactions.get(transaction_id)
            if record is None:
                raise KeyError(transaction_id)
            self._transactions[transaction_id] = record.model_copy(
                update={"category": category, "user_verified": user_verified}
            )

    def category_exists(self, name: str) -> bool:
        return name in self._categories

    def list_categories(self) -> list[str]:
        return list(self._categories)

    def create_feedback(
        self,
        feedback: FeedbackRecord,
        *,
        original_category: str | None,
        transaction_description: str,
        merchant_name: str,
    ) -> StoredFeedback:
        stored = StoredFeedback(
            id=uuid.uuid4().hex,
            transaction_id=feedback.transaction_id,
            original_category=original_category,
            corrected_category=feedback.corrected_category,
            feedback_type=feedback.feedback_type,
            source=feedback.source,
            confidence_rating=feedback.confidence_rating,
            notes=feedback.notes,
            user_id=feedback.user_id,
            transaction_description=transaction_description,
            merchant_name=merchant_name,
            created_at=self._clock(),
        )
        with self._lock:
            self._feedback[stored.id] = stored
        return stored

    def mark_feedback_processed(self, feedback_id: str, processed_at: datetime) -> None:
        with self._lock:
            stored = self._feedback.get(feedback_id)
            if stored is None:
                raise KeyError(feedback_id)
            self._feedback[feedback_id] = stored.model_copy(
                update={"processed": True, "processed_at": processed_at}
            )

    def list_feedback(self, *, limit: int, offset: int) -> list[StoredFeedback]:
        with self._lock:
            ordered = sorted(self._feedback.values(), key=lambda f: f.created_at, reverse=True)
        return ordered[offset:offset + limit]

    def all_feedback(self) -> list[StoredFeedback]:
        with self._lock:
            return list(self._feedback.values())
