from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from hybrid_categorizer.domain.text import normalize_description
from hybrid_categorizer.errors import PreprocessingError
from hybrid_categorizer.models import Transaction


def transaction_id_of(raw: Transaction | Mapping[str, Any] | Any) -> str:
    if isinstance(raw, Transaction):
        return raw.id
    if isinstance(raw, Mapping):
        value = raw.get("id")
        if value is not None and str(value).strip():
            return str(value)
    return "unknown"


def preprocess_transaction(raw: Transaction | Mapping[str, Any]) -> Transaction:
    """
    Validate the caller-supplied transaction and return a copy whose
    description is normalized. Raises PreprocessingError on bad input.
    """
    if isinstance(raw, Transaction):
        transaction = raw
    elif isinstance(raw, Mapping):
        if isinstance(raw.get("amount"), bool):
            raise PreprocessingError("Invalid or missing amount: expected a number.")
        try:
            transaction = Transaction.model_validate(dict(raw))
        except ValidationError as exc:
            fields = ", ".join(
                ".".join(str(part) for part in error["loc"]) for error in exc.errors()
            )
            raise PreprocessingError(f"Invalid transaction fields: {fields}") from exc
    else:
        raise PreprocessingError(f"Unsupported transaction payload: {type(raw).__name__}")

    if not transaction.id.strip():
        raise PreprocessingError("Invalid or missing transaction id.")

    return transaction.model_copy(
        update={"description": normalize_description(transaction.description)}
    )


def merchant_fingerprint(transaction: Transaction) -> str:
    """Normalized text used for rule matching and as the cache key basis."""
    if transaction.merchant and transaction.merchant.strip():
        return normalize_description(transaction.merchant)
    return normalize_description(transaction.description)
