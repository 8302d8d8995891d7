import time
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import Any

from hybrid_categorizer.cache import CacheLookup, CategoryCache
from hybrid_categorizer.classifiers.base import ClassifierGateway, ClassifierResponse
from hybrid_categorizer.classifiers.rules import (
    SHORT_CIRCUIT_CONFIDENCE,
    PatternRuleMatcher,
    RuleMatch,
)
from hybrid_categorizer.domain.text import normalize_description
from hybrid_categorizer.domain.transactions import (
    merchant_fingerprint,
    preprocess_transaction,
    transaction_id_of,
)
from hybrid_categorizer.errors import (
    ClassifierUnavailable,
    FeedbackError,
    InvalidClassifierResponse,
    PreprocessingError,
    UnknownCategory,
)
from hybrid_categorizer.logger import get_logger
from hybrid_categorizer.models import (
    CATEGORIES,
    CATEGORIZATION_FAILED_CATEGORY,
    OTHER_CATEGORY,
    PREPROCESSING_FAILED_CATEGORY,
    CategorizationResult,
    MetricSample,
    ResultSource,
    Transaction,
    is_valid_category,
)
from hybrid_categorizer.services.metrics import (
    OPERATION_AI,
    OPERATION_CACHE_LOOKUP,
    OPERATION_RULE,
    MetricsRecorder,
)
from hybrid_categorizer.storage.records import utcnow

logger = get_logger(__name__)

AI_DEFAULT_CONFIDENCE = 0.85
AGREEMENT_BOOST = 0.10
AGREEMENT_CAP = 0.95
FALLBACK_CONFIDENCE = 0.5
CACHE_HIT_CONFIDENCE = 1.0


def resolve_hybrid(
    rule: RuleMatch | None, ai_category: str
) -> tuple[str, float, ResultSource]:
    """Combine a rule suggestion with the remote classifier's label."""
    if rule is None:
        return ai_category, AI_DEFAULT_CONFIDENCE, "ai"

    rule_confidence = rule.confidence / 100
    if rule.category == ai_category:
        boosted = min(AGREEMENT_CAP, max(rule_confidence, AI_DEFAULT_CONFIDENCE) + AGREEMENT_BOOST)
        return ai_category, round(boosted, 4), "hybrid"

    if rule_confidence > AI_DEFAULT_CONFIDENCE:
        return rule.category, rule_confidence, "rule"
    return ai_category, AI_DEFAULT_CONFIDENCE, "ai"


class CategorizerService:
    def __init__(
        self,
        cache: CategoryCache,
        rules: PatternRuleMatcher | None = None,
        gateway: ClassifierGateway | None = None,
        metrics: MetricsRecorder | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.cache = cache
        self.rules = rules or PatternRuleMatcher()
        self.gateway = gateway
        self.metrics = metrics
        self._clock = clock

        if gateway is None or not gateway.enabled:
            logger.warning("[CLASSIFY] Remote classifier disabled; rule results will be used alone.")

    @property
    def classifier_enabled(self) -> bool:
        return self.gateway is not None and self.gateway.enabled

    def available_categories(self) -> list[str]:
        return list(CATEGORIES)

    def classify(self, raw: Transaction | Mapping[str, Any]) -> CategorizationResult:
        transaction_id = transaction_id_of(raw)
        try:
            transaction = preprocess_transaction(raw)
        except PreprocessingError as exc:
            logger.error("[CLASSIFY] Preprocessing failed for %s: %s", transaction_id, exc)
            return CategorizationResult(
                transaction_id=transaction_id,
                category=PREPROCESSING_FAILED_CATEGORY,
                confidence=0.0,
                source="error",
                error=str(exc),
            )

        try:
            return self._classify(transaction)
        except Exception as exc:
            logger.exception("[CLASSIFY] Error categorizing transaction %s", transaction_id)
            return CategorizationResult(
                transaction_id=transaction_id,
                category=CATEGORIZATION_FAILED_CATEGORY,
                confidence=0.0,
                source="error",
                error=str(exc),
            )

    def classify_all(
        self, transactions: Iterable[Transaction | Mapping[str, Any]]
    ) -> list[CategorizationResult]:
        results = [self.classify(transaction) for transaction in transactions]
        logger.info("[CLASSIFY] Categorized %d transactions.", len(results))
        return results

    def apply_user_correction(self, normalized_text: str, category: str) -> None:
        if not normalized_text or not normalized_text.strip() or not category:
            raise FeedbackError("Normalized merchant name and corrected category are required.")
        if not is_valid_category(category):
            raise UnknownCategory(
                f"Invalid category '{category}'. Must be one of: {', '.join(CATEGORIES)}"
            )

        fingerprint = normalize_description(normalized_text)
        logger.info("[CLASSIFY] User correction: '%s' -> %s", fingerprint[:50], category)
        self.cache.set(fingerprint, category, is_user_correction=True)

    def _classify(self, transaction: Transaction) -> CategorizationResult:
        fingerprint = merchant_fingerprint(transaction)

        lookup = self._lookup_cache(fingerprint)
        if lookup.hit:
            logger.info("[CLASSIFY] Cache HIT for '%s': %s", fingerprint[:50], lookup.category)
            return CategorizationResult(
                transaction_id=transaction.id,
                category=lookup.category,
                confidence=CACHE_HIT_CONFIDENCE,
                source="cache",
            )

        rule = self._match_rules(fingerprint, transaction.amount)
        if rule and rule.confidence >= SHORT_CIRCUIT_CONFIDENCE:
            logger.info(
                "[CLASSIFY] Rule HIGH CONFIDENCE (%s%%) for '%s': %s",
                rule.confidence,
                fingerprint[:50],
                rule.category,
            )
            self.cache.set(fingerprint, rule.category)
            return self._rule_result(transaction, rule)

        if not self.classifier_enabled:
            logger.warning("[CLASSIFY] No remote classifier for '%s'.", fingerprint[:50])
            return self._fallback(
                transaction,
                fingerprint,
                rule,
                ClassifierUnavailable("Remote classifier is not configured"),
                write_cache=False,
            )

        if rule:
            logger.info(
                "[CLASSIFY] Rule suggestion (%s%%): %s for '%s'. Validating with AI.",
                rule.confidence,
                rule.category,
                fingerprint[:50],
            )

        try:
            response = self._call_classifier(fingerprint)
        except (ClassifierUnavailable, InvalidClassifierResponse) as exc:
            return self._fallback(transaction, fingerprint, rule, exc)

        category, confidence, source = resolve_hybrid(rule, response.category)
        if rule and source == "hybrid":
            logger.info(
                "[HYBRID] Rule-AI AGREEMENT for '%s': %s (boosted confidence: %.1f%%)",
                fingerprint[:50],
                category,
                confidence * 100,
            )
        elif rule:
            logger.warning(
                "[HYBRID] Rule-AI DISAGREEMENT for '%s': rule=%s (%s%%) ai=%s, using %s",
                fingerprint[:50],
                rule.category,
                rule.confidence,
                response.category,
                category,
            )

        self.cache.set(fingerprint, category)
        return CategorizationResult(
            transaction_id=transaction.id,
            category=category,
            confidence=confidence,
            source=source,
            tier=rule.tier.value if rule else None,
        )

    def _rule_result(
        self, transaction: Transaction, rule: RuleMatch, error: str | None = None
    ) -> CategorizationResult:
        return CategorizationResult(
            transaction_id=transaction.id,
            category=rule.category,
            confidence=rule.confidence / 100,
            source="rule",
            tier=rule.tier.value,
            error=error,
        )

    def _fallback(
        self,
        transaction: Transaction,
        fingerprint: str,
        rule: RuleMatch | None,
        exc: Exception,
        write_cache: bool = True,
    ) -> CategorizationResult:
        if rule:
            logger.info(
                "[CLASSIFY] Falling back to rule result for '%s': %s (%s%%)",
                fingerprint[:50],
                rule.category,
                rule.confidence,
            )
            if write_cache:
                self.cache.set(fingerprint, rule.category)
            return self._rule_result(
                transaction, rule, error=f"AI failed, used rule fallback: {exc}"
            )

        return CategorizationResult(
            transaction_id=transaction.id,
            category=OTHER_CATEGORY,
            confidence=FALLBACK_CONFIDENCE,
            source="fallback",
            error=str(exc),
        )

    def _lookup_cache(self, fingerprint: str) -> CacheLookup:
        started = time.perf_counter()
        lookup = self.cache.lookup(fingerprint)
        self._record(
            OPERATION_CACHE_LOOKUP,
            started,
            success=lookup.available,
            cache_hit=lookup.hit if lookup.available else None,
            error=None if lookup.available else "cache unavailable",
        )
        return lookup

    def _match_rules(self, fingerprint: str, amount: float) -> RuleMatch | None:
        started = time.perf_counter()
        rule = self.rules.match(fingerprint, amount)
        if rule and rule.confidence >= SHORT_CIRCUIT_CONFIDENCE:
            self._record(OPERATION_RULE, started, success=True)
        return rule

    def _call_classifier(self, fingerprint: str) -> ClassifierResponse:
        started = time.perf_counter()
        try:
            response = self.gateway.classify(fingerprint)
        except InvalidClassifierResponse as exc:
            logger.error(
                "[AI] Malformed response for '%s': %s (raw=%r)",
                fingerprint[:50],
                exc,
                exc.raw_payload,
            )
            self._record(OPERATION_AI, started, success=False, error=str(exc))
            raise
        except ClassifierUnavailable as exc:
            logger.error("[AI] Categorization failed for '%s': %s", fingerprint[:50], exc)
            self._record(OPERATION_AI, started, success=False, error=str(exc))
            raise

        cost = None
        if self.metrics is not None:
            cost = self.metrics.calculate_cost(response.tokens.input, response.tokens.output)
        self._record(OPERATION_AI, started, success=True, cost=cost, tokens=response.tokens)
        return response

    def _record(self, operation: str, started: float, **fields: Any) -> None:
        if self.metrics is None:
            return
        self.metrics.record(
            MetricSample(
                timestamp=self._clock(),
                operation=operation,
                duration_ms=(time.perf_counter() - started) * 1000,
                **fields,
            )
        )
