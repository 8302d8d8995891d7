import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

from hybrid_categorizer.logger import get_logger
from hybrid_categorizer.models import Transaction

logger = get_logger(__name__)

# Rule confidence at or above this skips the remote classifier entirely.
SHORT_CIRCUIT_CONFIDENCE = 85


class RuleTier(str, Enum):
    MERCHANT = "merchant"
    DESCRIPTION = "description"
    AMOUNT = "amount"
    COMPOUND = "compound"


@dataclass(frozen=True)
class RuleDefinition:
    category: str
    confidence: int
    tier: RuleTier
    patterns: tuple[re.Pattern[str], ...] = ()
    min_amount: float | None = None
    max_amount: float | None = None
    round_amount: bool = False
    condition: Callable[[str, float], bool] | None = field(default=None, compare=False)

    def matches(self, description: str, amount: float) -> str | None:
        """Return the pattern source (or rule label) that matched, otherwise None."""
        if self.min_amount is not None and amount < self.min_amount:
            return None
        if self.max_amount is not None and amount > self.max_amount:
            return None
        if self.round_amount and not _is_round_amount(amount):
            return None
        if self.condition is not None and not self.condition(description, amount):
            return None

        if not self.patterns:
            return f"{self.tier.value}:{self.category}"
        return next((p.pattern for p in self.patterns if p.search(description)), None)


@dataclass(frozen=True)
class RuleMatch:
    category: str
    confidence: int  # 0 to 100
    tier: RuleTier
    matched_pattern: str | None = None


@dataclass
class RuleCoverage:
    total_transactions: int = 0
    rule_matches: int = 0
    coverage_by_tier: dict[str, int] = field(
        default_factory=lambda: {tier.value: 0 for tier in RuleTier}
    )
    coverage_by_category: dict[str, int] = field(default_factory=dict)


def _compile(*sources: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(source, re.IGNORECASE) for source in sources)


def _is_round_amount(amount: float) -> bool:
    return amount % 25 == 0 or amount % 50 == 0 or amount % 100 == 0


def _merchant(category: str, confidence: int, *sources: str) -> RuleDefinition:
    return RuleDefinition(category, confidence, RuleTier.MERCHANT, _compile(*sources))


def _description(category: str, confidence: int, *sources: str) -> RuleDefinition:
    return RuleDefinition(category, confidence, RuleTier.DESCRIPTION, _compile(*sources))


MERCHANT_RULES: tuple[RuleDefinition, ...] = (
    _merchant(
        "Groceries", 92,
        r"\b(loblaws|metro|sobeys|food basics|walmart|costco|no frills|fresh co|giant tiger)\b",
        r"\b(iga|maxi|provigo|super c|loblaws city market)\b",
        r"\b(farm boy|wholesome market|bulk barn|fortinos|zehrs)\b",
        r"grocery|supermarket|food store",
    ),
    _merchant(
        "Transportation", 90,
        r"\b(uber|lyft|taxi|cab)\b",
        r"\b(ttc|oc transpo|go transit|via rail|bc transit|stm montreal)\b",
        r"\b(parking|park[^a-z]|prkg)\b",
        r"\b(gas station|petro|shell|esso|husky|pioneer)\b",
    ),
    _merchant(
        "Dining Out", 93,
        r"\b(tim hortons|tims|starbucks|mcdonalds|subway|pizza)\b",
        r"\b(burger king|kfc|wendy's|a&w|harvey's|swiss chalet)\b",
        r"\b(restaurant|cafe|bistro|diner|fast food)\b",
        r"\b(boston pizza|earls|montana's|kelsey's|white spot)\b",
    ),
    _merchant(
        "Utilities", 95,
        r"\b(hydro|ontario hydro|bc hydro|sask power|nova scotia power)\b",
        r"\b(enbridge|union gas|direct energy|just energy)\b",
        r"\b(bell|rogers|telus|shaw|cogeco|videotron)\b",
        r"\b(toronto water|water bill|waste management)\b",
    ),
    _merchant(
        "Health & Wellness", 88,
        r"\b(shoppers drug mart|rexall|pharma plus|costco pharmacy)\b",
        r"\b(pharmacy|medical|dental|doctor|clinic|hospital)\b",
        r"\b(goodlife|anytime fitness|ymca|community centre)\b",
    ),
    _merchant(
        "Shopping", 87,
        r"\b(amazon|best buy|canadian tire|home depot|lowes)\b",
        r"\b(the bay|winners|marshalls|dollarama|dollar tree)\b",
        r"\b(sport chek|sportchek|marks|old navy|gap)\b",
        r"\b(indigo|chapters|staples|office depot)\b",
    ),
    _merchant(
        "Entertainment", 85,
        r"\b(cineplex|landmark cinemas|netflix|spotify|apple music)\b",
        r"\b(steam|xbox|playstation|nintendo|gaming)\b",
        r"\b(theatre|concert|event|ticket|entertainment)\b",
    ),
)

DESCRIPTION_RULES: tuple[RuleDefinition, ...] = (
    _description(
        "Income", 78,
        r"\b(salary|payroll|employment|wages|pay.*deposit)\b",
        r"\b(ei|employment insurance|cpp|pension|benefit)\b",
        r"\b(refund|reimbursement|cashback|rebate)\b",
    ),
    _description(
        "Transfers", 80,
        r"\b(e-transfer|interac|etransfer|transfer.*to|transfer.*from)\b",
        r"\b(send money|receive money|p2p|peer.*peer)\b",
        r"\b(deposit.*savings|withdraw.*savings)\b",
    ),
    _description(
        "Services", 72,
        r"\b(fee|service charge|nfs|overdraft|interest)\b",
        r"\b(banking|bank.*fee|maintenance|monthly.*fee)\b",
        r"\b(lawyer|legal|accountant|professional.*service)\b",
        r"\b(cleaning|repair|maintenance|service)\b",
    ),
    _description(
        "Housing", 85,
        r"\b(rent|rental|mortgage|condo.*fee|property.*tax)\b",
        r"\b(insurance|home.*insurance|tenant.*insurance)\b",
        r"\b(property.*management|landlord)\b",
    ),
)

AMOUNT_RULES: tuple[RuleDefinition, ...] = (
    # Single TTC fare.
    RuleDefinition("Transportation", 80, RuleTier.AMOUNT, min_amount=3.35, max_amount=3.35),
    RuleDefinition(
        "Transportation", 70, RuleTier.AMOUNT,
        patterns=_compile(r"transit|bus|subway|metro"),
        min_amount=2,
        max_amount=15,
    ),
    RuleDefinition(
        "Transfers", 60, RuleTier.AMOUNT, min_amount=25, max_amount=10000, round_amount=True
    ),
)


def has_known_merchant(description: str) -> bool:
    return any(rule.matches(description, 0.0) for rule in MERCHANT_RULES)


def _mentions(*words: str) -> Callable[[str, float], bool]:
    def check(description: str, amount: float) -> bool:
        lowered = description.lower()
        return any(word in lowered for word in words)

    return check


def _refund_like(description: str, amount: float) -> bool:
    return amount < 0 and _mentions("deposit", "credit", "refund")(description, amount)


_FOOD_WORDS = ("food", "snack", "drink")

COMPOUND_RULES: tuple[RuleDefinition, ...] = (
    RuleDefinition(
        "Dining Out", 65, RuleTier.COMPOUND, max_amount=8, condition=_mentions(*_FOOD_WORDS)
    ),
    RuleDefinition(
        "Groceries", 65, RuleTier.COMPOUND, max_amount=15, condition=_mentions(*_FOOD_WORDS)
    ),
    RuleDefinition(
        "Transfers", 68, RuleTier.COMPOUND,
        min_amount=100,
        condition=lambda description, amount: (
            amount % 50 == 0 and not has_known_merchant(description)
        ),
    ),
    RuleDefinition("Income", 75, RuleTier.COMPOUND, condition=_refund_like),
    RuleDefinition(
        "Services", 70, RuleTier.COMPOUND, max_amount=5, condition=_mentions("fee", "charge")
    ),
)

DEFAULT_RULE_TIERS: tuple[tuple[RuleDefinition, ...], ...] = (
    MERCHANT_RULES,
    DESCRIPTION_RULES,
    AMOUNT_RULES,
    COMPOUND_RULES,
)


class PatternRuleMatcher:
    """
    Deterministic classifier over ordered rule tiers.
    Tiers are tried in order and the first matching rule wins; within a
    tier, rules and their patterns are tried in declaration order.
    """

    def __init__(
        self, tiers: Iterable[Iterable[RuleDefinition]] = DEFAULT_RULE_TIERS
    ) -> None:
        self.tiers: tuple[tuple[RuleDefinition, ...], ...] = tuple(tuple(t) for t in tiers)

    def match(self, description: str, amount: float) -> RuleMatch | None:
        text = description or ""
        for rules in self.tiers:
            for rule in rules:
                matched = rule.matches(text, amount)
                if matched is None:
                    continue
                logger.debug(
                    "[RULES] %s match: '%s' (%s) -> %s (%s%%)",
                    rule.tier.value,
                    text[:50],
                    amount,
                    rule.category,
                    rule.confidence,
                )
                return RuleMatch(
                    category=rule.category,
                    confidence=rule.confidence,
                    tier=rule.tier,
                    matched_pattern=matched,
                )

        logger.debug("[RULES] No rule match for: '%s'", text[:50])
        return None

    def analyze_coverage(self, transactions: Iterable[Transaction]) -> RuleCoverage:
        coverage = RuleCoverage()
        for transaction in transactions:
            coverage.total_transactions += 1
            result = self.match(transaction.description, transaction.amount)
            if result is None:
                continue
            coverage.rule_matches += 1
            coverage.coverage_by_tier[result.tier.value] += 1
            coverage.coverage_by_category[result.category] = (
                coverage.coverage_by_category.get(result.category, 0) + 1
            )
        return coverage
