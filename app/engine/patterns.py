"""
Injected pattern table for the fraud detector.

The detector holds no module-level mutable state: callers build a PatternTable
(usually via default_pattern_table()), refresh it when their rule source
changes, and pass it in.
"""

import re
from dataclasses import dataclass, field
from decimal import Decimal

from app.engine.amounts import is_round_number


@dataclass(frozen=True)
class RegexRule:
    pattern: re.Pattern
    risk: float
    reason: str

    def matches(self, text: str) -> bool:
        return bool(self.pattern.search(text))


@dataclass(frozen=True)
class RuleContext:
    """Structural facts about a transaction that table rules evaluate against."""
    amount: Decimal
    same_merchant_same_day: int = 0


@dataclass(frozen=True)
class FraudRule:
    name: str
    description: str
    kind: str
    risk: float
    min_amount: Decimal = Decimal("500")
    min_count: int = 2

    def evaluate(self, ctx: RuleContext) -> float:
        """Return the rule's risk when it applies, else 0."""
        if self.kind == "round_number":
            amount = abs(ctx.amount)
            if amount >= self.min_amount and is_round_number(amount):
                return self.risk
            return 0.0
        if self.kind == "same_merchant_same_day":
            if ctx.same_merchant_same_day >= self.min_count:
                return self.risk
            return 0.0
        return 0.0


@dataclass(frozen=True)
class PatternTable:
    suspicious_merchants: tuple[RegexRule, ...]
    suspicious_ocr: tuple[RegexRule, ...]
    # (month, day) pairs
    holidays: frozenset = field(default_factory=frozenset)
    rules: tuple[FraudRule, ...] = ()

    def is_holiday(self, month: int, day: int) -> bool:
        return (month, day) in self.holidays


def _rx(pattern: str, risk: float, reason: str) -> RegexRule:
    return RegexRule(re.compile(pattern, re.IGNORECASE), risk, reason)


def default_pattern_table() -> PatternTable:
    """Stock rule battery."""
    return PatternTable(
        suspicious_merchants=(
            _rx(r"cash\s*advance", 0.9, "Cash advance transaction"),
            _rx(r"atm\s*withdrawal", 0.7, "ATM withdrawal"),
            _rx(r"money\s*transfer", 0.8, "Money transfer"),
            _rx(r"bitcoin|crypto|btc|eth", 0.8, "Cryptocurrency transaction"),
            _rx(r"gambling|casino|poker|lottery", 0.9, "Gambling transaction"),
            _rx(r"adult|xxx|escort", 0.9, "Adult services"),
            _rx(r"unknown\s*merchant", 0.6, "Unknown merchant"),
            _rx(r"temp\s*auth", 0.5, "Temporary authorization"),
        ),
        suspicious_ocr=(
            _rx(r"photoshop|edited|modified", 0.8, "Receipt text suggests digital editing"),
            _rx(r"copy|duplicate|reprint", 0.8, "Receipt marked as a copy or reprint"),
            _rx(r"void|cancelled|refund", 0.8, "Receipt marked void, cancelled or refunded"),
        ),
        holidays=frozenset({(1, 1), (7, 4), (12, 25), (11, 11)}),
        rules=(
            FraudRule(
                name="round_number",
                description="Round number transactions",
                kind="round_number",
                risk=0.5,
                min_amount=Decimal("500"),
            ),
            FraudRule(
                name="same_merchant_same_day",
                description="Multiple transactions same merchant same day",
                kind="same_merchant_same_day",
                risk=0.6,
                min_count=2,
            ),
        ),
    )
