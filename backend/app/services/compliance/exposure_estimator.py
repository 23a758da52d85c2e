"""
Penalty Exposure Estimator

Derives worst-case monetary exposure from a rule set's free-text penalty
clauses and the current state of a case.

Determinism: identical inputs always produce identical output. The estimator
does no I/O and never reads the clock; "days remaining" arrives in the
ExposureContext.

Penalty prose is parsed behind PenaltyMultiplierParser so a structured
multiplier field can replace it later without touching callers.
"""
import re
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from ...models.compliance import (
    ExposureContext, ExposureEstimate, Likelihood, PenaltyClause,
    PenaltyExposure, RiskFactor,
)
from .deadline_engine import round_money, to_decimal


# =============================================================================
# MULTIPLIER PARSING
# =============================================================================

class PenaltyMultiplierParser(ABC):
    """Extracts a deposit multiplier from penalty prose."""

    @abstractmethod
    def parse(self, text: str) -> Optional[Decimal]:
        """
        Return the multiplier of the deposit the penalty implies,
        or None when the text does not state one.
        """
        pass


class KeywordMultiplierParser(PenaltyMultiplierParser):
    """
    Keyword and "<n>x" matching over penalty prose.

    "2x" / "double" / "twice"                 -> 2
    "3x" / "triple" / "treble" / "three times" -> 3
    "full deposit" / "forfeit"                -> 1
    """

    NUMERIC_PATTERN = re.compile(r"(?<![\d.])(\d+(?:\.\d+)?)\s*(?:x|times)\b", re.IGNORECASE)

    KEYWORDS: Tuple[Tuple[re.Pattern, Decimal], ...] = (
        (re.compile(r"\b(?:triple|treble|three times)\b", re.IGNORECASE), Decimal("3")),
        (re.compile(r"\b(?:double|twice|two times)\b", re.IGNORECASE), Decimal("2")),
        (re.compile(r"\bfull deposit\b|\bforfeit", re.IGNORECASE), Decimal("1")),
    )

    def parse(self, text: str) -> Optional[Decimal]:
        if not text:
            return None

        # Several phrases may appear ("$100 + 3x ..."); the largest one wins
        found: List[Decimal] = []
        for match in self.NUMERIC_PATTERN.finditer(text):
            value = Decimal(match.group(1))
            if value > 0:
                found.append(value)
        for pattern, multiplier in self.KEYWORDS:
            if pattern.search(text):
                found.append(multiplier)

        return max(found) if found else None


DEFAULT_PARSER = KeywordMultiplierParser()


# =============================================================================
# LIKELIHOOD
# =============================================================================

def aggregate_deduction_likelihood(context: ExposureContext) -> Likelihood:
    """Roll deduction risk factors into a single qualitative level."""
    if context.normal_wear_count > 0 or context.high_risk_count > 0:
        return Likelihood.HIGH
    if context.missing_evidence_count > 0:
        return Likelihood.MEDIUM
    return Likelihood.LOW


def deadline_likelihood(context: ExposureContext) -> Likelihood:
    if context.already_sent:
        return Likelihood.LOW
    if context.days_remaining < 0:
        return Likelihood.HIGH
    if context.days_remaining < 3:
        return Likelihood.MEDIUM
    return Likelihood.LOW


def penalty_likelihood(clause: PenaltyClause, context: ExposureContext) -> Likelihood:
    """Judge how likely one penalty clause is to be triggered."""
    condition = clause.condition.lower()

    if "late" in condition or "deadline" in condition or "failure to return" in condition:
        return deadline_likelihood(context)

    if "itemiz" in condition:
        if context.is_overdue:
            return Likelihood.HIGH
        return Likelihood.LOW if context.has_itemized_statement else Likelihood.MEDIUM

    if "interest" in condition:
        return Likelihood.MEDIUM if context.interest_owed > 0 else Likelihood.LOW

    # Bad faith, wrongful withholding and catch-all clauses track deduction risk
    return aggregate_deduction_likelihood(context)


# =============================================================================
# RISK FACTORS
# =============================================================================

def collect_risk_factors(context: ExposureContext) -> List[RiskFactor]:
    factors: List[RiskFactor] = []

    if context.is_overdue:
        overdue = abs(context.days_remaining)
        factors.append(RiskFactor(
            category="Deadline",
            description=f"Deadline passed {overdue} day{'s' if overdue != 1 else ''} ago",
            severity=Likelihood.HIGH,
        ))
    elif not context.already_sent and context.days_remaining <= 3:
        factors.append(RiskFactor(
            category="Deadline",
            description=f"Only {context.days_remaining} days remaining",
            severity=Likelihood.MEDIUM,
        ))

    if not context.has_itemized_statement:
        factors.append(RiskFactor(
            category="Documentation",
            description="Itemized statement has not been generated",
            severity=Likelihood.MEDIUM,
        ))

    if context.pending_forwarding_addresses > 0:
        factors.append(RiskFactor(
            category="Forwarding Address",
            description=f"{context.pending_forwarding_addresses} tenant(s) without a forwarding address",
            severity=Likelihood.LOW,
        ))

    if context.normal_wear_count > 0:
        factors.append(RiskFactor(
            category="Deductions",
            description=f"{context.normal_wear_count} deduction(s) claim normal wear and tear",
            severity=Likelihood.HIGH,
        ))
    if context.missing_evidence_count > 0:
        factors.append(RiskFactor(
            category="Deductions",
            description=f"{context.missing_evidence_count} deduction(s) missing evidence",
            severity=Likelihood.MEDIUM,
        ))
    if context.high_risk_count > 0:
        factors.append(RiskFactor(
            category="Deductions",
            description=f"{context.high_risk_count} high-risk deduction(s)",
            severity=Likelihood.HIGH,
        ))

    if context.over_deducted_amount > 0:
        factors.append(RiskFactor(
            category="Totals",
            description=f"Deductions exceed deposit plus interest by ${round_money(context.over_deducted_amount)}",
            severity=Likelihood.HIGH,
        ))

    if context.incomplete_blocking_items > 0:
        factors.append(RiskFactor(
            category="Checklist",
            description=f"{context.incomplete_blocking_items} required checklist item(s) incomplete",
            severity=Likelihood.MEDIUM,
        ))

    return factors


# =============================================================================
# ESTIMATE
# =============================================================================

def estimate_exposure(
    deposit_amount,
    penalties: Sequence[PenaltyClause],
    context: ExposureContext,
    parser: Optional[PenaltyMultiplierParser] = None,
) -> ExposureEstimate:
    """
    Estimate penalty exposure for a case.

    max_exposure = deposit x the largest parsed multiplier.
    min_exposure = deposit x the largest multiplier among HIGH-likelihood
    penalties, or 0 when none is judged likely.
    Clauses without a parseable multiplier are reported but not totalled.
    """
    parser = parser or DEFAULT_PARSER
    deposit = to_decimal(deposit_amount)

    rows: List[PenaltyExposure] = []
    unquantified: List[str] = []
    matched: List[Decimal] = []
    likely: List[Decimal] = []

    for clause in penalties:
        multiplier = parser.parse(clause.penalty)
        likelihood = penalty_likelihood(clause, context)
        amount = round_money(deposit * multiplier) if multiplier is not None else None

        if multiplier is None:
            unquantified.append(f"{clause.condition}: {clause.penalty}")
        else:
            matched.append(multiplier)
            if likelihood == Likelihood.HIGH:
                likely.append(multiplier)

        rows.append(PenaltyExposure(
            condition=clause.condition,
            penalty=clause.penalty,
            description=clause.description,
            multiplier=multiplier,
            amount=amount,
            likelihood=likelihood,
        ))

    max_exposure = round_money(deposit * max(matched)) if matched else round_money(Decimal("0"))
    min_exposure = round_money(deposit * max(likely)) if likely else round_money(Decimal("0"))

    return ExposureEstimate(
        deposit_amount=round_money(deposit),
        min_exposure=min_exposure,
        max_exposure=max_exposure,
        penalties=tuple(rows),
        risk_factors=tuple(collect_risk_factors(context)),
        unquantified_penalties=tuple(unquantified),
        days_remaining=context.days_remaining,
        is_overdue=context.is_overdue,
    )
